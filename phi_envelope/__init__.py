"""
PHI Envelope

Encrypted-field data layer: envelope encryption through AWS KMS plus a
deterministic blind index, so PHI columns are stored ciphertext-only yet stay
searchable by exact match.

Quick Start
-----------
```python
import asyncio
from phi_envelope import (
    EnvelopeService,
    InMemoryKeyGateway,
    Settings,
    build_codec,
)

async def main():
    settings = Settings.from_env()
    envelope = EnvelopeService.from_settings(settings)
    codec = build_codec("rbac_users", envelope, settings.blind_index())

    # Encrypt + index
    row = await codec.to_storage({"email": "Dr.Who@Example.org", "role_id": 2})

    # Look up by email without decrypting anything
    tag = codec.index_for("email", "dr.who@example.org")
    assert tag == row["email_index"]

    # Decrypt
    user = await codec.from_storage(row)

asyncio.run(main())
```

Key Features
------------
- **AES-256-GCM**: 96-bit random nonce, 128-bit tag, nonce || tag || ciphertext
- **One data key per value**: generated and wrapped by KMS, never cached
- **Key wipe**: raw data keys zeroed on every exit path
- **Blind index**: HMAC-SHA256 over normalized values for equality search
- **Migration reads**: legacy plaintext, envelope, or both (envelope wins)

Modules
-------
- `crypto`: AES-256-GCM field cipher and SecureKey
- `kms`: key-wrapping gateways (AWS KMS, in-memory)
- `envelope`: envelope encryption service
- `blind_index`: deterministic index and normalizers
- `codec`: record codec and stored-value variants
- `schemas`: clinical table layouts
- `storage`: PostgreSQL and in-memory record stores
- `settings`: environment configuration
- `errors`: error taxonomy
"""

__version__ = "0.1.0"

# =============================================================================
# Crypto Exports
# =============================================================================

from .crypto import (
    AES_256_KEY_SIZE,
    ALGORITHM,
    NONCE_SIZE,
    TAG_SIZE,
    AesGcmCipher,
    EncryptedData,
    SecureKey,
    generate_random_bytes,
)

# =============================================================================
# Error Exports
# =============================================================================

from .errors import (
    ConfigurationError,
    DecryptionError,
    DuplicateRecordError,
    EnvelopeError,
    IntegrityError,
    KeyServiceError,
    StorageError,
)

# =============================================================================
# Key Gateway Exports
# =============================================================================

from .kms import (
    AwsKmsGateway,
    GeneratedDataKey,
    InMemoryKeyGateway,
    KeyWrappingGateway,
)

# =============================================================================
# Envelope / Index / Codec Exports
# =============================================================================

from .envelope import EncryptedField, EnvelopeService

from .blind_index import (
    BlindIndex,
    normalize_email,
    normalize_finding,
    normalize_identifier,
)

from .codec import (
    EncryptedFieldSpec,
    RecordCodec,
    StoredBoth,
    StoredEnveloped,
    StoredPlaintext,
    classify,
)

from .schemas import TABLE_FIELDS, UNIQUE_INDEXES, build_codec

from .settings import Settings

# =============================================================================
# Storage Exports
# =============================================================================

from .storage import InMemoryRecordStore, PostgresRecordStore, RecordStore

# =============================================================================
# Public API
# =============================================================================

__all__ = [
    # Version
    "__version__",
    # Crypto
    "AES_256_KEY_SIZE",
    "ALGORITHM",
    "NONCE_SIZE",
    "TAG_SIZE",
    "AesGcmCipher",
    "EncryptedData",
    "SecureKey",
    "generate_random_bytes",
    # Errors
    "EnvelopeError",
    "ConfigurationError",
    "KeyServiceError",
    "DecryptionError",
    "IntegrityError",
    "StorageError",
    "DuplicateRecordError",
    # Key gateways
    "KeyWrappingGateway",
    "GeneratedDataKey",
    "AwsKmsGateway",
    "InMemoryKeyGateway",
    # Envelope
    "EnvelopeService",
    "EncryptedField",
    # Blind index
    "BlindIndex",
    "normalize_email",
    "normalize_finding",
    "normalize_identifier",
    # Codec
    "EncryptedFieldSpec",
    "RecordCodec",
    "StoredPlaintext",
    "StoredEnveloped",
    "StoredBoth",
    "classify",
    "TABLE_FIELDS",
    "UNIQUE_INDEXES",
    "build_codec",
    # Settings
    "Settings",
    # Storage
    "RecordStore",
    "PostgresRecordStore",
    "InMemoryRecordStore",
]
