"""
Envelope encryption service.

This module provides:
- EncryptedField: Sealed value plus the metadata stored next to it
- EnvelopeService: seal()/open() over a key-wrapping gateway

Every sealed value gets its own data key. The raw data key lives only for the
duration of one seal() or open() call and is wiped on every exit path.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Optional, Union

from .crypto import ALGORITHM, AesGcmCipher
from .errors import ConfigurationError, IntegrityError
from .kms import AwsKmsGateway, KeyWrappingGateway

if TYPE_CHECKING:
    from .settings import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EncryptedField:
    """
    Envelope-encrypted value.

    ciphertext and wrapped_data_key must always be stored and read together.
    """

    ciphertext: str  # base64: nonce(12) || tag(16) || ciphertext
    wrapped_data_key: str  # base64 of the KMS-wrapped data key
    master_key_id: str
    algorithm: str = ALGORITHM
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, str]:
        return {
            "ciphertext": self.ciphertext,
            "wrapped_data_key": self.wrapped_data_key,
            "master_key_id": self.master_key_id,
            "algorithm": self.algorithm,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> EncryptedField:
        created_at = data.get("created_at")
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)
        return cls(
            ciphertext=data["ciphertext"],
            wrapped_data_key=data["wrapped_data_key"],
            master_key_id=data.get("master_key_id", ""),
            algorithm=data.get("algorithm", ALGORITHM),
            created_at=created_at or datetime.now(timezone.utc),
        )

    def __repr__(self) -> str:
        return (
            f"EncryptedField(master_key_id={self.master_key_id!r}, "
            f"algorithm={self.algorithm!r}, created_at={self.created_at.isoformat()})"
        )


class EnvelopeService:
    """
    Envelope encryption of text fields.

    Crypto flow (seal):
    1. Ask the gateway for a fresh data key wrapped under master_key_id
    2. Seal the plaintext with the raw data key (AES-256-GCM)
    3. Wipe the raw data key
    4. Return ciphertext + wrapped key + metadata

    Errors from the cipher and the gateway propagate unchanged so callers can
    tell corruption (DecryptionError) from outages (KeyServiceError) and
    revoked keys (IntegrityError).
    """

    def __init__(self, gateway: KeyWrappingGateway, master_key_id: Optional[str]) -> None:
        """
        Initialize service.

        Args:
            gateway: Key-wrapping gateway
            master_key_id: KMS key id or ARN that wraps data keys. When unset
                every operation fails with ConfigurationError.
        """
        self._gateway = gateway
        self._master_key_id = master_key_id or None
        if self._master_key_id is None:
            logger.error("Master key id is not set; seal/open will fail until configured")

    @classmethod
    def from_settings(
        cls, settings: Settings, gateway: Optional[KeyWrappingGateway] = None
    ) -> EnvelopeService:
        """Build a service from configuration, creating an AWS KMS gateway if none is given."""
        if gateway is None:
            gateway = AwsKmsGateway(
                region=settings.kms_region,
                endpoint_url=settings.kms_endpoint_url,
                timeout=settings.kms_timeout,
            )
        return cls(gateway, settings.master_key_id)

    @property
    def master_key_id(self) -> Optional[str]:
        return self._master_key_id

    @property
    def gateway(self) -> KeyWrappingGateway:
        return self._gateway

    def _require_master_key_id(self) -> str:
        if self._master_key_id is None:
            raise ConfigurationError("KMS master key id not configured")
        return self._master_key_id

    async def seal(self, plaintext: str) -> EncryptedField:
        """
        Encrypt one value under a new data key.

        Raises:
            ConfigurationError: No master key id (raised before any KMS call)
            KeyServiceError: Data key generation failed
        """
        master_key_id = self._require_master_key_id()
        generated = await self._gateway.generate_data_key(master_key_id)
        with generated.raw_key as data_key:
            ciphertext = AesGcmCipher.seal(plaintext, data_key)

        return EncryptedField(
            ciphertext=ciphertext,
            wrapped_data_key=generated.wrapped_key,
            master_key_id=generated.key_id or master_key_id,
            algorithm=ALGORITHM,
            created_at=datetime.now(timezone.utc),
        )

    async def open(
        self,
        sealed: Union[EncryptedField, str],
        wrapped_data_key: Optional[str] = None,
    ) -> str:
        """
        Decrypt a sealed value.

        Accepts either an EncryptedField or the stored (ciphertext, wrapped_data_key) pair.

        Raises:
            ConfigurationError: No master key id
            KeyServiceError: Unwrap call failed
            IntegrityError: Wrapped key missing, malformed or its master key revoked
            DecryptionError: Ciphertext corrupted or tampered with
        """
        self._require_master_key_id()
        if isinstance(sealed, EncryptedField):
            ciphertext, wrapped_data_key = sealed.ciphertext, sealed.wrapped_data_key
        else:
            ciphertext = sealed
        if not ciphertext or not wrapped_data_key:
            raise IntegrityError("Sealed value needs both ciphertext and wrapped data key")

        data_key = await self._gateway.unwrap_data_key(wrapped_data_key)
        with data_key:
            return AesGcmCipher.open(ciphertext, data_key)
