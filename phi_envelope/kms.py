"""
Key-wrapping gateways.

This module provides:
- KeyWrappingGateway: Abstract interface to a key-management service
- GeneratedDataKey: Result of data key generation
- AwsKmsGateway: AWS KMS implementation (production)
- InMemoryKeyGateway: Local implementation for tests and development

The gateway is the only component that talks to master-key custody. The AWS
implementation performs no local cryptography: it delegates generation and
unwrapping to KMS and translates KMS failures into the error taxonomy.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    InvalidEndpointConfigurationError,
    InvalidRegionError,
    NoRegionError,
)

from .crypto import (
    AES_256_KEY_SIZE,
    AesGcmCipher,
    EncryptedData,
    SecureKey,
    generate_random_bytes,
)
from .errors import ConfigurationError, DecryptionError, IntegrityError, KeyServiceError

logger = logging.getLogger(__name__)

DEFAULT_KMS_TIMEOUT: float = 5.0

# KMS error codes meaning the wrapped blob itself cannot be recovered
_INTEGRITY_ERROR_CODES = frozenset(
    {
        "InvalidCiphertextException",
        "IncorrectKeyException",
        "NotFoundException",
        "KMSInvalidStateException",
    }
)


@dataclass
class GeneratedDataKey:
    """Result of generate_data_key. The caller owns and must wipe raw_key."""

    raw_key: SecureKey
    wrapped_key: str  # base64 of the wrapped data key
    key_id: str  # master key id as resolved by the service


class KeyWrappingGateway(ABC):
    """
    Abstract interface to the key-management service.

    All methods are async so remote calls never block other operations.
    """

    @abstractmethod
    async def generate_data_key(self, master_key_id: str) -> GeneratedDataKey:
        """
        Generate a random 256-bit data key and its wrapped form.

        Raises:
            KeyServiceError: Service unreachable, key id invalid or response incomplete
        """
        ...

    @abstractmethod
    async def unwrap_data_key(self, wrapped_key: str) -> SecureKey:
        """
        Recover the raw data key from its wrapped form.

        Raises:
            KeyServiceError: Service unreachable or call not authorized
            IntegrityError: Wrapped blob malformed or its master key no longer held
        """
        ...


def _decode_wrapped_key(wrapped_key: str) -> bytes:
    try:
        blob = base64.b64decode(wrapped_key, validate=True)
    except (binascii.Error, ValueError, TypeError):
        raise IntegrityError("Wrapped data key is not valid base64") from None
    if not blob:
        raise IntegrityError("Wrapped data key is empty")
    return blob


# =============================================================================
# AWS KMS
# =============================================================================


class AwsKmsGateway(KeyWrappingGateway):
    """
    AWS KMS gateway.

    boto3 clients are blocking and thread-safe, so each call runs in a worker
    thread and is bounded by ``timeout`` seconds.
    """

    def __init__(
        self,
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        timeout: float = DEFAULT_KMS_TIMEOUT,
        client: Any = None,
    ) -> None:
        """
        Initialize the gateway.

        Args:
            region: AWS region of the KMS endpoint
            endpoint_url: Override for local KMS emulators
            timeout: Upper bound in seconds for each KMS call
            client: Pre-built boto3 KMS client (tests, custom sessions)

        Raises:
            ConfigurationError: No region configured, or region or endpoint malformed
        """
        self._timeout = timeout
        if client is None:
            config = Config(
                connect_timeout=timeout,
                read_timeout=timeout,
                retries={"max_attempts": 2, "mode": "standard"},
            )
            try:
                client = boto3.client(
                    "kms",
                    region_name=region,
                    endpoint_url=endpoint_url,
                    config=config,
                )
            except (
                NoRegionError,
                InvalidRegionError,
                InvalidEndpointConfigurationError,
                ValueError,  # malformed endpoint_url
            ) as e:
                raise ConfigurationError(f"Invalid KMS region or endpoint: {e}") from e
            except BotoCoreError as e:
                raise KeyServiceError(f"Failed to create KMS client: {e}") from e
        self._client = client

    @property
    def client(self) -> Any:
        return self._client

    async def _call(self, operation: str, **params: Any) -> Dict[str, Any]:
        method = getattr(self._client, operation)
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(method, **params), timeout=self._timeout
            )
        except asyncio.TimeoutError:
            logger.warning("KMS %s timed out after %.1fs", operation, self._timeout)
            raise KeyServiceError(f"KMS {operation} timed out") from None
        except BotoCoreError as e:
            logger.warning("KMS %s failed: %s", operation, type(e).__name__)
            raise KeyServiceError(f"KMS {operation} failed: {type(e).__name__}") from e

    async def generate_data_key(self, master_key_id: str) -> GeneratedDataKey:
        try:
            response = await self._call(
                "generate_data_key", KeyId=master_key_id, KeySpec="AES_256"
            )
        except ClientError as e:
            code = _error_code(e)
            logger.error("KMS GenerateDataKey rejected for key %s: %s", master_key_id, code)
            raise KeyServiceError(f"KMS GenerateDataKey failed: {code}") from e

        plaintext = response.get("Plaintext")
        wrapped = response.get("CiphertextBlob")
        if not plaintext or not wrapped:
            raise KeyServiceError("KMS did not return data key")
        if len(plaintext) != AES_256_KEY_SIZE:
            raise KeyServiceError(
                f"KMS returned a {len(plaintext)}-byte data key, expected {AES_256_KEY_SIZE}"
            )

        return GeneratedDataKey(
            raw_key=SecureKey(plaintext),
            wrapped_key=base64.standard_b64encode(wrapped).decode("ascii"),
            key_id=response.get("KeyId") or master_key_id,
        )

    async def unwrap_data_key(self, wrapped_key: str) -> SecureKey:
        blob = _decode_wrapped_key(wrapped_key)
        try:
            response = await self._call("decrypt", CiphertextBlob=blob)
        except ClientError as e:
            code = _error_code(e)
            if code in _INTEGRITY_ERROR_CODES:
                logger.error("KMS refused wrapped data key: %s", code)
                raise IntegrityError(f"Wrapped data key rejected by KMS: {code}") from e
            logger.error("KMS Decrypt failed: %s", code)
            raise KeyServiceError(f"KMS Decrypt failed: {code}") from e

        plaintext = response.get("Plaintext")
        if not plaintext:
            raise KeyServiceError("KMS decrypt did not return plaintext key")
        if len(plaintext) != AES_256_KEY_SIZE:
            raise IntegrityError(
                f"Unwrapped data key is {len(plaintext)} bytes, expected {AES_256_KEY_SIZE}"
            )
        return SecureKey(plaintext)


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "Unknown")


# =============================================================================
# In-Memory
# =============================================================================


class InMemoryKeyGateway(KeyWrappingGateway):
    """
    Local key-wrapping gateway for testing and development.

    Master keys live in process memory. Wrapped blobs carry the master key id
    (used as AAD), so revoking a master key makes its blobs unrecoverable.
    """

    def __init__(
        self,
        master_key_ids: Iterable[str] = ("local/phi-master",),
        data_key_factory: Optional[Callable[[], bytes]] = None,
        track_issued_keys: bool = False,
    ) -> None:
        """
        Initialize in-memory gateway.

        Args:
            master_key_ids: Master keys the gateway holds
            data_key_factory: Source of raw data keys (default: CSPRNG)
            track_issued_keys: Keep references to handed-out keys so tests can
                check they were wiped
        """
        self._master_keys: Dict[str, SecureKey] = {
            key_id: SecureKey.generate() for key_id in master_key_ids
        }
        self._revoked: Set[str] = set()
        self._data_key_factory = data_key_factory or (
            lambda: generate_random_bytes(AES_256_KEY_SIZE)
        )
        self._track = track_issued_keys
        self._unavailable = False
        self.issued_keys: List[SecureKey] = []
        self.generate_calls = 0
        self.unwrap_calls = 0

    def add_master_key(self, key_id: str) -> None:
        self._master_keys[key_id] = SecureKey.generate()
        self._revoked.discard(key_id)

    def revoke(self, key_id: str) -> None:
        """Forget a master key; blobs wrapped under it can no longer be opened."""
        self._revoked.add(key_id)
        key = self._master_keys.pop(key_id, None)
        if key is not None:
            key.wipe()

    def set_unavailable(self, unavailable: bool = True) -> None:
        """Simulate an unreachable key service."""
        self._unavailable = unavailable

    def _issue(self, key: SecureKey) -> SecureKey:
        if self._track:
            self.issued_keys.append(key)
        return key

    async def generate_data_key(self, master_key_id: str) -> GeneratedDataKey:
        self.generate_calls += 1
        if self._unavailable:
            raise KeyServiceError("Key service unavailable")
        master_key = self._master_keys.get(master_key_id)
        if master_key is None:
            raise KeyServiceError(f"Unknown or revoked master key: {master_key_id}")

        raw = SecureKey(self._data_key_factory())
        if len(raw) != AES_256_KEY_SIZE:
            raw.wipe()
            raise KeyServiceError("Data key factory returned wrong key size")

        key_id_bytes = master_key_id.encode("utf-8")
        wrapped = AesGcmCipher.encrypt(master_key, raw.as_bytes(), key_id_bytes)
        blob = len(key_id_bytes).to_bytes(2, "big") + key_id_bytes + wrapped.to_blob()

        return GeneratedDataKey(
            raw_key=self._issue(raw),
            wrapped_key=base64.standard_b64encode(blob).decode("ascii"),
            key_id=master_key_id,
        )

    async def unwrap_data_key(self, wrapped_key: str) -> SecureKey:
        self.unwrap_calls += 1
        if self._unavailable:
            raise KeyServiceError("Key service unavailable")

        blob = _decode_wrapped_key(wrapped_key)
        id_len = int.from_bytes(blob[:2], "big")
        key_id_bytes = blob[2 : 2 + id_len]
        if len(blob) < 2 or len(key_id_bytes) != id_len:
            raise IntegrityError("Wrapped data key is malformed")

        try:
            key_id = key_id_bytes.decode("utf-8")
        except UnicodeDecodeError:
            raise IntegrityError("Wrapped data key is malformed") from None
        master_key = self._master_keys.get(key_id)
        if master_key is None:
            raise IntegrityError("Wrapped data key references a master key that is no longer held")

        try:
            encrypted = EncryptedData.from_blob(blob[2 + id_len :])
            raw = AesGcmCipher.decrypt(master_key, encrypted, key_id_bytes)
        except DecryptionError:
            raise IntegrityError("Wrapped data key failed authentication") from None
        return self._issue(SecureKey(raw))
