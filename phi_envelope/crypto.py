"""
Cryptographic primitives for AES-256-GCM field encryption.

This module provides:
- SecureKey: Mutable key buffer that is wiped when its scope ends
- EncryptedData: Packaged payload (nonce || tag || ciphertext)
- AesGcmCipher: Seal/open of text fields under a 32-byte data key
"""

from __future__ import annotations

import base64
import binascii
import secrets
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import ConfigurationError, DecryptionError

# Cryptographic constants
AES_256_KEY_SIZE: int = 32  # 256 bits
NONCE_SIZE: int = 12  # 96 bits (standard for AES-GCM)
TAG_SIZE: int = 16  # 128 bits (authentication tag)
ALGORITHM: str = "AES-256-GCM"


class SecureKey:
    """
    Raw key material held in a bytearray so it can be zeroed in place.

    Use as a context manager; the buffer is wiped on every exit path::

        with generated.raw_key as key:
            blob = AesGcmCipher.seal(plaintext, key)

    Note: the cryptography backend receives an immutable copy when the key is
    used, which Python cannot wipe. Zeroing here is best-effort for that copy
    and exact for this buffer.
    """

    __slots__ = ("_bytes",)

    def __init__(self, key_bytes: bytes | bytearray) -> None:
        if not isinstance(key_bytes, (bytes, bytearray)):
            raise ConfigurationError("Key must be bytes or bytearray")
        self._bytes = bytearray(key_bytes)

    @classmethod
    def generate(cls) -> SecureKey:
        """Generate a cryptographically secure random 32-byte key."""
        return cls(generate_random_bytes(AES_256_KEY_SIZE))

    def as_bytes(self) -> bytes:
        """Return key as immutable bytes."""
        return bytes(self._bytes)

    def wipe(self) -> None:
        """Zero the buffer. Safe to call more than once."""
        for i in range(len(self._bytes)):
            self._bytes[i] = 0

    def is_wiped(self) -> bool:
        return not any(self._bytes)

    def __enter__(self) -> SecureKey:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.wipe()

    def __len__(self) -> int:
        return len(self._bytes)

    def __repr__(self) -> str:
        """Redacted representation to prevent accidental key disclosure."""
        return "SecureKey([REDACTED])"

    def __del__(self) -> None:
        if hasattr(self, "_bytes"):
            self.wipe()


@dataclass(frozen=True)
class EncryptedData:
    """
    Packaged field ciphertext.

    Stored layout is nonce(12) || tag(16) || ciphertext, base64 encoded. The
    cryptography AESGCM API appends the tag to the ciphertext, so the parts
    are reordered when packing and unpacking.
    """

    nonce: bytes
    tag: bytes
    ciphertext: bytes

    def to_blob(self) -> bytes:
        return self.nonce + self.tag + self.ciphertext

    @classmethod
    def from_blob(cls, blob: bytes) -> EncryptedData:
        """
        Split a packaged blob.

        Raises:
            DecryptionError: If blob is shorter than nonce + tag
        """
        min_size = NONCE_SIZE + TAG_SIZE
        if len(blob) < min_size:
            raise DecryptionError(
                f"Packaged blob too small: expected at least {min_size} bytes, got {len(blob)}"
            )
        return cls(
            nonce=blob[:NONCE_SIZE],
            tag=blob[NONCE_SIZE:min_size],
            ciphertext=blob[min_size:],
        )

    def to_base64(self) -> str:
        return base64.standard_b64encode(self.to_blob()).decode("ascii")

    @classmethod
    def from_base64(cls, encoded: str) -> EncryptedData:
        """
        Decode from base64 string.

        Raises:
            DecryptionError: If decoding fails or data is too short
        """
        try:
            decoded = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError, TypeError):
            raise DecryptionError("Packaged blob is not valid base64") from None
        return cls.from_blob(decoded)


def _check_key(key: SecureKey) -> None:
    if not isinstance(key, SecureKey):
        raise ConfigurationError("Data key must be a SecureKey")
    if len(key) != AES_256_KEY_SIZE:
        raise ConfigurationError(
            f"Invalid key size: expected {AES_256_KEY_SIZE}, got {len(key)}"
        )


class AesGcmCipher:
    """
    AES-256-GCM authenticated encryption of single text fields.

    Stateless; every method takes the key it works under.
    """

    @staticmethod
    def encrypt(
        key: SecureKey,
        plaintext: bytes,
        aad: Optional[bytes] = None,
    ) -> EncryptedData:
        """
        Encrypt bytes with a fresh random nonce.

        Raises:
            ConfigurationError: If key size is invalid
        """
        _check_key(key)
        nonce = generate_random_bytes(NONCE_SIZE)
        sealed = AESGCM(key.as_bytes()).encrypt(nonce, plaintext, aad)
        return EncryptedData(
            nonce=nonce,
            tag=sealed[-TAG_SIZE:],
            ciphertext=sealed[:-TAG_SIZE],
        )

    @staticmethod
    def decrypt(
        key: SecureKey,
        encrypted: EncryptedData,
        aad: Optional[bytes] = None,
    ) -> bytes:
        """
        Decrypt and authenticate.

        Raises:
            ConfigurationError: If key size is invalid
            DecryptionError: If the nonce is malformed or authentication fails
        """
        _check_key(key)
        if len(encrypted.nonce) != NONCE_SIZE or len(encrypted.tag) != TAG_SIZE:
            raise DecryptionError("Packaged blob has an invalid header")

        try:
            return AESGCM(key.as_bytes()).decrypt(
                encrypted.nonce, encrypted.ciphertext + encrypted.tag, aad
            )
        except InvalidTag:
            # Generic error to prevent oracle attacks
            raise DecryptionError("Decryption failed") from None

    @classmethod
    def seal(cls, plaintext: str, key: SecureKey) -> str:
        """Encrypt a text field and return the base64 packaged blob."""
        return cls.encrypt(key, plaintext.encode("utf-8")).to_base64()

    @classmethod
    def open(cls, blob: str, key: SecureKey) -> str:
        """
        Reverse of seal().

        Raises:
            ConfigurationError: If key size is invalid
            DecryptionError: If the blob is malformed, too short or tampered with
        """
        _check_key(key)
        plaintext = cls.decrypt(key, EncryptedData.from_base64(blob))
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise DecryptionError("Decryption failed") from None


def generate_random_bytes(length: int) -> bytes:
    """Generate cryptographically secure random bytes."""
    return secrets.token_bytes(length)
