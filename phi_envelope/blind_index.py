"""
Deterministic blind index for equality search over encrypted columns.

The tag is HMAC-SHA256 over the UTF-8 bytes of a normalized value, keyed with
a static 32-byte key that is separate from every data key and from the KMS
master key. Equal values yield equal tags; this equality leakage is the
accepted price of searchability.

Normalization must be identical at write time and at query time, otherwise
lookups and duplicate checks silently miss.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import re
import unicodedata
from typing import Callable, Optional

from .crypto import AES_256_KEY_SIZE
from .errors import ConfigurationError


Normalizer = Callable[[str], str]

_WHITESPACE = re.compile(r"\s+")


def normalize_email(value: str) -> str:
    return value.strip().lower()


def normalize_finding(value: str) -> str:
    """NFC, collapse whitespace runs, strip. Case is kept: finding codes can be case-significant."""
    return _WHITESPACE.sub(" ", unicodedata.normalize("NFC", value)).strip()


def normalize_identifier(value: str) -> str:
    return value.strip()


class BlindIndex:
    """Keyed one-way index function."""

    __slots__ = ("_key",)

    def __init__(self, key: Optional[bytes]) -> None:
        """
        Args:
            key: Static 32-byte index key

        Raises:
            ConfigurationError: If the key is missing or not 32 bytes
        """
        if not key:
            raise ConfigurationError("Blind index key is not configured")
        if not isinstance(key, (bytes, bytearray)) or len(key) != AES_256_KEY_SIZE:
            raise ConfigurationError(
                f"Blind index key must be {AES_256_KEY_SIZE} bytes"
            )
        self._key = bytes(key)

    @classmethod
    def from_base64(cls, encoded: Optional[str]) -> BlindIndex:
        """Build from the base64 form used in the environment."""
        if not encoded:
            raise ConfigurationError("FINDING_INDEX_KEY_BASE64 is not configured")
        try:
            key = base64.b64decode(encoded.strip(), validate=True)
        except (binascii.Error, ValueError):
            raise ConfigurationError("FINDING_INDEX_KEY_BASE64 is not valid base64") from None
        return cls(key)

    def compute(self, normalized_value: str) -> str:
        """Return the hex HMAC-SHA256 tag of an already normalized value."""
        return hmac.new(
            self._key, normalized_value.encode("utf-8"), hashlib.sha256
        ).hexdigest()

    def __repr__(self) -> str:
        return "BlindIndex([REDACTED])"
