"""
Configuration loaded from the environment (and an optional .env file).

Missing key material is not an error at load time; it fails at first use with
ConfigurationError so that services which never seal or index can still start.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Union

from dotenv import load_dotenv

from .blind_index import BlindIndex
from .errors import ConfigurationError
from .kms import DEFAULT_KMS_TIMEOUT


@dataclass(frozen=True)
class Settings:
    master_key_id: Optional[str] = None
    kms_region: Optional[str] = None
    kms_endpoint_url: Optional[str] = None
    kms_timeout: float = DEFAULT_KMS_TIMEOUT
    index_key_b64: Optional[str] = None

    @classmethod
    def from_env(
        cls,
        env: Optional[Mapping[str, str]] = None,
        dotenv_path: Union[str, Path, None] = None,
    ) -> Settings:
        """
        Read settings.

        Args:
            env: Mapping to read instead of os.environ (no .env loading then)
            dotenv_path: .env file to load first; existing variables win
        """
        if env is None:
            load_dotenv(dotenv_path)
            env = os.environ

        raw_timeout = env.get("KMS_TIMEOUT_SECONDS")
        try:
            timeout = float(raw_timeout) if raw_timeout else DEFAULT_KMS_TIMEOUT
        except ValueError:
            raise ConfigurationError(f"KMS_TIMEOUT_SECONDS is not a number: {raw_timeout!r}") from None
        if timeout <= 0:
            raise ConfigurationError("KMS_TIMEOUT_SECONDS must be positive")

        return cls(
            master_key_id=env.get("AWS_KMS_KEY_ID") or None,
            kms_region=env.get("AWS_REGION") or None,
            kms_endpoint_url=env.get("AWS_KMS_ENDPOINT_URL") or None,
            kms_timeout=timeout,
            index_key_b64=env.get("FINDING_INDEX_KEY_BASE64") or None,
        )

    def blind_index(self) -> BlindIndex:
        """
        Raises:
            ConfigurationError: If the index key is missing or malformed
        """
        return BlindIndex.from_base64(self.index_key_b64)

    def __repr__(self) -> str:
        return (
            f"Settings(master_key_id={self.master_key_id!r}, kms_region={self.kms_region!r}, "
            f"kms_endpoint_url={self.kms_endpoint_url!r}, kms_timeout={self.kms_timeout}, "
            f"index_key_b64={'[SET]' if self.index_key_b64 else None})"
        )
