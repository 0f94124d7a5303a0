"""
Record codec: maps encrypted fields onto persisted rows.

Column convention for a logical field ``<name>``:
- ``<name>_ciphertext``    packaged AES-GCM blob
- ``<name>_encrypted_dek`` wrapped data key
- ``<name>_index``         blind index tag (indexed fields only)
- ``<name>``               legacy plaintext (migration period only)

During migration a row may hold the legacy plaintext, the envelope, or both.
The envelope always wins, and a failure to open it is raised rather than
falling back to the plaintext.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .blind_index import BlindIndex, Normalizer, normalize_identifier
from .envelope import EncryptedField, EnvelopeService
from .errors import ConfigurationError, EnvelopeError, IntegrityError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EncryptedFieldSpec:
    """
    One PHI-bearing logical field.

    indexed fields are sealed in normalized form so that the stored value and
    its tag always agree. bundle fields hold a mapping that is serialized to
    JSON on write and merged back into the row on read.
    """

    name: str
    indexed: bool = False
    normalizer: Normalizer = normalize_identifier
    bundle: bool = False

    def __post_init__(self) -> None:
        if self.indexed and self.bundle:
            raise ValueError(f"Field {self.name!r} cannot be both indexed and a bundle")

    @property
    def ciphertext_column(self) -> str:
        return f"{self.name}_ciphertext"

    @property
    def dek_column(self) -> str:
        return f"{self.name}_encrypted_dek"

    @property
    def index_column(self) -> str:
        return f"{self.name}_index"


# =============================================================================
# Stored value variants
# =============================================================================


@dataclass(frozen=True)
class StoredPlaintext:
    """Legacy plaintext only."""

    value: Any


@dataclass(frozen=True)
class StoredEnveloped:
    """Envelope only."""

    ciphertext: str
    wrapped_data_key: str


@dataclass(frozen=True)
class StoredBoth:
    """Legacy plaintext and envelope; the envelope takes precedence."""

    plaintext: Any
    enveloped: StoredEnveloped


StoredValue = Union[StoredPlaintext, StoredEnveloped, StoredBoth]


def classify(row: Mapping[str, Any], spec: EncryptedFieldSpec) -> Optional[StoredValue]:
    """
    Work out which form(s) of a field a row holds.

    Raises:
        IntegrityError: Only one half of the ciphertext / wrapped-key pair is present
    """
    ciphertext = row.get(spec.ciphertext_column)
    wrapped = row.get(spec.dek_column)
    plaintext = row.get(spec.name)

    if bool(ciphertext) != bool(wrapped):
        raise IntegrityError(
            f"Field {spec.name!r} has only one of {spec.ciphertext_column}/{spec.dek_column}"
        )

    if ciphertext:
        enveloped = StoredEnveloped(ciphertext=ciphertext, wrapped_data_key=wrapped)
        if plaintext is not None:
            return StoredBoth(plaintext=plaintext, enveloped=enveloped)
        return enveloped
    if plaintext is not None:
        return StoredPlaintext(value=plaintext)
    return None


# =============================================================================
# Codec
# =============================================================================


class RecordCodec:
    """Seals fields into row fragments and opens them back."""

    def __init__(
        self,
        envelope: EnvelopeService,
        fields: Sequence[EncryptedFieldSpec],
        blind_index: Optional[BlindIndex] = None,
        table: Optional[str] = None,
    ) -> None:
        """
        Raises:
            ConfigurationError: An indexed field is declared but no blind index is given
        """
        self._envelope = envelope
        self._fields = tuple(fields)
        self._by_name: Dict[str, EncryptedFieldSpec] = {f.name: f for f in self._fields}
        self._blind_index = blind_index
        self._table = table or "record"

        indexed = [f.name for f in self._fields if f.indexed]
        if indexed and blind_index is None:
            raise ConfigurationError(
                f"{self._table}: blind index key required for indexed fields {indexed}"
            )

    @property
    def fields(self) -> tuple:
        return self._fields

    @property
    def table(self) -> str:
        return self._table

    def spec(self, name: str) -> EncryptedFieldSpec:
        try:
            return self._by_name[name]
        except KeyError:
            raise ValueError(f"{self._table}: {name!r} is not an encrypted field") from None

    def index_for(self, name: str, value: str) -> str:
        """Blind index tag for a query-time lookup, normalized the same way as on write."""
        spec = self.spec(name)
        if not spec.indexed:
            raise ValueError(f"{self._table}: field {name!r} is not indexed")
        return self._blind_index.compute(spec.normalizer(value))

    async def to_storage(self, values: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Build the row fragment for a record.

        Encrypted fields absent from ``values`` are left out; fields set to None
        produce None columns. Other keys pass through unchanged. The plaintext
        of encrypted fields is never copied into the row.
        """
        row = {k: v for k, v in values.items() if k not in self._by_name}
        present = [spec for spec in self._fields if spec.name in values]
        sealed = await asyncio.gather(
            *(self._seal_field(spec, values[spec.name]) for spec in present)
        )
        for fragment in sealed:
            row.update(fragment)
        return row

    async def _seal_field(self, spec: EncryptedFieldSpec, value: Any) -> Dict[str, Any]:
        if value is None:
            fragment: Dict[str, Any] = {spec.ciphertext_column: None, spec.dek_column: None}
            if spec.indexed:
                fragment[spec.index_column] = None
            return fragment

        if spec.bundle:
            if not isinstance(value, Mapping):
                raise TypeError(f"{self._table}.{spec.name} must be a mapping")
            plaintext = json.dumps(dict(value), sort_keys=True, default=str)
        elif isinstance(value, str):
            plaintext = spec.normalizer(value) if spec.indexed else value
        else:
            raise TypeError(f"{self._table}.{spec.name} must be a string")

        sealed: EncryptedField = await self._envelope.seal(plaintext)
        fragment = {
            spec.ciphertext_column: sealed.ciphertext,
            spec.dek_column: sealed.wrapped_data_key,
        }
        if spec.indexed:
            fragment[spec.index_column] = self._blind_index.compute(plaintext)
        return fragment

    async def from_storage(self, row: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Decode a stored row.

        Returns a copy with encrypted fields opened and every ciphertext and
        wrapped-key column removed. Index columns are kept.

        Raises:
            IntegrityError, DecryptionError, KeyServiceError: Propagated unchanged
        """
        result = dict(row)
        try:
            opened = await asyncio.gather(*(self._open_field(row, spec) for spec in self._fields))
        except EnvelopeError as e:
            logger.error(
                "Failed to decrypt %s %s: %s", self._table, row.get("id"), type(e).__name__
            )
            raise

        bundles = []
        for spec, value in zip(self._fields, opened):
            result.pop(spec.ciphertext_column, None)
            result.pop(spec.dek_column, None)
            if spec.bundle:
                result.pop(spec.name, None)
                if value is not _ABSENT:
                    bundles.append((spec, value))
            elif value is not _ABSENT:
                result[spec.name] = value
        for spec, value in bundles:
            self._merge_bundle(result, spec, value)
        return result

    def _merge_bundle(
        self, result: Dict[str, Any], spec: EncryptedFieldSpec, bundle: Mapping[str, Any]
    ) -> None:
        """Merge bundle keys into the row; columns already on the row are kept."""
        collisions = sorted(k for k in bundle if k in result)
        if collisions:
            logger.warning(
                "%s.%s bundle keys shadow row columns, ignored: %s",
                self._table, spec.name, ", ".join(collisions),
            )
        for key, value in bundle.items():
            if key not in result:
                result[key] = value

    async def from_storage_many(self, rows: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        return list(await asyncio.gather(*(self.from_storage(row) for row in rows)))

    async def _open_field(self, row: Mapping[str, Any], spec: EncryptedFieldSpec) -> Any:
        stored = classify(row, spec)
        if stored is None:
            return _ABSENT
        if isinstance(stored, StoredPlaintext):
            value = stored.value
            if spec.bundle and isinstance(value, str):
                return _load_bundle(spec, value)
            return value

        enveloped = stored.enveloped if isinstance(stored, StoredBoth) else stored
        plaintext = await self._envelope.open(enveloped.ciphertext, enveloped.wrapped_data_key)
        if spec.bundle:
            return _load_bundle(spec, plaintext)
        return plaintext


class _Absent:
    def __repr__(self) -> str:
        return "<absent>"


_ABSENT = _Absent()


def _load_bundle(spec: EncryptedFieldSpec, plaintext: str) -> Dict[str, Any]:
    try:
        bundle = json.loads(plaintext)
    except json.JSONDecodeError:
        raise IntegrityError(f"Field {spec.name!r} does not hold a JSON bundle") from None
    if not isinstance(bundle, dict):
        raise IntegrityError(f"Field {spec.name!r} does not hold a JSON object")
    return bundle
