"""
Encrypted field layouts of the clinical monitoring tables.

Table             Encrypted fields                       Uniqueness
studies           patient_id, patient_demographics (JSON)
ground_truth      finding (indexed)                      (study_id, finding_index)
ai_outputs        finding (indexed), summary
rbac_users        email (indexed)                        email_index
"""

from __future__ import annotations

from typing import Dict, Optional, Tuple

from .blind_index import BlindIndex, normalize_email, normalize_finding
from .codec import EncryptedFieldSpec, RecordCodec
from .envelope import EnvelopeService

TABLE_FIELDS: Dict[str, Tuple[EncryptedFieldSpec, ...]] = {
    "studies": (
        EncryptedFieldSpec("patient_id"),
        EncryptedFieldSpec("patient_demographics", bundle=True),
    ),
    "ground_truth": (
        EncryptedFieldSpec("finding", indexed=True, normalizer=normalize_finding),
    ),
    "ai_outputs": (
        EncryptedFieldSpec("finding", indexed=True, normalizer=normalize_finding),
        EncryptedFieldSpec("summary"),
    ),
    "rbac_users": (
        EncryptedFieldSpec("email", indexed=True, normalizer=normalize_email),
    ),
}

# Column groups that must be unique per table
UNIQUE_INDEXES: Dict[str, Tuple[Tuple[str, ...], ...]] = {
    "studies": (("study_uid",),),
    "ground_truth": (("study_id", "finding_index"),),
    "ai_outputs": (),
    "rbac_users": (("email_index",),),
}


def build_codec(
    table: str,
    envelope: EnvelopeService,
    blind_index: Optional[BlindIndex] = None,
) -> RecordCodec:
    """
    Raises:
        ValueError: Unknown table
        ConfigurationError: The table has indexed fields and no blind index is given
    """
    try:
        fields = TABLE_FIELDS[table]
    except KeyError:
        raise ValueError(f"Unknown table: {table}") from None
    return RecordCodec(envelope, fields, blind_index=blind_index, table=table)
