"""Scope vocabulary shared by consent requests and access grants."""
from enum import Enum
from typing import Iterable

class RecordType(str, Enum):
    # request-side scopes: one category of clinical data each
    LAB_TEST = "lab_test"
    IMAGING = "imaging"
    PRESCRIPTION = "prescription"
    CONSULTATION = "consultation"
    VACCINATION = "vaccination"
    OTHER = "other"

class AccessType(str, Enum):
    # grant-side scopes, what the record-serving side filters on
    VIEW_RECORDS = "view_records"
    VIEW_PRESCRIPTIONS = "view_prescriptions"
    VIEW_CONSULTATION_NOTES = "view_consultation_notes"
    ALL = "all"

RECORD_TYPE_VALUES = frozenset(r.value for r in RecordType)

_ACCESS_TYPE_FOR = {
    RecordType.LAB_TEST.value: AccessType.VIEW_RECORDS,
    RecordType.IMAGING.value: AccessType.VIEW_RECORDS,
    RecordType.PRESCRIPTION.value: AccessType.VIEW_PRESCRIPTIONS,
    RecordType.CONSULTATION.value: AccessType.VIEW_CONSULTATION_NOTES,
    RecordType.VACCINATION.value: AccessType.VIEW_RECORDS,
    RecordType.OTHER.value: AccessType.VIEW_RECORDS,
}

def access_type_for(scope: str | RecordType) -> AccessType:
    """Total mapping from a request scope to its grant-side access type.

    Unknown values fall back to ``view_records``.
    """
    key = scope.value if isinstance(scope, RecordType) else str(scope)
    return _ACCESS_TYPE_FOR.get(key, AccessType.VIEW_RECORDS)

def normalize_scopes(scopes: Iterable[str | RecordType]) -> list[str]:
    # dedup + stable order; the set is order-irrelevant but rows should compare equal
    return sorted({s.value if isinstance(s, RecordType) else str(s) for s in scopes})
