"""Data models for the local record cache."""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from typing import Any

# Fields consulted, in order, for a resource's sortable clinical date.
DATE_FIELDS = (
    "effectiveDateTime",
    "effectivePeriod.start",
    "period.start",
    "onsetDateTime",
    "occurrenceDateTime",
    "performedDateTime",
    "date",
    "recordedDate",
    "authoredOn",
    "issued",
    "meta.lastUpdated",
)

# Fields holding the CodeableConcept(s) that identify what a resource is about.
CODE_FIELDS = ("code", "vaccineCode", "medicationCodeableConcept", "type")


@dataclass
class StoredResource:
    """One cached FHIR resource, keyed by (patient, type, id).

    ``document`` is the full FHIR JSON and is encrypted at rest; the
    remaining fields are derived plaintext index values.
    """

    patient_id: str
    resource_type: str
    resource_id: str
    document: dict[str, Any]
    effective_date: str | None = None
    status: str | None = None
    fetched_at: str = ""
    codes: list[tuple[str, str | None, str | None, str | None]] = field(default_factory=list)

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.patient_id, self.resource_type, self.resource_id)

    @classmethod
    def from_fhir(
        cls,
        patient_id: str,
        document: dict[str, Any],
        resource_type: str | None = None,
    ) -> StoredResource:
        """Build a record from a FHIR resource, deriving its index values.

        A resource without an ``id`` gets a content hash so that re-fetching
        it overwrites rather than duplicates.
        """
        rtype = resource_type or str(document.get("resourceType") or "")
        if not rtype:
            raise ValueError("FHIR resource has no resourceType")
        resource_id = document.get("id")
        if not resource_id:
            canonical = json.dumps(document, sort_keys=True, separators=(",", ":"))
            resource_id = "sha256-" + hashlib.sha256(canonical.encode()).hexdigest()[:24]
        return cls(
            patient_id=patient_id,
            resource_type=rtype,
            resource_id=str(resource_id),
            document=document,
            effective_date=effective_date_of(document),
            status=status_of(document),
            codes=codings_of(document),
        )


@dataclass
class RecordFilter:
    """Local query filters, all optional and combined with AND.

    ``codes``/``text`` match any coding of the resource's code-like fields;
    a record matches when any code is equal or the text appears in any
    display or ``text`` value.
    """

    codes: list[str] = field(default_factory=list)
    text: str | None = None
    status: str | None = None
    category: str | None = None
    date_from: str | None = None
    date_to: str | None = None
    sort: str | None = None  # 'date' | '-date'
    limit: int | None = None


@dataclass
class InsertResult:
    """Outcome of a bulk insert: rows written and per-record failures."""

    saved: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class FetchSummary:
    """Immutable outcome of one sync run.

    ``resource_counts["Patient"]`` is 1 whenever a patient id was supplied;
    whether the demographic record itself arrived is ``patient_record_fetched``.
    """

    patient_id: str
    resource_counts: dict[str, int]
    total: int
    completed_at: str
    errors: tuple[str, ...] = ()
    cancelled: bool = False
    patient_record_fetched: bool = False
    stored_in_database: bool = True
    id: str = ""

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["errors"] = list(self.errors)
        return data


# ---------------------------------------------------------------------------
# Index derivation
# ---------------------------------------------------------------------------

def _dig(document: dict[str, Any], dotted: str) -> Any:
    value: Any = document
    for part in dotted.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def effective_date_of(document: dict[str, Any]) -> str | None:
    for name in DATE_FIELDS:
        value = _dig(document, name)
        if isinstance(value, str) and value:
            return value
    return None


def status_of(document: dict[str, Any]) -> str | None:
    status = document.get("status")
    if isinstance(status, str) and status:
        return status
    clinical = document.get("clinicalStatus")
    if isinstance(clinical, dict):
        for coding in clinical.get("coding") or []:
            if isinstance(coding, dict) and coding.get("code"):
                return str(coding["code"])
    return None


def _concepts(value: Any) -> list[dict[str, Any]]:
    if isinstance(value, dict):
        return [value]
    if isinstance(value, list):
        return [item for item in value if isinstance(item, dict)]
    return []


def _concept_rows(kind: str, concept: dict[str, Any]) -> list[tuple[str, str | None, str | None, str | None]]:
    rows = []
    for coding in concept.get("coding") or []:
        if isinstance(coding, dict):
            rows.append((kind, coding.get("system"), coding.get("code"), coding.get("display")))
    if isinstance(concept.get("text"), str):
        rows.append((kind, None, None, concept["text"]))
    return rows


def codings_of(document: dict[str, Any]) -> list[tuple[str, str | None, str | None, str | None]]:
    """Return ``(kind, system, code, display)`` rows for codes and categories."""
    rows: list[tuple[str, str | None, str | None, str | None]] = []
    for name in CODE_FIELDS:
        for concept in _concepts(document.get(name)):
            rows.extend(_concept_rows("code", concept))
    # FamilyMemberHistory keeps its codes one level down.
    for condition in _concepts(document.get("condition")):
        for concept in _concepts(condition.get("code")):
            rows.extend(_concept_rows("code", concept))
    for concept in _concepts(document.get("category")):
        rows.extend(_concept_rows("category", concept))
    return rows
