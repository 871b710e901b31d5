"""Markdown rendering of FHIR records for query answers."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any

Field = tuple[str, Callable[[dict[str, Any]], Any]]


def _concept_display(value: Any) -> str | None:
    concepts = value if isinstance(value, list) else [value]
    for concept in concepts:
        if not isinstance(concept, dict):
            continue
        for coding in concept.get("coding") or []:
            if isinstance(coding, dict) and coding.get("display"):
                return coding["display"]
        if concept.get("text"):
            return concept["text"]
    return None


def _date(value: Any) -> str | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).date().isoformat()
    except ValueError:
        return value


def _quantity(resource: dict[str, Any]) -> str | None:
    quantity = resource.get("valueQuantity")
    if isinstance(quantity, dict) and quantity.get("value") is not None:
        return f"{quantity['value']} {quantity.get('unit') or ''}".strip()
    for key in ("valueString", "valueCodeableConcept", "valueBoolean", "valueInteger"):
        if key in resource:
            value = resource[key]
            return _concept_display(value) if isinstance(value, dict) else str(value)
    return None


def _get(*path: str) -> Callable[[dict[str, Any]], Any]:
    def extract(resource: dict[str, Any]) -> Any:
        value: Any = resource
        for key in path:
            if not isinstance(value, dict):
                return None
            value = value.get(key)
        return value
    return extract


def _clinical_status(resource: dict[str, Any]) -> str | None:
    status = resource.get("clinicalStatus")
    if isinstance(status, dict):
        for coding in status.get("coding") or []:
            if isinstance(coding, dict) and coding.get("code"):
                return coding["code"]
    return None


_FIELDS: dict[str, list[Field]] = {
    "Encounter": [
        ("Status", _get("status")),
        ("Type", lambda r: _concept_display(r.get("type"))),
        ("Date", lambda r: _date(_get("period", "start")(r))),
        ("End Date", lambda r: _date(_get("period", "end")(r))),
    ],
    "Observation": [
        ("Status", _get("status")),
        ("Test", lambda r: _concept_display(r.get("code"))),
        ("Value", _quantity),
        ("Date", lambda r: _date(r.get("effectiveDateTime"))),
    ],
    "MedicationStatement": [
        ("Status", _get("status")),
        ("Medication", lambda r: _concept_display(r.get("medicationCodeableConcept"))
            or _get("medicationReference", "display")(r)),
        ("Start Date", lambda r: _date(_get("effectivePeriod", "start")(r) or r.get("effectiveDateTime"))),
    ],
    "Condition": [
        ("Status", _clinical_status),
        ("Condition", lambda r: _concept_display(r.get("code"))),
        ("Onset Date", lambda r: _date(r.get("onsetDateTime"))),
    ],
    "DiagnosticReport": [
        ("Status", _get("status")),
        ("Report Type", lambda r: _concept_display(r.get("code"))),
        ("Date", lambda r: _date(r.get("effectiveDateTime"))),
        ("Conclusion", _get("conclusion")),
    ],
    "Immunization": [
        ("Status", _get("status")),
        ("Vaccine", lambda r: _concept_display(r.get("vaccineCode"))),
        ("Date", lambda r: _date(r.get("occurrenceDateTime"))),
    ],
}

_GENERIC_FIELDS: list[Field] = [
    ("Resource Type", _get("resourceType")),
    ("ID", _get("id")),
    ("Status", _get("status")),
    ("Date", lambda r: _date(r.get("date") or r.get("recordedDate") or _get("meta", "lastUpdated")(r))),
]


def format_records(
    resource_type: str,
    resources: list[dict[str, Any]],
    *,
    first_number: int = 1,
) -> str:
    """Render records as markdown, one section per record.

    ``first_number`` numbers the first section (e.g. 8 for "record 8").
    """
    if not resources:
        return f"No {resource_type} records found."

    plural = "s" if len(resources) > 1 else ""
    lines = [f"# {resource_type} Records", "", f"Found {len(resources)} record{plural}.", ""]
    fields = _FIELDS.get(resource_type, _GENERIC_FIELDS)

    for offset, resource in enumerate(resources):
        lines.append(f"## Record {first_number + offset}")
        lines.append("")
        for label, extract in fields:
            value = extract(resource)
            if value not in (None, ""):
                lines.append(f"**{label}**: {value}")
        lines.extend(["", "---", ""])

    return "\n".join(lines).rstrip() + "\n"
