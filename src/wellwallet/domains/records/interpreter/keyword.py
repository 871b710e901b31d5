"""Rule-based interpreter: keywords, medical terms and record numbers."""

from __future__ import annotations

import logging
import re
from typing import Any

from wellwallet.domains.records.catalog import ResourceCatalog
from wellwallet.domains.records.errors import InterpretationError, UnrecognizedPlanError
from wellwallet.domains.records.query.plan import QueryPlan, parse_query_plan

logger = logging.getLogger(__name__)

# Phrases suggesting the user wants their own stored data.
LOCAL_INDICATORS = (
    "my", "show me", "list", "get", "recent", "latest", "current",
    "timeline", "history", "record", "data", "information",
)
RECENT_WORDS = ("recent", "latest", "newest", "last")
RECENT_LIMIT = 10

_RECORD_NUMBER_PATTERNS = (
    re.compile(r"record\s+(\d+)", re.IGNORECASE),
    re.compile(r"number\s+(\d+)", re.IGNORECASE),
    re.compile(r"#(\d+)"),
    re.compile(r"(\d+)(?:st|nd|rd|th)\s+record", re.IGNORECASE),
)
_LOINC_RE = re.compile(r"\b(\d{1,7}-\d)\b")
_ACTIVE_RE = re.compile(r"\bactive\b", re.IGNORECASE)


def _has_phrase(text: str, phrases: tuple[str, ...]) -> bool:
    return any(re.search(r"\b" + re.escape(p) + r"s?\b", text) for p in phrases)


def extract_record_index(text: str) -> int | None:
    """0-based index for "record 8", "#8", "number 8" or "8th record"."""
    for pattern in _RECORD_NUMBER_PATTERNS:
        match = pattern.search(text)
        if match:
            number = int(match.group(1))
            if number >= 1:
                return number - 1
    return None


class KeywordQueryInterpreter:
    """Deterministic interpreter used when no LLM is configured.

    The resource type comes from catalog keywords, codes from medical terms
    and explicit LOINC codes. Questions phrased about the user's own data
    ("my", "show me", "latest", ...) may be answered locally; anything else
    goes to the gateway.
    """

    def __init__(self, catalog: ResourceCatalog) -> None:
        self._catalog = catalog

    async def interpret(self, text: str, patient_id: str) -> QueryPlan:
        lowered = text.lower().strip()
        if not lowered:
            raise InterpretationError("Empty query")

        codes: list[str] = []
        for term in self._catalog.match_terms(lowered):
            codes.extend(c for c in term.codes if c not in codes)
        record_index = extract_record_index(lowered)
        # LOINC codes look like "2093-3"; record numbers were taken above.
        for code in _LOINC_RE.findall(lowered):
            if code not in codes:
                codes.append(code)

        rt = self._catalog.match_resource_type(lowered)
        if rt is None and codes:
            rt = self._catalog.get("Observation")
        if rt is None:
            raise InterpretationError(f"Could not tell which kind of record is meant: {text!r}")

        filters: dict[str, Any] = {}
        if rt.name != "Patient":
            if codes and rt.coded:
                filters["codeSearch"] = {"codes": codes}
            if _has_phrase(lowered, RECENT_WORDS):
                filters["sort"] = "-date"
                filters["limit"] = RECENT_LIMIT
            if _ACTIVE_RE.search(lowered):
                filters["status"] = "active"

        plan: dict[str, Any] = {
            "resourceType": rt.name,
            "mode": "either" if _has_phrase(lowered, LOCAL_INDICATORS) else "remote",
            "filters": filters,
        }
        if record_index is not None:
            plan["recordIndex"] = record_index

        logger.debug("Keyword plan: %s", plan)
        try:
            return parse_query_plan(plan)
        except UnrecognizedPlanError as exc:
            raise InterpretationError(str(exc)) from exc
