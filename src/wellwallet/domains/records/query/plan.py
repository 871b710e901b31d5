"""Query plans: the closed, validated shape of an interpreted query.

A plan is one variant per resource type, discriminated by ``resourceType``.
Each variant only accepts the filters that make sense for its type, so an
interpreter that invents a field gets an ``UnrecognizedPlanError`` instead
of a silently ignored filter.

Wire form (camelCase)::

    {
      "resourceType": "Observation",
      "mode": "either",
      "filters": {
        "codeSearch": {"codes": ["2093-3"]},
        "dateRange": {"start": "2024-01-01"},
        "sort": "-date",
        "limit": 10,
        "category": "laboratory"
      },
      "recordIndex": 0
    }
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    model_validator,
)
from pydantic.alias_generators import to_camel

from wellwallet.domains.records.errors import UnrecognizedPlanError

_FHIR_DATE = r"^\d{4}(-\d{2}(-\d{2}(T[0-9:.]+(Z|[+-]\d{2}:\d{2})?)?)?)?$"


class ExecutionMode(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"
    EITHER = "either"


class _PlanModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )


class DateRange(_PlanModel):
    start: str | None = Field(default=None, pattern=_FHIR_DATE)
    end: str | None = Field(default=None, pattern=_FHIR_DATE)

    @model_validator(mode="after")
    def _ordered(self) -> DateRange:
        if self.start is None and self.end is None:
            raise ValueError("dateRange needs start or end")
        if self.start and self.end and self.start[:10] > self.end[:10]:
            raise ValueError("dateRange start is after end")
        return self


class CodeSearch(_PlanModel):
    codes: tuple[str, ...] = ()
    text: str | None = None

    @model_validator(mode="after")
    def _not_empty(self) -> CodeSearch:
        if not self.codes and not (self.text and self.text.strip()):
            raise ValueError("codeSearch needs codes or text")
        return self


class PatientFilters(_PlanModel):
    """The patient record takes no filters."""


class RecordFilters(_PlanModel):
    date_range: DateRange | None = None
    sort: Literal["date", "-date"] | None = None
    limit: int | None = Field(default=None, ge=1, le=1000)
    status: str | None = None


class CodedFilters(RecordFilters):
    code_search: CodeSearch | None = None


class ObservationFilters(CodedFilters):
    category: str | None = None


class _PlanBase(_PlanModel):
    mode: ExecutionMode = ExecutionMode.EITHER
    record_index: int | None = Field(default=None, ge=0)


class PatientPlan(_PlanBase):
    resource_type: Literal["Patient"]
    filters: PatientFilters = PatientFilters()


class ObservationPlan(_PlanBase):
    resource_type: Literal["Observation"]
    filters: ObservationFilters = ObservationFilters()


class EncounterPlan(_PlanBase):
    resource_type: Literal["Encounter"]
    filters: CodedFilters = CodedFilters()


class MedicationStatementPlan(_PlanBase):
    resource_type: Literal["MedicationStatement"]
    filters: CodedFilters = CodedFilters()


class ConditionPlan(_PlanBase):
    resource_type: Literal["Condition"]
    filters: CodedFilters = CodedFilters()


class AllergyIntolerancePlan(_PlanBase):
    resource_type: Literal["AllergyIntolerance"]
    filters: CodedFilters = CodedFilters()


class ImmunizationPlan(_PlanBase):
    resource_type: Literal["Immunization"]
    filters: CodedFilters = CodedFilters()


class DiagnosticReportPlan(_PlanBase):
    resource_type: Literal["DiagnosticReport"]
    filters: CodedFilters = CodedFilters()


class DocumentReferencePlan(_PlanBase):
    resource_type: Literal["DocumentReference"]
    filters: CodedFilters = CodedFilters()


class FamilyMemberHistoryPlan(_PlanBase):
    resource_type: Literal["FamilyMemberHistory"]
    filters: CodedFilters = CodedFilters()


QueryPlan = Annotated[
    Union[
        PatientPlan,
        ObservationPlan,
        EncounterPlan,
        MedicationStatementPlan,
        ConditionPlan,
        AllergyIntolerancePlan,
        ImmunizationPlan,
        DiagnosticReportPlan,
        DocumentReferencePlan,
        FamilyMemberHistoryPlan,
    ],
    Field(discriminator="resource_type"),
]

PLAN_TYPES: tuple[type[_PlanBase], ...] = (
    PatientPlan,
    ObservationPlan,
    EncounterPlan,
    MedicationStatementPlan,
    ConditionPlan,
    AllergyIntolerancePlan,
    ImmunizationPlan,
    DiagnosticReportPlan,
    DocumentReferencePlan,
    FamilyMemberHistoryPlan,
)

_ADAPTER: TypeAdapter[Any] = TypeAdapter(QueryPlan)


def parse_query_plan(data: Any) -> QueryPlan:
    """Validate a plan given as a model, a dict, or a JSON string.

    Raises:
        UnrecognizedPlanError: If the data does not match any plan variant.
    """
    if isinstance(data, PLAN_TYPES):
        return data
    try:
        if isinstance(data, (str, bytes)):
            return _ADAPTER.validate_json(data)
        return _ADAPTER.validate_python(data)
    except ValidationError as exc:
        raise UnrecognizedPlanError(f"Invalid query plan: {exc}") from exc


def plan_to_dict(plan: QueryPlan) -> dict[str, Any]:
    """Wire form of a plan (camelCase, no unset filters)."""
    return json.loads(plan.model_dump_json(by_alias=True, exclude_none=True))


def plan_json_schema() -> dict[str, Any]:
    """JSON schema of the plan union, given to LLM interpreters."""
    return _ADAPTER.json_schema(by_alias=True)
