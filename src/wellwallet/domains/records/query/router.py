"""Local-first query router.

A plan is answered from the local cache whenever its mode allows and the
cache has matching records; only otherwise is the gateway called. Freshness
is the sync's job, so a non-empty local answer always wins.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Literal

from wellwallet.core.audit.logger import AuditLogger
from wellwallet.core.gateway.client import GatewayClient, GatewayError, unwrap_tool_result
from wellwallet.core.gateway.models import bundle_resources
from wellwallet.core.storage.models import RecordFilter
from wellwallet.core.storage.repository import LocalRecordStore
from wellwallet.domains.records.catalog import PATIENT, ResourceCatalog, ResourceType
from wellwallet.domains.records.errors import (
    MissingContextError,
    NoInterpretationError,
    QueryError,
)
from wellwallet.domains.records.fetcher import build_search_path, gateway_request
from wellwallet.domains.records.query.formatting import format_records
from wellwallet.domains.records.query.plan import (
    ExecutionMode,
    QueryPlan,
    parse_query_plan,
    plan_to_dict,
)

logger = logging.getLogger(__name__)

Provenance = Literal["local", "remote"]

# FHIR search parameters whose name differs from ``status`` for a type.
_STATUS_PARAMS = {
    "Condition": "clinical-status",
    "AllergyIntolerance": "clinical-status",
}


@dataclass(frozen=True)
class QueryResult:
    """A routed answer: the records, where they came from, and their rendering."""

    resource_type: str
    records: list[dict[str, Any]]
    provenance: Provenance
    markdown: str
    record_index: int | None = None

    @property
    def count(self) -> int:
        return len(self.records)

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource_type": self.resource_type,
            "provenance": self.provenance,
            "count": self.count,
            "record_index": self.record_index,
            "records": self.records,
            "markdown": self.markdown,
        }


class QueryRouter:
    """Routes a query plan to the local cache or the gateway.

    Usage::

        router = QueryRouter(client, store, catalog)
        result = await router.route(plan, patient_id="p1")
        print(result.provenance, result.markdown)
    """

    def __init__(
        self,
        client: GatewayClient,
        store: LocalRecordStore,
        catalog: ResourceCatalog,
        *,
        audit: AuditLogger | None = None,
        retry_once: bool = True,
    ) -> None:
        self._client = client
        self._store = store
        self._catalog = catalog
        self._audit = audit
        self._retry_once = retry_once

    async def route(self, plan: QueryPlan | dict[str, Any], patient_id: str | None) -> QueryResult:
        """Answer ``plan`` for ``patient_id``.

        Raises:
            MissingContextError: If ``patient_id`` is empty.
            UnrecognizedPlanError: If ``plan`` fails validation.
            NoInterpretationError: If neither path produced records.
            GatewayError: Remote failures, with their classification intact.
        """
        if not patient_id:
            raise MissingContextError(
                "No patient is selected; sign in again to re-establish identity"
            )
        plan = parse_query_plan(plan)
        start = time.monotonic()
        try:
            result = await self._route(plan, patient_id)
        except (QueryError, GatewayError) as exc:
            self._audit_query(plan, None, 0, start, error=exc)
            raise
        self._audit_query(plan, result.provenance, result.count, start)
        return result

    async def _route(self, plan: QueryPlan, patient_id: str) -> QueryResult:
        resource_type = plan.resource_type

        if plan.mode in (ExecutionMode.LOCAL, ExecutionMode.EITHER):
            records = self._store.query(patient_id, resource_type, record_filter(plan))
            if records:
                logger.info("Answered %s query locally (%d records)", resource_type, len(records))
                return self._result(plan, [r.document for r in records], "local")
            if plan.mode is ExecutionMode.LOCAL:
                raise NoInterpretationError(
                    f"No local {resource_type} records match this query"
                )

        rt = self._catalog.get(resource_type) or ResourceType(
            name=resource_type, tool=self._catalog.fallback_tool
        )
        await self._client.initialize()
        path = remote_path(plan, rt, patient_id)
        logger.info("Querying gateway for %s via %s", resource_type, rt.tool)
        result = await self._client.call_tool(
            rt.tool, gateway_request(path), retry_once=self._retry_once
        )
        documents = [
            doc for doc in bundle_resources(unwrap_tool_result(result))
            if doc.get("resourceType") == resource_type
        ]
        limit = getattr(plan.filters, "limit", None)
        if limit is not None:
            documents = documents[:limit]
        if not documents:
            raise NoInterpretationError(
                f"Could not answer: no {resource_type} records found locally or remotely"
            )
        return self._result(plan, documents, "remote")

    def _result(
        self, plan: QueryPlan, documents: list[dict[str, Any]], provenance: Provenance
    ) -> QueryResult:
        index = plan.record_index
        first_number = 1
        if index is not None:
            documents = [documents[index]] if index < len(documents) else []
            first_number = index + 1
        return QueryResult(
            resource_type=plan.resource_type,
            records=documents,
            provenance=provenance,
            markdown=format_records(plan.resource_type, documents, first_number=first_number),
            record_index=index,
        )

    def _audit_query(
        self,
        plan: QueryPlan,
        provenance: Provenance | None,
        count: int,
        start: float,
        *,
        error: Exception | None = None,
    ) -> None:
        if self._audit is None:
            return
        self._audit.log_query(
            resource_type=plan.resource_type,
            plan=plan_to_dict(plan),
            provenance=provenance,
            result_count=count,
            duration_ms=(time.monotonic() - start) * 1000,
            status="failure" if error else "success",
            error_type=type(error).__name__ if error else None,
        )


# ---------------------------------------------------------------------------
# Plan translation
# ---------------------------------------------------------------------------

def record_filter(plan: QueryPlan) -> RecordFilter:
    """Local-store filters equivalent to ``plan``'s filters."""
    filters = plan.filters
    code_search = getattr(filters, "code_search", None)
    date_range = getattr(filters, "date_range", None)
    return RecordFilter(
        codes=list(code_search.codes) if code_search else [],
        text=code_search.text if code_search else None,
        status=getattr(filters, "status", None),
        category=getattr(filters, "category", None),
        date_from=date_range.start if date_range else None,
        date_to=date_range.end if date_range else None,
        sort=getattr(filters, "sort", None),
        limit=getattr(filters, "limit", None),
    )


def remote_path(plan: QueryPlan, rt: ResourceType, patient_id: str) -> str:
    """FHIR search path for the gateway equivalent to ``plan``."""
    if rt.name == PATIENT:
        return f"/{PATIENT}/{patient_id}"

    f = record_filter(plan)
    params: list[tuple[str, str]] = []
    if rt.code_param:
        if f.codes:
            params.append((rt.code_param, ",".join(f.codes)))
        elif f.text:
            params.append((f"{rt.code_param}:text", f.text))
    if f.category:
        params.append(("category", f.category))
    if f.status:
        params.append((_STATUS_PARAMS.get(rt.name, "status"), f.status))
    if rt.date_param:
        if f.date_from:
            params.append((rt.date_param, f"ge{f.date_from}"))
        if f.date_to:
            params.append((rt.date_param, f"le{f.date_to}"))
        if f.sort:
            prefix = "-" if f.sort.startswith("-") else ""
            params.append(("_sort", f"{prefix}{rt.date_param}"))
    if f.limit:
        params.append(("_count", str(f.limit)))
    return build_search_path(rt, patient_id, params)
