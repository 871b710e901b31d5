"""Resource fetcher: one FHIR resource type for one patient, all pages."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlencode, urlsplit

from wellwallet.core.config.settings import SERVER_MAX_PAGE_SIZE
from wellwallet.core.gateway.backoff import with_backoff
from wellwallet.core.gateway.client import (
    GatewayClient,
    GatewayError,
    ProtocolError,
    unwrap_tool_result,
)
from wellwallet.core.gateway.models import bundle_resources, next_page_link
from wellwallet.core.storage.models import StoredResource
from wellwallet.core.storage.repository import LocalRecordStore
from wellwallet.domains.records.catalog import PATIENT, ResourceCatalog, ResourceType

logger = logging.getLogger(__name__)


def build_search_path(
    resource_type: ResourceType,
    patient_id: str,
    params: list[tuple[str, str]] | None = None,
) -> str:
    """Build a patient-scoped FHIR search path for the gateway."""
    query = [(resource_type.scope_param, f"Patient/{patient_id}"), *(params or [])]
    return f"/{resource_type.name}?{urlencode(query, safe='/:,')}"


def gateway_request(path: str) -> dict[str, Any]:
    """Tool arguments for a FHIR read through the gateway."""
    return {"request": {"method": "GET", "path": path, "body": None}}


def page_path(next_url: str, resource_type: str) -> str:
    """Turn a Bundle ``next`` link into a path relative to the FHIR base.

    The link is usually absolute (``http://fhir/base/Observation?...``);
    anything before the resource type segment is the server base and is
    dropped. Links without such a segment (server-side paging handles) are
    sent as a bare query on the base.
    """
    parts = urlsplit(next_url)
    segments = [s for s in parts.path.split("/") if s]
    query = f"?{parts.query}" if parts.query else ""
    if resource_type in segments:
        start = segments.index(resource_type)
        return "/" + "/".join(segments[start:]) + query
    return "/" + query


@dataclass
class FetchResult:
    """Outcome of fetching one resource type.

    ``count`` is what the sync reports for the type: the records actually
    saved. For Patient it is always 1; ``record_fetched`` says whether the
    demographic record actually arrived.
    """

    resource_type: str
    records: list[dict[str, Any]] = field(default_factory=list)
    saved: int = 0
    pages: int = 0
    count: int = 0
    record_fetched: bool = False
    error: str | None = None
    save_errors: list[str] = field(default_factory=list)
    truncated: bool = False


class ResourceFetcher:
    """Fetches and persists every record of one resource type for a patient.

    Pages are requested one at a time by following ``link[relation=next]``
    until no continuation remains or ``max_pages`` is reached. Transient
    gateway failures are retried with exponential backoff per page.
    """

    def __init__(
        self,
        client: GatewayClient,
        store: LocalRecordStore,
        catalog: ResourceCatalog,
        *,
        page_size: int = 100,
        max_pages: int = 50,
        retry_attempts: int = 3,
        backoff_base: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._store = store
        self._catalog = catalog
        self._page_size = max(1, min(page_size, SERVER_MAX_PAGE_SIZE))
        self._max_pages = max(1, max_pages)
        self._retry_attempts = retry_attempts
        self._backoff_base = backoff_base
        self._sleep = sleep

    async def fetch(
        self, patient_id: str, resource_type: str, *, staged: bool = False
    ) -> FetchResult:
        """Fetch all pages of ``resource_type`` for ``patient_id`` and store them.

        Args:
            patient_id: Patient whose records are fetched.
            resource_type: FHIR resource type name.
            staged: Write into the resync staging tables.

        Raises:
            GatewayError: If a page cannot be fetched (never for Patient,
                whose failures are reported on the result).
        """
        rt = self._catalog.get(resource_type) or ResourceType(
            name=resource_type, tool=self._catalog.fallback_tool
        )
        if rt.name == PATIENT:
            return await self._fetch_patient(patient_id, rt, staged)

        result = FetchResult(resource_type=rt.name)
        path: str | None = build_search_path(
            rt, patient_id, [("_count", str(self._page_size))]
        )
        while path is not None:
            if result.pages >= self._max_pages:
                result.truncated = True
                logger.warning(
                    "Stopped %s pagination at the %d-page bound", rt.name, self._max_pages
                )
                break

            payload = await self._request(rt, path, label=f"{rt.name} page {result.pages + 1}")
            result.pages += 1
            records = [
                r for r in bundle_resources(payload) if r.get("resourceType") == rt.name
            ]
            result.records.extend(records)
            self._persist(patient_id, rt.name, records, result, staged)

            next_url = next_page_link(payload)
            path = page_path(next_url, rt.name) if next_url else None

        result.count = result.saved
        logger.info(
            "Fetched %d %s record(s) in %d page(s), %d saved",
            len(result.records),
            rt.name,
            result.pages,
            result.count,
        )
        return result

    async def _fetch_patient(
        self, patient_id: str, rt: ResourceType, staged: bool
    ) -> FetchResult:
        # The patient in scope counts as one record whether or not the
        # demographic payload comes back.
        result = FetchResult(resource_type=rt.name, count=1)
        try:
            payload = await self._request(rt, f"/{rt.name}/{patient_id}", label="Patient record")
        except GatewayError as exc:
            logger.warning("Patient record fetch failed: %s", exc)
            result.error = f"{rt.name}: {exc}"
            return result

        result.pages = 1
        result.records = [
            r for r in bundle_resources(payload) if r.get("resourceType") == rt.name
        ]
        result.record_fetched = bool(result.records)
        self._persist(patient_id, rt.name, result.records, result, staged)
        return result

    async def _request(self, rt: ResourceType, path: str, *, label: str) -> Any:
        async def call() -> dict[str, Any]:
            return await self._client.call_tool(rt.tool, gateway_request(path))

        result = await with_backoff(
            call,
            attempts=self._retry_attempts,
            base_delay=self._backoff_base,
            sleep=self._sleep,
            label=label,
        )
        payload = unwrap_tool_result(result)
        _raise_for_outcome(payload)
        return payload

    def _persist(
        self,
        patient_id: str,
        resource_type: str,
        documents: list[dict[str, Any]],
        result: FetchResult,
        staged: bool,
    ) -> None:
        records = []
        for document in documents:
            try:
                records.append(StoredResource.from_fhir(patient_id, document, resource_type))
            except ValueError as exc:
                result.save_errors.append(f"{resource_type}: {exc}")
        if not records:
            return
        outcome = self._store.bulk_insert(records, staged=staged)
        result.saved += outcome.saved
        result.save_errors.extend(outcome.errors)


def _raise_for_outcome(payload: Any) -> None:
    """Raise if the gateway relayed a FHIR OperationOutcome error instead of data."""
    if not isinstance(payload, dict) or payload.get("resourceType") != "OperationOutcome":
        return
    issues = [
        issue for issue in payload.get("issue") or []
        if isinstance(issue, dict) and issue.get("severity") in ("error", "fatal")
    ]
    if issues:
        detail = issues[0].get("diagnostics") or issues[0].get("code") or "unknown issue"
        raise ProtocolError(f"FHIR server returned OperationOutcome: {detail}", data=payload)
