"""Sync orchestrator: full resynchronization of the local record cache.

A run has three phases:

1. Reset: clear the staging tables and set every type's status to pending.
2. Fetch: fetch each resource type in catalog order, one after another.
   A failing type is recorded and the next type still runs.
3. Summary: publish the staged data over the live cache, then persist and
   emit the ``FetchSummary``.

The live cache is only touched by the publish step, which swaps old for new
in one transaction. Progress is reported on a bounded queue and through the
``statuses`` snapshot; the orchestrator is the only writer of either.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum

from wellwallet.core.audit.logger import AuditLogger
from wellwallet.core.gateway.client import GatewayClient, GatewayError
from wellwallet.core.storage.models import FetchSummary
from wellwallet.core.storage.repository import LocalRecordStore
from wellwallet.domains.records.catalog import PATIENT, ResourceCatalog
from wellwallet.domains.records.errors import SyncError
from wellwallet.domains.records.fetcher import ResourceFetcher

logger = logging.getLogger(__name__)


class FetchState(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class FetchStatus:
    """Sync progress of one resource type."""

    resource_type: str
    state: FetchState = FetchState.PENDING
    count: int = 0
    error: str | None = None
    progress: float = 0.0
    record_fetched: bool | None = None

    @property
    def finished(self) -> bool:
        return self.state in (FetchState.COMPLETED, FetchState.ERROR)

    def to_dict(self) -> dict:
        data = {
            "resource_type": self.resource_type,
            "state": self.state.value,
            "count": self.count,
            "error": self.error,
            "progress": self.progress,
        }
        if self.record_fetched is not None:
            data["record_fetched"] = self.record_fetched
        return data


@dataclass(frozen=True)
class ProgressEvent:
    """One progress update; the final event of a run carries the summary."""

    status: FetchStatus | None
    step: int
    total_steps: int
    summary: FetchSummary | None = None

    @property
    def fraction(self) -> float:
        return self.step / self.total_steps if self.total_steps else 1.0


class SyncOrchestrator:
    """Drives the fetcher across every catalog resource type.

    Usage::

        orchestrator = SyncOrchestrator(client, store, fetcher, catalog)
        summary = await orchestrator.run("patient-123")

        # elsewhere, while running:
        async for event in orchestrator.iter_progress():
            ...
    """

    def __init__(
        self,
        client: GatewayClient,
        store: LocalRecordStore,
        fetcher: ResourceFetcher,
        catalog: ResourceCatalog,
        *,
        audit: AuditLogger | None = None,
        progress_buffer: int = 32,
    ) -> None:
        self._client = client
        self._store = store
        self._fetcher = fetcher
        self._catalog = catalog
        self._audit = audit
        self._progress: asyncio.Queue[ProgressEvent] = asyncio.Queue(
            maxsize=max(1, progress_buffer)
        )
        self._statuses: dict[str, FetchStatus] = {
            name: FetchStatus(name) for name in catalog.names
        }
        self._lock = asyncio.Lock()
        self._cancel_requested = False

    @property
    def running(self) -> bool:
        return self._lock.locked()

    @property
    def statuses(self) -> dict[str, FetchStatus]:
        """Snapshot of the current per-type statuses, in sync order."""
        return {name: replace(status) for name, status in self._statuses.items()}

    @property
    def progress(self) -> asyncio.Queue[ProgressEvent]:
        return self._progress

    async def iter_progress(self) -> AsyncIterator[ProgressEvent]:
        """Yield progress events until the next completion event.

        Events left unread by an earlier run are dropped when a new run starts.
        """
        while True:
            event = await self._progress.get()
            yield event
            if event.summary is not None:
                return

    def cancel(self) -> None:
        """Stop the running sync at the next resource-type boundary."""
        if self.running:
            logger.info("Sync cancellation requested")
            self._cancel_requested = True

    def last_summary(self, patient_id: str | None = None) -> FetchSummary | None:
        return self._store.load_last_summary(patient_id)

    async def run(self, patient_id: str) -> FetchSummary:
        """Resynchronize the cache for ``patient_id`` and return the summary.

        Raises:
            SyncError: If no patient id is given or a sync is already running.
            SessionError: If no gateway session can be established; the
                cache is left untouched.
        """
        if not patient_id:
            raise SyncError("A patient identifier is required to sync records")
        if self._lock.locked():
            raise SyncError("A sync is already running")

        async with self._lock:
            self._cancel_requested = False
            self._drain_progress()
            start = time.monotonic()
            try:
                summary = await self._run(patient_id)
            except BaseException as exc:
                self._store.discard_resync()
                if self._audit:
                    self._audit.log_resync(
                        total=0,
                        error_count=1,
                        duration_ms=(time.monotonic() - start) * 1000,
                        status="failure",
                        error_type=type(exc).__name__,
                    )
                raise

            if self._audit:
                self._audit.log_resync(
                    total=summary.total,
                    error_count=len(summary.errors),
                    duration_ms=(time.monotonic() - start) * 1000,
                    status="cancelled" if summary.cancelled else "success",
                )
            return summary

    async def _run(self, patient_id: str) -> FetchSummary:
        await self._client.initialize()

        # Phase 1: reset
        names = self._catalog.names
        self._store.begin_resync()
        self._statuses = {name: FetchStatus(name) for name in names}
        logger.info("Starting resync of %d resource types", len(names))

        # Phase 2: sequential fetch
        errors: list[str] = []
        patient_fetched = False
        cancelled = False
        for step, name in enumerate(names, start=1):
            # Patient always runs so the summary covers the patient in scope.
            if self._cancel_requested and name != PATIENT:
                cancelled = True
                logger.info("Sync cancelled before %s", name)
                break

            status = self._statuses[name]
            status.state = FetchState.IN_PROGRESS
            self._publish(ProgressEvent(replace(status), step - 1, len(names)))

            try:
                result = await self._fetcher.fetch(patient_id, name, staged=True)
            except GatewayError as exc:
                status.state = FetchState.ERROR
                status.error = f"{name}: {exc}"
                errors.append(status.error)
                logger.warning("Failed to sync %s: %s", name, exc)
            else:
                status.count = result.count
                errors.extend(result.save_errors)
                if result.error:
                    status.state = FetchState.ERROR
                    status.error = result.error
                    errors.append(result.error)
                else:
                    status.state = FetchState.COMPLETED
                if name == PATIENT:
                    status.record_fetched = result.record_fetched
                    patient_fetched = result.record_fetched

            status.progress = 1.0
            self._publish(ProgressEvent(replace(status), step, len(names)))

        # Phase 3: publish and summarize
        removed, _ = self._store.publish_resync()
        if self._audit:
            self._audit.log_data_truncate(count=removed, tool_name="sync")

        counts = {
            name: status.count
            for name, status in self._statuses.items()
            if status.finished
        }
        summary = FetchSummary(
            patient_id=patient_id,
            resource_counts=counts,
            total=sum(counts.values()),
            completed_at=datetime.now(timezone.utc).isoformat(),
            errors=tuple(errors),
            cancelled=cancelled,
            patient_record_fetched=patient_fetched,
        )
        summary_id = self._store.persist_summary(summary)
        summary = replace(summary, id=summary_id)

        finished = sum(1 for s in self._statuses.values() if s.finished)
        self._publish(ProgressEvent(None, finished, len(names), summary=summary))
        logger.info(
            "Resync %s: %d records, %d error(s)",
            "cancelled" if cancelled else "completed",
            summary.total,
            len(summary.errors),
        )
        return summary

    def _drain_progress(self) -> None:
        # Unread events from an earlier run must not reach this run's consumers.
        while not self._progress.empty():
            self._progress.get_nowait()

    def _publish(self, event: ProgressEvent) -> None:
        # Drop the oldest event rather than block the sync on a slow consumer.
        if self._progress.full():
            self._progress.get_nowait()
        self._progress.put_nowait(event)
