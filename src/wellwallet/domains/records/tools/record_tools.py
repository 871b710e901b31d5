"""MCP tools for syncing and querying a patient's FHIR records.

Every tool returns a JSON string with a ``status`` field. Failures are
reported with the error class name so "nothing found" stays distinguishable
from "the gateway is broken".
"""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING, Any

from fastmcp import Context, FastMCP

from wellwallet.core.gateway.client import GatewayError, SessionError
from wellwallet.domains.records.errors import (
    MissingContextError,
    NoInterpretationError,
    QueryError,
    SyncError,
)
from wellwallet.domains.records.query.plan import plan_to_dict

if TYPE_CHECKING:
    from wellwallet.core.audit.logger import AuditLogger
    from wellwallet.core.gateway.client import GatewayClient
    from wellwallet.core.storage.repository import LocalRecordStore
    from wellwallet.domains.records.interpreter import QueryInterpreter
    from wellwallet.domains.records.query.router import QueryRouter
    from wellwallet.domains.records.sync import SyncOrchestrator

logger = logging.getLogger(__name__)


def _error(exc: Exception, **extra: Any) -> str:
    if isinstance(exc, NoInterpretationError):
        status = "no_answer"
    elif isinstance(exc, MissingContextError):
        status = "missing_patient"
    else:
        status = "error"
    return json.dumps({
        "status": status,
        "error_type": type(exc).__name__,
        "message": str(exc),
        **extra,
    })


def register_record_tools(
    mcp: FastMCP,
    *,
    client: GatewayClient,
    store: LocalRecordStore,
    orchestrator: SyncOrchestrator,
    router: QueryRouter,
    interpreter: QueryInterpreter,
    audit_logger: AuditLogger | None = None,
) -> None:
    """Register record sync and query tools on the MCP server."""

    def audit(tool_name: str, tool_input: Any, start: float, error: Exception | None = None) -> None:
        if audit_logger is None:
            return
        audit_logger.log_tool_call(
            tool_name,
            tool_input,
            duration_ms=(time.monotonic() - start) * 1000,
            status="failure" if error else "success",
            error_type=type(error).__name__ if error else None,
        )

    @mcp.tool
    async def sync_patient_records(
        ctx: Context,
        patient_id: str,
    ) -> str:
        """Replace the local record cache with a fresh copy from the gateway.

        Fetches every supported resource type for the patient in order.
        A failing type is reported in ``errors`` without stopping the others.

        Args:
            patient_id: FHIR Patient id to sync.
        """
        start = time.monotonic()
        try:
            summary = await orchestrator.run(patient_id)
        except (SyncError, SessionError) as exc:
            audit("sync_patient_records", {"patient_id": patient_id}, start, exc)
            return _error(exc)

        audit("sync_patient_records", {"patient_id": patient_id}, start)
        return json.dumps({
            "status": "cancelled" if summary.cancelled else "completed",
            "summary": summary.to_dict(),
            "duration_ms": round((time.monotonic() - start) * 1000, 1),
        }, indent=2)

    @mcp.tool
    async def sync_status(ctx: Context) -> str:
        """Show the per-resource-type progress of the current or last sync."""
        return json.dumps({
            "status": "running" if orchestrator.running else "idle",
            "resource_types": [s.to_dict() for s in orchestrator.statuses.values()],
        }, indent=2)

    @mcp.tool
    async def cancel_sync(ctx: Context) -> str:
        """Stop the running sync after the resource type currently being fetched."""
        if not orchestrator.running:
            return json.dumps({"status": "idle", "message": "No sync is running."})
        orchestrator.cancel()
        return json.dumps({"status": "cancelling"})

    @mcp.tool
    async def ask_health_records(
        ctx: Context,
        question: str,
        patient_id: str,
    ) -> str:
        """Answer a plain-language question about the patient's records.

        Cached records are used when they match; otherwise the gateway is
        queried. The answer says which source it came from.

        Args:
            question: e.g. "show me my latest cholesterol results".
            patient_id: FHIR Patient id the question is about.
        """
        start = time.monotonic()
        tool_input = {"question": question, "patient_id": patient_id}
        try:
            if not patient_id:
                raise MissingContextError("No patient is selected")
            plan = await interpreter.interpret(question, patient_id)
            result = await router.route(plan, patient_id)
        except (QueryError, GatewayError) as exc:
            audit("ask_health_records", tool_input, start, exc)
            return _error(exc)

        audit("ask_health_records", tool_input, start)
        return json.dumps({
            "status": "ok",
            "plan": plan_to_dict(plan),
            **result.to_dict(),
        }, indent=2)

    @mcp.tool
    async def query_health_records(
        ctx: Context,
        plan: dict,
        patient_id: str,
    ) -> str:
        """Run a structured query plan against the patient's records.

        Args:
            plan: Query plan, e.g. ``{"resourceType": "Observation",
                "mode": "either", "filters": {"codeSearch": {"codes": ["2093-3"]}}}``.
            patient_id: FHIR Patient id the plan is about.
        """
        start = time.monotonic()
        try:
            result = await router.route(plan, patient_id)
        except (QueryError, GatewayError) as exc:
            audit("query_health_records", plan, start, exc)
            return _error(exc)

        audit("query_health_records", plan, start)
        return json.dumps({"status": "ok", **result.to_dict()}, indent=2)

    @mcp.tool
    async def last_sync_summary(
        ctx: Context,
        patient_id: str = "",
    ) -> str:
        """Show the most recent sync summary without running a new sync.

        Args:
            patient_id: Restrict to one patient (default: most recent of any).
        """
        summary = store.load_last_summary(patient_id or None)
        if summary is None:
            return json.dumps({
                "status": "not_found",
                "message": "No sync has completed yet.",
            })
        return json.dumps({
            "status": "ok",
            "summary": summary.to_dict(),
            "cached_counts": store.resource_counts(summary.patient_id),
        }, indent=2)

    @mcp.tool
    async def gateway_tools(ctx: Context) -> str:
        """List the tools the remote gateway currently advertises (diagnostic)."""
        start = time.monotonic()
        try:
            await client.initialize()
            names = await client.list_tools()
        except GatewayError as exc:
            audit("gateway_tools", None, start, exc)
            return _error(exc)

        audit("gateway_tools", None, start)
        return json.dumps({
            "status": "ok",
            "session_state": client.state.value,
            "tools": sorted(names),
        }, indent=2)

    @mcp.tool
    async def delete_local_records(
        ctx: Context,
        confirm: str = "",
    ) -> str:
        """Permanently delete every cached record from this device.

        Records stay available on the gateway and return with the next sync.

        Args:
            confirm: Must be exactly 'DELETE_ALL' to proceed. Safety gate.
        """
        if confirm != "DELETE_ALL":
            return json.dumps({
                "status": "cancelled",
                "message": (
                    "To delete all cached records, call this tool with "
                    "confirm='DELETE_ALL'."
                ),
            })
        if orchestrator.running:
            return _error(SyncError("Cannot delete records while a sync is running"))

        count = store.truncate_all()
        if audit_logger is not None:
            audit_logger.log_data_truncate(count=count, tool_name="delete_local_records")
        return json.dumps({"status": "deleted", "records_deleted": count})
