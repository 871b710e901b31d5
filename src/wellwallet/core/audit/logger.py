"""Audit logger: PHI-free access trail for queries, resyncs and tool calls.

Records every tool invocation, routed query, resync and cache truncation
in the ``audit_log`` table:

* ``tool_input_hash`` is the SHA-256 of canonical JSON (no raw PHI in logs).
* ``provenance`` records whether a query was answered from the local cache
  or by the remote gateway.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from wellwallet.core.storage.database import DatabaseError, RecordDatabase

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id, timestamp, action, tool_name, tool_input_hash, resource_type, "
    "provenance, duration_ms, status, error_type, metadata_json"
)
_PLACEHOLDERS = ", ".join(["?"] * len(_COLUMNS.split(",")))

# get_events keyword -> SQL condition
_FILTERS = {
    "action": "action = ?",
    "tool_name": "tool_name = ?",
    "resource_type": "resource_type = ?",
    "status": "status = ?",
    "since": "timestamp >= ?",
}


def _hash_input(data: Any) -> str:
    """SHA-256 hash of canonical JSON; empty string if not serializable."""
    try:
        canonical = json.dumps(data, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()
    except (TypeError, ValueError):
        return ""


@dataclass
class AuditEvent:
    """A single audit log entry."""

    action: str                          # 'tool_invocation' | 'local_query' | 'resync' | 'data_truncate'
    tool_name: str = ""
    tool_input_hash: str = ""
    resource_type: str | None = None
    provenance: str | None = None        # 'local' | 'remote'
    duration_ms: float | None = None
    status: str = "success"              # 'success' | 'failure' | 'cancelled'
    error_type: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class AuditLogger:
    """Records audit events to the ``audit_log`` SQLite table.

    Writes are committed immediately. A failed write is logged and never
    propagates into the operation being audited.

    Usage::

        audit = AuditLogger(record_db)
        audit.log_query(
            resource_type="Observation",
            plan={"resourceType": "Observation"},
            provenance="local",
            result_count=3,
        )
    """

    def __init__(self, database: RecordDatabase) -> None:
        self._db = database

    # ---------------------------------------------------------------
    # Write
    # ---------------------------------------------------------------

    def log_event(self, event: AuditEvent) -> str:
        """Insert an audit event and return its UUID ('' if the write failed)."""
        event_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc).isoformat()

        metadata_json = (
            json.dumps(event.metadata, separators=(",", ":"), default=str)
            if event.metadata
            else None
        )

        try:
            with self._db.transaction() as conn:
                conn.execute(
                    f"INSERT INTO audit_log ({_COLUMNS}) VALUES ({_PLACEHOLDERS})",
                    (
                        event_id,
                        now,
                        event.action,
                        event.tool_name or None,
                        event.tool_input_hash or None,
                        event.resource_type,
                        event.provenance,
                        event.duration_ms,
                        event.status,
                        event.error_type,
                        metadata_json,
                    ),
                )
        except (sqlite3.Error, DatabaseError):
            logger.exception("Failed to write audit event, event lost")
            return ""

        return event_id

    def log_tool_call(
        self,
        tool_name: str,
        tool_input: Any = None,
        *,
        duration_ms: float | None = None,
        status: str = "success",
        error_type: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Log an MCP tool invocation; ``tool_input`` is hashed, never stored."""
        return self.log_event(AuditEvent(
            action="tool_invocation",
            tool_name=tool_name,
            tool_input_hash=_hash_input(tool_input) if tool_input else "",
            duration_ms=duration_ms,
            status=status,
            error_type=error_type,
            metadata=metadata or {},
        ))

    def log_query(
        self,
        *,
        resource_type: str,
        plan: Any = None,
        provenance: str | None = None,
        result_count: int = 0,
        duration_ms: float | None = None,
        status: str = "success",
        error_type: str | None = None,
    ) -> str:
        """Log one routed query.

        Args:
            resource_type: Resource type the plan targeted.
            plan: The query plan (hashed).
            provenance: 'local' or 'remote' for answered queries.
            result_count: Number of records returned.
            duration_ms: Routing duration in milliseconds.
            status: 'success' or 'failure'.
            error_type: Exception class name on failure.
        """
        return self.log_event(AuditEvent(
            action="local_query",
            tool_input_hash=_hash_input(plan) if plan else "",
            resource_type=resource_type,
            provenance=provenance,
            duration_ms=duration_ms,
            status=status,
            error_type=error_type,
            metadata={"result_count": result_count},
        ))

    def log_resync(
        self,
        *,
        total: int,
        error_count: int,
        duration_ms: float | None = None,
        status: str = "success",
        error_type: str | None = None,
    ) -> str:
        """Log the end of one sync run."""
        return self.log_event(AuditEvent(
            action="resync",
            duration_ms=duration_ms,
            status=status,
            error_type=error_type,
            metadata={"total": total, "error_count": error_count},
        ))

    def log_data_truncate(self, *, count: int, tool_name: str = "") -> str:
        """Log replacement of the live cache."""
        return self.log_event(AuditEvent(
            action="data_truncate",
            tool_name=tool_name,
            metadata={"records_deleted": count},
        ))

    # ---------------------------------------------------------------
    # Read
    # ---------------------------------------------------------------

    def get_events(self, *, limit: int = 50, **filters: str | None) -> list[dict[str, Any]]:
        """Audit events, newest first.

        Keyword filters: ``action``, ``tool_name``, ``resource_type``,
        ``status`` and ``since`` (ISO timestamp, inclusive).
        """
        unknown = set(filters) - set(_FILTERS)
        if unknown:
            raise TypeError(f"Unknown audit filter(s): {', '.join(sorted(unknown))}")

        active = [(_FILTERS[k], v) for k, v in filters.items() if v]
        where = " AND ".join(cond for cond, _ in active)
        sql = "SELECT * FROM audit_log"
        if where:
            sql += f" WHERE {where}"
        sql += " ORDER BY timestamp DESC LIMIT ?"

        params = [v for _, v in active] + [limit]
        return [dict(row) for row in self._db.connection.execute(sql, params).fetchall()]

    def count_events(self, *, action: str | None = None) -> int:
        """Count audit events, optionally for one action."""
        if action:
            row = self._db.connection.execute(
                "SELECT COUNT(*) FROM audit_log WHERE action = ?", (action,)
            ).fetchone()
        else:
            row = self._db.connection.execute("SELECT COUNT(*) FROM audit_log").fetchone()
        return row[0]
