"""Session and wire models for the FHIR gateway protocol."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

JSONRPC_VERSION = "2.0"
SESSION_HEADER = "Mcp-Session-Id"


class SessionState(str, Enum):
    """Lifecycle of one logical gateway session."""

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    ACTIVE = "active"
    DEGRADED = "degraded"
    CLOSED = "closed"


@dataclass
class Session:
    """One conversation with the gateway.

    Owned by a single ``GatewayClient``; never persisted. The identifier is
    assigned by the server (``Mcp-Session-Id`` response header) and may be
    rotated by any later response.
    """

    session_id: str | None = None
    protocol_version: str = ""
    state: SessionState = SessionState.UNINITIALIZED
    server_info: dict[str, Any] = field(default_factory=dict)
    capabilities: dict[str, Any] = field(default_factory=dict)

    @property
    def usable(self) -> bool:
        """Whether tool calls may be issued in the current state."""
        return self.state in (SessionState.ACTIVE, SessionState.DEGRADED)

    def clear(self, state: SessionState) -> None:
        self.session_id = None
        self.server_info = {}
        self.capabilities = {}
        self.state = state


@dataclass
class RequestEnvelope:
    """JSON-RPC 2.0 request. ``id`` is ``None`` for notifications."""

    method: str
    params: dict[str, Any] | None = None
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": self.method}
        if self.id is not None:
            body["id"] = self.id
        if self.params is not None:
            body["params"] = self.params
        return body

    def encode(self) -> bytes:
        return json.dumps(self.to_dict(), separators=(",", ":")).encode("utf-8")


@dataclass
class ResponseEnvelope:
    """JSON-RPC 2.0 response: exactly one of ``result`` / ``error`` is set."""

    id: Any
    result: Any = None
    error: dict[str, Any] | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResponseEnvelope:
        error = data.get("error")
        if error is not None and not isinstance(error, dict):
            error = {"code": None, "message": str(error)}
        return cls(id=data.get("id"), result=data.get("result"), error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def error_code(self) -> int | None:
        if not self.error:
            return None
        code = self.error.get("code")
        return code if isinstance(code, int) else None

    @property
    def error_message(self) -> str:
        if not self.error:
            return ""
        message = self.error.get("message")
        return message if isinstance(message, str) and message else str(self.error)


# ---------------------------------------------------------------------------
# FHIR Bundle helpers
# ---------------------------------------------------------------------------

def bundle_resources(payload: Any) -> list[dict[str, Any]]:
    """Return the resources in a Bundle, or a one-element list for a bare resource."""
    if not isinstance(payload, dict):
        return []
    if payload.get("resourceType") == "Bundle" or "entry" in payload:
        resources = []
        for entry in payload.get("entry") or []:
            if isinstance(entry, dict) and isinstance(entry.get("resource"), dict):
                resources.append(entry["resource"])
        return resources
    if payload.get("resourceType"):
        return [payload]
    return []


def next_page_link(payload: Any) -> str | None:
    """Return the ``link[relation=next]`` URL of a Bundle, if any."""
    if not isinstance(payload, dict):
        return None
    for link in payload.get("link") or []:
        if isinstance(link, dict) and link.get("relation") == "next" and link.get("url"):
            return str(link["url"])
    return None
