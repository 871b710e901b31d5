"""Shared test fixtures for WellWallet tests."""

from __future__ import annotations

import json
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

# ---------------------------------------------------------------------------
# Test hermeticity
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _force_hermetic_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LLM_PROVIDER", "mock")
    monkeypatch.setenv("QUERY_INTERPRETER", "keyword")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "")
    monkeypatch.setenv("OPENAI_API_KEY", "")
    monkeypatch.setenv("ENCRYPTION_KEY", "")
    monkeypatch.setenv("GATEWAY_API_KEY", "")

# Allow running tests without `pip install -e .` by making `src/` importable.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_SRC_DIR = _PROJECT_ROOT / "src"
if str(_SRC_DIR) not in sys.path:
    sys.path.insert(0, str(_SRC_DIR))


GATEWAY_URL = "http://gateway.test/mcp"
FHIR_BASE = "http://fhir.test/fhir"


# ---------------------------------------------------------------------------
# Fake FHIR gateway (JSON-RPC over HTTP, SSE-framed replies)
# ---------------------------------------------------------------------------

@dataclass
class RecordedRequest:
    """One JSON-RPC message the fake gateway received."""

    method: str
    id: Any
    params: dict[str, Any] | None
    session_id: str | None
    api_key: str | None


class FakeGateway:
    """In-process stand-in for the remote gateway, served via httpx.MockTransport.

    Records are registered per resource type and paged on ``_page``; failures
    can be queued per tool name:

    * an ``int`` answers with that HTTP status,
    * a ``dict`` answers with that JSON-RPC error object,
    * ``"timeout"`` / ``"connect"`` raise the matching httpx transport error.
    """

    def __init__(self, session_id: str = "sess-1") -> None:
        self.session_id = session_id
        self.protocol_version = "2025-06-18"
        self.requests: list[RecordedRequest] = []
        self.tool_calls: list[tuple[str, str]] = []
        self.deleted_sessions: list[str | None] = []
        self.pages: dict[str, list[dict[str, Any]]] = {}
        self.patients: dict[str, dict[str, Any]] = {}
        self.tool_names = [
            "request_patient_resource",
            "request_observation_resource",
            "request_encounter_resource",
        ]
        self.unknown_tools: set[str] = set()
        self.tool_errors: dict[str, str] = {}
        self.failures: dict[str, list[Any]] = {}
        self.handshake_failure: Any = None
        self.omit_session_header = False
        self.rotate_to: str | None = None
        self.expired = False

    # --- configuration helpers ---

    def add_records(
        self, resource_type: str, resources: list[dict[str, Any]], page_size: int | None = None
    ) -> None:
        size = page_size or max(len(resources), 1)
        chunks = [resources[i:i + size] for i in range(0, len(resources), size)] or [[]]
        pages = []
        for number, chunk in enumerate(chunks, start=1):
            bundle: dict[str, Any] = {
                "resourceType": "Bundle",
                "type": "searchset",
                "entry": [{"resource": r} for r in chunk],
            }
            if number < len(chunks):
                bundle["link"] = [{
                    "relation": "next",
                    "url": f"{FHIR_BASE}/{resource_type}?_count={size}&_page={number + 1}",
                }]
            pages.append(bundle)
        self.pages[resource_type] = pages

    def fail_next(self, tool: str, *failures: Any) -> None:
        self.failures.setdefault(tool, []).extend(failures)

    def calls_for(self, tool: str) -> list[str]:
        return [path for name, path in self.tool_calls if name == tool]

    @property
    def methods(self) -> list[str]:
        return [r.method for r in self.requests]

    # --- transport ---

    @staticmethod
    def sse(payload: dict[str, Any], headers: dict[str, str] | None = None) -> httpx.Response:
        body = f"event: message\ndata: {json.dumps(payload)}\n\n"
        return httpx.Response(
            200,
            text=body,
            headers={"content-type": "text/event-stream", **(headers or {})},
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        session = request.headers.get("mcp-session-id")
        if request.method == "DELETE":
            self.deleted_sessions.append(session)
            return httpx.Response(200)

        body = json.loads(request.content)
        method = body.get("method")
        request_id = body.get("id")
        params = body.get("params")
        self.requests.append(RecordedRequest(
            method=method,
            id=request_id,
            params=params,
            session_id=session,
            api_key=request.headers.get("x-api-key"),
        ))

        if method == "initialize":
            return self._initialize(request, request_id)
        if method == "notifications/initialized":
            return httpx.Response(202)
        if self.expired:
            return httpx.Response(404, text="session not found")

        headers = {"mcp-session-id": self.rotate_to} if self.rotate_to else None
        if method == "tools/list":
            return self.sse(
                {"jsonrpc": "2.0", "id": request_id,
                 "result": {"tools": [{"name": n} for n in self.tool_names]}},
                headers,
            )
        if method == "tools/call":
            return self._call_tool(request, request_id, params or {}, headers)
        return self.sse({"jsonrpc": "2.0", "id": request_id,
                         "error": {"code": -32601, "message": f"Method not found: {method}"}})

    def _initialize(self, request: httpx.Request, request_id: Any) -> httpx.Response:
        failure = self.handshake_failure
        if failure == "connect":
            raise httpx.ConnectError("connection refused", request=request)
        if isinstance(failure, int):
            return httpx.Response(failure, text="handshake rejected")
        if failure == "malformed":
            return self.sse({"jsonrpc": "2.0", "id": request_id, "result": "not-an-object"},
                            {"mcp-session-id": self.session_id})
        headers = {} if self.omit_session_header else {"mcp-session-id": self.session_id}
        return self.sse({
            "jsonrpc": "2.0",
            "id": request_id,
            "result": {
                "protocolVersion": self.protocol_version,
                "capabilities": {"tools": {"listChanged": False}},
                "serverInfo": {"name": "fake-gateway", "version": "1.0"},
            },
        }, headers)

    def _call_tool(
        self,
        request: httpx.Request,
        request_id: Any,
        params: dict[str, Any],
        headers: dict[str, str] | None,
    ) -> httpx.Response:
        name = params.get("name", "")
        path = params.get("arguments", {}).get("request", {}).get("path", "")
        self.tool_calls.append((name, path))

        queued = self.failures.get(name)
        if queued:
            failure = queued.pop(0)
            if failure == "timeout":
                raise httpx.ReadTimeout("read timed out", request=request)
            if failure == "connect":
                raise httpx.ConnectError("connection refused", request=request)
            if isinstance(failure, int):
                return httpx.Response(failure, text=f"HTTP {failure}",
                                      headers={"retry-after": "2"} if failure == 429 else None)
            return self.sse({"jsonrpc": "2.0", "id": request_id, "error": failure})

        if name in self.unknown_tools:
            return self.sse({"jsonrpc": "2.0", "id": request_id,
                             "error": {"code": -32602, "message": f"Unknown tool: {name}"}})
        if name in self.tool_errors:
            return self.sse({"jsonrpc": "2.0", "id": request_id, "result": {
                "content": [{"type": "text", "text": self.tool_errors[name]}],
                "isError": True,
            }}, headers)

        payload = {"request": {"method": "GET", "path": path}, "response": self._serve(path)}
        return self.sse({"jsonrpc": "2.0", "id": request_id, "result": {
            "content": [{"type": "text", "text": json.dumps(payload)}],
            "isError": False,
        }}, headers)

    def _serve(self, path: str) -> dict[str, Any]:
        parts = urlsplit(path)
        segments = [s for s in parts.path.split("/") if s]
        if len(segments) == 2 and segments[0] == "Patient":
            patient = self.patients.get(segments[1])
            if patient is None:
                return {"resourceType": "OperationOutcome",
                        "issue": [{"severity": "error", "code": "not-found",
                                   "diagnostics": f"Patient/{segments[1]} not found"}]}
            return patient
        resource_type = segments[0] if segments else ""
        page = int(parse_qs(parts.query).get("_page", ["1"])[0])
        pages = self.pages.get(resource_type, [])
        if page <= len(pages):
            return pages[page - 1]
        return {"resourceType": "Bundle", "type": "searchset", "entry": []}


class RecordingSleep:
    """Replacement for asyncio.sleep that records delays without waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def make_gateway_client(fake_gateway, recording_sleep):
    """Factory for GatewayClients wired to ``fake_gateway``."""
    from wellwallet.core.gateway.client import GatewayClient

    def _make(**kwargs: Any) -> GatewayClient:
        kwargs.setdefault("sleep", recording_sleep)
        kwargs.setdefault("retry_backoff", 0.5)
        return GatewayClient(
            GATEWAY_URL,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(fake_gateway.handler)),
            **kwargs,
        )

    return _make


@pytest.fixture
def gateway_client(make_gateway_client):
    return make_gateway_client(api_key="test-key")


# ---------------------------------------------------------------------------
# FHIR fixtures
# ---------------------------------------------------------------------------

def make_observation(
    resource_id: str,
    code: str = "2093-3",
    display: str = "Cholesterol [Mass/volume] in Serum or Plasma",
    date: str = "2024-01-15T09:00:00Z",
    value: float = 190.0,
    status: str = "final",
    category: str = "laboratory",
) -> dict[str, Any]:
    return {
        "resourceType": "Observation",
        "id": resource_id,
        "status": status,
        "category": [{"coding": [{
            "system": "http://terminology.hl7.org/CodeSystem/observation-category",
            "code": category,
        }]}],
        "code": {"coding": [{"system": "http://loinc.org", "code": code, "display": display}]},
        "subject": {"reference": "Patient/p1"},
        "effectiveDateTime": date,
        "valueQuantity": {"value": value, "unit": "mg/dL"},
    }


@pytest.fixture
def observation_factory():
    return make_observation


@pytest.fixture
def patient_resource() -> dict[str, Any]:
    return {
        "resourceType": "Patient",
        "id": "p1",
        "name": [{"family": "Doe", "given": ["Jane"]}],
        "birthDate": "1980-04-02",
    }


# ---------------------------------------------------------------------------
# In-memory storage fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def record_db():
    """Create an in-memory RecordDatabase for testing."""
    from wellwallet.core.storage.database import RecordDatabase

    db = RecordDatabase(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def document_cipher():
    """Create a DocumentCipher with a fresh test key."""
    from wellwallet.core.storage.encryption import DocumentCipher

    return DocumentCipher(DocumentCipher.generate_key())


@pytest.fixture
def record_store(record_db, document_cipher):
    """Create a LocalRecordStore backed by in-memory SQLite."""
    from wellwallet.core.storage.repository import LocalRecordStore

    return LocalRecordStore(record_db, document_cipher)


@pytest.fixture
def audit_logger(record_db):
    """Create an AuditLogger backed by in-memory SQLite."""
    from wellwallet.core.audit.logger import AuditLogger

    return AuditLogger(record_db)


@pytest.fixture
def catalog():
    """The bundled resource catalog."""
    from wellwallet.domains.records.catalog import load_catalog

    return load_catalog()
