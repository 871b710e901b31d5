"""Session client for the remote FHIR gateway.

The gateway speaks JSON-RPC 2.0 over HTTP POST and frames its answers as
Server-Sent Events. ``tools/call`` is the only data-access primitive; every
FHIR read goes through a named gateway tool with a ``{request: {...}}``
argument.

The client owns exactly one ``Session`` and routes every mutation of it
through a small state machine::

    UNINITIALIZED -> INITIALIZING -> ACTIVE <-> DEGRADED
                                        \\          |
                                         +-> CLOSED <+

Usage::

    client = GatewayClient("http://127.0.0.1:8000/mcp", api_key="...")
    await client.initialize()
    result = await client.call_tool(
        "request_observation_resource",
        {"request": {"method": "GET", "path": "/Observation?subject=Patient/p1", "body": None}},
    )
    bundle = unwrap_tool_result(result)
    await client.aclose()
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import re
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from wellwallet.core.gateway.models import (
    SESSION_HEADER,
    RequestEnvelope,
    ResponseEnvelope,
    Session,
    SessionState,
)
from wellwallet.core.gateway.sse import FramingError, decode_envelopes, match_response

logger = logging.getLogger(__name__)

DEFAULT_PROTOCOL_VERSION = "2025-06-18"
DEFAULT_CLIENT_INFO = {"name": "wellwallet", "version": "0.1.0"}

# JSON-RPC error codes
INVALID_PARAMS = -32602
RATE_LIMITED = -32029

_UNKNOWN_TOOL_RE = re.compile(r"\bunknown tool\b|\btool\b.*\bnot found\b", re.IGNORECASE)


class GatewayClient:
    """Async client holding one logical session with the gateway.

    Attributes:
        url: The gateway's JSON-RPC endpoint.
    """

    def __init__(
        self,
        url: str,
        *,
        api_key: str = "",
        protocol_version: str = DEFAULT_PROTOCOL_VERSION,
        timeout: float = 30.0,
        retry_backoff: float = 0.5,
        degraded_failure_limit: int = 5,
        client_info: dict[str, str] | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.url = url
        self._api_key = api_key
        self._protocol_version = protocol_version
        self._timeout = timeout
        self._retry_backoff = retry_backoff
        self._degraded_failure_limit = max(1, degraded_failure_limit)
        self._client_info = client_info or dict(DEFAULT_CLIENT_INFO)
        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        self._sleep = sleep

        self._session = Session()
        # Request ids never repeat for the lifetime of the client, so they are
        # also strictly increasing within every session it opens.
        self._ids = itertools.count(1)
        self._initializing: asyncio.Future[Session] | None = None
        self._consecutive_failures = 0

    @property
    def session(self) -> Session:
        return self._session

    @property
    def state(self) -> SessionState:
        return self._session.state

    @property
    def session_id(self) -> str | None:
        return self._session.session_id

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> Session:
        """Perform the ``initialize`` handshake and activate the session.

        A no-op returning the current session when it is already usable.
        Concurrent callers share the single in-flight handshake.

        Raises:
            SessionError: If the gateway is unreachable, refuses the
                handshake, or answers with a malformed payload.
        """
        if self._session.usable:
            return self._session

        if self._initializing is None:
            self._initializing = asyncio.ensure_future(self._handshake())
        task = self._initializing
        try:
            return await asyncio.shield(task)
        finally:
            if task.done() and self._initializing is task:
                self._initializing = None

    async def close(self) -> None:
        """Close the session unconditionally and release its identifier.

        The gateway is asked to drop the session (HTTP DELETE); that request
        is best-effort and never prevents the local transition to CLOSED.
        """
        session_id = self._session.session_id
        self._session.clear(SessionState.CLOSED)
        self._consecutive_failures = 0
        logger.info("Gateway session closed")

        if not session_id:
            return
        try:
            await self._http.delete(
                self.url, headers=self._headers(session_id), timeout=self._timeout
            )
        except httpx.HTTPError as exc:
            logger.debug("Session termination request failed: %s", exc)

    async def aclose(self) -> None:
        """Close the session and the underlying HTTP connection pool."""
        await self.close()
        await self._http.aclose()

    async def __aenter__(self) -> GatewayClient:
        await self.initialize()
        return self

    async def __aexit__(self, *args) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any],
        *,
        timeout: float | None = None,
        retry_once: bool = False,
    ) -> dict[str, Any]:
        """Invoke a gateway tool through ``tools/call``.

        Args:
            name: Gateway tool name.
            arguments: Tool arguments.
            timeout: Per-call timeout in seconds (defaults to the client's).
            retry_once: Schedule a single retry after a transient failure.
                Longer retry loops belong to the caller (see ``with_backoff``).

        Returns:
            The raw ``tools/call`` result object.

        Raises:
            NotInitializedError: If the session is not active.
            UnknownToolError: If the gateway rejects ``name`` as unknown.
            ToolExecutionError: If the tool ran and reported an error.
            ProtocolError: For any other application-level rejection.
            RateLimitedError, GatewayTimeoutError, GatewayUnavailableError:
                Transient failures.
        """
        try:
            return await self._call_tool_once(name, arguments, timeout)
        except TransientGatewayError as exc:
            if not retry_once or not self._session.usable:
                raise
            delay = self._retry_backoff
            if isinstance(exc, RateLimitedError) and exc.retry_after:
                delay = max(delay, exc.retry_after)
            logger.info("Retrying tool %s once in %.2fs after %s", name, delay, exc)
            await self._sleep(delay)
            return await self._call_tool_once(name, arguments, timeout)

    async def list_tools(self, *, timeout: float | None = None) -> set[str]:
        """Return the names of the tools the gateway currently advertises.

        Diagnostic only; ``call_tool`` never consults it.
        """
        names: set[str] = set()
        seen_cursors: set[str] = set()
        cursor: str | None = None
        while True:
            params: dict[str, Any] = {"cursor": cursor} if cursor else {}
            result = await self._request("tools/list", params, timeout)
            if not isinstance(result, dict):
                raise ProtocolError("Malformed tools/list result", data=result)
            for tool in result.get("tools") or []:
                if isinstance(tool, dict) and tool.get("name"):
                    names.add(str(tool["name"]))
            cursor = result.get("nextCursor")
            if not cursor or cursor in seen_cursors:
                return names
            seen_cursors.add(cursor)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _handshake(self) -> Session:
        self._session.state = SessionState.INITIALIZING
        request_id = next(self._ids)
        envelope = RequestEnvelope(
            method="initialize",
            params={
                "protocolVersion": self._protocol_version,
                "capabilities": {},
                "clientInfo": self._client_info,
            },
            id=request_id,
        )
        logger.info("Initializing gateway session at %s", self.url)

        try:
            response = await self._send(envelope, self._timeout, session_id=None)
            self._complete_handshake(response, request_id)
            await self._notify_initialized()
        except TransientGatewayError as exc:
            self._session.clear(SessionState.UNINITIALIZED)
            raise SessionError(f"Gateway unreachable at {self.url}: {exc}") from exc
        except SessionError:
            self._session.clear(SessionState.UNINITIALIZED)
            raise

        self._consecutive_failures = 0
        self._session.state = SessionState.ACTIVE
        logger.info(
            "Gateway session %s active (protocol %s)",
            self._session.session_id,
            self._session.protocol_version,
        )
        return self._session

    def _complete_handshake(self, response: httpx.Response, request_id: int) -> None:
        if response.status_code != 200:
            raise SessionError(
                f"Handshake rejected (HTTP {response.status_code}): {response.text}"
            )

        session_id = response.headers.get(SESSION_HEADER)
        if not session_id:
            raise SessionError("Session ID not received from gateway")

        try:
            envelopes = decode_envelopes(
                response.text, response.headers.get("content-type", "")
            )
        except FramingError as exc:
            raise SessionError(f"Malformed handshake payload: {exc}") from exc

        envelope = match_response(envelopes, request_id)
        if envelope is None:
            raise SessionError("Handshake response missing from gateway reply")
        if not envelope.ok:
            raise SessionError(f"Handshake refused: {envelope.error_message}")

        result = envelope.result
        if not isinstance(result, dict) or not isinstance(result.get("protocolVersion"), str):
            raise SessionError("Malformed handshake payload: missing protocolVersion")

        self._session.session_id = session_id
        self._session.protocol_version = result["protocolVersion"]
        self._session.server_info = result.get("serverInfo") or {}
        self._session.capabilities = result.get("capabilities") or {}

    async def _notify_initialized(self) -> None:
        notification = RequestEnvelope(method="notifications/initialized")
        response = await self._send(
            notification, self._timeout, session_id=self._session.session_id
        )
        if response.status_code >= 400:
            raise SessionError(
                f"Gateway rejected initialized notification (HTTP {response.status_code})"
            )

    async def _call_tool_once(
        self, name: str, arguments: dict[str, Any], timeout: float | None
    ) -> dict[str, Any]:
        logger.debug("Calling gateway tool %s", name)
        result = await self._request(
            "tools/call", {"name": name, "arguments": arguments}, timeout
        )
        if not isinstance(result, dict):
            raise ProtocolError(f"Malformed tools/call result from {name}", data=result)

        if result.get("isError"):
            message = _content_text(result) or f"Tool {name} reported an error"
            if _UNKNOWN_TOOL_RE.search(message):
                raise UnknownToolError(message, tool_name=name)
            raise ToolExecutionError(message, tool_name=name)
        return result

    async def _request(
        self, method: str, params: dict[str, Any], timeout: float | None
    ) -> Any:
        if not self._session.usable:
            raise NotInitializedError(
                f"Cannot call {method}: session is {self._session.state.value}. "
                "Call initialize() first."
            )

        request_id = next(self._ids)
        envelope = RequestEnvelope(method=method, params=params, id=request_id)
        sent_session = self._session.session_id

        try:
            response = await self._send(
                envelope, timeout or self._timeout, session_id=sent_session
            )
            self._raise_for_status(response, sent_session)
        except TransientGatewayError as exc:
            self._record_transient_failure(exc)
            raise

        try:
            envelopes = decode_envelopes(
                response.text, response.headers.get("content-type", "")
            )
        except FramingError as exc:
            raise ProtocolError(f"Undecodable {method} response: {exc}") from exc

        reply = match_response(envelopes, request_id)
        if reply is None:
            raise ProtocolError(f"No response for request {request_id} ({method})")
        if not reply.ok:
            error = _classify_error(reply, method, params)
            if isinstance(error, TransientGatewayError):
                self._record_transient_failure(error)
            else:
                self._record_success()
            raise error

        self._record_success()
        return reply.result

    async def _send(
        self,
        envelope: RequestEnvelope,
        timeout: float,
        *,
        session_id: str | None,
    ) -> httpx.Response:
        try:
            response = await self._http.post(
                self.url,
                content=envelope.encode(),
                headers=self._headers(session_id),
                timeout=timeout,
            )
        except httpx.TimeoutException as exc:
            raise GatewayTimeoutError(
                f"{envelope.method} timed out after {timeout:.1f}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise GatewayUnavailableError(f"{envelope.method} failed: {exc}") from exc

        rotated = response.headers.get(SESSION_HEADER)
        if rotated and session_id and rotated != session_id:
            logger.info("Gateway rotated session id")
            self._session.session_id = rotated
        return response

    def _headers(self, session_id: str | None) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
        }
        if self._api_key:
            headers["X-API-Key"] = self._api_key
        if session_id:
            headers[SESSION_HEADER] = session_id
        return headers

    def _raise_for_status(self, response: httpx.Response, sent_session: str | None) -> None:
        status = response.status_code
        if status < 400:
            return
        if status == 429:
            raise RateLimitedError(
                "Gateway rate limit exceeded",
                retry_after=_parse_retry_after(response.headers.get("retry-after")),
            )
        if status == 404 and sent_session:
            self._session.clear(SessionState.CLOSED)
            raise SessionExpiredError(
                "Gateway no longer recognises the session; call initialize() again"
            )
        if status in (502, 503, 504):
            raise GatewayUnavailableError(f"Gateway unavailable (HTTP {status})")
        raise ProtocolError(f"HTTP {status}: {response.text}", status_code=status)

    def _record_success(self) -> None:
        self._consecutive_failures = 0
        if self._session.state is SessionState.DEGRADED:
            logger.info("Gateway session recovered")
            self._session.state = SessionState.ACTIVE

    def _record_transient_failure(self, exc: TransientGatewayError) -> None:
        self._consecutive_failures += 1
        if self._consecutive_failures >= self._degraded_failure_limit:
            logger.error(
                "Closing gateway session after %d consecutive transient failures",
                self._consecutive_failures,
            )
            self._session.clear(SessionState.CLOSED)
            self._consecutive_failures = 0
        elif self._session.state is SessionState.ACTIVE:
            logger.warning("Gateway session degraded: %s", exc)
            self._session.state = SessionState.DEGRADED


# ------------------------------------------------------------------
# Exceptions
# ------------------------------------------------------------------

class GatewayError(Exception):
    """Base exception for gateway client errors."""


class SessionError(GatewayError):
    """No session could be established (transport or handshake failure)."""


class SessionExpiredError(SessionError):
    """The gateway dropped the session; a new handshake is required."""


class NotInitializedError(GatewayError):
    """A call was made without an active session."""


class ProtocolError(GatewayError):
    """The gateway rejected a well-formed call.

    ``message`` is the raw server message.
    """

    def __init__(
        self,
        message: str,
        *,
        code: int | None = None,
        data: Any = None,
        status_code: int | None = None,
        tool_name: str | None = None,
    ) -> None:
        self.message = message
        self.code = code
        self.data = data
        self.status_code = status_code
        self.tool_name = tool_name
        super().__init__(message)


class UnknownToolError(ProtocolError):
    """The gateway rejected a tool name as unknown (registry inconsistency)."""


class ToolExecutionError(ProtocolError):
    """The tool ran but its result carries ``isError``."""


class TransientGatewayError(GatewayError):
    """Failure eligible for bounded retry."""


class RateLimitedError(TransientGatewayError):
    """The gateway signalled a rate limit."""

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(message)


class GatewayTimeoutError(TransientGatewayError):
    """A call exceeded its timeout."""


class GatewayUnavailableError(TransientGatewayError):
    """The gateway could not be reached or answered 502/503/504."""


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------

def _classify_error(reply: ResponseEnvelope, method: str, params: dict[str, Any]) -> GatewayError:
    message = reply.error_message
    data = (reply.error or {}).get("data")
    tool_name = params.get("name") if method == "tools/call" else None

    if reply.error_code == RATE_LIMITED or "rate limit" in message.lower():
        retry_after = data.get("retryAfter") if isinstance(data, dict) else None
        return RateLimitedError(
            message, retry_after=float(retry_after) if retry_after is not None else None
        )
    if method == "tools/call" and _UNKNOWN_TOOL_RE.search(message):
        return UnknownToolError(message, code=reply.error_code, data=data, tool_name=tool_name)
    return ProtocolError(message, code=reply.error_code, data=data, tool_name=tool_name)


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def _content_text(result: dict[str, Any]) -> str:
    for block in result.get("content") or []:
        if isinstance(block, dict) and isinstance(block.get("text"), str):
            return block["text"]
    return ""


def unwrap_tool_result(result: dict[str, Any]) -> Any:
    """Extract the FHIR payload (Bundle or resource) from a ``tools/call`` result.

    The gateway may return:
    - ``structuredContent`` holding ``{"result": {...}}`` or the payload itself
    - ``content`` blocks whose first ``text`` block holds JSON (or an object)
    and wraps the FHIR body as ``{"request": ..., "response": <body>}``.

    Raises:
        ProtocolError: If no decodable payload is present.
    """
    payload: Any = None

    structured = result.get("structuredContent")
    if isinstance(structured, dict):
        payload = structured.get("result", structured)

    if payload is None:
        for block in result.get("content") or []:
            if not isinstance(block, dict):
                continue
            if isinstance(block.get("data"), (dict, list)):
                payload = block["data"]
                break
            text = block.get("text")
            if isinstance(text, (dict, list)):
                payload = text
                break
            if isinstance(text, str):
                try:
                    payload = json.loads(text)
                except json.JSONDecodeError as exc:
                    raise ProtocolError(f"Tool returned non-JSON text: {exc}") from exc
                break

    if payload is None:
        raise ProtocolError("Tool result carries no usable content", data=result)

    if isinstance(payload, dict) and "response" in payload:
        return payload["response"]
    return payload
