"""Tests for GatewayClient: handshake, session state machine, error classification."""

from __future__ import annotations

import asyncio

import pytest

from wellwallet.core.gateway.client import (
    GatewayTimeoutError,
    GatewayUnavailableError,
    NotInitializedError,
    ProtocolError,
    RateLimitedError,
    SessionError,
    SessionExpiredError,
    ToolExecutionError,
    UnknownToolError,
    unwrap_tool_result,
)
from wellwallet.core.gateway.models import SessionState

OBSERVATION_TOOL = "request_observation_resource"
ARGS = {"request": {"method": "GET", "path": "/Observation?subject=Patient/p1", "body": None}}


def _run(coro):
    """Run an async coroutine synchronously (no pytest-asyncio required)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class TestHandshake:
    def test_initialize_captures_session_id(self, gateway_client, fake_gateway):
        session = _run(gateway_client.initialize())
        assert session.session_id == "sess-1"
        assert session.protocol_version == "2025-06-18"
        assert gateway_client.state is SessionState.ACTIVE
        assert session.server_info["name"] == "fake-gateway"

    def test_handshake_sends_initialize_then_initialized_notification(
        self, gateway_client, fake_gateway
    ):
        _run(gateway_client.initialize())
        assert fake_gateway.methods == ["initialize", "notifications/initialized"]

        init, notification = fake_gateway.requests
        assert init.params["protocolVersion"] == "2025-06-18"
        assert init.params["capabilities"] == {}
        assert init.params["clientInfo"]["name"] == "wellwallet"
        assert init.session_id is None
        assert notification.id is None
        assert notification.session_id == "sess-1"

    def test_api_key_header_is_sent(self, gateway_client, fake_gateway):
        _run(gateway_client.initialize())
        assert all(r.api_key == "test-key" for r in fake_gateway.requests)

    def test_initialize_when_active_is_noop(self, gateway_client, fake_gateway):
        async def _go():
            first = await gateway_client.initialize()
            second = await gateway_client.initialize()
            return first, second

        first, second = _run(_go())
        assert first is second
        assert fake_gateway.methods.count("initialize") == 1

    def test_concurrent_initialize_shares_one_handshake(self, gateway_client, fake_gateway):
        async def _go():
            return await asyncio.gather(*(gateway_client.initialize() for _ in range(5)))

        sessions = _run(_go())
        assert all(s.session_id == "sess-1" for s in sessions)
        assert fake_gateway.methods.count("initialize") == 1

    def test_missing_session_header_raises(self, gateway_client, fake_gateway):
        fake_gateway.omit_session_header = True
        with pytest.raises(SessionError, match="Session ID"):
            _run(gateway_client.initialize())
        assert gateway_client.state is SessionState.UNINITIALIZED
        assert gateway_client.session_id is None

    def test_unreachable_gateway_raises_session_error(self, gateway_client, fake_gateway):
        fake_gateway.handshake_failure = "connect"
        with pytest.raises(SessionError, match="unreachable"):
            _run(gateway_client.initialize())
        assert gateway_client.state is SessionState.UNINITIALIZED

    def test_rejected_handshake_raises_session_error(self, gateway_client, fake_gateway):
        fake_gateway.handshake_failure = 500
        with pytest.raises(SessionError, match="HTTP 500"):
            _run(gateway_client.initialize())

    def test_malformed_handshake_payload_raises(self, gateway_client, fake_gateway):
        fake_gateway.handshake_failure = "malformed"
        with pytest.raises(SessionError, match="Malformed"):
            _run(gateway_client.initialize())

    def test_failed_handshake_can_be_retried(self, gateway_client, fake_gateway):
        fake_gateway.handshake_failure = "connect"
        with pytest.raises(SessionError):
            _run(gateway_client.initialize())
        fake_gateway.handshake_failure = None
        session = _run(gateway_client.initialize())
        assert session.session_id == "sess-1"


class TestCallTool:
    def test_call_before_initialize_raises(self, gateway_client, fake_gateway):
        with pytest.raises(NotInitializedError):
            _run(gateway_client.call_tool(OBSERVATION_TOOL, ARGS))
        assert fake_gateway.requests == []

    def test_every_call_carries_session_id(self, gateway_client, fake_gateway):
        async def _go():
            await gateway_client.initialize()
            await gateway_client.call_tool(OBSERVATION_TOOL, ARGS)
            await gateway_client.list_tools()

        _run(_go())
        after_handshake = fake_gateway.requests[1:]
        assert after_handshake
        assert all(r.session_id == "sess-1" for r in after_handshake)

    def test_request_ids_strictly_increase(self, gateway_client, fake_gateway):
        async def _go():
            await gateway_client.initialize()
            for _ in range(3):
                await gateway_client.call_tool(OBSERVATION_TOOL, ARGS)

        _run(_go())
        ids = [r.id for r in fake_gateway.requests if r.id is not None]
        assert ids == sorted(ids)
        assert len(set(ids)) == len(ids)

    def test_session_rotation_is_followed(self, gateway_client, fake_gateway):
        async def _go():
            await gateway_client.initialize()
            fake_gateway.rotate_to = "sess-2"
            await gateway_client.call_tool(OBSERVATION_TOOL, ARGS)
            fake_gateway.rotate_to = None
            await gateway_client.call_tool(OBSERVATION_TOOL, ARGS)

        _run(_go())
        assert gateway_client.session_id == "sess-2"
        assert fake_gateway.requests[-1].session_id == "sess-2"

    def test_returns_raw_tool_result(self, gateway_client, fake_gateway, observation_factory):
        fake_gateway.add_records("Observation", [observation_factory("o1")])

        async def _go():
            await gateway_client.initialize()
            return await gateway_client.call_tool(OBSERVATION_TOOL, ARGS)

        result = _run(_go())
        assert result["isError"] is False
        bundle = unwrap_tool_result(result)
        assert bundle["entry"][0]["resource"]["id"] == "o1"


class TestErrorClassification:
    def test_listed_tool_rejected_as_unknown_is_protocol_error(
        self, gateway_client, fake_gateway
    ):
        fake_gateway.unknown_tools.add(OBSERVATION_TOOL)

        async def _go():
            await gateway_client.initialize()
            listed = await gateway_client.list_tools()
            assert OBSERVATION_TOOL in listed
            await gateway_client.call_tool(OBSERVATION_TOOL, ARGS, retry_once=True)

        with pytest.raises(UnknownToolError) as excinfo:
            _run(_go())
        assert isinstance(excinfo.value, ProtocolError)
        assert "Unknown tool" in excinfo.value.message
        assert excinfo.value.code == -32602
        assert len(fake_gateway.calls_for(OBSERVATION_TOOL)) == 1
        assert gateway_client.state is SessionState.ACTIVE

    def test_tool_error_result_raises_tool_execution_error(
        self, gateway_client, fake_gateway
    ):
        fake_gateway.tool_errors[OBSERVATION_TOOL] = "FHIR server exploded"

        async def _go():
            await gateway_client.initialize()
            await gateway_client.call_tool(OBSERVATION_TOOL, ARGS)

        with pytest.raises(ToolExecutionError, match="exploded"):
            _run(_go())

    def test_json_rpc_error_keeps_raw_message(self, gateway_client, fake_gateway):
        fake_gateway.fail_next(OBSERVATION_TOOL, {"code": -32000, "message": "bad search param"})

        async def _go():
            await gateway_client.initialize()
            await gateway_client.call_tool(OBSERVATION_TOOL, ARGS)

        with pytest.raises(ProtocolError) as excinfo:
            _run(_go())
        assert excinfo.value.message == "bad search param"
        assert excinfo.value.code == -32000

    def test_http_429_raises_rate_limited_with_retry_after(self, gateway_client, fake_gateway):
        fake_gateway.fail_next(OBSERVATION_TOOL, 429)

        async def _go():
            await gateway_client.initialize()
            await gateway_client.call_tool(OBSERVATION_TOOL, ARGS)

        with pytest.raises(RateLimitedError) as excinfo:
            _run(_go())
        assert excinfo.value.retry_after == 2.0

    def test_json_rpc_rate_limit_code(self, gateway_client, fake_gateway):
        fake_gateway.fail_next(OBSERVATION_TOOL, {"code": -32029, "message": "slow down"})

        async def _go():
            await gateway_client.initialize()
            await gateway_client.call_tool(OBSERVATION_TOOL, ARGS)

        with pytest.raises(RateLimitedError):
            _run(_go())

    def test_timeout_is_transient(self, gateway_client, fake_gateway):
        fake_gateway.fail_next(OBSERVATION_TOOL, "timeout")

        async def _go():
            await gateway_client.initialize()
            await gateway_client.call_tool(OBSERVATION_TOOL, ARGS, timeout=1.0)

        with pytest.raises(GatewayTimeoutError):
            _run(_go())

    def test_503_is_unavailable(self, gateway_client, fake_gateway):
        fake_gateway.fail_next(OBSERVATION_TOOL, 503)

        async def _go():
            await gateway_client.initialize()
            await gateway_client.call_tool(OBSERVATION_TOOL, ARGS)

        with pytest.raises(GatewayUnavailableError):
            _run(_go())

    def test_other_4xx_is_protocol_error(self, gateway_client, fake_gateway):
        fake_gateway.fail_next(OBSERVATION_TOOL, 400)

        async def _go():
            await gateway_client.initialize()
            await gateway_client.call_tool(OBSERVATION_TOOL, ARGS)

        with pytest.raises(ProtocolError) as excinfo:
            _run(_go())
        assert excinfo.value.status_code == 400

    def test_expired_session_closes(self, gateway_client, fake_gateway):
        async def _go():
            await gateway_client.initialize()
            fake_gateway.expired = True
            await gateway_client.call_tool(OBSERVATION_TOOL, ARGS)

        with pytest.raises(SessionExpiredError):
            _run(_go())
        assert gateway_client.state is SessionState.CLOSED
        assert gateway_client.session_id is None


class TestDegradedState:
    def test_transient_failure_degrades_then_recovers(self, gateway_client, fake_gateway):
        fake_gateway.fail_next(OBSERVATION_TOOL, 503)
        states = []

        async def _go():
            await gateway_client.initialize()
            with pytest.raises(GatewayUnavailableError):
                await gateway_client.call_tool(OBSERVATION_TOOL, ARGS)
            states.append(gateway_client.state)
            await gateway_client.call_tool(OBSERVATION_TOOL, ARGS)
            states.append(gateway_client.state)

        _run(_go())
        assert states == [SessionState.DEGRADED, SessionState.ACTIVE]

    def test_repeated_transient_failures_close_session(self, make_gateway_client, fake_gateway):
        client = make_gateway_client(degraded_failure_limit=2)
        fake_gateway.fail_next(OBSERVATION_TOOL, 503, "timeout")

        async def _go():
            await client.initialize()
            for _ in range(2):
                with pytest.raises((GatewayUnavailableError, GatewayTimeoutError)):
                    await client.call_tool(OBSERVATION_TOOL, ARGS)
            await client.call_tool(OBSERVATION_TOOL, ARGS)

        with pytest.raises(NotInitializedError):
            _run(_go())
        assert client.state is SessionState.CLOSED

    def test_rate_limit_envelope_keeps_session_degraded(self, gateway_client, fake_gateway):
        fake_gateway.fail_next(OBSERVATION_TOOL, 503, {"code": -32029, "message": "Too many requests"})
        states = []

        async def _go():
            await gateway_client.initialize()
            with pytest.raises(GatewayUnavailableError):
                await gateway_client.call_tool(OBSERVATION_TOOL, ARGS)
            with pytest.raises(RateLimitedError):
                await gateway_client.call_tool(OBSERVATION_TOOL, ARGS)
            states.append(gateway_client.state)

        _run(_go())
        assert states == [SessionState.DEGRADED]

    def test_rate_limit_envelopes_count_toward_close(self, make_gateway_client, fake_gateway):
        client = make_gateway_client(degraded_failure_limit=2)
        rate_limited = {"code": -32029, "message": "Too many requests"}
        fake_gateway.fail_next(OBSERVATION_TOOL, rate_limited, rate_limited)

        async def _go():
            await client.initialize()
            for _ in range(2):
                with pytest.raises(RateLimitedError):
                    await client.call_tool(OBSERVATION_TOOL, ARGS)

        _run(_go())
        assert client.state is SessionState.CLOSED

    def test_retry_once_recovers_from_transient_failure(
        self, gateway_client, fake_gateway, recording_sleep
    ):
        fake_gateway.fail_next(OBSERVATION_TOOL, 503)

        async def _go():
            await gateway_client.initialize()
            return await gateway_client.call_tool(OBSERVATION_TOOL, ARGS, retry_once=True)

        result = _run(_go())
        assert result["isError"] is False
        assert recording_sleep.delays == [0.5]
        assert len(fake_gateway.calls_for(OBSERVATION_TOOL)) == 2
        assert gateway_client.state is SessionState.ACTIVE

    def test_retry_once_honours_retry_after(self, gateway_client, fake_gateway, recording_sleep):
        fake_gateway.fail_next(OBSERVATION_TOOL, 429)

        async def _go():
            await gateway_client.initialize()
            await gateway_client.call_tool(OBSERVATION_TOOL, ARGS, retry_once=True)

        _run(_go())
        assert recording_sleep.delays == [2.0]

    def test_retry_once_only_retries_once(self, gateway_client, fake_gateway):
        fake_gateway.fail_next(OBSERVATION_TOOL, 503, 503)

        async def _go():
            await gateway_client.initialize()
            await gateway_client.call_tool(OBSERVATION_TOOL, ARGS, retry_once=True)

        with pytest.raises(GatewayUnavailableError):
            _run(_go())
        assert len(fake_gateway.calls_for(OBSERVATION_TOOL)) == 2


class TestClose:
    def test_close_clears_session_and_notifies_gateway(self, gateway_client, fake_gateway):
        async def _go():
            await gateway_client.initialize()
            await gateway_client.close()

        _run(_go())
        assert gateway_client.state is SessionState.CLOSED
        assert gateway_client.session_id is None
        assert fake_gateway.deleted_sessions == ["sess-1"]

    def test_calls_after_close_raise_not_initialized(self, gateway_client):
        async def _go():
            await gateway_client.initialize()
            await gateway_client.close()
            await gateway_client.call_tool(OBSERVATION_TOOL, ARGS)

        with pytest.raises(NotInitializedError):
            _run(_go())

    def test_reinitialize_after_close(self, gateway_client, fake_gateway):
        async def _go():
            await gateway_client.initialize()
            await gateway_client.close()
            fake_gateway.session_id = "sess-9"
            await gateway_client.initialize()
            await gateway_client.call_tool(OBSERVATION_TOOL, ARGS)

        _run(_go())
        assert gateway_client.session_id == "sess-9"
        assert fake_gateway.requests[-1].session_id == "sess-9"

    def test_close_without_session_is_safe(self, gateway_client, fake_gateway):
        _run(gateway_client.close())
        assert gateway_client.state is SessionState.CLOSED
        assert fake_gateway.deleted_sessions == []


class TestListTools:
    def test_returns_set_of_names(self, gateway_client, fake_gateway):
        async def _go():
            await gateway_client.initialize()
            return await gateway_client.list_tools()

        names = _run(_go())
        assert names == set(fake_gateway.tool_names)


class TestUnwrapToolResult:
    def test_structured_content_result(self):
        result = {"structuredContent": {"result": {"response": {"resourceType": "Bundle"}}}}
        assert unwrap_tool_result(result) == {"resourceType": "Bundle"}

    def test_text_block_json_with_response_wrapper(self):
        result = {"content": [{"type": "text", "text": '{"request": {}, "response": {"id": "x"}}'}]}
        assert unwrap_tool_result(result) == {"id": "x"}

    def test_unwrapped_payload_passes_through(self):
        result = {"content": [{"type": "text", "text": '{"resourceType": "Patient"}'}]}
        assert unwrap_tool_result(result) == {"resourceType": "Patient"}

    def test_non_json_text_raises(self):
        with pytest.raises(ProtocolError, match="non-JSON"):
            unwrap_tool_result({"content": [{"type": "text", "text": "oops"}]})

    def test_empty_result_raises(self):
        with pytest.raises(ProtocolError):
            unwrap_tool_result({"content": []})
