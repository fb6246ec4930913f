"""Tests for the per-server connection manager."""

import asyncio

import pytest

from mcp_fleet.config import RetrySettings, ServerAuthSettings
from mcp_fleet.core.events import EventBus, EventType
from mcp_fleet.mcp.connection_manager import ConnectionManager, ConnectionState
from mcp_fleet.mcp.errors import ErrorCode, ProtocolError
from mcp_fleet.mcp.types import ExecutionContext

from conftest import ECHO_TOOL, ADD_TOOL, EventRecorder, ScriptedTransport, make_config


def make_manager(scheduler, fleet, name="calc", **config_kwargs) -> ConnectionManager:
    return ConnectionManager(
        make_config(name, **config_kwargs), scheduler=scheduler, transport_factory=fleet
    )


async def until_open_attempted(server, attempts=1) -> None:
    for _ in range(20):
        if server.open_attempts >= attempts:
            return
        await asyncio.sleep(0)
    raise AssertionError("connection attempt never reached open()")


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_success(self, scheduler, fleet):
        server = fleet.add("calc")
        manager = make_manager(scheduler, fleet)
        events = EventRecorder(manager.events)

        assert await manager.connect() is True

        assert manager.state == ConnectionState.CONNECTED
        assert manager.is_connected
        assert events.types == ["connecting", "connected"]
        assert server.calls["initialize"] == 1
        # Tool list is warmed during connect
        assert server.calls["tools/list"] == 1

    @pytest.mark.asyncio
    async def test_connect_when_connected_is_noop(self, scheduler, fleet):
        server = fleet.add("calc")
        manager = make_manager(scheduler, fleet)
        await manager.connect()
        events = EventRecorder(manager.events)

        assert await manager.connect() is True
        assert server.open_attempts == 1
        assert events.events == []

    @pytest.mark.asyncio
    async def test_headers(self, scheduler, fleet):
        server = fleet.add("calc")
        manager = make_manager(
            scheduler, fleet, auth=ServerAuthSettings(type="bearer", token="secret-token")
        )
        await manager.connect()

        headers = server.headers[0]
        assert headers["X-Session-ID"] == manager.session_id
        assert headers["X-Client-Version"] == "2.0.0"
        assert headers["Authorization"] == "Bearer secret-token"
        assert manager.session_id.startswith("mcp_session_")

    def test_api_key_header_from_env(self, scheduler, fleet, monkeypatch):
        monkeypatch.setenv("CALC_API_KEY", "k-123")
        manager = make_manager(
            scheduler, fleet, auth=ServerAuthSettings(type="apikey", token_env="CALC_API_KEY")
        )

        headers = manager.build_headers()
        assert headers["X-API-Key"] == "k-123"
        assert "Authorization" not in headers

    @pytest.mark.asyncio
    async def test_declared_capabilities_sent(self, scheduler, fleet):
        server = fleet.add("calc")
        manager = make_manager(scheduler, fleet)
        await manager.connect()

        _, params = server.requests[0]
        assert params["capabilities"] == {"roots": {"listChanged": True}}


class TestRetry:
    @pytest.mark.asyncio
    async def test_retry_bound_and_backoff(self, scheduler, fleet):
        server = fleet.add("calc", reachable=False)
        manager = make_manager(scheduler, fleet)
        events = EventRecorder(manager.events)

        assert await manager.connect() is False
        assert manager.state == ConnectionState.ERROR
        assert server.open_attempts == 1

        await scheduler.advance(1000)

        # 1 initial attempt + 3 retries
        assert server.open_attempts == 4
        assert scheduler.delays == [1.0, 2.0, 4.0]
        assert manager.state == ConnectionState.ERROR
        assert events.types == ["connecting", "error"] * 4
        assert scheduler.pending == 0

    @pytest.mark.asyncio
    async def test_custom_backoff(self, scheduler, fleet):
        fleet.add("calc", reachable=False)
        manager = make_manager(
            scheduler,
            fleet,
            retry=RetrySettings(max_retries=4, retry_delay_ms=500, backoff_multiplier=3),
        )

        await manager.connect()
        await scheduler.advance(1000)

        assert scheduler.delays == [0.5, 1.5, 4.5, 13.5]

    @pytest.mark.asyncio
    async def test_explicit_connect_after_exhaustion(self, scheduler, fleet):
        server = fleet.add("calc", reachable=False)
        manager = make_manager(scheduler, fleet)
        await manager.connect()
        await scheduler.advance(1000)
        assert server.open_attempts == 4

        server.reachable = True
        assert await manager.connect() is True
        assert server.open_attempts == 5
        assert manager.retry_count == 0

    @pytest.mark.asyncio
    async def test_recovers_during_retries(self, scheduler, fleet):
        server = fleet.add("calc", reachable=False)
        manager = make_manager(scheduler, fleet)
        events = EventRecorder(manager.events)
        await manager.connect()

        server.reachable = True
        await scheduler.advance(1)

        assert manager.state == ConnectionState.CONNECTED
        assert events.types == ["connecting", "error", "connecting", "connected"]

    @pytest.mark.asyncio
    async def test_error_event_carries_reason(self, scheduler, fleet):
        fleet.add("calc", reachable=False)
        manager = make_manager(scheduler, fleet)
        events = EventRecorder(manager.events)

        await manager.connect()

        error = events.events[-1]
        assert error.type == EventType.ERROR
        assert error.data["error"] == "Connection refused"
        assert error.data["retry_count"] == 0


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(self, scheduler, fleet):
        manager = make_manager(scheduler, fleet)
        events = EventRecorder(manager.events)

        await manager.disconnect()
        await manager.disconnect()

        assert manager.state == ConnectionState.DISCONNECTED
        assert events.events == []

    @pytest.mark.asyncio
    async def test_disconnect_after_connect(self, scheduler, fleet):
        server = fleet.add("calc")
        manager = make_manager(scheduler, fleet)
        await manager.connect()
        events = EventRecorder(manager.events)

        await manager.disconnect()
        await manager.disconnect()

        assert events.types == ["disconnected"]
        assert server.closed == 1
        assert manager.cache_stats()["size"] == 0
        assert scheduler.pending == 0
        await scheduler.advance(600)
        assert server.calls["tools/list"] == 1

    @pytest.mark.asyncio
    async def test_disconnect_cancels_pending_retry(self, scheduler, fleet):
        server = fleet.add("calc", reachable=False)
        manager = make_manager(scheduler, fleet)
        await manager.connect()

        await manager.disconnect()
        await scheduler.advance(100)

        assert server.open_attempts == 1
        assert manager.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_close_errors_are_swallowed(self, scheduler, fleet):
        server = fleet.add("calc")

        class BrokenClose(ScriptedTransport):
            async def close(self):
                raise RuntimeError("close failed")

        manager = ConnectionManager(
            make_config("calc"),
            scheduler=scheduler,
            transport_factory=lambda config, headers: BrokenClose(server, headers),
        )
        await manager.connect()

        await manager.disconnect()
        assert manager.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_disconnect_during_handshake_wins(self, scheduler, fleet):
        server = fleet.add("calc")
        server.gate = asyncio.Event()
        manager = make_manager(scheduler, fleet)
        events = EventRecorder(manager.events)

        attempt = asyncio.create_task(manager.connect())
        await until_open_attempted(server)
        await manager.disconnect()
        server.gate.set()

        assert await attempt is False
        assert manager.state == ConnectionState.DISCONNECTED
        assert not manager.is_connected
        assert events.types == ["connecting", "disconnected"]
        assert scheduler.pending == 0
        assert manager.cache_stats()["size"] == 0
        assert server.closed == 2

        await scheduler.advance(600)
        assert manager.state == ConnectionState.DISCONNECTED
        assert server.open_attempts == 1

        server.gate = None
        assert await manager.connect() is True
        assert manager.state == ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_failed_handshake_after_disconnect_schedules_nothing(self, scheduler, fleet):
        server = fleet.add("calc", reachable=False)
        server.gate = asyncio.Event()
        manager = make_manager(scheduler, fleet)
        events = EventRecorder(manager.events)

        attempt = asyncio.create_task(manager.connect())
        await until_open_attempted(server)
        await manager.disconnect()
        server.gate.set()

        assert await attempt is False
        assert manager.state == ConnectionState.DISCONNECTED
        assert events.types == ["connecting", "disconnected"]
        assert manager.retry_count == 0
        assert scheduler.pending == 0

        await scheduler.advance(100)
        assert server.open_attempts == 1

    @pytest.mark.asyncio
    async def test_disconnect_during_retry_handshake(self, scheduler, fleet):
        server = fleet.add("calc", reachable=False)
        manager = make_manager(scheduler, fleet)
        await manager.connect()
        assert manager.state == ConnectionState.ERROR

        server.reachable = True
        server.gate = asyncio.Event()
        retry = asyncio.create_task(scheduler.advance(1))
        await until_open_attempted(server, attempts=2)
        await manager.disconnect()
        server.gate.set()
        await retry

        assert manager.state == ConnectionState.DISCONNECTED
        assert scheduler.pending == 0

    def test_uses_injected_event_bus(self, scheduler, fleet):
        bus = EventBus("shared")
        manager = ConnectionManager(
            make_config("calc"), scheduler=scheduler, transport_factory=fleet, event_bus=bus
        )

        assert len(bus) == 0
        assert manager.events is bus



class TestHealthCheck:
    @pytest.mark.asyncio
    async def test_periodic_probe_bypasses_cache(self, scheduler, fleet):
        server = fleet.add("calc")
        manager = make_manager(scheduler, fleet)
        await manager.connect()

        await scheduler.advance(30)
        await scheduler.advance(30)

        assert server.calls["tools/list"] == 3
        assert manager.state == ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_failed_probe_reconnects(self, scheduler, fleet):
        server = fleet.add("calc")
        manager = make_manager(scheduler, fleet)
        await manager.connect()
        events = EventRecorder(manager.events)

        server.reachable = False
        await scheduler.advance(30)

        assert events.types == ["health_check_failed", "connecting", "error"]
        assert manager.state == ConnectionState.ERROR

        server.reachable = True
        await scheduler.advance(1)

        assert manager.state == ConnectionState.CONNECTED
        assert events.types[-2:] == ["connecting", "connected"]

    @pytest.mark.asyncio
    async def test_health_check_when_disconnected(self, scheduler, fleet):
        manager = make_manager(scheduler, fleet)
        assert await manager.health_check() is False


class TestCallTool:
    @pytest.mark.asyncio
    async def test_successful_call(self, scheduler, fleet):
        fleet.add("calc")
        manager = make_manager(scheduler, fleet)
        await manager.connect()
        events = EventRecorder(manager.events)
        context = ExecutionContext(session_id="chat-1", user_id="alice")

        result = await manager.call_tool("add", {"a": 2, "b": 3}, context=context)

        assert result.success is True
        assert result.text() == "5"
        assert result.error is None
        assert result.execution_time_ms >= 0
        assert result.metadata.tool_name == "add"
        assert result.metadata.server_name == "calc"
        assert result.metadata.session_id == manager.session_id
        assert result.metadata.context == context
        assert events.types == ["tool_called"]

    @pytest.mark.asyncio
    async def test_missing_argument_sends_nothing(self, scheduler, fleet):
        server = fleet.add("calc")
        manager = make_manager(scheduler, fleet)
        await manager.connect()
        requests_before = len(server.requests)
        events = EventRecorder(manager.events)

        result = await manager.call_tool("add", {"a": 2})

        assert result.success is False
        assert result.error.code == ErrorCode.INVALID_ARGUMENTS.value
        assert result.error.message == "Missing required argument: b"
        assert result.error.details["missing"] == "b"
        assert result.error.details["tool_name"] == "add"
        assert server.calls["tools/call"] == 0
        assert len(server.requests) == requests_before
        assert events.types == ["tool_error"]

    @pytest.mark.asyncio
    async def test_invalid_argument_type(self, scheduler, fleet):
        fleet.add("calc", tools=[ECHO_TOOL])
        manager = make_manager(scheduler, fleet)
        await manager.connect()

        result = await manager.call_tool("echo", {"message": "hi", "mode": "loud"})

        assert result.error.code == ErrorCode.INVALID_ARGUMENTS.value
        assert "missing" not in result.error.details

    @pytest.mark.asyncio
    async def test_unknown_tool(self, scheduler, fleet):
        server = fleet.add("calc")
        manager = make_manager(scheduler, fleet)
        await manager.connect()

        result = await manager.call_tool("subtract", {"a": 1, "b": 2})

        assert result.success is False
        assert result.error.code == ErrorCode.TOOL_NOT_FOUND.value
        assert server.calls["tools/call"] == 0

    @pytest.mark.asyncio
    async def test_not_connected_fails_fast(self, scheduler, fleet):
        server = fleet.add("calc")
        manager = make_manager(scheduler, fleet)

        result = await manager.call_tool("add", {"a": 1, "b": 2})

        assert result.success is False
        assert result.error.code == ErrorCode.NOT_CONNECTED.value
        assert server.requests == []
        assert server.open_attempts == 0

    @pytest.mark.asyncio
    async def test_remote_execution_error_passed_through(self, scheduler, fleet):
        fleet.add(
            "calc",
            handlers={
                "tools/call": lambda p: {
                    "content": [{"type": "text", "text": "division by zero"}],
                    "isError": True,
                }
            },
        )
        manager = make_manager(scheduler, fleet)
        await manager.connect()
        events = EventRecorder(manager.events)

        result = await manager.call_tool("add", {"a": 1, "b": 0})

        assert result.success is False
        assert result.error.code == ErrorCode.TOOL_EXECUTION_ERROR.value
        assert result.error.message == "division by zero"
        assert result.text() == "division by zero"
        assert events.types == ["tool_error"]

    @pytest.mark.asyncio
    async def test_protocol_error_becomes_result(self, scheduler, fleet):
        def fail(params):
            raise ProtocolError(-32603, "internal failure")

        server = fleet.add("calc", handlers={"tools/call": fail})
        manager = make_manager(scheduler, fleet)
        await manager.connect()

        result = await manager.call_tool("add", {"a": 1, "b": 2})

        assert result.success is False
        assert result.error.code == ErrorCode.TOOL_EXECUTION_ERROR.value
        assert result.error.details["rpc_code"] == -32603
        # Never retried
        assert server.calls["tools/call"] == 1

    @pytest.mark.asyncio
    async def test_transport_failure_becomes_result(self, scheduler, fleet):
        server = fleet.add("calc")
        manager = make_manager(scheduler, fleet)
        await manager.connect()

        server.reachable = False
        result = await manager.call_tool("add", {"a": 1, "b": 2})

        assert result.success is False
        assert result.error.code == ErrorCode.TOOL_EXECUTION_ERROR.value

    @pytest.mark.asyncio
    async def test_result_cache(self, scheduler, fleet):
        server = fleet.add("calc")
        manager = make_manager(scheduler, fleet)
        await manager.connect()

        first = await manager.call_tool("add", {"a": 1, "b": 2}, use_cache=True)
        second = await manager.call_tool("add", {"b": 2, "a": 1}, use_cache=True)
        assert first == second
        assert server.calls["tools/call"] == 1

        await manager.call_tool("add", {"a": 1, "b": 2})
        assert server.calls["tools/call"] == 2

        await scheduler.advance(61)
        await manager.call_tool("add", {"a": 1, "b": 2}, use_cache=True)
        assert server.calls["tools/call"] == 3

    @pytest.mark.asyncio
    async def test_failures_are_not_cached(self, scheduler, fleet):
        responses = iter(
            [
                {"content": [{"type": "text", "text": "busy"}], "isError": True},
                {"content": [{"type": "text", "text": "3"}]},
            ]
        )
        server = fleet.add("calc", handlers={"tools/call": lambda p: next(responses)})
        manager = make_manager(scheduler, fleet)
        await manager.connect()

        first = await manager.call_tool("add", {"a": 1, "b": 2}, use_cache=True)
        second = await manager.call_tool("add", {"a": 1, "b": 2}, use_cache=True)

        assert first.success is False
        assert second.success is True
        assert server.calls["tools/call"] == 2


class TestListOperations:
    @pytest.mark.asyncio
    async def test_list_tools_uses_cache(self, scheduler, fleet):
        server = fleet.add("calc", tools=[ADD_TOOL, ECHO_TOOL])
        manager = make_manager(scheduler, fleet)
        await manager.connect()

        result = await manager.list_tools()
        assert result.success
        assert [t.name for t in result.value] == ["add", "echo"]
        assert server.calls["tools/list"] == 1

        await manager.list_tools(use_cache=False)
        assert server.calls["tools/list"] == 2

    @pytest.mark.asyncio
    async def test_list_tools_not_connected(self, scheduler, fleet):
        manager = make_manager(scheduler, fleet)

        result = await manager.list_tools()

        assert result.success is False
        assert result.error.code == ErrorCode.NOT_CONNECTED.value

    @pytest.mark.asyncio
    async def test_list_tools_error_code(self, scheduler, fleet):
        calls = {"n": 0}

        def flaky(params):
            calls["n"] += 1
            if calls["n"] > 1:
                raise ProtocolError(-32603, "tools unavailable")
            return {"tools": [ADD_TOOL]}

        fleet.add("calc", handlers={"tools/list": flaky})
        manager = make_manager(scheduler, fleet)
        await manager.connect()

        result = await manager.list_tools(use_cache=False)

        assert result.success is False
        assert result.error.code == ErrorCode.TOOLS_LIST_ERROR.value
        assert "tools unavailable" in result.error.message

    @pytest.mark.asyncio
    async def test_resources(self, scheduler, fleet):
        server = fleet.add("calc")
        manager = make_manager(scheduler, fleet)
        await manager.connect()

        listing = await manager.list_resources()
        read = await manager.read_resource("file:///notes.txt")
        await manager.read_resource("file:///notes.txt")

        assert listing.value[0].uri == "file:///notes.txt"
        assert read.value[0].text == "hello"
        assert server.calls["resources/read"] == 1
        assert "resource:file:///notes.txt" in manager.cache_stats()["keys"]

        await scheduler.advance(121)
        await manager.read_resource("file:///notes.txt")
        assert server.calls["resources/read"] == 2

    @pytest.mark.asyncio
    async def test_prompts(self, scheduler, fleet):
        server = fleet.add("calc")
        manager = make_manager(scheduler, fleet)
        await manager.connect()

        prompts = await manager.list_prompts()
        prompt = await manager.get_prompt("greet", {"who": "fleet"})
        await manager.get_prompt("greet", {"who": "fleet"})

        assert prompts.value[0].name == "greet"
        assert prompt.value.messages[0].content.text == "Hello fleet"
        assert server.calls["prompts/get"] == 2

    @pytest.mark.asyncio
    async def test_clear_cache_and_info(self, scheduler, fleet):
        fleet.add("calc")
        manager = make_manager(scheduler, fleet)
        await manager.connect()
        await manager.list_resources()

        assert manager.clear_cache("resources") == 1
        assert manager.cache_stats()["keys"] == ["tools:calc"]

        info = manager.connection_info()
        assert info["server_name"] == "calc"
        assert info["state"] == "connected"
        assert info["retry_count"] == 0
        assert info["session_id"] == manager.session_id
