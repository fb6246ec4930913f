"""Shared fixtures: virtual time and scripted MCP servers."""

import asyncio
import heapq
import itertools
from collections import Counter
from typing import Any, Callable, Dict, List, Optional

import pytest

from mcp_fleet.config import ServerConfig
from mcp_fleet.core.events import EventBus, FleetEvent
from mcp_fleet.core.scheduler import Scheduler, TimerCallback, TimerHandle, invoke_callback
from mcp_fleet.mcp.errors import INVALID_PARAMS, ProtocolError, TransportError
from mcp_fleet.mcp.transport import Transport

ADD_TOOL = {
    "name": "add",
    "description": "Add two numbers",
    "inputSchema": {
        "type": "object",
        "properties": {"a": {"type": "number"}, "b": {"type": "number"}},
        "required": ["a", "b"],
    },
}

ECHO_TOOL = {
    "name": "echo",
    "description": "Echo a message",
    "inputSchema": {
        "type": "object",
        "properties": {
            "message": {"type": "string"},
            "mode": {"type": "string", "enum": ["plain", "upper"]},
        },
        "required": ["message"],
    },
}


class VirtualScheduler(Scheduler):
    """
    Deterministic scheduler: time only moves when a test calls ``advance``.
    """

    def __init__(self):
        self._now = 0.0
        self._queue: list = []
        self._seq = itertools.count()
        self.delays: List[float] = []

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle:
        handle = TimerHandle()
        self.delays.append(delay)
        heapq.heappush(self._queue, (self._now + delay, next(self._seq), handle, callback))
        return handle

    @property
    def pending(self) -> int:
        return sum(1 for _, _, handle, _ in self._queue if not handle.cancelled)

    async def advance(self, seconds: float) -> None:
        """Run every timer due within ``seconds``, in deadline order."""
        target = self._now + seconds
        while self._queue and self._queue[0][0] <= target:
            when, _, handle, callback = heapq.heappop(self._queue)
            self._now = when
            if not handle.cancelled:
                await invoke_callback(callback)
        self._now = target


class FakeServer:
    """
    Scripted behaviour of one remote MCP server.

    Handlers map a method to ``callable(params) -> result dict``; they may
    raise ``ProtocolError`` to simulate a JSON-RPC error.
    """

    def __init__(
        self,
        tools: Optional[List[Dict[str, Any]]] = None,
        handlers: Optional[Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]]] = None,
        reachable: bool = True,
    ):
        self.tools = tools if tools is not None else [ADD_TOOL]
        self.handlers = handlers or {}
        self.reachable = reachable
        self.calls: Counter = Counter()
        self.requests: List[tuple] = []
        self.open_attempts = 0
        self.closed = 0
        self.headers: List[Dict[str, str]] = []
        # When set, open() blocks until the event fires
        self.gate: Optional[asyncio.Event] = None

    def handle(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        self.calls[method] += 1
        self.requests.append((method, params))

        if method in self.handlers:
            return self.handlers[method](params)
        if method == "initialize":
            return {
                "protocolVersion": params.get("protocolVersion"),
                "capabilities": {"tools": {}},
                "serverInfo": {"name": "fake", "version": "1.0.0"},
            }
        if method == "tools/list":
            return {"tools": self.tools}
        if method == "tools/call":
            return self._call_tool(params["name"], params.get("arguments") or {})
        if method == "resources/list":
            return {"resources": [{"uri": "file:///notes.txt", "name": "notes"}]}
        if method == "resources/read":
            return {"contents": [{"uri": params["uri"], "text": "hello"}]}
        if method == "prompts/list":
            return {"prompts": [{"name": "greet", "arguments": [{"name": "who", "required": True}]}]}
        if method == "prompts/get":
            who = (params.get("arguments") or {}).get("who", "world")
            return {
                "messages": [{"role": "user", "content": {"type": "text", "text": f"Hello {who}"}}]
            }
        raise ProtocolError(-32601, f"Method not found: {method}")

    def _call_tool(self, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        if name == "add":
            total = arguments["a"] + arguments["b"]
            return {"content": [{"type": "text", "text": str(total)}]}
        if name == "echo":
            message = arguments["message"]
            if arguments.get("mode") == "upper":
                message = message.upper()
            return {"content": [{"type": "text", "text": message}]}
        raise ProtocolError(INVALID_PARAMS, f"Unknown tool: {name}")


class ScriptedTransport(Transport):
    def __init__(self, server: FakeServer, headers: Dict[str, str]):
        self.server = server
        self.headers = headers
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self) -> None:
        self.server.open_attempts += 1
        self.server.headers.append(self.headers)
        if self.server.gate is not None:
            await self.server.gate.wait()
        if not self.server.reachable:
            raise TransportError("Connection refused")
        self._open = True

    async def request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self._open:
            raise TransportError("Transport is not open")
        if not self.server.reachable:
            raise TransportError("Connection reset")
        return self.server.handle(method, params or {})

    async def close(self) -> None:
        self.server.closed += 1
        self._open = False


class FakeFleet:
    """Transport factory routing each server name to a ``FakeServer``."""

    def __init__(self):
        self.servers: Dict[str, FakeServer] = {}

    def add(self, name: str, **kwargs) -> FakeServer:
        server = FakeServer(**kwargs)
        self.servers[name] = server
        return server

    def __call__(self, config: ServerConfig, headers: Dict[str, str]) -> Transport:
        server = self.servers.setdefault(config.name, FakeServer(reachable=False))
        return ScriptedTransport(server, headers)


class EventRecorder:
    def __init__(self, bus: EventBus):
        self.events: List[FleetEvent] = []
        bus.subscribe(self.events.append)

    @property
    def types(self) -> List[str]:
        return [e.type.value for e in self.events]


def make_config(name: str = "calc", **kwargs) -> ServerConfig:
    kwargs.setdefault("url", f"http://{name}.test/sse")
    return ServerConfig(name=name, **kwargs)


@pytest.fixture
def scheduler() -> VirtualScheduler:
    return VirtualScheduler()


@pytest.fixture
def fleet() -> FakeFleet:
    return FakeFleet()
