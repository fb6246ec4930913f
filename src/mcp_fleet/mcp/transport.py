"""
Wire transports carrying MCP requests to a remote server.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

import anyio
from mcp.client.sse import sse_client
from mcp.shared.exceptions import McpError
from mcp.types import Implementation

from mcp_fleet.config import ServerConfig, ServerRootSettings
from mcp_fleet.mcp.client_session import FleetClientSession, roots_callback
from mcp_fleet.mcp.errors import (
    INVALID_PARAMS,
    METHOD_NOT_FOUND,
    ErrorCode,
    MCPError,
    ProtocolError,
    TransportError,
)
from mcp_fleet.utils.logging import get_logger

logger = get_logger(__name__)

CLIENT_VERSION = "2.0.0"


class Transport(ABC):
    """
    A request/response channel to one MCP server.

    ``request`` returns the JSON-RPC ``result`` object as a dict, or raises
    ``ProtocolError`` for a JSON-RPC error and ``TransportError`` when the
    channel itself is unusable.
    """

    @property
    @abstractmethod
    def is_open(self) -> bool: ...

    @abstractmethod
    async def open(self) -> None: ...

    @abstractmethod
    async def request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]: ...

    @abstractmethod
    async def close(self) -> None: ...


TransportFactory = Callable[[ServerConfig, Dict[str, str]], Transport]


def _stringify(arguments: Optional[Dict[str, Any]]) -> Optional[Dict[str, str]]:
    if arguments is None:
        return None
    return {key: value if isinstance(value, str) else str(value) for key, value in arguments.items()}


_DISPATCH: Dict[str, Callable[[FleetClientSession, Dict[str, Any]], Awaitable[Any]]] = {
    "initialize": lambda s, p: s.initialize(),
    "ping": lambda s, p: s.send_ping(),
    "tools/list": lambda s, p: s.list_tools(),
    "tools/call": lambda s, p: s.call_tool(p["name"], p.get("arguments") or {}),
    "resources/list": lambda s, p: s.list_resources(),
    "resources/read": lambda s, p: s.read_resource(p["uri"]),
    "prompts/list": lambda s, p: s.list_prompts(),
    "prompts/get": lambda s, p: s.get_prompt(p["name"], _stringify(p.get("arguments"))),
}


class SSETransport(Transport):
    """
    Server-Sent-Events transport built on the MCP SDK's ``sse_client``.

    The SDK's stream and session contexts own anyio cancel scopes, which must
    be entered and exited by the same task. A dedicated lifecycle task
    therefore holds both contexts open until ``close`` signals shutdown.
    """

    def __init__(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
        client_name: str = "mcp-fleet",
        roots: Optional[List[ServerRootSettings]] = None,
        sse_read_timeout: float = 300.0,
    ):
        self.url = url
        self.headers = dict(headers or {})
        self.timeout = timeout
        self.sse_read_timeout = sse_read_timeout
        self.client_info = Implementation(name=client_name, version=CLIENT_VERSION)
        self.roots = roots or []

        self._session: Optional[FleetClientSession] = None
        self._task: Optional[asyncio.Task] = None
        self._ready: Optional[anyio.Event] = None
        self._shutdown: Optional[anyio.Event] = None
        self._error: Optional[BaseException] = None

    @property
    def is_open(self) -> bool:
        return self._session is not None

    async def _lifecycle(self) -> None:
        try:
            async with sse_client(
                self.url,
                headers=self.headers,
                timeout=self.timeout,
                sse_read_timeout=self.sse_read_timeout,
            ) as (read_stream, write_stream):
                session = FleetClientSession(
                    read_stream,
                    write_stream,
                    read_timeout_seconds=timedelta(seconds=self.timeout),
                    list_roots_callback=roots_callback(self.roots) if self.roots else None,
                    client_info=self.client_info,
                )
                async with session:
                    self._session = session
                    self._ready.set()
                    await self._shutdown.wait()
        except Exception as exc:
            self._error = exc
            logger.error(f"{self.url}: SSE transport error: {exc}")
        finally:
            self._session = None
            # Unblock open() if the transport died before becoming ready
            self._ready.set()

    async def open(self) -> None:
        if self._task is not None:
            raise TransportError(f"Transport to {self.url} is already open")

        self._ready = anyio.Event()
        self._shutdown = anyio.Event()
        self._error = None
        self._task = asyncio.create_task(self._lifecycle(), name=f"sse-transport:{self.url}")

        await self._ready.wait()
        if self._session is None:
            raise TransportError(f"Failed to open SSE transport to {self.url}: {self._error}")

    async def request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        session = self._session
        if session is None:
            raise TransportError(f"Transport to {self.url} is not open")

        handler = _DISPATCH.get(method)
        if handler is None:
            raise ProtocolError(METHOD_NOT_FOUND, f"Method not found: {method}")

        try:
            result = await handler(session, params or {})
        except KeyError as e:
            raise ProtocolError(INVALID_PARAMS, f"Missing parameter {e} for {method}") from e
        except McpError as e:
            raise ProtocolError(e.error.code, e.error.message, e.error.data) from e

        if result is None:
            return {}
        return result.model_dump(mode="json", by_alias=True, exclude_none=True)

    async def close(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return

        if self._session is not None:
            self._shutdown.set()
        else:
            task.cancel()

        try:
            await asyncio.wait_for(task, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{self.url}: transport did not shut down in time, cancelled")
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
        finally:
            self._session = None


def build_transport(config: ServerConfig, headers: Dict[str, str]) -> Transport:
    """
    Default transport factory.

    Only SSE is implemented; other declared transport kinds are rejected.
    """
    if config.transport == "sse":
        return SSETransport(
            url=config.url,
            headers=headers,
            timeout=config.timeout,
            client_name=f"mcp-fleet-{config.name}",
            roots=config.roots if config.capabilities.roots else None,
        )
    raise MCPError(
        f"Transport type {config.transport} not supported",
        ErrorCode.INVALID_CONFIG,
        server_name=config.name,
    )
