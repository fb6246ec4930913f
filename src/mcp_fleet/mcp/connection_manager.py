"""
Manages the lifecycle of one MCP server connection.
"""

import asyncio
import json
import time
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from mcp_fleet.config import ServerConfig
from mcp_fleet.core.events import EventBus, EventType
from mcp_fleet.core.scheduler import AsyncioScheduler, Scheduler, TimerHandle
from mcp_fleet.mcp.cache import MISS, TTLCache
from mcp_fleet.mcp.errors import ErrorCode, MCPError, ProtocolError
from mcp_fleet.mcp.protocol import CallToolResponse, ProtocolClient
from mcp_fleet.mcp.transport import CLIENT_VERSION, Transport, TransportFactory, build_transport
from mcp_fleet.mcp.types import (
    ExecutionContext,
    OperationResult,
    ToolDefinition,
    ToolError,
    ToolResult,
    ToolResultMetadata,
)
from mcp_fleet.utils.logging import Logger, get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Cache lifetimes, in seconds
TOOLS_TTL = 300.0
TOOL_RESULT_TTL = 60.0
RESOURCES_TTL = 180.0
RESOURCE_TTL = 120.0
PROMPTS_TTL = 300.0
PROMPT_TTL = 300.0


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


def _generate_session_id() -> str:
    return f"mcp_session_{int(time.time() * 1000)}_{uuid.uuid4().hex[:7]}"


def _cache_key(prefix: str, name: str, arguments: Dict[str, Any]) -> str:
    return f"{prefix}:{name}:{json.dumps(arguments, sort_keys=True, default=str)}"


class ConnectionManager:
    """
    Owns the protocol client, cache and timers for a single server.

    State machine::

        disconnected -> connecting -> connected | error
        error -> connecting            (automatic retry, bounded)
        connected -> disconnected      (explicit disconnect)
        connected -> error -> connecting  (failed health check)

    Every transition publishes exactly one event on ``events``. Public
    methods never raise for network or protocol failures: ``connect`` returns
    a bool, ``call_tool`` a ``ToolResult`` and the other operations an
    ``OperationResult``.

    Args:
        config: Immutable server configuration.
        scheduler: Timer service for retries, health checks and cache expiry.
        transport_factory: Builds a fresh transport for every connection attempt.
        event_bus: Bus to publish on; a private one is created if omitted.
        cache_max_entries: Optional bound for the result cache.
    """

    def __init__(
        self,
        config: ServerConfig,
        scheduler: Optional[Scheduler] = None,
        transport_factory: TransportFactory = build_transport,
        event_bus: Optional[EventBus] = None,
        cache_max_entries: Optional[int] = None,
    ):
        self.config = config
        self.session_id = _generate_session_id()
        self.events = event_bus if event_bus is not None else EventBus(config.name)
        self.retry_count = 0
        # Bumped by disconnect(); attempts started under an older value are discarded
        self._generation = 0

        self._scheduler = scheduler if scheduler is not None else AsyncioScheduler()
        self._transport_factory = transport_factory
        self.cache = TTLCache(self._scheduler, max_entries=cache_max_entries)

        self._state = ConnectionState.DISCONNECTED
        self._transport: Optional[Transport] = None
        self._client: Optional[ProtocolClient] = None
        self._retry_handle: Optional[TimerHandle] = None
        self._health_handle: Optional[TimerHandle] = None
        self._lock = asyncio.Lock()
        self._audit = Logger(f"{__name__}.{config.name}")

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED and self._client is not None

    def _transition(self, state: ConnectionState, event_type: EventType, **data: Any) -> None:
        previous, self._state = self._state, state
        logger.debug(f"{self.name}: {previous.value} -> {state.value}")
        self.events.publish(event_type, self.name, **data)

    def build_headers(self) -> Dict[str, str]:
        """
        Headers sent on every connection: session id, client version and auth.
        """
        headers = {
            "X-Session-ID": self.session_id,
            "X-Client-Version": CLIENT_VERSION,
        }

        auth = self.config.auth
        if auth is not None:
            token = auth.resolved_token()
            if token and auth.type == "bearer":
                headers["Authorization"] = f"Bearer {token}"
            elif token and auth.type == "apikey":
                headers["X-API-Key"] = token

        return headers

    def _client_capabilities(self) -> Dict[str, Any]:
        capabilities: Dict[str, Any] = {}
        if self.config.capabilities.roots:
            capabilities["roots"] = {"listChanged": True}
        if self.config.capabilities.sampling:
            capabilities["sampling"] = {}
        return capabilities

    async def connect(self) -> bool:
        """
        Connect to the server, resetting the retry budget.

        Returns:
            True when connected, False when this attempt failed. Failed
            attempts schedule bounded retries in the background.
        """
        if self._state == ConnectionState.CONNECTED:
            return True

        self._cancel_retry()
        self.retry_count = 0
        return await self._attempt_connect()

    async def _attempt_connect(self) -> bool:
        self._retry_handle = None
        generation = self._generation

        async with self._lock:
            if generation != self._generation:
                return False
            if self._state == ConnectionState.CONNECTED:
                return True

            self._transition(ConnectionState.CONNECTING, EventType.CONNECTING)

            try:
                client = await self._establish_connection()
            except Exception as e:
                await self._teardown()
                if generation != self._generation:
                    logger.debug(f"{self.name}: Discarding failed attempt after disconnect")
                    return False
                message = e.message if isinstance(e, (MCPError, ProtocolError)) else str(e)
                logger.error(f"{self.name}: Connection failed: {message}")
                self._transition(
                    ConnectionState.ERROR,
                    EventType.ERROR,
                    error=message,
                    retry_count=self.retry_count,
                )
                self._schedule_retry()
                return False

            if generation != self._generation:
                logger.debug(f"{self.name}: Discarding connection opened after disconnect")
                await self._close_client(client)
                self.cache.clear()
                return False

            self.retry_count = 0
            self._start_health_check()
            self._log_connection("connected")
            self._transition(
                ConnectionState.CONNECTED, EventType.CONNECTED, session_id=self.session_id
            )
            return True

    async def _establish_connection(self) -> ProtocolClient:
        await self._teardown()

        transport = self._transport_factory(self.config, self.build_headers())
        client = ProtocolClient(
            transport,
            timeout=self.config.timeout,
            client_name=f"mcp-fleet-{self.name}",
            capabilities=self._client_capabilities(),
        )
        self._transport, self._client = transport, client

        async def handshake() -> None:
            await transport.open()
            await client.initialize()

        try:
            await asyncio.wait_for(handshake(), timeout=self.config.timeout)
        except asyncio.TimeoutError as e:
            raise MCPError("Connection timeout", ErrorCode.TIMEOUT, server_name=self.name) from e

        if self.config.capabilities.tools:
            # Warm the tool list so argument validation needs no round trip
            try:
                self.cache.set(f"tools:{self.name}", await client.list_tools(), TOOLS_TTL)
            except (MCPError, ProtocolError) as e:
                logger.warning(f"{self.name}: Could not prefetch tools: {e}")

        return client

    def _schedule_retry(self) -> None:
        policy = self.config.retry
        if self.retry_count >= policy.max_retries:
            logger.warning(
                f"{self.name}: Giving up after {self.retry_count} retries; call connect() to try again"
            )
            return

        self.retry_count += 1
        delay = policy.delay_for_attempt(self.retry_count)
        logger.info(
            f"Retrying connection to {self.name} in {delay * 1000:.0f}ms (attempt {self.retry_count})"
        )
        self._retry_handle = self._scheduler.call_later(delay, self._attempt_connect)

    def _cancel_retry(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    async def disconnect(self) -> None:
        """
        Stop timers and close the connection. Safe to call in any state.

        A connection attempt still in flight is abandoned: it neither
        reconnects nor schedules a retry once it resumes.
        """
        self._generation += 1
        self._cancel_retry()
        self._stop_health_check()
        await self._teardown()
        self.cache.clear()

        if self._state != ConnectionState.DISCONNECTED:
            self._log_connection("disconnected")
            self._transition(ConnectionState.DISCONNECTED, EventType.DISCONNECTED)

    async def _teardown(self) -> None:
        transport, client = self._transport, self._client
        self._transport = self._client = None

        if client is not None:
            await self._close_client(client)
        elif transport is not None:
            try:
                await transport.close()
            except Exception as e:
                logger.warning(f"{self.name}: Error closing MCP transport: {e}")

    async def _close_client(self, client: ProtocolClient) -> None:
        try:
            await client.close()
        except Exception as e:
            logger.warning(f"{self.name}: Error closing MCP client: {e}")

    def _start_health_check(self) -> None:
        self._stop_health_check()
        self._health_handle = self._scheduler.call_every(
            self.config.health_check_interval, self.health_check
        )

    def _stop_health_check(self) -> None:
        if self._health_handle is not None:
            self._health_handle.cancel()
            self._health_handle = None

    async def health_check(self) -> bool:
        """
        Probe the server with an uncached ``tools/list``.

        A failed probe moves the manager to ``error`` and immediately attempts
        to reconnect.
        """
        if self._state != ConnectionState.CONNECTED:
            return False

        generation = self._generation
        try:
            await self._fetch_tools(use_cache=False)
            return True
        except Exception as e:
            message = e.message if isinstance(e, (MCPError, ProtocolError)) else str(e)
            logger.warning(f"Health check failed for MCP server: {self.name}: {message}")

        if generation != self._generation:
            return False

        self._stop_health_check()
        self._transition(ConnectionState.ERROR, EventType.HEALTH_CHECK_FAILED, error=message)
        self.retry_count = 0
        await self._attempt_connect()
        return False

    def _ensure_connected(self) -> None:
        if not self.is_connected:
            raise MCPError(
                "MCP client is not connected", ErrorCode.NOT_CONNECTED, server_name=self.name
            )

    async def _cached(
        self,
        key: str,
        ttl: float,
        use_cache: bool,
        fetch: Callable[[], Awaitable[T]],
        error_code: ErrorCode,
        description: str,
    ) -> T:
        self._ensure_connected()

        if use_cache:
            cached = self.cache.get(key)
            if cached is not MISS:
                return cached

        try:
            value = await fetch()
        except MCPError:
            raise
        except Exception as e:
            message = e.message if isinstance(e, ProtocolError) else str(e)
            details = {"rpc_code": e.code, "data": e.data} if isinstance(e, ProtocolError) else None
            raise MCPError(
                f"Failed to {description}: {message}", error_code, details, server_name=self.name
            ) from e

        self.cache.set(key, value, ttl)
        return value

    async def _wrap(self, operation: Awaitable[T]) -> OperationResult:
        try:
            return OperationResult.ok(await operation)
        except MCPError as e:
            return OperationResult.failed(e.to_error_info())

    async def _fetch_tools(self, use_cache: bool) -> List[ToolDefinition]:
        return await self._cached(
            f"tools:{self.name}",
            TOOLS_TTL,
            use_cache,
            lambda: self._client.list_tools(),
            ErrorCode.TOOLS_LIST_ERROR,
            "list tools",
        )

    async def list_tools(self, use_cache: bool = True) -> OperationResult:
        """
        List the server's tools, served from cache for up to five minutes.
        """
        return await self._wrap(self._fetch_tools(use_cache))

    async def call_tool(
        self,
        name: str,
        arguments: Optional[Dict[str, Any]] = None,
        context: Optional[ExecutionContext] = None,
        use_cache: bool = False,
    ) -> ToolResult:
        """
        Validate and execute a tool.

        The tool must exist in the current tool list and every required
        argument must be present before anything is sent. Enable ``use_cache``
        only for read-style tools: results are reused for 60 seconds.
        """
        started = time.monotonic()
        arguments = arguments or {}
        cache_key = _cache_key("tool", name, arguments) if use_cache else None

        def build(success: bool, content=None, error: Optional[ToolError] = None) -> ToolResult:
            return ToolResult(
                success=success,
                content=content or [],
                error=error,
                execution_time_ms=(time.monotonic() - started) * 1000,
                metadata=ToolResultMetadata(
                    tool_name=name,
                    server_name=self.name,
                    session_id=self.session_id,
                    context=context,
                ),
            )

        cached = MISS
        try:
            self._ensure_connected()

            if cache_key:
                cached = self.cache.get(cache_key)

            if cached is MISS:
                response = await self._dispatch_tool(name, arguments)
        except MCPError as e:
            result = build(False, error=e.to_error_info())
        except ProtocolError as e:
            result = build(
                False,
                error=ToolError(
                    code=ErrorCode.TOOL_EXECUTION_ERROR.value,
                    message=e.message,
                    details={"rpc_code": e.code, "data": e.data},
                ),
            )
        except Exception as e:
            result = build(
                False,
                error=ToolError(
                    code=ErrorCode.TOOL_EXECUTION_ERROR.value,
                    message=f"Failed to call tool '{name}' on server '{self.name}': {e}",
                ),
            )
        else:
            if cached is not MISS:
                result = cached
            elif response.is_error:
                result = build(False, content=response.content)
                result = result.model_copy(
                    update={
                        "error": ToolError(
                            code=ErrorCode.TOOL_EXECUTION_ERROR.value,
                            message=result.text() or f'Tool "{name}" reported an error',
                        )
                    }
                )
            else:
                result = build(True, content=response.content)
                if cache_key:
                    self.cache.set(cache_key, result, TOOL_RESULT_TTL)

        self._log_tool_execution(name, result)
        if result.success:
            self.events.publish(
                EventType.TOOL_CALLED, self.name, name=name, arguments=arguments, result=result
            )
        else:
            self.events.publish(
                EventType.TOOL_ERROR, self.name, name=name, arguments=arguments, error=result.error
            )
        return result

    async def _dispatch_tool(self, name: str, arguments: Dict[str, Any]) -> CallToolResponse:
        tools = await self._fetch_tools(use_cache=True)
        tool = next((t for t in tools if t.name == name), None)
        if tool is None:
            raise MCPError(
                f'Tool "{name}" not found',
                ErrorCode.TOOL_NOT_FOUND,
                details={"tool_name": name},
                server_name=self.name,
            )
        self._validate_arguments(tool, arguments)
        return await self._client.call_tool(name, arguments)

    def _validate_arguments(self, tool: ToolDefinition, arguments: Dict[str, Any]) -> None:
        problems = tool.input_schema.argument_problems(arguments)
        if not problems:
            return

        first = problems[0]
        details: Dict[str, Any] = {"tool_name": tool.name, "problems": problems}
        if first["reason"] == "missing":
            details["missing"] = first["argument"]
        raise MCPError(first["message"], ErrorCode.INVALID_ARGUMENTS, details, server_name=self.name)

    async def list_resources(self, use_cache: bool = True) -> OperationResult:
        return await self._wrap(
            self._cached(
                f"resources:{self.name}",
                RESOURCES_TTL,
                use_cache,
                lambda: self._client.list_resources(),
                ErrorCode.RESOURCES_LIST_ERROR,
                "list resources",
            )
        )

    async def read_resource(self, uri: str, use_cache: bool = True) -> OperationResult:
        return await self._wrap(
            self._cached(
                f"resource:{uri}",
                RESOURCE_TTL,
                use_cache,
                lambda: self._client.read_resource(uri),
                ErrorCode.RESOURCE_READ_ERROR,
                f'read resource "{uri}"',
            )
        )

    async def list_prompts(self, use_cache: bool = True) -> OperationResult:
        return await self._wrap(
            self._cached(
                f"prompts:{self.name}",
                PROMPTS_TTL,
                use_cache,
                lambda: self._client.list_prompts(),
                ErrorCode.PROMPTS_LIST_ERROR,
                "list prompts",
            )
        )

    async def get_prompt(
        self, name: str, arguments: Optional[Dict[str, Any]] = None, use_cache: bool = False
    ) -> OperationResult:
        arguments = arguments or {}
        return await self._wrap(
            self._cached(
                _cache_key("prompt", name, arguments),
                PROMPT_TTL,
                use_cache,
                lambda: self._client.get_prompt(name, arguments),
                ErrorCode.PROMPT_GET_ERROR,
                f'get prompt "{name}"',
            )
        )

    def clear_cache(self, pattern: Optional[str] = None) -> int:
        return self.cache.clear(pattern)

    def cache_stats(self) -> Dict[str, Any]:
        return self.cache.stats()

    def connection_info(self) -> Dict[str, Any]:
        return {
            "server_name": self.name,
            "session_id": self.session_id,
            "state": self._state.value,
            "retry_count": self.retry_count,
            "config": self.config,
        }

    def _log_connection(self, status: str) -> None:
        try:
            self._audit.event("info", "connection", f"MCP {status}: {self.name}")
        except Exception as e:
            logger.warning(f"Failed to log connection: {e}")

    def _log_tool_execution(self, tool_name: str, result: ToolResult) -> None:
        try:
            self._audit.event(
                "info" if result.success else "warning",
                "tool",
                f"Tool executed: {tool_name} - {'SUCCESS' if result.success else 'FAILED'}",
                data={"server": self.name, "execution_time_ms": result.execution_time_ms},
            )
        except Exception as e:
            logger.warning(f"Failed to log tool execution: {e}")
