"""
Registry of connection managers for a fleet of MCP servers.
"""

from asyncio import gather
from typing import Any, Dict, List, Optional

from mcp_fleet.config import ServerConfig, Settings, validate_server_config
from mcp_fleet.core.events import EventBus, EventType
from mcp_fleet.core.scheduler import AsyncioScheduler, Scheduler
from mcp_fleet.mcp.connection_manager import ConnectionManager
from mcp_fleet.mcp.errors import ErrorCode, MCPError
from mcp_fleet.mcp.transport import TransportFactory, build_transport
from mcp_fleet.mcp.types import ExecutionContext, ToolDefinition, ToolError, ToolResult
from mcp_fleet.utils.logging import get_logger

logger = get_logger(__name__)


def _failed_result(code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None) -> ToolResult:
    return ToolResult(
        success=False,
        error=ToolError(code=code.value, message=message, details=details),
    )


class ServerManager:
    """
    Owns one ``ConnectionManager`` per registered server.

    Every event of every connection is re-published on ``events``, so a
    single subscriber can observe the whole fleet. Removing a server tears
    down its connection manager.
    """

    def __init__(
        self,
        scheduler: Optional[Scheduler] = None,
        transport_factory: TransportFactory = build_transport,
        event_bus: Optional[EventBus] = None,
        cache_max_entries: Optional[int] = None,
    ):
        self.events = event_bus if event_bus is not None else EventBus("fleet")
        self._scheduler = scheduler if scheduler is not None else AsyncioScheduler()
        self._transport_factory = transport_factory
        self._cache_max_entries = cache_max_entries
        self._servers: Dict[str, ConnectionManager] = {}
        self._unsubscribe: Dict[str, Any] = {}

    async def add_server(self, config: ServerConfig) -> ConnectionManager:
        """
        Register a server and connect to it.

        A failed connection does not unregister the server: the connection
        manager keeps retrying in the background and reports through events.

        Raises:
            MCPError: ``SERVER_EXISTS`` for a duplicate name, ``INVALID_CONFIG``
                when the config does not validate.
        """
        if config.name in self._servers:
            raise MCPError(
                f'Server "{config.name}" already exists',
                ErrorCode.SERVER_EXISTS,
                server_name=config.name,
            )

        problems = validate_server_config(config)
        if problems:
            raise MCPError(
                f'Invalid configuration for server "{config.name}": {"; ".join(problems)}',
                ErrorCode.INVALID_CONFIG,
                details={"errors": problems},
                server_name=config.name,
            )

        manager = ConnectionManager(
            config,
            scheduler=self._scheduler,
            transport_factory=self._transport_factory,
            cache_max_entries=self._cache_max_entries,
        )
        self._unsubscribe[config.name] = manager.events.forward_to(self.events)
        self._servers[config.name] = manager
        self.events.publish(EventType.SERVER_ADDED, config.name, url=config.url)

        logger.info(f"{config.name}: Added MCP server at {config.url}")
        await manager.connect()
        return manager

    async def remove_server(self, name: str) -> None:
        manager = self._servers.pop(name, None)
        if manager is None:
            return

        await manager.disconnect()
        unsubscribe = self._unsubscribe.pop(name, None)
        if unsubscribe:
            unsubscribe()

        self.events.publish(EventType.SERVER_REMOVED, name)
        logger.info(f"{name}: Removed MCP server")

    def get_server(self, name: str) -> Optional[ConnectionManager]:
        return self._servers.get(name)

    def list_servers(self) -> List[Dict[str, Any]]:
        return [
            {"server_name": name, "state": manager.state.value, "config": manager.config}
            for name, manager in self._servers.items()
        ]

    @property
    def server_names(self) -> List[str]:
        return list(self._servers.keys())

    async def call_tool(
        self,
        server_name: str,
        tool_name: str,
        arguments: Optional[Dict[str, Any]] = None,
        context: Optional[ExecutionContext] = None,
        use_cache: bool = False,
    ) -> ToolResult:
        """
        Call a tool on one server.

        An unknown server yields a failed result with ``SERVER_NOT_FOUND``.
        """
        manager = self._servers.get(server_name)
        if manager is None:
            return _failed_result(
                ErrorCode.SERVER_NOT_FOUND,
                f'Server "{server_name}" not found',
                {"server_name": server_name},
            )

        return await manager.call_tool(tool_name, arguments, context=context, use_cache=use_cache)

    async def broadcast_tool_call(
        self,
        tool_name: str,
        arguments: Optional[Dict[str, Any]] = None,
        context: Optional[ExecutionContext] = None,
    ) -> Dict[str, ToolResult]:
        """
        Call the same tool on every registered server concurrently.

        Waits for every call to settle. A server whose call raised gets a
        ``BROADCAST_ERROR`` result; other servers are unaffected.

        Returns:
            Mapping of server name to that server's result.
        """
        names = list(self._servers.keys())
        managers = [self._servers[name] for name in names]

        results = await gather(
            *(m.call_tool(tool_name, arguments, context=context) for m in managers),
            return_exceptions=True,
        )

        aggregated: Dict[str, ToolResult] = {}
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                logger.error(f"{name}: Broadcast of {tool_name} failed: {result}")
                aggregated[name] = _failed_result(ErrorCode.BROADCAST_ERROR, str(result))
            else:
                aggregated[name] = result

        return aggregated

    async def list_all_tools(self, use_cache: bool = True) -> Dict[str, List[ToolDefinition]]:
        """
        Tool lists of every server; servers that fail to answer map to an empty list.
        """
        names = list(self._servers.keys())
        results = await gather(
            *(self._servers[name].list_tools(use_cache=use_cache) for name in names),
            return_exceptions=True,
        )

        tools: Dict[str, List[ToolDefinition]] = {}
        for name, result in zip(names, results):
            if isinstance(result, BaseException) or not result.success:
                error = result if isinstance(result, BaseException) else result.error.message
                logger.error(f"Error loading tools from server {name}", data=error)
                tools[name] = []
            else:
                tools[name] = result.value
        return tools

    async def load_from_settings(self, settings: Settings) -> None:
        """Add every server declared under ``mcp.servers``."""
        for name, config in settings.mcp.servers.items():
            if name in self._servers:
                logger.debug(f"{name}: Already registered, skipping")
                continue
            await self.add_server(config)

    async def cleanup(self) -> None:
        """
        Disconnect every server concurrently and empty the registry.
        """
        names = list(self._servers.keys())
        results = await gather(
            *(self.remove_server(name) for name in names),
            return_exceptions=True,
        )
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                logger.error(f"{name}: Error during cleanup: {result}")
        self._servers.clear()

    def __contains__(self, name: str) -> bool:
        return name in self._servers

    def __len__(self) -> int:
        return len(self._servers)
