"""
Main application class for mcp-fleet.
"""

from contextlib import asynccontextmanager
from typing import Callable, Optional

from mcp_fleet.config.settings import Settings, load_config
from mcp_fleet.core.context import FleetContext
from mcp_fleet.core.events import EventHandler, EventType
from mcp_fleet.core.scheduler import Scheduler
from mcp_fleet.mcp.server_manager import ServerManager
from mcp_fleet.mcp.transport import TransportFactory, build_transport
from mcp_fleet.sessions.store import SessionStore
from mcp_fleet.utils.logging import configure_logging, get_logger
from mcp_fleet.utils.secrets import load_env_files


class FleetApp:
    """
    Main application class that manages the fleet context and its lifecycle.

    Example usage:
        app = FleetApp("assistant")

        async with app.run() as running_app:
            result = await running_app.server_manager.call_tool("calc", "add", {"a": 2, "b": 3})
    """

    def __init__(
        self,
        name: str = "mcp_fleet",
        config_path: Optional[str] = None,
        settings: Optional[Settings] = None,
        scheduler: Optional[Scheduler] = None,
        transport_factory: TransportFactory = build_transport,
    ):
        """
        Initialize the application.

        Args:
            name: Name of the application.
            config_path: Path to configuration file (if not provided, looks for mcp_fleet.config.yaml).
            settings: Configuration object (if provided, takes precedence over config_path).
            scheduler: Timer service; the running event loop is used when omitted.
            transport_factory: Builds transports for server connections.
        """
        self.name = name
        self._config_path = config_path
        self._settings = settings
        self._scheduler = scheduler
        self._transport_factory = transport_factory

        self._logger = None
        self._context: Optional[FleetContext] = None
        self._pending_handlers = []

    @property
    def context(self) -> FleetContext:
        if self._context is None:
            raise RuntimeError(
                "FleetApp not initialized. Please call initialize() first, or use async with app.run()."
            )
        return self._context

    @property
    def config(self) -> Settings:
        return self.context.config

    @property
    def server_manager(self) -> ServerManager:
        return self.context.server_manager

    @property
    def sessions(self) -> SessionStore:
        return self.context.sessions

    @property
    def logger(self):
        if self._logger is None:
            self._logger = get_logger(f"mcp_fleet.{self.name}")
        return self._logger

    async def initialize(self) -> None:
        """Load configuration, build the context and connect configured servers."""
        if self._context is not None:
            return

        if self._settings is None:
            load_env_files()
            config = load_config(self._config_path)
        else:
            config = self._settings

        configure_logging(
            config.logging.level,
            add_file_handler=config.logging.file_path,
            console=config.logging.console,
        )

        context = FleetContext(
            config,
            scheduler=self._scheduler,
            transport_factory=self._transport_factory,
        )
        for handler, event_type in self._pending_handlers:
            context.register_event_handler(handler, event_type)
        self._pending_handlers.clear()

        self._context = context
        await context.start()
        self.logger.info(
            f"FleetApp initialized - app_name: {self.name}, session_id: {context.session_id}"
        )

    async def cleanup(self) -> None:
        if self._context is None:
            return

        self.logger.info(
            f"FleetApp cleaning up - app_name: {self.name}, session_id: {self._context.session_id}"
        )
        await self._context.shutdown()
        self._context = None

    @asynccontextmanager
    async def run(self):
        """
        Run the application as an async context manager.

        Yields:
            The initialized application instance.
        """
        await self.initialize()
        try:
            yield self
        finally:
            await self.cleanup()

    def register_event_handler(
        self, handler: EventHandler, event_type: Optional[EventType] = None
    ) -> Optional[Callable[[], None]]:
        """
        Register a fleet event handler.

        Handlers registered before ``initialize`` are attached when the context
        is built, so they also observe the initial connections.
        """
        if self._context is not None:
            return self._context.register_event_handler(handler, event_type)

        self._pending_handlers.append((handler, event_type))
        return None
