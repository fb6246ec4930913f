"""
Context management for mcp-fleet.
"""

import uuid
from typing import Callable, Optional

from mcp_fleet.config.settings import Settings
from mcp_fleet.core.events import EventBus, EventHandler, EventType
from mcp_fleet.core.scheduler import AsyncioScheduler, Scheduler
from mcp_fleet.mcp.server_manager import ServerManager
from mcp_fleet.mcp.transport import TransportFactory, build_transport
from mcp_fleet.sessions.store import SessionStore
from mcp_fleet.utils.logging import get_logger

logger = get_logger(__name__)


class FleetContext:
    """
    Holds the shared services of a running fleet.

    Everything is constructed here and passed down explicitly; nothing is
    kept in module globals, so several isolated contexts can coexist.
    """

    def __init__(
        self,
        config: Settings,
        scheduler: Optional[Scheduler] = None,
        transport_factory: TransportFactory = build_transport,
        session_id: Optional[str] = None,
    ):
        """
        Initialize a fleet context.

        Args:
            config: Configuration settings.
            scheduler: Timer service shared by every component.
            transport_factory: Builds transports for server connections.
            session_id: Identifier for this context; generated when omitted.
        """
        self.config = config
        self.session_id = session_id or str(uuid.uuid4())
        self.scheduler = scheduler if scheduler is not None else AsyncioScheduler()
        self.events = EventBus("fleet")

        self.server_manager = ServerManager(
            scheduler=self.scheduler,
            transport_factory=transport_factory,
            event_bus=self.events,
        )
        self.sessions = SessionStore(scheduler=self.scheduler, settings=config.sessions)
        self._started = False

    async def start(self) -> None:
        """Start the session sweep and connect every configured server."""
        if self._started:
            return
        self.sessions.start()
        await self.server_manager.load_from_settings(self.config)
        self._started = True
        logger.info(f"Fleet context started with {len(self.server_manager)} server(s)")

    async def shutdown(self) -> None:
        if not self._started:
            return
        await self.server_manager.cleanup()
        self.sessions.shutdown()
        if isinstance(self.scheduler, AsyncioScheduler):
            await self.scheduler.aclose()
        self._started = False

    def register_event_handler(
        self, handler: EventHandler, event_type: Optional[EventType] = None
    ) -> Callable[[], None]:
        """
        Register an event handler for one event type, or every event.

        Returns:
            A callable that removes the handler.
        """
        return self.events.subscribe(handler, event_type)

