"""
Lifecycle notifications for MCP connections.

Connection managers publish one ``FleetEvent`` per state transition and per
tool call. Subscribers register plain callables on an ``EventBus``; buses can
be chained so a server manager re-publishes every event of its connections.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from mcp_fleet.utils.logging import get_logger

logger = get_logger(__name__)


class EventType(str, Enum):
    """Kinds of fleet events."""

    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    TOOL_CALLED = "tool_called"
    TOOL_ERROR = "tool_error"
    HEALTH_CHECK_FAILED = "health_check_failed"
    SERVER_ADDED = "server_added"
    SERVER_REMOVED = "server_removed"


class FleetEvent(BaseModel):
    """A single notification."""

    type: EventType
    server_name: str
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


EventHandler = Callable[[FleetEvent], None]


class EventBus:
    """
    Synchronous observer registry.

    Handlers run in registration order inside ``emit``. A handler that raises
    is logged and skipped; it never affects the publisher or other handlers.
    """

    def __init__(self, name: Optional[str] = None):
        self.name = name
        self._handlers: List[Tuple[Optional[EventType], EventHandler]] = []

    def subscribe(
        self, handler: EventHandler, event_type: Optional[EventType] = None
    ) -> Callable[[], None]:
        """
        Register a handler for one event type, or for all events when
        ``event_type`` is None.

        Returns:
            A callable that removes the registration.
        """
        entry = (event_type, handler)
        self._handlers.append(entry)

        def unsubscribe() -> None:
            if entry in self._handlers:
                self._handlers.remove(entry)

        return unsubscribe

    def emit(self, event: FleetEvent) -> None:
        for event_type, handler in list(self._handlers):
            if event_type is not None and event_type != event.type:
                continue
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Error in event handler for {event.type.value}: {e}")

    def publish(self, event_type: EventType, server_name: str, **data: Any) -> FleetEvent:
        """Build and emit an event in one step."""
        event = FleetEvent(type=event_type, server_name=server_name, data=data)
        self.emit(event)
        return event

    def forward_to(self, other: "EventBus") -> Callable[[], None]:
        """Re-emit every event of this bus on ``other``."""
        return self.subscribe(other.emit)

    def __len__(self) -> int:
        return len(self._handlers)
