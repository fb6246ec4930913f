"""
mcp-fleet - Managed connections to a fleet of MCP servers, with chat sessions.
"""

__version__ = "0.1.0"

# Core components
from mcp_fleet.app import FleetApp
from mcp_fleet.core.context import FleetContext
from mcp_fleet.core.events import EventBus, EventType, FleetEvent

# MCP connectivity
from mcp_fleet.mcp.connection_manager import ConnectionManager, ConnectionState
from mcp_fleet.mcp.server_manager import ServerManager
from mcp_fleet.mcp.errors import ErrorCode, MCPError
from mcp_fleet.mcp.types import ToolResult

# Sessions
from mcp_fleet.sessions import SessionAccessDenied, SessionStore

# Configuration
from mcp_fleet.config import ServerConfig, Settings, create_server_config, load_config

__all__ = [
    "FleetApp",
    "FleetContext",
    "EventBus",
    "EventType",
    "FleetEvent",
    "ConnectionManager",
    "ConnectionState",
    "ServerManager",
    "ErrorCode",
    "MCPError",
    "ToolResult",
    "SessionAccessDenied",
    "SessionStore",
    "ServerConfig",
    "Settings",
    "create_server_config",
    "load_config",
]
