"""
MCP connectivity for mcp-fleet.

This module provides the components for connecting to MCP servers, managing
their connection lifecycle, and routing or broadcasting tool calls.
"""

from .cache import MISS, TTLCache
from .errors import ErrorCode, MCPError, ProtocolError, TransportError
from .transport import SSETransport, Transport, build_transport
from .protocol import ProtocolClient
from .connection_manager import ConnectionManager, ConnectionState
from .server_manager import ServerManager
from .types import (
    ContentBlock,
    ExecutionContext,
    ImageContent,
    OperationResult,
    ResourceContent,
    TextContent,
    ToolDefinition,
    ToolError,
    ToolResult,
)

__all__ = [
    "MISS",
    "TTLCache",
    "ErrorCode",
    "MCPError",
    "ProtocolError",
    "TransportError",
    "SSETransport",
    "Transport",
    "build_transport",
    "ProtocolClient",
    "ConnectionManager",
    "ConnectionState",
    "ServerManager",
    "ContentBlock",
    "ExecutionContext",
    "ImageContent",
    "OperationResult",
    "ResourceContent",
    "TextContent",
    "ToolDefinition",
    "ToolError",
    "ToolResult",
]
