"""
Error types for the MCP client layer.

``MCPError`` carries a symbolic ``ErrorCode`` and is converted into a
``ToolError`` at the public boundary. ``ProtocolError`` mirrors a JSON-RPC
error object returned by a remote server.
"""

from enum import Enum
from typing import Any, Dict, Optional

from mcp_fleet.mcp.types import ToolError

# JSON-RPC 2.0 reserved codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
SERVER_ERROR_START = -32099
SERVER_ERROR_END = -32000


class ErrorCode(str, Enum):
    """Symbolic failure codes surfaced to callers."""

    NOT_CONNECTED = "NOT_CONNECTED"
    TOOL_NOT_FOUND = "TOOL_NOT_FOUND"
    INVALID_ARGUMENTS = "INVALID_ARGUMENTS"
    TOOL_EXECUTION_ERROR = "TOOL_EXECUTION_ERROR"
    TOOLS_LIST_ERROR = "TOOLS_LIST_ERROR"
    RESOURCES_LIST_ERROR = "RESOURCES_LIST_ERROR"
    RESOURCE_READ_ERROR = "RESOURCE_READ_ERROR"
    PROMPTS_LIST_ERROR = "PROMPTS_LIST_ERROR"
    PROMPT_GET_ERROR = "PROMPT_GET_ERROR"
    SERVER_NOT_FOUND = "SERVER_NOT_FOUND"
    SERVER_EXISTS = "SERVER_EXISTS"
    BROADCAST_ERROR = "BROADCAST_ERROR"
    TIMEOUT = "TIMEOUT"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    INVALID_CONFIG = "INVALID_CONFIG"


class MCPError(Exception):
    """
    Domain error raised inside the client layer.
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode,
        details: Optional[Dict[str, Any]] = None,
        server_name: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details
        self.server_name = server_name

    def to_error_info(self) -> ToolError:
        return ToolError(code=self.code.value, message=self.message, details=self.details)

    def __repr__(self) -> str:
        return f"MCPError(code={self.code.value!r}, message={self.message!r})"


class ProtocolError(Exception):
    """
    A JSON-RPC error object returned by (or synthesized for) a remote server.
    """

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data

    def to_json(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            payload["data"] = self.data
        return payload

    def __repr__(self) -> str:
        return f"ProtocolError(code={self.code}, message={self.message!r})"


class TransportError(Exception):
    """
    Connection-level failure: handshake refused, stream closed, transport not open.
    """
