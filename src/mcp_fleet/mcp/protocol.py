"""
Typed MCP requests over a ``Transport``.
"""

import asyncio
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from mcp_fleet.mcp.errors import INVALID_REQUEST, ErrorCode, MCPError, ProtocolError
from mcp_fleet.mcp.transport import CLIENT_VERSION, Transport
from mcp_fleet.mcp.types import (
    ContentBlock,
    Prompt,
    PromptResult,
    Resource,
    ResourceContents,
    ToolDefinition,
    content_blocks_adapter,
)
from mcp_fleet.utils.logging import get_logger

logger = get_logger(__name__)

PROTOCOL_VERSION = "2024-11-05"


class CallToolResponse:
    """Parsed ``tools/call`` result."""

    __slots__ = ("content", "is_error")

    def __init__(self, content: List[ContentBlock], is_error: bool):
        self.content = content
        self.is_error = is_error


class ProtocolClient:
    """
    Issues MCP requests and parses the responses.

    Each request is raced against ``timeout`` seconds; a timeout is reported
    as ``MCPError(TIMEOUT)`` and is not retried here. Malformed payloads raise
    ``ProtocolError``.
    """

    def __init__(
        self,
        transport: Transport,
        timeout: float,
        client_name: str = "mcp-fleet",
        capabilities: Optional[Dict[str, Any]] = None,
    ):
        self.transport = transport
        self.timeout = timeout
        self.client_name = client_name
        self.capabilities = capabilities if capabilities is not None else {"roots": {"listChanged": True}}
        self.server_info: Dict[str, Any] = {}
        self.server_capabilities: Dict[str, Any] = {}

    async def _request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            return await asyncio.wait_for(
                self.transport.request(method, params or {}), timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            raise MCPError(
                f"Request {method} timed out after {self.timeout:g}s",
                ErrorCode.TIMEOUT,
                details={"method": method},
            ) from e

    @staticmethod
    def _parse(method: str, model, payload: Any):
        try:
            return model.model_validate(payload)
        except ValidationError as e:
            raise ProtocolError(
                INVALID_REQUEST, f"Malformed {method} response: {e.error_count()} error(s)", e.errors()
            ) from e

    async def initialize(self) -> Dict[str, Any]:
        """
        Perform the MCP handshake.
        """
        result = await self._request(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": self.capabilities,
                "clientInfo": {"name": self.client_name, "version": CLIENT_VERSION},
            },
        )
        self.server_info = result.get("serverInfo", {})
        self.server_capabilities = result.get("capabilities", {})
        return result

    async def ping(self) -> None:
        await self._request("ping")

    async def list_tools(self) -> List[ToolDefinition]:
        result = await self._request("tools/list")
        return [self._parse("tools/list", ToolDefinition, t) for t in result.get("tools") or []]

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> CallToolResponse:
        result = await self._request("tools/call", {"name": name, "arguments": arguments})
        try:
            content = content_blocks_adapter.validate_python(result.get("content") or [])
        except ValidationError as e:
            raise ProtocolError(
                INVALID_REQUEST, f"Malformed content returned by tool '{name}'", e.errors()
            ) from e
        return CallToolResponse(content=content, is_error=bool(result.get("isError", False)))

    async def list_resources(self) -> List[Resource]:
        result = await self._request("resources/list")
        return [self._parse("resources/list", Resource, r) for r in result.get("resources") or []]

    async def read_resource(self, uri: str) -> List[ResourceContents]:
        result = await self._request("resources/read", {"uri": uri})
        return [
            self._parse("resources/read", ResourceContents, c) for c in result.get("contents") or []
        ]

    async def list_prompts(self) -> List[Prompt]:
        result = await self._request("prompts/list")
        return [self._parse("prompts/list", Prompt, p) for p in result.get("prompts") or []]

    async def get_prompt(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> PromptResult:
        result = await self._request("prompts/get", {"name": name, "arguments": arguments or {}})
        return self._parse("prompts/get", PromptResult, result)

    async def close(self) -> None:
        await self.transport.close()
