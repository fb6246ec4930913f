"""
Client session used by the SSE transport.

Extends the MCP SDK session with request logging and answers ``roots/list``
from the server's configured roots.
"""

from typing import Any, Awaitable, Callable, List

from mcp import ClientSession
from mcp.types import ListRootsResult, Root

from mcp_fleet.config import ServerRootSettings
from mcp_fleet.utils.logging import get_logger

logger = get_logger(__name__)

ListRootsCallback = Callable[[Any], Awaitable[ListRootsResult]]


def roots_callback(roots: List[ServerRootSettings]) -> ListRootsCallback:
    """
    Build a ``list_roots_callback`` that reports the configured roots.

    ``server_uri_alias`` takes precedence over ``uri`` so a server can see a
    path that differs from the client's local one.
    """

    async def list_roots(context: Any) -> ListRootsResult:
        logger.debug("Answering roots/list", data=[r.uri for r in roots])
        return ListRootsResult(
            roots=[Root(uri=root.server_uri_alias or root.uri, name=root.name) for root in roots]
        )

    return list_roots


class FleetClientSession(ClientSession):
    """
    MCP client session with debug logging of the traffic it carries.
    """

    async def send_request(self, request, result_type, *args, **kwargs):
        logger.debug("send_request: request=", data=request.model_dump())
        try:
            result = await super().send_request(request, result_type, *args, **kwargs)
            logger.debug("send_request: response=", data=result.model_dump())
            return result
        except Exception as e:
            logger.error(f"send_request failed: {e}")
            raise

    async def send_notification(self, notification, *args, **kwargs):
        logger.debug("send_notification:", data=notification.model_dump())
        try:
            return await super().send_notification(notification, *args, **kwargs)
        except Exception as e:
            logger.error("send_notification failed", data=e)
            raise
