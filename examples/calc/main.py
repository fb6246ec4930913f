"""
Fleet demo: connect to the calculator server, call and broadcast a tool,
and open a chat session.

Start the server first:

    python examples/calc/calc_server.py
"""

import asyncio
import os

from mcp_fleet import EventType, FleetApp
from mcp_fleet.sessions import SessionAccessDenied


def print_event(event):
    print(f"[{event.server_name}] {event.type.value} {event.data or ''}")


async def main():
    """Run the fleet demo."""
    config_path = os.path.join(os.path.dirname(__file__), "mcp_fleet.config.yaml")
    app = FleetApp("calc_demo", config_path=config_path)

    for event_type in (EventType.CONNECTED, EventType.ERROR, EventType.DISCONNECTED):
        app.register_event_handler(print_event, event_type)

    async with app.run() as running_app:
        servers = running_app.server_manager

        for server in servers.list_servers():
            print(f"  - {server['server_name']}: {server['state']}")

        tools = await servers.list_all_tools()
        for server_name, server_tools in tools.items():
            print(f"\n{server_name} tools:")
            for tool in server_tools:
                print(f"  - {tool.name}: {tool.description}")

        result = await servers.call_tool("calc", "add", {"a": 2, "b": 3})
        print(f"\nadd(2, 3) -> success={result.success} text={result.text()!r}")

        result = await servers.call_tool("calc", "add", {"a": 2})
        print(f"add(2) -> success={result.success} error={result.error.message}")

        results = await servers.broadcast_tool_call("multiply", {"a": 6, "b": 7})
        for server_name, server_result in results.items():
            print(f"broadcast multiply on {server_name}: {server_result.text() or server_result.error}")

        session = running_app.sessions.create(
            user_id="alice", configuration={"temperature": 0.2, "safety": {"max_requests_per_minute": 30}}
        )
        running_app.sessions.record_usage(session.id, caller_id="alice", messages=1, tool_calls=1)
        print(f"\nSession {session.id}: {running_app.sessions.list_by_user('alice')}")

        try:
            running_app.sessions.get(session.id, caller_id="mallory")
        except SessionAccessDenied as e:
            print(f"mallory -> {e}")


if __name__ == "__main__":
    asyncio.run(main())
