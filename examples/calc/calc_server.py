"""
Calculator MCP server for the fleet demo, served over SSE.
"""

import sys

from mcp.server.fastmcp import FastMCP


app = FastMCP("calc", host="127.0.0.1", port=8765)


@app.tool()
async def add(a: float, b: float) -> str:
    """
    Add two numbers.

    Args:
        a: First addend.
        b: Second addend.

    Returns:
        The sum, as text.
    """
    print(f"Received add request: {a} + {b}", file=sys.stderr)
    total = a + b
    return str(int(total) if total == int(total) else total)


@app.tool()
async def multiply(a: float, b: float) -> str:
    """Multiply two numbers."""
    total = a * b
    return str(int(total) if total == int(total) else total)


if __name__ == "__main__":
    app.run(transport="sse")
