"""Agent-to-agent mailbox: durable message queues and shared context over MCP."""

from __future__ import annotations

from typing import Any

__version__ = "0.3.0"


def build_mcp_server() -> Any:
    """Lazily import and build the FastMCP server to avoid heavy module import costs."""
    from .app import build_mcp_server as _build_mcp_server
    return _build_mcp_server()

__all__ = ["__version__", "build_mcp_server"]
