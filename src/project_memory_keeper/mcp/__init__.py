"""FastMCP server and tool definitions for the context store."""

from project_memory_keeper.mcp.server import create_server

__all__ = ["create_server"]
