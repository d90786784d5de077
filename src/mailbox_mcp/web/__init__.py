"""HTTP surface for the mailbox tools."""

from .app import MCP_PATH, SESSION_HEADER, create_app

__all__ = ["MCP_PATH", "SESSION_HEADER", "create_app"]
