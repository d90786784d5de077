"""FastAPI application exposing mailbox tools over streamable HTTP."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from mailbox_mcp import __version__
from mailbox_mcp.core import AppSettings
from mailbox_mcp.core.interfaces import SessionFactory
from mailbox_mcp.mailbox import MailboxOperations
from mailbox_mcp.storage import ImapConnectionPool
from mailbox_mcp.transport import ImapSession

from .router import SESSION_HEADER, SessionRouter
from .tools import build_server

LOGGER = logging.getLogger(__name__)

MCP_PATH = "/mcp"


def create_app(
    settings: AppSettings, *, session_factory: SessionFactory | None = None
) -> FastAPI:
    """Create and configure the FastAPI application."""
    pool = ImapConnectionPool.from_settings(
        session_factory or ImapSession.for_account, settings.pool
    )
    operations = MailboxOperations(settings.accounts, pool)
    router = SessionRouter.from_settings(
        lambda: build_server(operations), settings.server
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        pool.start()
        LOGGER.info(
            "Serving %d account(s) at %s", len(settings.accounts), MCP_PATH
        )
        try:
            async with router.run():
                yield
        finally:
            await pool.shutdown()

    app = FastAPI(title="Mailbox MCP", version=__version__, lifespan=lifespan)
    app.state.pool = pool
    app.state.operations = operations
    app.state.router = router
    # POST carries client messages, GET opens the push stream, DELETE ends
    # the conversation; the router dispatches all three.
    app.add_route(MCP_PATH, router, include_in_schema=False)
    return app


__all__ = ["MCP_PATH", "SESSION_HEADER", "create_app"]
