"""Conversation tracking and dispatch for concurrent MCP clients.

Every client conversation gets its own MCP server and streamable-HTTP
transport, keyed by the session id handed out on ``initialize``.

Features:
- One server/transport pair per conversation, run on a managed task group
- Discarding of results that finish after their conversation was closed
- Background reaper closing conversations idle for longer than a threshold
- Cleanup when a transport reports closure on its own
"""

from __future__ import annotations

import enum
import json
import logging
import time
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

import anyio
import mcp.types as types
from anyio.abc import TaskGroup, TaskStatus
from mcp.server.lowlevel import Server
from mcp.server.streamable_http import (
    MCP_SESSION_ID_HEADER,
    StreamableHTTPServerTransport,
)
from starlette import status as http_status
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import Message, Receive, Scope, Send

from mailbox_mcp.core.config import ServerSettings

LOGGER = logging.getLogger(__name__)

SESSION_HEADER = MCP_SESSION_ID_HEADER

DEFAULT_IDLE_TIMEOUT = 30 * 60.0
DEFAULT_REAP_INTERVAL = 60.0


class ConversationState(enum.Enum):
    """Lifecycle of a client conversation."""

    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"
    CLOSED = "closed"


def _error_response(status_code: int, message: str) -> Response:
    error = types.JSONRPCError(
        jsonrpc="2.0",
        id="server-error",
        error=types.ErrorData(code=types.INVALID_REQUEST, message=message),
    )
    return Response(
        error.model_dump_json(by_alias=True, exclude_none=True),
        status_code=status_code,
        media_type="application/json",
    )


def _session_not_found() -> Response:
    return _error_response(http_status.HTTP_404_NOT_FOUND, "Session not found")


def _is_initialize(body: bytes) -> bool:
    try:
        message = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return False
    return (
        isinstance(message, dict)
        and message.get("method") == "initialize"
        and "id" in message
    )


def _is_success(body: bytes) -> bool:
    try:
        message = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return False
    return isinstance(message, dict) and "result" in message


def _replay(body: bytes, receive: Receive) -> Receive:
    """Hand an already consumed request body to the next reader."""
    delivered = False

    async def replayed() -> Message:
        nonlocal delivered
        if not delivered:
            delivered = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replayed


class Conversation:
    """One client's logical session bound to its own server and transport."""

    def __init__(self, session_id: str, server: Server, now: float) -> None:
        self.session_id = session_id
        self.server = server
        self.transport = StreamableHTTPServerTransport(
            mcp_session_id=session_id, is_json_response_enabled=True
        )
        self.state = ConversationState.UNINITIALIZED
        self.in_flight = 0
        self.last_active_at = now

    @property
    def is_active(self) -> bool:
        return self.state is ConversationState.ACTIVE


class SessionRouter:
    """ASGI endpoint mapping session ids to live conversations."""

    def __init__(
        self,
        server_factory: Callable[[], Server],
        *,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        reap_interval: float = DEFAULT_REAP_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ) -> None:
        """
        Initialize the router without starting any task.

        Args:
            server_factory: Builds the MCP server for a new conversation
            idle_timeout: Seconds without requests before a conversation closes
            reap_interval: Seconds between idle scans
            clock: Monotonic time source, replaceable in tests
            id_factory: Generates session ids
        """
        self._server_factory = server_factory
        self.idle_timeout = idle_timeout
        self.reap_interval = reap_interval
        self._clock = clock
        self._id_factory = id_factory
        self._conversations: dict[str, Conversation] = {}
        self._task_group: TaskGroup | None = None

    @classmethod
    def from_settings(
        cls, server_factory: Callable[[], Server], settings: ServerSettings
    ) -> SessionRouter:
        """Build a router using the configured conversation lifetime."""
        return cls(
            server_factory,
            idle_timeout=settings.session_idle_timeout_seconds,
            reap_interval=settings.session_reap_interval_seconds,
        )

    def __len__(self) -> int:
        return len(self._conversations)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._conversations

    def get(self, session_id: str) -> Conversation | None:
        """Return the conversation for ``session_id`` if it is still tracked."""
        return self._conversations.get(session_id)

    @asynccontextmanager
    async def run(self) -> AsyncIterator[None]:
        """Own the task group running conversations and the idle reaper."""
        if self._task_group is not None:
            raise RuntimeError("Session router is already running")
        async with anyio.create_task_group() as task_group:
            self._task_group = task_group
            task_group.start_soon(self._reap_forever)
            LOGGER.debug("Started conversation reaper every %ss", self.reap_interval)
            try:
                yield
            finally:
                with anyio.CancelScope(shield=True):
                    await self.close_all()
                task_group.cancel_scope.cancel()
                self._task_group = None

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if self._task_group is None:
            raise RuntimeError("Session router is not running")
        request = Request(scope, receive)
        session_id = request.headers.get(SESSION_HEADER)

        if request.method == "POST":
            body = await request.body()
            receive = _replay(body, receive)
            if _is_initialize(body):
                if session_id is not None:
                    response = _error_response(
                        http_status.HTTP_400_BAD_REQUEST,
                        "Invalid Request: Server already initialized",
                    )
                    await response(scope, receive, send)
                    return
                await self._initialize(scope, receive, send)
                return

        if session_id is None:
            response = _error_response(
                http_status.HTTP_400_BAD_REQUEST,
                "Bad Request: No valid session ID provided",
            )
            await response(scope, receive, send)
            return
        conversation = self._conversations.get(session_id)
        if conversation is None or not conversation.is_active:
            await _session_not_found()(scope, receive, send)
            return

        if request.method == "DELETE":
            await self.terminate(session_id)
            await Response(status_code=http_status.HTTP_200_OK)(scope, receive, send)
            return
        await self._dispatch(conversation, scope, receive, send)

    async def _initialize(self, scope: Scope, receive: Receive, send: Send) -> None:
        assert self._task_group is not None
        conversation = Conversation(
            self._id_factory(), self._server_factory(), self._clock()
        )
        await self._task_group.start(self._run_conversation, conversation)

        start: Message | None = None

        async def register_on_success(message: Message) -> None:
            nonlocal start
            if message["type"] == "http.response.start":
                start = message
                return
            if message["type"] == "http.response.body" and start is not None:
                # Registered before the reply leaves so the next request finds it.
                if start["status"] == http_status.HTTP_200_OK and _is_success(
                    message.get("body", b"")
                ):
                    self._activate(conversation)
                await send(start)
                start = None
            await send(message)

        await conversation.transport.handle_request(scope, receive, register_on_success)
        if not conversation.is_active:
            LOGGER.debug("Initialize failed for conversation %s", conversation.session_id)
            await self._close(conversation)

    def _activate(self, conversation: Conversation) -> None:
        conversation.state = ConversationState.ACTIVE
        self._conversations[conversation.session_id] = conversation
        LOGGER.info("Conversation %s initialized", conversation.session_id)

    async def _dispatch(
        self, conversation: Conversation, scope: Scope, receive: Receive, send: Send
    ) -> None:
        started = False
        discarded = False

        async def discard_after_close(message: Message) -> None:
            nonlocal started, discarded
            if discarded:
                return
            if message["type"] == "http.response.start" and not started:
                if not conversation.is_active:
                    discarded = True
                    LOGGER.debug(
                        "Discarding result for terminated conversation %s",
                        conversation.session_id,
                    )
                    await _session_not_found()(scope, receive, send)
                    return
                started = True
            await send(message)

        conversation.in_flight += 1
        conversation.last_active_at = self._clock()
        try:
            await conversation.transport.handle_request(
                scope, receive, discard_after_close
            )
        except Exception:
            if started or discarded or conversation.is_active:
                raise
            await _session_not_found()(scope, receive, send)
        finally:
            conversation.in_flight -= 1
            conversation.last_active_at = self._clock()

    async def _run_conversation(
        self,
        conversation: Conversation,
        *,
        task_status: TaskStatus[None] = anyio.TASK_STATUS_IGNORED,
    ) -> None:
        server = conversation.server
        try:
            async with conversation.transport.connect() as (read_stream, write_stream):
                task_status.started()
                await server.run(
                    read_stream,
                    write_stream,
                    server.create_initialization_options(),
                    stateless=False,
                )
        except Exception:  # pylint: disable=broad-except
            LOGGER.exception("Conversation %s crashed", conversation.session_id)
        finally:
            # Transport closure ends the conversation whoever caused it.
            if self._forget(conversation):
                LOGGER.info("Conversation %s closed by transport", conversation.session_id)

    def _forget(self, conversation: Conversation) -> bool:
        """Mark ``conversation`` closed and drop it; ``False`` if already done."""
        if conversation.state is ConversationState.CLOSED:
            return False
        conversation.state = ConversationState.CLOSED
        if self._conversations.get(conversation.session_id) is conversation:
            del self._conversations[conversation.session_id]
        return True

    async def _close(self, conversation: Conversation) -> None:
        self._forget(conversation)
        await conversation.transport.terminate()

    async def terminate(self, session_id: str) -> bool:
        """Close the conversation for ``session_id``; ``False`` if unknown."""
        conversation = self._conversations.get(session_id)
        if conversation is None:
            return False
        await self._close(conversation)
        LOGGER.info("Conversation %s terminated", session_id)
        return True

    async def reap_idle(self) -> list[str]:
        """
        Close conversations idle for longer than the threshold.

        Conversations with a request still in progress are never reaped.

        Returns:
            Session ids of the closed conversations
        """
        now = self._clock()
        expired = [
            conversation
            for conversation in self._conversations.values()
            if conversation.in_flight == 0
            and now - conversation.last_active_at > self.idle_timeout
        ]
        for conversation in expired:
            await self._close(conversation)
        if expired:
            LOGGER.info("Closed %d idle conversation(s)", len(expired))
        return [conversation.session_id for conversation in expired]

    async def close_all(self) -> None:
        """Terminate every conversation, e.g. on server shutdown."""
        conversations = list(self._conversations.values())
        for conversation in conversations:
            await self._close(conversation)
        if conversations:
            LOGGER.info("Closed %d conversation(s)", len(conversations))

    async def _reap_forever(self) -> None:
        while True:
            await anyio.sleep(self.reap_interval)
            try:
                await self.reap_idle()
            except Exception:  # pylint: disable=broad-except
                LOGGER.exception("Conversation reaper pass failed")


__all__ = ["Conversation", "ConversationState", "SESSION_HEADER", "SessionRouter"]
