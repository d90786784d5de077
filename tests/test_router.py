"""Tests for conversation routing, termination and idle reaping."""

from __future__ import annotations

import asyncio
import itertools
import json
from collections.abc import Awaitable, Callable
from typing import Any, NamedTuple, TypeVar

import mcp.types as types
from fakes import FakeClock, FakeSession, SessionFactory, make_account, make_message

from mailbox_mcp.mailbox import MailboxOperations
from mailbox_mcp.storage import ImapConnectionPool
from mailbox_mcp.web.router import SESSION_HEADER, SessionRouter
from mailbox_mcp.web.tools import build_server

T = TypeVar("T")

ACCEPT = "application/json, text/event-stream"

CLIENT_PARAMS = {
    "protocolVersion": "2025-03-26",
    "capabilities": {},
    "clientInfo": {"name": "pytest", "version": "1"},
}
INITIALIZE = {"jsonrpc": "2.0", "id": 0, "method": "initialize", "params": CLIENT_PARAMS}
INITIALIZED = {"jsonrpc": "2.0", "method": "notifications/initialized"}


class Reply(NamedTuple):
    status: int
    headers: dict[str, str]
    payload: Any


def _ping(request_id: int = 9) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "method": "ping"}


def _call(tool: str, arguments: dict[str, Any], request_id: int = 1) -> dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "method": "tools/call",
        "params": {"name": tool, "arguments": arguments},
    }


def _router(*sessions: FakeSession, **options: Any) -> SessionRouter:
    operations = MailboxOperations(
        [make_account()], ImapConnectionPool(SessionFactory(*sessions))
    )
    counter = itertools.count(1)
    options.setdefault("reap_interval", 3600)
    return SessionRouter(
        lambda: build_server(operations),
        id_factory=lambda: f"session-{next(counter)}",
        **options,
    )


async def _request(
    router: SessionRouter,
    method: str = "POST",
    *,
    body: Any = None,
    session_id: str | None = None,
    accept: str = ACCEPT,
) -> Reply:
    payload = json.dumps(body).encode() if body is not None else b""
    headers = [(b"accept", accept.encode()), (b"content-type", b"application/json")]
    if session_id is not None:
        headers.append((SESSION_HEADER.encode(), session_id.encode()))
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": method,
        "scheme": "http",
        "path": "/mcp",
        "raw_path": b"/mcp",
        "root_path": "",
        "query_string": b"",
        "headers": headers,
        "client": ("testclient", 50000),
        "server": ("testserver", 80),
    }
    delivered = False
    never = asyncio.Event()
    sent: list[dict[str, Any]] = []

    async def receive() -> dict[str, Any]:
        nonlocal delivered
        if not delivered:
            delivered = True
            return {"type": "http.request", "body": payload, "more_body": False}
        await never.wait()
        return {"type": "http.disconnect"}

    async def send(message: dict[str, Any]) -> None:
        sent.append(message)

    await router(scope, receive, send)

    start = next(message for message in sent if message["type"] == "http.response.start")
    raw = b"".join(
        message.get("body", b"") for message in sent if message["type"] == "http.response.body"
    )
    return Reply(
        status=start["status"],
        headers={key.decode().lower(): value.decode() for key, value in start["headers"]},
        payload=json.loads(raw) if raw else None,
    )


async def _open(router: SessionRouter) -> str:
    reply = await _request(router, body=INITIALIZE)
    assert reply.status == 200
    session_id = reply.headers[SESSION_HEADER]
    acknowledged = await _request(router, body=INITIALIZED, session_id=session_id)
    assert acknowledged.status == 202
    return session_id


def _run(router: SessionRouter, scenario: Callable[[], Awaitable[T]]) -> T:
    async def main() -> T:
        async with router.run():
            return await scenario()

    return asyncio.run(main())


async def _wait_until(condition: Callable[[], bool]) -> bool:
    for _ in range(200):
        if condition():
            return True
        await asyncio.sleep(0.01)
    return condition()


def test_initialize_creates_conversation() -> None:
    router = _router()

    reply = _run(router, lambda: _request(router, body=INITIALIZE))

    assert reply.status == 200
    assert reply.headers[SESSION_HEADER] == "session-1"
    result = reply.payload["result"]
    assert result["protocolVersion"] == "2025-03-26"
    assert result["serverInfo"]["name"] == "mailbox-mcp"
    assert result["capabilities"]["tools"] == {"listChanged": False}


def test_unknown_protocol_version_negotiates_latest() -> None:
    router = _router()
    message = {**INITIALIZE, "params": {**CLIENT_PARAMS, "protocolVersion": "1999-01-01"}}

    reply = _run(router, lambda: _request(router, body=message))

    assert reply.payload["result"]["protocolVersion"] == types.LATEST_PROTOCOL_VERSION


def test_missing_session_id_is_bad_request() -> None:
    router = _router()

    reply = _run(router, lambda: _request(router, body=_ping()))

    assert reply.status == 400
    assert reply.payload["error"]["message"] == "Bad Request: No valid session ID provided"


def test_unknown_session_id_is_not_found() -> None:
    router = _router()

    reply = _run(router, lambda: _request(router, body=_ping(), session_id="no-such-session"))

    assert reply.status == 404


def test_initialize_with_session_id_is_rejected() -> None:
    router = _router()

    async def scenario() -> tuple[Reply, int]:
        session_id = await _open(router)
        reply = await _request(router, body=INITIALIZE, session_id=session_id)
        return reply, len(router)

    reply, live = _run(router, scenario)

    assert reply.status == 400
    assert live == 1


def test_requests_route_to_their_own_conversation() -> None:
    router = _router()

    async def scenario() -> tuple[str, str, Reply, int]:
        first = await _open(router)
        second = await _open(router)
        reply = await _request(router, body=_ping(), session_id=second)
        return first, second, reply, len(router)

    first, second, reply, live = _run(router, scenario)

    assert first != second
    assert reply.status == 200
    assert reply.headers[SESSION_HEADER] == second
    assert reply.payload == {"jsonrpc": "2.0", "id": 9, "result": {}}
    assert live == 2


def test_tools_list_names_every_tool() -> None:
    router = _router()

    async def scenario() -> Reply:
        session_id = await _open(router)
        return await _request(
            router,
            body={"jsonrpc": "2.0", "id": 2, "method": "tools/list"},
            session_id=session_id,
        )

    reply = _run(router, scenario)

    tools = {tool["name"]: tool for tool in reply.payload["result"]["tools"]}
    assert set(tools) == {
        "list_accounts",
        "search_messages",
        "read_message",
        "load_messages",
    }
    assert "accountName" in tools["search_messages"]["inputSchema"]["properties"]
    assert "outputSchema" in tools["read_message"]
    assert tools["list_accounts"]["title"] == "List IMAP accounts"


def test_protocol_and_argument_errors() -> None:
    router = _router()

    async def scenario() -> list[Reply]:
        session_id = await _open(router)
        replies = []
        for message in (
            {"jsonrpc": "2.0", "id": 4, "method": "resources/list"},
            _call("no_such_tool", {}),
            _call("read_message", {"accountName": "work", "id": -1}),
        ):
            replies.append(await _request(router, body=message, session_id=session_id))
        return replies

    unknown_method, unknown_tool, bad_args = _run(router, scenario)

    assert unknown_method.payload["error"]["code"] == types.METHOD_NOT_FOUND
    assert unknown_tool.payload["result"]["isError"] is True
    assert unknown_tool.payload["result"]["content"][0]["text"] == "Unknown tool: no_such_tool"
    assert bad_args.payload["result"]["isError"] is True


def test_mailbox_failures_are_tool_errors() -> None:
    router = _router(FakeSession([make_message(1)]))

    async def scenario() -> list[Reply]:
        session_id = await _open(router)
        return [
            await _request(
                router,
                body=_call("read_message", {"accountName": "work", "id": 99}),
                session_id=session_id,
            ),
            await _request(
                router, body=_call("list_accounts", {}, 2), session_id=session_id
            ),
            await _request(
                router,
                body=_call("read_message", {"accountName": "nope", "id": 1}, 3),
                session_id=session_id,
            ),
        ]

    missing, listed, wrong_account = _run(router, scenario)

    assert missing.payload["result"]["isError"] is True
    assert missing.payload["result"]["content"][0]["text"] == "Message not found: UID 99"
    assert listed.payload["result"].get("isError") is not True
    assert listed.payload["result"]["structuredContent"]["accounts"][0]["name"] == "work"
    assert wrong_account.payload["result"]["content"][0]["text"] == "Unknown account: nope"


def test_terminated_conversation_rejects_further_requests() -> None:
    router = _router()

    async def scenario() -> tuple[Reply, Reply, bool]:
        session_id = await _open(router)
        deleted = await _request(router, "DELETE", session_id=session_id)
        after = await _request(router, body=_ping(), session_id=session_id)
        return deleted, after, session_id in router

    deleted, after, still_tracked = _run(router, scenario)

    assert deleted.status == 200
    assert after.status == 404
    assert not still_tracked


def test_in_flight_result_is_discarded_after_termination() -> None:
    session = FakeSession([make_message(1)])
    router = _router(session)

    async def scenario() -> Reply:
        session.search_gate = asyncio.Event()
        session_id = await _open(router)
        pending = asyncio.create_task(
            _request(
                router,
                body=_call("search_messages", {"accountName": "work", "searchQuery": "hi"}),
                session_id=session_id,
            )
        )
        assert await _wait_until(
            lambda: any(name == "search" for name, _ in session.calls)
        )
        await _request(router, "DELETE", session_id=session_id)
        return await pending

    reply = _run(router, scenario)

    assert reply.status == 404
    assert reply.payload["error"]["message"] == "Session not found"


def test_reap_idle_closes_only_quiet_conversations() -> None:
    clock = FakeClock()
    router = _router(idle_timeout=30, clock=clock)

    async def scenario() -> tuple[list[str], Reply, Reply]:
        quiet = await _open(router)
        busy = await _open(router)
        clock.advance(20)
        await _request(router, body=_ping(), session_id=busy)
        clock.advance(20)
        reaped = await router.reap_idle()
        return (
            reaped,
            await _request(router, body=_ping(), session_id=quiet),
            await _request(router, body=_ping(), session_id=busy),
        )

    reaped, quiet_reply, busy_reply = _run(router, scenario)

    assert reaped == ["session-1"]
    assert quiet_reply.status == 404
    assert busy_reply.status == 200


def test_reap_idle_skips_conversations_with_requests_in_progress() -> None:
    clock = FakeClock()
    session = FakeSession([make_message(1)])
    router = _router(session, idle_timeout=30, clock=clock)

    async def scenario() -> tuple[list[str], Reply]:
        session.search_gate = asyncio.Event()
        session_id = await _open(router)
        pending = asyncio.create_task(
            _request(
                router,
                body=_call("search_messages", {"accountName": "work", "searchQuery": "hi"}),
                session_id=session_id,
            )
        )
        assert await _wait_until(
            lambda: any(name == "search" for name, _ in session.calls)
        )
        clock.advance(60)
        reaped = await router.reap_idle()
        session.search_gate.set()
        return reaped, await pending

    reaped, reply = _run(router, scenario)

    assert reaped == []
    assert reply.status == 200
    assert reply.payload["result"]["structuredContent"]["results"][0]["uid"] == 1


def test_background_reaper_closes_abandoned_conversations() -> None:
    clock = FakeClock()
    router = _router(idle_timeout=30, reap_interval=0.01, clock=clock)

    async def scenario() -> bool:
        session_id = await _open(router)
        clock.advance(31)
        return await _wait_until(lambda: session_id not in router)

    assert _run(router, scenario)
    assert len(router) == 0


def test_transport_closure_forgets_conversation() -> None:
    router = _router()

    async def scenario() -> tuple[bool, Reply]:
        session_id = await _open(router)
        conversation = router.get(session_id)
        assert conversation is not None
        await conversation.transport.terminate()
        forgotten = await _wait_until(lambda: session_id not in router)
        return forgotten, await _request(router, body=_ping(), session_id=session_id)

    forgotten, reply = _run(router, scenario)

    assert forgotten
    assert reply.status == 404


def test_shutdown_closes_every_conversation() -> None:
    router = _router()

    async def scenario() -> int:
        await _open(router)
        await _open(router)
        return len(router)

    assert _run(router, scenario) == 2
    assert len(router) == 0
