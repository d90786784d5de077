"""Tests for the per-account connection pool."""

from __future__ import annotations

import asyncio

import pytest
from fakes import FakeClock, FakeSession, SessionFactory, make_account

from mailbox_mcp.core.errors import PoolClosedError
from mailbox_mcp.storage import ImapConnectionPool


def test_acquire_reuses_usable_session() -> None:
    factory = SessionFactory()
    pool = ImapConnectionPool(factory)
    account = make_account()

    async def scenario() -> tuple[object, object]:
        first = await pool.acquire(account)
        second = await pool.acquire(account)
        return first, second

    first, second = asyncio.run(scenario())

    assert first is second
    assert factory.requested == ["work"]
    assert first.calls == [("connect", None)]  # type: ignore[attr-defined]
    assert "work" in pool
    assert pool.size == 1


def test_accounts_get_separate_sessions() -> None:
    factory = SessionFactory()
    pool = ImapConnectionPool(factory)

    async def scenario() -> tuple[object, object]:
        return (
            await pool.acquire(make_account("work")),
            await pool.acquire(make_account("home")),
        )

    work, home = asyncio.run(scenario())

    assert work is not home
    assert factory.requested == ["work", "home"]
    assert pool.size == 2


def test_failed_connect_is_not_cached() -> None:
    factory = SessionFactory(FakeSession(fail_connect=True), FakeSession())
    pool = ImapConnectionPool(factory)
    account = make_account()

    async def scenario() -> object:
        with pytest.raises(ConnectionError):
            await pool.acquire(account)
        assert "work" not in pool
        return await pool.acquire(account)

    session = asyncio.run(scenario())

    assert session is factory.created[1]
    assert len(factory.requested) == 2


def test_unusable_session_is_replaced_and_closed() -> None:
    stale = FakeSession()
    factory = SessionFactory(stale, FakeSession())
    pool = ImapConnectionPool(factory)
    account = make_account()

    async def scenario() -> object:
        await pool.acquire(account)
        stale.connected = False
        replacement = await pool.acquire(account)
        await pool.shutdown()
        return replacement

    replacement = asyncio.run(scenario())

    assert replacement is factory.created[1]
    assert stale.calls == [("connect", None), ("close", None)]


def test_reap_evicts_idle_sessions_only() -> None:
    clock = FakeClock()
    idle, busy = FakeSession(), FakeSession()
    pool = ImapConnectionPool(SessionFactory(idle, busy), idle_timeout=300, clock=clock)

    async def scenario() -> list[str]:
        await pool.acquire(make_account("idle"))
        clock.advance(200)
        await pool.acquire(make_account("busy"))
        clock.advance(150)
        evicted = pool.reap_idle()
        await asyncio.sleep(0)
        return evicted

    evicted = asyncio.run(scenario())

    assert evicted == ["idle"]
    assert "idle" not in pool
    assert "busy" in pool
    assert idle.closed
    assert not busy.closed


def test_reap_uses_strict_threshold() -> None:
    clock = FakeClock()
    pool = ImapConnectionPool(SessionFactory(), idle_timeout=300, clock=clock)

    async def scenario() -> list[str]:
        await pool.acquire(make_account())
        clock.advance(300)
        return pool.reap_idle()

    assert asyncio.run(scenario()) == []


def test_acquire_refreshes_idle_clock() -> None:
    clock = FakeClock()
    pool = ImapConnectionPool(SessionFactory(), idle_timeout=300, clock=clock)
    account = make_account()

    async def scenario() -> list[str]:
        await pool.acquire(account)
        clock.advance(250)
        await pool.acquire(account)
        clock.advance(250)
        return pool.reap_idle()

    assert asyncio.run(scenario()) == []


def test_close_failure_during_reap_is_swallowed() -> None:
    clock = FakeClock()
    broken = FakeSession(fail_close=True)
    pool = ImapConnectionPool(SessionFactory(broken), idle_timeout=10, clock=clock)

    async def scenario() -> None:
        await pool.acquire(make_account())
        clock.advance(11)
        pool.reap_idle()
        await pool.shutdown()

    asyncio.run(scenario())

    assert ("close", None) in broken.calls
    assert pool.size == 0


def test_shutdown_closes_everything_and_rejects_new_work() -> None:
    factory = SessionFactory(FakeSession(), FakeSession(fail_close=True))
    pool = ImapConnectionPool(factory, reap_interval=3600)

    async def scenario() -> None:
        pool.start()
        await pool.acquire(make_account("work"))
        await pool.acquire(make_account("home"))
        await pool.shutdown()
        with pytest.raises(PoolClosedError):
            await pool.acquire(make_account("work"))

    asyncio.run(scenario())

    assert pool.is_closed
    assert pool.size == 0
    assert all(("close", None) in session.calls for session in factory.created)
    assert len(factory.created) == 2


def test_cold_cache_race_for_one_account_keeps_last_writer() -> None:
    first, second = FakeSession(), FakeSession()
    factory = SessionFactory(first, second)
    pool = ImapConnectionPool(factory)
    account = make_account()

    async def scenario() -> tuple[object, object, object]:
        gate = asyncio.Event()
        first.connect_gate = second.connect_gate = gate
        racers = asyncio.gather(pool.acquire(account), pool.acquire(account))
        await asyncio.sleep(0)
        gate.set()
        one, two = await racers
        return one, two, await pool.acquire(account)

    one, two, cached = asyncio.run(scenario())

    assert (one, two) == (first, second)
    assert factory.requested == ["work", "work"]
    assert cached is second
    assert pool.size == 1
    # The displaced session stays open for whoever already holds it.
    assert not first.closed


def test_concurrent_acquire_for_different_accounts() -> None:
    work, home = FakeSession(), FakeSession()
    factory = SessionFactory(work, home)
    pool = ImapConnectionPool(factory)

    async def scenario() -> list[object]:
        gate = asyncio.Event()
        work.connect_gate = home.connect_gate = gate
        racers = asyncio.gather(
            pool.acquire(make_account("work")), pool.acquire(make_account("home"))
        )
        await asyncio.sleep(0)
        # Both connects are in flight at once.
        assert factory.requested == ["work", "home"]
        gate.set()
        return list(await racers)

    sessions = asyncio.run(scenario())

    assert sessions == [work, home]
    assert "work" in pool and "home" in pool
    assert pool.size == 2


def test_background_reaper_evicts_after_interval() -> None:
    clock = FakeClock()
    session = FakeSession()
    pool = ImapConnectionPool(
        SessionFactory(session), idle_timeout=30, reap_interval=0.01, clock=clock
    )

    async def scenario() -> bool:
        pool.start()
        await pool.acquire(make_account())
        clock.advance(31)
        for _ in range(200):
            if "work" not in pool and session.closed:
                break
            await asyncio.sleep(0.01)
        evicted = "work" not in pool
        await pool.shutdown()
        return evicted

    assert asyncio.run(scenario())
    assert session.closed
