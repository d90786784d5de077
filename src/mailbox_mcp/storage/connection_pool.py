"""
IMAP Connection Pool

Keeps one authenticated mailbox session per configured account so that
requests reuse expensive connections instead of logging in every time.

Features:
- Lazy session creation on first use of an account
- Reuse of live sessions without any network round-trip
- Background reaper evicting sessions idle for longer than a threshold
- Explicit start/shutdown lifecycle owning the reaper task
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from mailbox_mcp.core.config import Account, PoolSettings
from mailbox_mcp.core.errors import PoolClosedError
from mailbox_mcp.core.interfaces import MailboxSession, SessionFactory

LOGGER = logging.getLogger(__name__)

DEFAULT_IDLE_TIMEOUT = 5 * 60.0
DEFAULT_REAP_INTERVAL = 60.0


@dataclass(slots=True)
class PooledConnection:
    """Live session cached for one account."""

    account_name: str
    session: MailboxSession
    last_used_at: float


class ImapConnectionPool:
    """Per-account cache of connected mailbox sessions.

    The pool guarantees at most one cached connection per account name. It
    does not serialise operations: callers sharing a session rely on the
    session's own command queue.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        reap_interval: float = DEFAULT_REAP_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the pool without opening any connection.

        Args:
            session_factory: Builds an unconnected session for an account
            idle_timeout: Seconds of inactivity before a session is evicted
            reap_interval: Seconds between idle scans
            clock: Monotonic time source, replaceable in tests
        """
        self._session_factory = session_factory
        self.idle_timeout = idle_timeout
        self.reap_interval = reap_interval
        self._clock = clock
        self._entries: dict[str, PooledConnection] = {}
        self._reaper: asyncio.Task[None] | None = None
        self._pending_closes: set[asyncio.Task[None]] = set()
        self._closed = False

    @classmethod
    def from_settings(
        cls, session_factory: SessionFactory, settings: PoolSettings
    ) -> ImapConnectionPool:
        """Build a pool using the configured lifetime policy."""
        return cls(
            session_factory,
            idle_timeout=settings.idle_timeout_seconds,
            reap_interval=settings.reap_interval_seconds,
        )

    async def acquire(self, account: Account) -> MailboxSession:
        """
        Return a connected session for ``account``.

        Args:
            account: Account whose mailbox server should be reached

        Returns:
            A cached session if it still reports itself usable, otherwise a
            freshly connected one

        Raises:
            PoolClosedError: If the pool has been shut down
            ImapError: If connecting or authenticating fails
        """
        if self._closed:
            raise PoolClosedError("Connection pool is closed")

        cached = self._entries.get(account.name)
        if cached is not None and cached.session.usable:
            cached.last_used_at = self._clock()
            return cached.session

        session = self._session_factory(account)
        LOGGER.info("Opening mailbox session for account %s", account.name)
        await session.connect()

        if self._closed:
            self._schedule_close(account.name, session)
            raise PoolClosedError("Connection pool is closed")

        previous = self._entries.get(account.name)
        if previous is not None:
            if not previous.session.usable:
                self._schedule_close(account.name, previous.session)
            else:
                # Cold-cache race for one account: last writer wins and the
                # other session is left to its current users.
                LOGGER.debug(
                    "Concurrent session creation for %s; keeping the newest",
                    account.name,
                )
        # Published only once connected so lookups never see a half-built entry.
        self._entries[account.name] = PooledConnection(
            account_name=account.name,
            session=session,
            last_used_at=self._clock(),
        )
        return session

    def reap_idle(self) -> list[str]:
        """
        Evict sessions idle for longer than the threshold.

        Closing happens in background tasks; failures are logged and dropped.

        Returns:
            Names of the evicted accounts
        """
        now = self._clock()
        evicted: list[str] = []
        for name, entry in list(self._entries.items()):
            if now - entry.last_used_at <= self.idle_timeout:
                continue
            del self._entries[name]
            self._schedule_close(name, entry.session)
            evicted.append(name)
        if evicted:
            LOGGER.info("Evicted %d idle mailbox session(s)", len(evicted))
        return evicted

    def start(self) -> None:
        """Start the background reaper on the running event loop."""
        if self._closed:
            raise PoolClosedError("Connection pool is closed")
        if self._reaper is None or self._reaper.done():
            self._reaper = asyncio.create_task(
                self._reap_forever(), name="imap-pool-reaper"
            )
            LOGGER.debug("Started idle reaper every %ss", self.reap_interval)

    async def shutdown(self) -> None:
        """Stop the reaper and close every cached session."""
        if self._closed:
            return
        self._closed = True

        if self._reaper is not None:
            self._reaper.cancel()
            try:
                await self._reaper
            except asyncio.CancelledError:
                pass
            self._reaper = None

        entries = list(self._entries.values())
        self._entries.clear()
        await asyncio.gather(
            *(self._close_quietly(entry.account_name, entry.session) for entry in entries)
        )
        if self._pending_closes:
            await asyncio.gather(*self._pending_closes, return_exceptions=True)
        LOGGER.info("Closed connection pool (%d sessions closed)", len(entries))

    async def _reap_forever(self) -> None:
        while True:
            await asyncio.sleep(self.reap_interval)
            try:
                self.reap_idle()
            except Exception:  # pylint: disable=broad-except
                LOGGER.exception("Idle reaper pass failed")

    def _schedule_close(self, account_name: str, session: MailboxSession) -> None:
        task = asyncio.create_task(self._close_quietly(account_name, session))
        self._pending_closes.add(task)
        task.add_done_callback(self._pending_closes.discard)

    @staticmethod
    async def _close_quietly(account_name: str, session: MailboxSession) -> None:
        try:
            await session.close()
        except Exception:  # pylint: disable=broad-except
            LOGGER.warning("Ignoring error while closing session for %s", account_name)

    def __contains__(self, account_name: object) -> bool:
        """Return whether a session is cached for ``account_name``."""
        return account_name in self._entries

    @property
    def size(self) -> int:
        """Get the number of cached sessions."""
        return len(self._entries)

    @property
    def is_closed(self) -> bool:
        """Check if pool is closed."""
        return self._closed


__all__ = ["ImapConnectionPool", "PooledConnection"]
