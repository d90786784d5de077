"""Protocol interfaces for decoupling components."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Sequence
from typing import Protocol

from .config import Account
from .models import FetchedMessage, FetchOptions


class MailboxSession(Protocol):
    """Authenticated, stateful connection to one account's mailbox server.

    Commands issued concurrently against one session are queued by the
    session itself so responses stay correlated with their requests.
    """

    @property
    def usable(self) -> bool:
        """Report whether the session can accept commands, without I/O."""
        raise NotImplementedError

    async def connect(self) -> None:
        """Open the connection and authenticate."""
        raise NotImplementedError

    async def close(self) -> None:
        """Log out and release network resources."""
        raise NotImplementedError

    async def mailbox_open(self, name: str) -> None:
        """Select ``name`` as the current mailbox."""
        raise NotImplementedError

    async def search(
        self, criteria: Sequence[bytes], *, uid: bool = True
    ) -> int | list[int] | None:
        """Return UIDs matching IMAP ``SEARCH`` criteria in the selected mailbox."""
        raise NotImplementedError

    def fetch(
        self, uids: Sequence[int], options: FetchOptions
    ) -> AsyncIterator[FetchedMessage]:
        """Lazily yield fetched records for ``uids``, in server order."""
        raise NotImplementedError


SessionFactory = Callable[[Account], MailboxSession]


__all__ = ["MailboxSession", "SessionFactory"]
