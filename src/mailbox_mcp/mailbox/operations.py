"""Account-scoped mailbox operations answered against the INBOX."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from ..core.config import Account
from ..core.errors import UnknownAccountError
from ..core.models import (
    AccountSummary,
    FetchOptions,
    FullMessage,
    MessageListItem,
    SearchQuery,
)
from ..ingestion.normalizer import to_full_message, to_list_item
from ..storage.connection_pool import ImapConnectionPool
from ..transport.search import build_search_criteria

LOGGER = logging.getLogger(__name__)

INBOX = "INBOX"

SEARCH_FETCH = FetchOptions(
    envelope=True, headers=False, body_structure=True, body_parts=("text",)
)
DETAIL_FETCH = FetchOptions(
    envelope=True, headers=True, body_structure=True, body_parts=("text", "html")
)


def list_accounts(accounts: Iterable[Account]) -> list[AccountSummary]:
    """Project configured accounts to their public fields, preserving order."""
    return [
        AccountSummary(
            name=account.name,
            description=account.description,
            username=account.username,
        )
        for account in accounts
    ]


def coerce_uid_list(result: object) -> list[int]:
    """Normalise a search result into a list of UIDs.

    A bare integer becomes a one-element list; anything that is neither an
    integer nor a list yields an empty list.
    """
    if isinstance(result, bool):
        return []
    if isinstance(result, int):
        return [result]
    if isinstance(result, list):
        return [uid for uid in result if isinstance(uid, int) and not isinstance(uid, bool)]
    return []


class MailboxOperations:
    """Search and read messages for configured accounts."""

    def __init__(self, accounts: Sequence[Account], pool: ImapConnectionPool) -> None:
        """Bind the operations to the loaded accounts and a connection pool."""
        self._accounts = tuple(accounts)
        self._by_name = {account.name: account for account in self._accounts}
        self._pool = pool

    @property
    def pool(self) -> ImapConnectionPool:
        """Return the pool sessions are drawn from."""
        return self._pool

    def list_accounts(self) -> list[AccountSummary]:
        """Return the public view of every configured account."""
        return list_accounts(self._accounts)

    def get_account(self, account_name: str) -> Account:
        """Resolve ``account_name`` or raise :class:`UnknownAccountError`."""
        account = self._by_name.get(account_name)
        if account is None:
            raise UnknownAccountError(account_name)
        return account

    async def search_messages(
        self,
        account_name: str,
        query: SearchQuery | str,
        limit: int | None = None,
    ) -> list[MessageListItem]:
        """Search the INBOX and return summaries sorted by ascending UID."""
        account = self.get_account(account_name)
        search_query = SearchQuery(body=query) if isinstance(query, str) else query
        # Raises SearchQueryError before any connection work.
        criteria = build_search_criteria(search_query)

        session = await self._pool.acquire(account)
        await session.mailbox_open(INBOX)
        uids = coerce_uid_list(await session.search(criteria, uid=True))
        if not uids:
            return []
        if limit is not None:
            uids = uids[:limit]

        rows = [to_list_item(fetched) async for fetched in session.fetch(uids, SEARCH_FETCH)]
        LOGGER.debug("Search on %s returned %d message(s)", account_name, len(rows))
        return sorted(rows, key=lambda row: row.uid)

    async def read_message(self, account_name: str, uid: int) -> FullMessage | None:
        """Fetch one message by UID, or ``None`` when the server has no such UID."""
        account = self.get_account(account_name)
        session = await self._pool.acquire(account)
        await session.mailbox_open(INBOX)

        fetched = [record async for record in session.fetch([uid], DETAIL_FETCH)]
        if not fetched:
            return None
        return to_full_message(fetched[0])

    async def read_messages(
        self, account_name: str, uids: Iterable[int]
    ) -> list[FullMessage]:
        """Fetch several messages in one round-trip, sorted by ascending UID."""
        account = self.get_account(account_name)
        unique_uids = sorted(set(uids))
        if not unique_uids:
            return []

        session = await self._pool.acquire(account)
        await session.mailbox_open(INBOX)
        messages = [
            to_full_message(fetched)
            async for fetched in session.fetch(unique_uids, DETAIL_FETCH)
        ]
        return sorted(messages, key=lambda message: message.uid)


__all__ = [
    "DETAIL_FETCH",
    "INBOX",
    "MailboxOperations",
    "SEARCH_FETCH",
    "coerce_uid_list",
    "list_accounts",
]
