"""IMAP transport adapter providing asynchronous mailbox sessions."""

from __future__ import annotations

import asyncio
import imaplib
import logging
from collections.abc import AsyncIterator, Callable, Iterator, Sequence
from dataclasses import dataclass
from typing import Any, TypeVar

from ..core.config import Account, ImapCredentials
from ..core.interfaces import MailboxSession
from ..core.models import BodyNode, Envelope, FetchedMessage, FetchOptions
from ..ingestion.parser import FetchedMessageParser
from .response import (
    ResponseParseError,
    find_text_part,
    parse_body_structure,
    parse_envelope,
    parse_fetch_response,
    section_payload,
    split_fetch_responses,
)
from .search import quote_string

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

_READY_STATES = frozenset({"AUTH", "SELECTED"})

ImapConnection = imaplib.IMAP4 | imaplib.IMAP4_SSL


class ImapError(RuntimeError):
    """Wrap low level IMAP errors with additional context."""


class ImapSession(MailboxSession):
    """Asynchronous session over one ``imaplib`` connection.

    ``imaplib`` is blocking, so every command runs in a worker thread. An
    :class:`asyncio.Lock` acts as the session's command queue: concurrent
    callers take turns, keeping each response matched to its command.
    """

    def __init__(
        self,
        credentials: ImapCredentials,
        *,
        account_name: str,
        parser: FetchedMessageParser | None = None,
    ) -> None:
        """Initialise the session with credentials; no I/O happens here."""
        self._credentials = credentials
        self._parser = parser or FetchedMessageParser()
        self._connection: ImapConnection | None = None
        self._lock = asyncio.Lock()
        self._broken = False
        self.account_name = account_name
        self.selected_mailbox: str | None = None

    @classmethod
    def for_account(cls, account: Account) -> ImapSession:
        """Build an unconnected session for ``account``."""
        return cls(account.imap, account_name=account.name)

    # Public API ---------------------------------------------------------------
    @property
    def usable(self) -> bool:
        """Return whether the connection is authenticated and not broken."""
        connection = self._connection
        return (
            connection is not None
            and not self._broken
            and getattr(connection, "state", None) in _READY_STATES
        )

    async def connect(self) -> None:
        """Establish the IMAP connection and authenticate."""
        async with self._lock:
            if self._connection is not None and not self._broken:
                return
            self._connection = await asyncio.to_thread(self._open)
            self._broken = False

    async def close(self) -> None:
        """Terminate the IMAP session cleanly."""
        async with self._lock:
            connection = self._connection
            self._connection = None
            self.selected_mailbox = None
            if connection is None:
                return
            await asyncio.to_thread(_logout, connection, self.account_name)

    async def mailbox_open(self, name: str) -> None:
        """Select ``name`` read-only; messages are never modified."""
        mailbox = _quote_mailbox(name)
        status, _ = await self._run(
            f"select {name}", lambda conn: conn.select(mailbox, readonly=True)
        )
        if status != "OK":
            raise ImapError(f"Unable to select mailbox '{name}'")
        self.selected_mailbox = name

    async def search(
        self, criteria: Sequence[bytes], *, uid: bool = True
    ) -> int | list[int] | None:
        """Return the UIDs (or sequence numbers) matching ``criteria``."""
        LOGGER.debug(
            "Searching %s with %d criteria tokens", self.account_name, len(criteria)
        )
        if uid:
            status, data = await self._run(
                "search", lambda conn: conn.uid("SEARCH", *criteria)
            )
        else:
            status, data = await self._run(
                "search", lambda conn: conn.search(None, *criteria)
            )
        if status != "OK":
            raise ImapError("Failed to search for message UIDs")
        return _parse_search_response(data)

    async def fetch(
        self, uids: Sequence[int], options: FetchOptions
    ) -> AsyncIterator[FetchedMessage]:
        """Yield a record for each UID the server returns.

        Requests that need headers or the HTML body download the full source
        and parse it locally. List views only ask for ``ENVELOPE`` and
        ``BODYSTRUCTURE`` and then fetch the plain-text section on its own, so
        attachments never cross the wire.
        """
        if not uids:
            return
        uid_set = ",".join(str(uid) for uid in uids)
        if _needs_source(options):
            data = await self._fetch(uid_set, "(UID BODY.PEEK[])")
            for items in _iter_fetch_items(data):
                payload = section_payload(items)
                if payload is not None:
                    yield self._parser.parse(_uid_of(items), payload, options)
            return

        summaries = await self._fetch_summaries(uid_set, options)
        texts = await self._fetch_text_parts(summaries) if options.body_parts else {}
        for summary in summaries:
            yield FetchedMessage(
                uid=summary.uid,
                envelope=summary.envelope if options.envelope else None,
                body_parts={"text": texts[summary.uid]} if summary.uid in texts else {},
                body_structure=(
                    summary.body_structure if options.body_structure else None
                ),
            )

    # Internal helpers ---------------------------------------------------------
    async def _fetch(self, uid_set: str, items: str) -> Sequence[Any]:
        LOGGER.debug("Fetching %s %s for UIDs %s", items, self.account_name, uid_set)
        status, data = await self._run(
            "fetch", lambda conn: conn.uid("FETCH", uid_set, items)
        )
        if status != "OK":
            raise ImapError(f"Failed to fetch message UIDs {uid_set}")
        return data

    async def _fetch_summaries(
        self, uid_set: str, options: FetchOptions
    ) -> list[_Summary]:
        wanted = ["UID"]
        if options.envelope:
            wanted.append("ENVELOPE")
        if options.body_structure or options.body_parts:
            wanted.append("BODYSTRUCTURE")
        data = await self._fetch(uid_set, f"({' '.join(wanted)})")

        summaries: list[_Summary] = []
        for items in _iter_fetch_items(data):
            uid = _uid_of(items)
            if uid is None:
                continue
            summaries.append(
                _Summary(
                    uid=uid,
                    envelope=_parsed_or_none(parse_envelope, items.get("ENVELOPE")),
                    body_structure=_parsed_or_none(
                        parse_body_structure, items.get("BODYSTRUCTURE")
                    ),
                )
            )
        return summaries

    async def _fetch_text_parts(self, summaries: Sequence[_Summary]) -> dict[int, str]:
        nodes: dict[int, BodyNode] = {}
        by_section: dict[str, list[int]] = {}
        for summary in summaries:
            if summary.body_structure is None:
                continue
            node = find_text_part(summary.body_structure)
            if node is None or node.part is None:
                continue
            nodes[summary.uid] = node
            by_section.setdefault(node.part, []).append(summary.uid)

        texts: dict[int, str] = {}
        # One round-trip per distinct section; most messages share "1" or "1.1".
        for section, section_uids in by_section.items():
            uid_set = ",".join(str(uid) for uid in section_uids)
            data = await self._fetch(uid_set, f"(UID BODY.PEEK[{section}])")
            for items in _iter_fetch_items(data):
                uid = _uid_of(items)
                payload = section_payload(items)
                if uid not in nodes or payload is None:
                    continue
                text = self._parser.decode_section(payload, nodes[uid])
                if text:
                    texts[uid] = text
        return texts

    def _open(self) -> ImapConnection:
        settings = self._credentials
        try:
            if settings.secure:
                LOGGER.debug(
                    "Connecting to IMAP host %s:%s via SSL", settings.host, settings.port
                )
                connection: ImapConnection = imaplib.IMAP4_SSL(
                    settings.host, settings.port
                )
            else:
                LOGGER.debug(
                    "Connecting to IMAP host %s:%s without SSL",
                    settings.host,
                    settings.port,
                )
                connection = imaplib.IMAP4(settings.host, settings.port)
        except (imaplib.IMAP4.error, OSError) as exc:
            raise ImapError(
                f"Failed to connect to IMAP server {settings.host}:{settings.port}"
            ) from exc

        try:
            LOGGER.debug("Authenticating as %s", settings.auth.user)
            connection.login(settings.auth.user, settings.auth.password.get_secret_value())
        except (imaplib.IMAP4.error, OSError) as exc:
            _shutdown_quietly(connection)
            raise ImapError(
                f"Authentication failed for {settings.auth.user} at {settings.host}"
            ) from exc
        return connection

    async def _run(self, description: str, command: Callable[[ImapConnection], T]) -> T:
        async with self._lock:
            connection = self._connection
            if connection is None or self._broken:
                raise ImapError("IMAP connection has not been established")
            try:
                return await asyncio.to_thread(command, connection)
            except (imaplib.IMAP4.abort, OSError) as exc:
                self._broken = True
                raise ImapError(f"IMAP connection lost during {description}") from exc
            except imaplib.IMAP4.error as exc:
                raise ImapError(f"IMAP error during {description}: {exc}") from exc


@dataclass(frozen=True, slots=True)
class _Summary:
    uid: int
    envelope: Envelope | None
    body_structure: BodyNode | None


def _needs_source(options: FetchOptions) -> bool:
    return options.headers or any(label != "text" for label in options.body_parts)


def _parsed_or_none(parse: Callable[[Any], T], value: Any) -> T | None:
    if value is None:
        return None
    try:
        return parse(value)
    except ResponseParseError as exc:
        LOGGER.warning("Ignoring malformed FETCH item: %s", exc)
        return None


def _uid_of(items: dict[str, Any]) -> int | None:
    uid = items.get("UID")
    return uid if isinstance(uid, int) else None


def _quote_mailbox(name: str) -> str:
    if name.isascii() and name.replace("/", "").replace(".", "").isalnum():
        return name
    return quote_string(name)


def _parse_search_response(data: Sequence[Any] | None) -> list[int]:
    uids: list[int] = []
    for line in data or ():
        if not isinstance(line, bytes):
            continue
        uids.extend(int(token) for token in line.split() if token.isdigit())
    return uids


def _iter_fetch_items(data: Sequence[Any] | None) -> Iterator[dict[str, Any]]:
    """Yield the data items of each response in a ``UID FETCH`` reply.

    The UID may arrive before or after a literal; unparseable responses are
    logged and skipped rather than failing the whole batch.
    """
    for raw in split_fetch_responses(data):
        try:
            yield parse_fetch_response(raw)
        except ResponseParseError as exc:
            LOGGER.warning("Skipping unparseable FETCH response: %s", exc)


def _logout(connection: ImapConnection, account_name: str) -> None:
    LOGGER.debug("Closing IMAP connection for %s", account_name)
    try:
        if connection.state == "SELECTED":
            connection.close()
    except (imaplib.IMAP4.error, OSError):  # pragma: no cover - depends on server state
        LOGGER.debug("IMAP close raised; continuing with logout")
    finally:
        try:
            connection.logout()
        except (imaplib.IMAP4.error, OSError):  # pragma: no cover
            LOGGER.debug("IMAP logout raised; suppressing during shutdown")


def _shutdown_quietly(connection: ImapConnection) -> None:
    try:
        connection.shutdown()
    except OSError:  # pragma: no cover - socket already gone
        LOGGER.debug("Socket shutdown raised after failed login")


__all__ = ["ImapError", "ImapSession"]
