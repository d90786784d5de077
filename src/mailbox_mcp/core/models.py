"""Core domain models used across the application."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True, slots=True)
class Address:
    """Envelope address as reported by the mailbox server."""

    name: str | None = None
    mailbox: str | None = None
    host: str | None = None


@dataclass(frozen=True, slots=True)
class Envelope:
    """Addressing, subject, and date metadata for a fetched message."""

    date: datetime | None = None
    subject: str | None = None
    from_: tuple[Address, ...] = ()
    to: tuple[Address, ...] = ()
    cc: tuple[Address, ...] = ()


@dataclass(frozen=True, slots=True)
class Disposition:
    """Content-Disposition of a MIME part."""

    type: str | None = None
    params: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class BodyNode:
    """Single node of a message body-structure tree."""

    type: str | None = None
    disposition: Disposition | None = None
    parameters: Mapping[str, str] = field(default_factory=dict)
    size: int | None = None
    child_nodes: tuple[BodyNode, ...] = ()
    encoding: str | None = None
    # IMAP section specifier, e.g. "1.2"; ``None`` for the root multipart.
    part: str | None = None


HeaderValue = str | Sequence[str]
BodyPart = str | bytes | None


@dataclass(frozen=True, slots=True)
class FetchedMessage:
    """Message record as delivered by a mailbox session.

    Every field is optional: a server may omit anything that was not requested
    or that the message simply does not carry.
    """

    uid: int | None = None
    envelope: Envelope | None = None
    body_parts: Mapping[str, BodyPart] = field(default_factory=dict)
    body_structure: BodyNode | None = None
    headers: Mapping[str, HeaderValue] | None = None


@dataclass(frozen=True, slots=True)
class FetchOptions:
    """Data items requested from the server for each message."""

    envelope: bool = True
    headers: bool = False
    body_structure: bool = True
    body_parts: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class AttachmentInfo:
    """Metadata describing an email attachment."""

    filename: str | None
    content_type: str | None
    size: int


@dataclass(frozen=True, slots=True)
class MessageListItem:
    """Summary row returned by message searches."""

    uid: int
    date: str
    from_: tuple[str, ...]
    to: tuple[str, ...]
    subject: str
    snippet: str


# pylint: disable=too-many-instance-attributes
@dataclass(frozen=True, slots=True)
class FullMessage:
    """Complete normalized message including headers and bodies."""

    uid: int
    date: str
    from_: tuple[str, ...]
    to: tuple[str, ...]
    cc: tuple[str, ...]
    subject: str
    headers: dict[str, list[str]]
    text: str | None
    html: str | None
    attachments: tuple[AttachmentInfo, ...]


@dataclass(frozen=True, slots=True)
class AccountSummary:
    """Public view of a configured account."""

    name: str
    description: str
    username: str


@dataclass(frozen=True, slots=True)
class SearchQuery:
    """Portable search predicates translated into IMAP SEARCH keys."""

    keyword: str | None = None
    un_keyword: str | None = None
    since: str | None = None
    on: str | None = None
    before: str | None = None
    subject: str | None = None
    body: str | None = None
    bcc: str | None = None
    cc: str | None = None
    to: str | None = None
    from_: str | None = None


__all__ = [
    "AccountSummary",
    "Address",
    "AttachmentInfo",
    "BodyNode",
    "BodyPart",
    "Disposition",
    "Envelope",
    "FetchOptions",
    "FetchedMessage",
    "FullMessage",
    "HeaderValue",
    "MessageListItem",
    "SearchQuery",
]
