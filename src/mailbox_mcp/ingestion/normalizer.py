"""Conversion of fetched-message records into list and detail views.

Both conversions are total: any field missing from the fetched record
degrades to an empty string, empty list, or ``None`` rather than raising.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator, Mapping

from ..core.datetime_utils import serialize_datetime
from ..core.models import (
    Address,
    AttachmentInfo,
    BodyNode,
    FetchedMessage,
    FullMessage,
    HeaderValue,
    MessageListItem,
)

SNIPPET_LENGTH = 160

_WHITESPACE = re.compile(r"\s+")


def format_address(address: Address) -> str:
    """Return ``"Name" <mailbox@host>``, or bare ``mailbox@host`` without a name."""
    addr = "@".join(part for part in (address.mailbox, address.host) if part)
    if address.name:
        return f'"{address.name}" <{addr}>'
    return addr


def _format_addresses(addresses: Iterable[Address]) -> tuple[str, ...]:
    return tuple(format_address(address) for address in addresses)


def part_text(fetched: FetchedMessage, kind: str) -> str | None:
    """Return the first body part whose label contains ``kind``."""
    needle = kind.lower()
    for key, value in fetched.body_parts.items():
        if needle not in key.lower():
            continue
        if isinstance(value, str):
            return value
        if isinstance(value, bytes):
            return value.decode("utf-8", errors="replace")
        return None
    return None


def derive_snippet(fetched: FetchedMessage) -> str:
    """Collapse whitespace in the plain-text body and cut it to 160 characters."""
    text = part_text(fetched, "text") or ""
    return _WHITESPACE.sub(" ", text).strip()[:SNIPPET_LENGTH]


def normalize_headers(headers: Mapping[str, HeaderValue] | None) -> dict[str, list[str]]:
    """Coerce every header value into a list of strings."""
    if not headers:
        return {}
    normalized: dict[str, list[str]] = {}
    for name, value in headers.items():
        if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
            normalized[name] = [_as_text(value)]
        else:
            normalized[name] = [_as_text(item) for item in value]
    return normalized


def _as_text(value: object) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _walk(node: BodyNode) -> Iterator[BodyNode]:
    yield node
    for child in node.child_nodes:
        yield from _walk(child)


def _coerce_size(raw: object) -> int:
    try:
        size = int(raw)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        return 0
    return max(size, 0)


def collect_attachments(structure: BodyNode | None) -> tuple[AttachmentInfo, ...]:
    """Return metadata for every body-structure node disposed as an attachment."""
    if structure is None:
        return ()
    attachments = []
    for node in _walk(structure):
        disposition = node.disposition
        if disposition is None or (disposition.type or "").lower() != "attachment":
            continue
        filename = disposition.params.get("filename") or node.parameters.get("name")
        attachments.append(
            AttachmentInfo(
                filename=filename or None,
                content_type=node.type or None,
                size=_coerce_size(node.size),
            )
        )
    return tuple(attachments)


def to_list_item(fetched: FetchedMessage) -> MessageListItem:
    """Build the search-result summary for a fetched message."""
    envelope = fetched.envelope
    return MessageListItem(
        uid=fetched.uid or 0,
        date=serialize_datetime(envelope.date if envelope else None),
        from_=_format_addresses(envelope.from_ if envelope else ()),
        to=_format_addresses(envelope.to if envelope else ()),
        subject=(envelope.subject if envelope else None) or "",
        snippet=derive_snippet(fetched),
    )


def to_full_message(fetched: FetchedMessage) -> FullMessage:
    """Build the complete detail record for a fetched message."""
    envelope = fetched.envelope
    return FullMessage(
        uid=fetched.uid or 0,
        date=serialize_datetime(envelope.date if envelope else None),
        from_=_format_addresses(envelope.from_ if envelope else ()),
        to=_format_addresses(envelope.to if envelope else ()),
        cc=_format_addresses(envelope.cc if envelope else ()),
        subject=(envelope.subject if envelope else None) or "",
        headers=normalize_headers(fetched.headers),
        text=part_text(fetched, "text"),
        html=part_text(fetched, "html"),
        attachments=collect_attachments(fetched.body_structure),
    )


__all__ = [
    "SNIPPET_LENGTH",
    "collect_attachments",
    "derive_snippet",
    "format_address",
    "normalize_headers",
    "part_text",
    "to_full_message",
    "to_list_item",
]
