"""Parsing of ``FETCH`` responses as delivered by :mod:`imaplib`.

``imaplib`` hands back untagged ``FETCH`` data as a flat list where every
literal is split into a ``(prefix, literal)`` tuple and the remainder of the
line follows as plain bytes. :func:`split_fetch_responses` stitches those
pieces back into one buffer per message so the parenthesised data items can
be read with a small recursive parser.
"""

from __future__ import annotations

from collections.abc import Sequence
from email.errors import HeaderParseError
from email.header import decode_header, make_header
from email.utils import decode_rfc2231
from typing import Any
from urllib.parse import unquote

from ..core.datetime_utils import parse_header_date
from ..core.models import Address, BodyNode, Disposition, Envelope

_DELIMITERS = frozenset(b" ()\r\n")


class ResponseParseError(ValueError):
    """Raised when a FETCH response does not follow the IMAP grammar."""


def split_fetch_responses(data: Sequence[Any] | None) -> list[bytes]:
    """Rebuild one wire-format buffer per untagged ``FETCH`` response."""
    responses: list[bytes] = []
    current: list[bytes] = []
    for entry in data or ():
        if isinstance(entry, tuple) and len(entry) == 2:
            prefix, literal = entry
            if isinstance(prefix, bytes) and isinstance(literal, bytes):
                current += [prefix, b"\r\n", literal]
            continue
        if isinstance(entry, bytes):
            # Plain bytes always close a response line.
            current.append(entry)
            responses.append(b"".join(current))
            current = []
    if current:
        responses.append(b"".join(current))
    return responses


class _Reader:
    def __init__(self, raw: bytes) -> None:
        self.raw = raw
        self.pos = 0

    def value(self) -> Any:
        self._skip_spaces()
        if self.pos >= len(self.raw):
            raise ResponseParseError("Unexpected end of FETCH response")
        lead = self.raw[self.pos]
        if lead == ord("("):
            return self._list()
        if lead == ord('"'):
            return self._quoted()
        if lead == ord("{"):
            return self._literal()
        return self._atom()

    def _skip_spaces(self) -> None:
        while self.pos < len(self.raw) and self.raw[self.pos] == ord(" "):
            self.pos += 1

    def _list(self) -> list[Any]:
        self.pos += 1
        items: list[Any] = []
        while True:
            self._skip_spaces()
            if self.pos >= len(self.raw):
                raise ResponseParseError("Unterminated list in FETCH response")
            if self.raw[self.pos] == ord(")"):
                self.pos += 1
                return items
            items.append(self.value())

    def _quoted(self) -> bytes:
        self.pos += 1
        buffer = bytearray()
        while self.pos < len(self.raw):
            char = self.raw[self.pos]
            if char == ord("\\") and self.pos + 1 < len(self.raw):
                buffer.append(self.raw[self.pos + 1])
                self.pos += 2
                continue
            self.pos += 1
            if char == ord('"'):
                return bytes(buffer)
            buffer.append(char)
        raise ResponseParseError("Unterminated quoted string in FETCH response")

    def _literal(self) -> bytes:
        end = self.raw.find(b"}", self.pos)
        if end == -1:
            raise ResponseParseError("Malformed literal in FETCH response")
        try:
            size = int(self.raw[self.pos + 1 : end])
        except ValueError as exc:
            raise ResponseParseError("Malformed literal size in FETCH response") from exc
        self.pos = end + 1
        if self.raw.startswith(b"\r\n", self.pos):
            self.pos += 2
        data = self.raw[self.pos : self.pos + size]
        if len(data) != size:
            raise ResponseParseError("Truncated literal in FETCH response")
        self.pos += size
        return data

    def _atom(self) -> str | int | None:
        start = self.pos
        depth = 0
        while self.pos < len(self.raw):
            char = self.raw[self.pos]
            if char == ord("["):
                depth += 1
            elif char == ord("]"):
                depth -= 1
            elif depth <= 0 and char in _DELIMITERS:
                break
            self.pos += 1
        if self.pos == start:
            raise ResponseParseError(
                f"Unexpected {chr(self.raw[start])!r} in FETCH response"
            )
        atom = self.raw[start : self.pos].decode("ascii", errors="replace")
        if atom.upper() == "NIL":
            return None
        if atom.isdigit():
            return int(atom)
        return atom


def parse_fetch_response(raw: bytes) -> dict[str, Any]:
    """Return the data items of one ``FETCH`` response keyed by item name.

    Keys are upper-cased as the server names them, e.g. ``UID``,
    ``ENVELOPE`` or ``BODY[1.2]``.
    """
    reader = _Reader(raw)
    reader.value()  # message sequence number
    items = reader.value()
    if not isinstance(items, list):
        raise ResponseParseError("FETCH response carries no data items")
    return {
        str(items[index]).upper(): items[index + 1]
        for index in range(0, len(items) - 1, 2)
    }


def _text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _decode_words(value: Any) -> str | None:
    text = _text(value)
    if text is None or "=?" not in text:
        return text
    try:
        return str(make_header(decode_header(text)))
    except (HeaderParseError, LookupError, UnicodeDecodeError):
        return text


def _addresses(value: Any) -> tuple[Address, ...]:
    if not isinstance(value, list):
        return ()
    addresses: list[Address] = []
    for entry in value:
        if not isinstance(entry, list) or len(entry) < 4:
            continue
        name, _route, mailbox, host = entry[:4]
        if mailbox is None:
            # End-of-group marker.
            continue
        addresses.append(
            Address(
                name=_decode_words(name) or None,
                mailbox=_text(mailbox) or None,
                host=_text(host) or None,
            )
        )
    return tuple(addresses)


def parse_envelope(value: Any) -> Envelope:
    """Build an :class:`Envelope` from a parsed ``ENVELOPE`` list."""
    if not isinstance(value, list) or len(value) < 10:
        raise ResponseParseError("ENVELOPE must have ten fields")
    date, subject, from_, _sender, _reply_to, to, cc = value[:7]
    return Envelope(
        date=parse_header_date(_text(date)),
        subject=_decode_words(subject),
        from_=_addresses(from_),
        to=_addresses(to),
        cc=_addresses(cc),
    )


def _extended_value(raw: str) -> str:
    charset, _language, text = decode_rfc2231(raw)
    try:
        return unquote(text, encoding=charset or "utf-8", errors="replace")
    except LookupError:
        return unquote(text, errors="replace")


def _parameters(value: Any) -> dict[str, str]:
    if not isinstance(value, list):
        return {}
    params: dict[str, str] = {}
    for index in range(0, len(value) - 1, 2):
        key = (_text(value[index]) or "").lower()
        raw = _text(value[index + 1]) or ""
        if not key:
            continue
        if key.endswith("*"):
            params[key.rstrip("*")] = _extended_value(raw)
        else:
            params[key] = _decode_words(raw) or ""
    return params


def _disposition(value: Any) -> Disposition | None:
    if isinstance(value, list) and value:
        kind = _text(value[0])
        params = _parameters(value[1]) if len(value) > 1 else {}
        return Disposition(type=kind.lower() if kind else None, params=params)
    kind = _text(value)
    return Disposition(type=kind.lower()) if kind else None


def _child_section(section: str, index: int) -> str:
    return f"{section}.{index}" if section else str(index)


def parse_body_structure(value: Any, section: str = "") -> BodyNode:
    """Build a :class:`BodyNode` tree from a parsed ``BODYSTRUCTURE`` list.

    Every node records its IMAP section specifier so single parts can be
    fetched on their own afterwards.
    """
    if not isinstance(value, list) or not value:
        raise ResponseParseError("BODYSTRUCTURE must be a non-empty list")

    if isinstance(value[0], list):
        children: list[BodyNode] = []
        index = 0
        while index < len(value) and isinstance(value[index], list):
            children.append(
                parse_body_structure(value[index], _child_section(section, index + 1))
            )
            index += 1
        subtype = (_text(value[index]) if index < len(value) else None) or "mixed"
        extension = value[index + 1 :]
        return BodyNode(
            type=f"multipart/{subtype.lower()}",
            disposition=_disposition(extension[1]) if len(extension) > 1 else None,
            parameters=_parameters(extension[0]) if extension else {},
            size=None,
            child_nodes=tuple(children),
            part=section or None,
        )

    if len(value) < 7:
        raise ResponseParseError("Single-part BODYSTRUCTURE needs seven fields")
    main_type = (_text(value[0]) or "text").lower()
    subtype = (_text(value[1]) or "plain").lower()
    encoding = _text(value[5])
    size = value[6] if isinstance(value[6], int) else None

    extension = value[7:]
    if main_type == "message" and subtype == "rfc822":
        # Nested envelope, body structure and line count precede extensions.
        extension = extension[3:]
    elif main_type == "text":
        extension = extension[1:]
    # Extension data: MD5, disposition, language, location.
    disposition = _disposition(extension[1]) if len(extension) > 1 else None

    return BodyNode(
        type=f"{main_type}/{subtype}",
        disposition=disposition,
        parameters=_parameters(value[2]),
        size=size,
        encoding=encoding.lower() if encoding else None,
        part=section or "1",
    )


def find_text_part(node: BodyNode, content_type: str = "text/plain") -> BodyNode | None:
    """Return the first inline leaf of ``content_type`` in document order."""
    if node.child_nodes:
        for child in node.child_nodes:
            found = find_text_part(child, content_type)
            if found is not None:
                return found
        return None
    if node.type != content_type:
        return None
    if node.disposition is not None and (node.disposition.type or "") == "attachment":
        return None
    return node


def section_payload(items: dict[str, Any]) -> bytes | None:
    """Return the first ``BODY[...]`` section carried by a FETCH response."""
    for key, value in items.items():
        if key.startswith("BODY[") and isinstance(value, bytes):
            return value
    return None


__all__ = [
    "ResponseParseError",
    "find_text_part",
    "parse_body_structure",
    "parse_envelope",
    "parse_fetch_response",
    "section_payload",
    "split_fetch_responses",
]
