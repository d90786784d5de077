"""Utilities for parsing raw RFC822 messages into fetched-message records."""

from __future__ import annotations

import re
from collections.abc import Iterable
from email import policy
from email.message import EmailMessage, Message
from email.parser import BytesParser
from email.utils import collapse_rfc2231_value, getaddresses

from ..core.datetime_utils import parse_header_date
from ..core.models import (
    Address,
    BodyNode,
    BodyPart,
    Disposition,
    Envelope,
    FetchedMessage,
    FetchOptions,
)

_FOLDING = re.compile(r"\r?\n(?=[ \t])")
_ADDRESS_HEADERS = {"from_": "From", "to": "To", "cc": "Cc"}
_PART_TYPES = {"text": "text/plain", "html": "text/html"}
_UNSAFE_HEADER_CHARS = re.compile(r"[^A-Za-z0-9/._+-]")


class FetchedMessageParser:
    """Convert raw message payloads into :class:`FetchedMessage` records."""

    def __init__(self) -> None:
        """Prepare internal parser instance."""
        self._parser = BytesParser(policy=policy.default)

    def parse(
        self, uid: int | None, payload: bytes, options: FetchOptions
    ) -> FetchedMessage:
        """Parse RFC822 bytes, populating only the items ``options`` requests."""
        message = self._parser.parsebytes(payload)

        envelope = _build_envelope(message) if options.envelope else None
        headers = _collect_headers(message) if options.headers else None
        body_structure = _build_body_node(message) if options.body_structure else None
        body_parts = _extract_body_parts(message, options.body_parts)

        return FetchedMessage(
            uid=uid,
            envelope=envelope,
            body_parts=body_parts,
            body_structure=body_structure,
            headers=headers,
        )

    def decode_section(self, payload: bytes, node: BodyNode) -> str | None:
        """Decode one fetched body section described by ``node``.

        The section arrives without its MIME headers, so they are rebuilt from
        the body-structure node before handing the bytes to the email parser.
        """
        content_type = _header_token(node.type) or "text/plain"
        charset = _header_token(node.parameters.get("charset")) or "utf-8"
        encoding = _header_token(node.encoding) or "7bit"
        head = (
            f'Content-Type: {content_type}; charset="{charset}"\r\n'
            f"Content-Transfer-Encoding: {encoding}\r\n\r\n"
        ).encode("ascii")
        return _decoded_text(self._parser.parsebytes(head + payload))


def _header_token(value: str | None) -> str:
    return _UNSAFE_HEADER_CHARS.sub("", value) if value else ""


def _build_envelope(message: EmailMessage) -> Envelope:
    subject = message.get("Subject")
    addresses = {
        field: _collect_addresses(message.get_all(header, []))
        for field, header in _ADDRESS_HEADERS.items()
    }
    return Envelope(
        date=parse_header_date(message.get("Date")),
        subject=str(subject) if subject is not None else None,
        **addresses,
    )


def _collect_addresses(headers: Iterable[object]) -> tuple[Address, ...]:
    collected: list[Address] = []
    for header in headers:
        parsed = getattr(header, "addresses", None)
        if parsed is not None:
            for entry in parsed:
                collected.append(
                    Address(
                        name=entry.display_name or None,
                        mailbox=entry.username or None,
                        host=entry.domain or None,
                    )
                )
            continue
        for display_name, email_address in getaddresses([str(header)]):
            if not email_address:
                continue
            mailbox, _, host = email_address.rpartition("@")
            if not mailbox:
                mailbox, host = host, ""
            collected.append(
                Address(
                    name=display_name or None,
                    mailbox=mailbox or None,
                    host=host or None,
                )
            )
    return tuple(collected)


def _collect_headers(message: Message) -> dict[str, list[str]]:
    headers: dict[str, list[str]] = {}
    for name, value in message.raw_items():
        unfolded = _FOLDING.sub("", str(value)).strip()
        headers.setdefault(name.lower(), []).append(unfolded)
    return headers


def _build_body_node(part: Message) -> BodyNode:
    if part.is_multipart():
        payload = part.get_payload()
        children = tuple(
            _build_body_node(child) for child in payload if isinstance(child, Message)
        )
        return BodyNode(
            type=part.get_content_type(),
            disposition=_build_disposition(part),
            parameters=_content_parameters(part),
            size=None,
            child_nodes=children,
        )

    return BodyNode(
        type=part.get_content_type(),
        disposition=_build_disposition(part),
        parameters=_content_parameters(part),
        size=_encoded_size(part),
        encoding=_transfer_encoding(part),
    )


def _transfer_encoding(part: Message) -> str | None:
    value = part.get("Content-Transfer-Encoding")
    return str(value).strip().lower() if value else None


def _build_disposition(part: Message) -> Disposition | None:
    disposition_type = part.get_content_disposition()
    if disposition_type is None:
        return None
    params = _header_params(part, "content-disposition")
    filename = part.get_filename()
    if filename:
        params["filename"] = filename
    return Disposition(type=disposition_type, params=params)


def _content_parameters(part: Message) -> dict[str, str]:
    return _header_params(part, "content-type")


def _header_params(part: Message, header: str) -> dict[str, str]:
    raw_params = part.get_params(header=header) or []
    # The first entry is the header's main value, not a parameter.
    return {
        key.lower(): collapse_rfc2231_value(value)
        for key, value in raw_params[1:]
        if key
    }


def _encoded_size(part: Message) -> int | None:
    payload = part.get_payload(decode=False)
    if isinstance(payload, str):
        return len(payload.encode("utf-8", "surrogateescape"))
    if isinstance(payload, bytes):
        return len(payload)
    return None


def _extract_body_parts(
    message: EmailMessage, labels: Iterable[str]
) -> dict[str, BodyPart]:
    wanted = {label: _PART_TYPES[label] for label in labels if label in _PART_TYPES}
    if not wanted:
        return {}

    chunks: dict[str, list[str]] = {label: [] for label in wanted}
    for part in message.walk():
        if part.is_multipart() or part.get_content_disposition() == "attachment":
            continue
        content_type = part.get_content_type()
        for label, expected_type in wanted.items():
            if content_type != expected_type:
                continue
            content = _decoded_text(part)
            if content:
                chunks[label].append(content)

    separators = {"text": "\n\n", "html": "\n"}
    return {
        label: separators[label].join(pieces)
        for label, pieces in chunks.items()
        if pieces
    }


def _decoded_text(part: Message) -> str | None:
    try:
        content = part.get_content()  # type: ignore[attr-defined]
    except (LookupError, ValueError):
        raw = part.get_payload(decode=True)
        if not isinstance(raw, bytes):
            return None
        content = raw.decode("utf-8", errors="replace")
    if not isinstance(content, str):
        return None
    return content


__all__ = ["FetchedMessageParser"]
