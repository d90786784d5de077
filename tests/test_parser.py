"""Tests for RFC822 parsing into fetched-message records."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from mailbox_mcp.core.models import Address, FetchOptions
from mailbox_mcp.ingestion import FetchedMessageParser, to_full_message, to_list_item

FIXTURE_PATH = Path(__file__).parent / "fixtures" / "sample_email.eml"

FULL = FetchOptions(
    envelope=True, headers=True, body_structure=True, body_parts=("text", "html")
)


def test_parser_extracts_envelope_headers_and_bodies() -> None:
    payload = FIXTURE_PATH.read_bytes()

    fetched = FetchedMessageParser().parse(101, payload, FULL)

    assert fetched.uid == 101
    envelope = fetched.envelope
    assert envelope is not None
    assert envelope.subject == "Test Email"
    assert envelope.date == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
    assert envelope.from_ == (Address(name="Jane Doe", mailbox="jane", host="ex.com"),)
    assert envelope.to == (
        Address(name=None, mailbox="user", host="example.com"),
        Address(name="Team", mailbox="team", host="example.com"),
    )
    assert envelope.cc == (Address(name=None, mailbox="another", host="example.com"),)

    assert fetched.headers is not None
    assert len(fetched.headers["received"]) == 2
    assert fetched.headers["received"][0].startswith("from relay1.example.com")
    assert fetched.headers["x-long-header"] == ["first part continued part"]

    assert fetched.body_parts["text"] == "Hello   world.\nSecond line."
    assert fetched.body_parts["html"] == "<p>Hello <strong>world</strong></p>"


def test_parser_builds_body_structure_tree() -> None:
    fetched = FetchedMessageParser().parse(5, FIXTURE_PATH.read_bytes(), FULL)

    root = fetched.body_structure
    assert root is not None
    assert root.type == "multipart/mixed"
    alternative, attachment = root.child_nodes
    assert [child.type for child in alternative.child_nodes] == [
        "text/plain",
        "text/html",
    ]
    assert attachment.type == "application/octet-stream"
    assert attachment.disposition is not None
    assert attachment.disposition.type == "attachment"
    assert attachment.disposition.params["filename"] == "note.txt"
    assert attachment.parameters["name"] == "note.txt"
    assert attachment.size and attachment.size > 0


def test_parser_only_populates_requested_items() -> None:
    options = FetchOptions(
        envelope=True, headers=False, body_structure=False, body_parts=("text",)
    )

    fetched = FetchedMessageParser().parse(9, FIXTURE_PATH.read_bytes(), options)

    assert fetched.headers is None
    assert fetched.body_structure is None
    assert set(fetched.body_parts) == {"text"}


def test_parsed_fixture_normalizes_end_to_end() -> None:
    fetched = FetchedMessageParser().parse(101, FIXTURE_PATH.read_bytes(), FULL)

    item = to_list_item(fetched)
    message = to_full_message(fetched)

    assert item.date == "2024-05-01T10:00:00.000Z"
    assert item.from_ == ('"Jane Doe" <jane@ex.com>',)
    assert item.to == ("user@example.com", '"Team" <team@example.com>')
    assert item.snippet == "Hello world. Second line."
    assert len(message.attachments) == 1
    assert message.attachments[0].filename == "note.txt"
    assert message.attachments[0].content_type == "application/octet-stream"


def test_parser_tolerates_missing_headers() -> None:
    fetched = FetchedMessageParser().parse(None, b"\r\njust a body\r\n", FULL)

    assert fetched.uid is None
    assert fetched.envelope is not None
    assert fetched.envelope.subject is None
    assert fetched.envelope.date is None
    assert fetched.envelope.from_ == ()
    assert to_list_item(fetched).snippet == "just a body"


def test_parser_keeps_body_whitespace() -> None:
    options = FetchOptions(body_parts=("text",))
    payload = b"Content-Type: text/plain\n\n  indented body\n\n"

    fetched = FetchedMessageParser().parse(3, payload, options)

    assert fetched.body_parts["text"] == "  indented body\n\n"
    assert to_full_message(fetched).text == "  indented body\n\n"
