"""Datetime helpers shared across the application."""

from __future__ import annotations

from datetime import UTC, date, datetime
from email.utils import parsedate_to_datetime

__all__ = [
    "ensure_utc",
    "format_imap_date",
    "parse_header_date",
    "parse_search_date",
    "serialize_datetime",
]

_IMAP_MONTHS = (
    "Jan",
    "Feb",
    "Mar",
    "Apr",
    "May",
    "Jun",
    "Jul",
    "Aug",
    "Sep",
    "Oct",
    "Nov",
    "Dec",
)


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` in UTC, treating naive values as already UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def serialize_datetime(value: datetime | None) -> str:
    """Serialise ``value`` as ISO 8601 UTC with millisecond precision.

    Produces ``2024-05-01T10:00:00.000Z``; ``None`` becomes an empty string.
    """
    if value is None:
        return ""
    text = ensure_utc(value).isoformat(timespec="milliseconds")
    return text.replace("+00:00", "Z")


def parse_header_date(value: object) -> datetime | None:
    """Parse an RFC 5322 date header, returning ``None`` when it is unusable."""
    if value is None:
        return None
    try:
        return parsedate_to_datetime(str(value))
    except (TypeError, ValueError, IndexError):
        return None


def parse_search_date(value: str) -> date:
    """Parse an ISO 8601 date or datetime string into a calendar date."""
    text = value.strip()
    try:
        return date.fromisoformat(text)
    except ValueError:
        pass
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    # Raises ValueError for anything that is not ISO 8601.
    return datetime.fromisoformat(text).date()


def format_imap_date(value: date) -> str:
    """Render ``value`` in the RFC 3501 ``date`` form, e.g. ``1-Feb-2024``."""
    return f"{value.day}-{_IMAP_MONTHS[value.month - 1]}-{value.year}"
