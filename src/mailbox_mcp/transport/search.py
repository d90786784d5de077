"""Translation of portable search predicates into IMAP SEARCH keys."""

from __future__ import annotations

import re

from ..core.datetime_utils import format_imap_date, parse_search_date
from ..core.errors import SearchQueryError
from ..core.models import SearchQuery

_ATOM_SPECIALS = re.compile(r'[\s(){%*"\\\]]')

# (attribute, IMAP key) pairs for string-valued predicates, in emission order.
_STRING_KEYS: tuple[tuple[str, str], ...] = (
    ("subject", "SUBJECT"),
    ("body", "BODY"),
    ("bcc", "BCC"),
    ("cc", "CC"),
    ("to", "TO"),
    ("from_", "FROM"),
)
_DATE_KEYS: tuple[tuple[str, str], ...] = (
    ("since", "SINCE"),
    ("on", "ON"),
    ("before", "BEFORE"),
)


def quote_string(value: str) -> str:
    """Render ``value`` as an IMAP quoted string."""
    flattened = value.replace("\r", " ").replace("\n", " ")
    escaped = flattened.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _keyword_atom(key: str, value: str) -> str:
    if not value or _ATOM_SPECIALS.search(value):
        raise SearchQueryError(f"{key} must be a single flag keyword, got {value!r}")
    return value


def build_search_criteria(query: SearchQuery) -> list[bytes]:
    """Return the argument list for ``UID SEARCH`` matching ``query``.

    A ``CHARSET UTF-8`` prefix is emitted when any value is not plain ASCII.
    An empty query matches every message.
    """
    tokens: list[str] = []
    if query.keyword:
        tokens += ["KEYWORD", _keyword_atom("keyword", query.keyword)]
    if query.un_keyword:
        tokens += ["UNKEYWORD", _keyword_atom("unKeyword", query.un_keyword)]

    for attribute, key in _DATE_KEYS:
        raw = getattr(query, attribute)
        if not raw:
            continue
        try:
            parsed = parse_search_date(raw)
        except ValueError as exc:
            raise SearchQueryError(
                f"Invalid date for {attribute}: {raw!r}. Use YYYY-MM-DD."
            ) from exc
        tokens += [key, format_imap_date(parsed)]

    for attribute, key in _STRING_KEYS:
        raw = getattr(query, attribute)
        if raw:
            tokens += [key, quote_string(raw)]

    if not tokens:
        tokens = ["ALL"]

    if all(token.isascii() for token in tokens):
        return [token.encode("ascii") for token in tokens]
    return [b"CHARSET", b"UTF-8"] + [token.encode("utf-8") for token in tokens]


__all__ = ["build_search_criteria", "quote_string"]
