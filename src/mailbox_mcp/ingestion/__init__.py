"""Ingestion of fetched messages into normalized records."""

from .normalizer import format_address, to_full_message, to_list_item
from .parser import FetchedMessageParser

__all__ = [
    "FetchedMessageParser",
    "format_address",
    "to_full_message",
    "to_list_item",
]
