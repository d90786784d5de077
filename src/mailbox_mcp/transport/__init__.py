"""Transport adapters for remote mailbox servers."""

from .imap_client import ImapError, ImapSession
from .search import build_search_criteria

__all__ = ["ImapError", "ImapSession", "build_search_criteria"]
