"""In-memory session storage."""

from .connection_pool import ImapConnectionPool, PooledConnection

__all__ = ["ImapConnectionPool", "PooledConnection"]
