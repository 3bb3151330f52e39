"""Local header cache.

This package contains the SQLite store of message headers, per-mailbox sync
state and recently fetched message bodies.
"""

from .repository import CacheStats, HeaderCacheRepository

__all__ = ["CacheStats", "HeaderCacheRepository"]
