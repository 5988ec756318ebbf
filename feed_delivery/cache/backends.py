"""Storage backends for the feed cache.

A backend is a plain key/value container. Expiry, hashing and degradation
policy live in :class:`feed_delivery.cache.store.FeedCacheStore`; backends
only report failure by raising :class:`CacheBackendError`.
"""

import threading
from abc import ABC, abstractmethod
from typing import Iterator, List, Optional, Tuple

from cachetools import LRUCache

from feed_delivery.cache.entry import CacheEntry


class CacheBackend(ABC):
    """Interface every cache backend implements."""

    @abstractmethod
    def get(self, key: str) -> Optional[CacheEntry]:
        """Return the stored entry for ``key`` or None."""

    @abstractmethod
    def set(self, key: str, entry: CacheEntry) -> None:
        """Store ``entry`` under ``key``, replacing any previous value."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove ``key``; return True if something was removed."""

    @abstractmethod
    def items(self) -> List[Tuple[str, CacheEntry]]:
        """Return a point-in-time copy of all stored entries."""

    @abstractmethod
    def clear(self) -> None:
        """Remove every entry."""

    def __len__(self) -> int:
        return len(self.items())

    def __iter__(self) -> Iterator[str]:
        return iter([key for key, _ in self.items()])


class MemoryCacheBackend(CacheBackend):
    """Thread-safe in-process backend with LRU eviction.

    All operations take a reentrant lock, so a ``set`` is never observed half
    written and concurrent writers to one key resolve as last-writer-wins.
    """

    def __init__(self, max_entries: int = 1000) -> None:
        """Initialize the backend.

        Args:
            max_entries: Capacity before least recently used entries are dropped
        """
        self._cache: LRUCache = LRUCache(maxsize=max_entries)
        self._lock = threading.RLock()

    def get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._cache.get(key)

    def set(self, key: str, entry: CacheEntry) -> None:
        with self._lock:
            self._cache[key] = entry

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._cache.pop(key, None) is not None

    def items(self) -> List[Tuple[str, CacheEntry]]:
        with self._lock:
            return list(self._cache.items())

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)
