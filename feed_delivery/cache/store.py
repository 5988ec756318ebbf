"""Feed cache store with time-based expiry and targeted eviction.

This module provides the cache used by the delivery path:
- TTL expiry with lazy removal on read
- Atomic overwrite of entries
- Predicate-based eviction for invalidation events
- Degradation to "always miss" while the backend is failing
"""

import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Tuple

import pybreaker
import structlog

from feed_delivery.cache.backends import CacheBackend, MemoryCacheBackend
from feed_delivery.cache.entry import CacheEntry
from feed_delivery.cache.fingerprint import content_hash
from feed_delivery.core.errors import CacheBackendError
from feed_delivery.metrics import CacheMetrics, get_cache_metrics

logger = structlog.get_logger(__name__)

DEFAULT_CONTENT_TYPE = "application/rss+xml; charset=UTF-8"

ParamsPredicate = Callable[[Mapping[str, Any]], bool]

_FAILED = object()


class FeedCacheStore:
    """Key/value store of generated feed bodies plus their validators.

    Caching is an optimisation only: every backend failure is logged and
    counted, then treated as a miss (reads) or a no-op (writes and deletes).
    After ``failure_threshold`` consecutive failures a circuit breaker stops
    calling the backend for ``reset_timeout`` seconds.
    """

    def __init__(
        self,
        backend: Optional[CacheBackend] = None,
        ttl_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
        failure_threshold: int = 5,
        reset_timeout: int = 60,
        metrics: Optional[CacheMetrics] = None,
        max_invalidation_marks: int = 1000,
    ) -> None:
        """Initialize the cache store.

        Args:
            backend: Storage backend, an in-memory LRU backend by default
            ttl_seconds: Default lifetime of new entries
            clock: Returns the current time in epoch seconds
            failure_threshold: Backend failures before the breaker opens
            reset_timeout: Seconds the breaker stays open
            metrics: Metrics sink, the shared cache metrics by default
            max_invalidation_marks: Recent invalidations remembered for
                writes of generations that were already running
        """
        self._backend = backend if backend is not None else MemoryCacheBackend()
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._metrics = metrics or get_cache_metrics()
        self._breaker = pybreaker.CircuitBreaker(
            fail_max=failure_threshold, reset_timeout=reset_timeout, name="feed_cache_backend"
        )
        self._ttl_lock = threading.Lock()
        # Invalidations the backend could not apply; enforced on read until retried
        self._pending_lock = threading.Lock()
        self._pending: List[Tuple[float, ParamsPredicate]] = []
        self._cleared_at: Optional[float] = None
        # Every invalidation, numbered; None stands for a full clear
        self._marks_lock = threading.Lock()
        self._epoch = 0
        self._marks: Deque[Tuple[int, Optional[ParamsPredicate]]] = deque(
            maxlen=max_invalidation_marks
        )

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    @ttl_seconds.setter
    def ttl_seconds(self, value: int) -> None:
        if value <= 0:
            raise ValueError("TTL must be positive")
        with self._ttl_lock:
            self._ttl_seconds = value

    @property
    def backend_available(self) -> bool:
        """False while the circuit breaker is bypassing the backend."""
        return self._breaker.current_state != pybreaker.STATE_OPEN

    def _call_backend(self, operation: str, func: Callable, *args, default=None):
        try:
            return self._breaker.call(func, *args)
        except pybreaker.CircuitBreakerError:
            logger.warning("cache_backend_bypassed", operation=operation)
            self._metrics.cache_errors.inc()
            return default
        except CacheBackendError as e:
            logger.warning("cache_backend_error", operation=operation, error=str(e))
            self._metrics.cache_errors.inc()
            return default

    def get(self, key: str) -> Optional[CacheEntry]:
        """Get a fresh entry from the cache.

        Args:
            key: Cache key to look up

        Returns:
            The entry if present and ``now < expires_at``, None otherwise.
            Expired entries are removed as a side effect.
        """
        entry = self._call_backend("get", self._backend.get, key)
        if entry is None:
            self._metrics.cache_misses.inc()
            return None

        if entry.is_expired(self._clock()):
            reason = "expired"
        elif self._is_invalidated(entry):
            reason = "invalidated"
        else:
            reason = None
        if reason:
            self._call_backend("delete", self._backend.delete, key, default=False)
            self._metrics.cache_evictions.labels(reason=reason).inc()
            self._metrics.cache_misses.inc()
            return None

        self._metrics.cache_hits.inc()
        return entry

    def set(
        self,
        key: str,
        body: bytes,
        generation_params: Optional[Mapping[str, Any]] = None,
        ttl: Optional[int] = None,
        content_type: str = DEFAULT_CONTENT_TYPE,
        since_epoch: Optional[int] = None,
    ) -> CacheEntry:
        """Store a freshly generated body, replacing any previous entry.

        Args:
            key: Cache key
            body: Uncompressed feed content
            generation_params: Normalized inputs used to build the body
            ttl: Lifetime in seconds, the store default if omitted
            content_type: Media type of the body
            since_epoch: :meth:`invalidation_epoch` taken before the body was
                generated. If a matching invalidation happened since, the
                body may predate the change and is not stored.

        Returns:
            The new entry. It is returned even when it was not stored so the
            caller can still serve it.
        """
        now = self._clock()
        lifetime = ttl if ttl is not None else self._ttl_seconds
        entry = CacheEntry(
            key=key,
            body=body,
            content_hash=content_hash(body),
            content_type=content_type,
            created_at=now,
            expires_at=now + lifetime,
            generation_params=generation_params or {},
        )
        if since_epoch is not None and self._invalidated_since(since_epoch, entry.generation_params):
            logger.info("cache_set_skipped_invalidated", key=key)
            return entry
        self._call_backend("set", self._backend.set, key, entry)
        self._metrics.cache_sets.inc()
        self._refresh_entry_gauge()
        return entry

    def delete(self, key: str) -> bool:
        """Remove one entry. Removing a missing key is a no-op."""
        removed = bool(self._call_backend("delete", self._backend.delete, key, default=False))
        if removed:
            self._metrics.cache_evictions.labels(reason="deleted").inc()
        return removed

    def delete_matching(self, predicate: ParamsPredicate) -> int:
        """Remove every entry whose generation parameters satisfy ``predicate``.

        This scans all entries and is meant for infrequent invalidation
        events, not for the request path.

        Args:
            predicate: Called with each entry's ``generation_params``

        Returns:
            Number of entries removed
        """
        self._mark(predicate)
        marked_at = self._clock()
        items = self._call_backend("items", self._backend.items)
        if items is None:
            self._defer(marked_at, predicate)
            return 0

        self._retry_pending(items)
        removed, complete = self._evict(items, predicate)
        if not complete:
            self._defer(marked_at, predicate)
        self._refresh_entry_gauge()
        return removed

    def _evict(self, items, predicate: ParamsPredicate) -> Tuple[int, bool]:
        """Delete matching entries; the flag is False if any delete failed."""
        removed = 0
        complete = True
        for key, entry in items:
            if not predicate(entry.generation_params):
                continue
            result = self._call_backend("delete", self._backend.delete, key, default=_FAILED)
            if result is _FAILED:
                complete = False
            elif result:
                removed += 1
        if removed:
            self._metrics.cache_evictions.labels(reason="invalidated").inc(removed)
        return removed, complete

    def _defer(self, marked_at: float, predicate: ParamsPredicate) -> None:
        with self._pending_lock:
            self._pending.append((marked_at, predicate))
        logger.warning("cache_invalidation_deferred")

    def _retry_pending(self, items) -> None:
        with self._pending_lock:
            pending, self._pending = self._pending, []
        for marked_at, predicate in pending:
            _, complete = self._evict(items, predicate)
            if not complete:
                with self._pending_lock:
                    self._pending.append((marked_at, predicate))

    def invalidation_epoch(self) -> int:
        """Number of invalidations so far; pass it back to :meth:`set`."""
        with self._marks_lock:
            return self._epoch

    def _mark(self, predicate: Optional[ParamsPredicate]) -> None:
        with self._marks_lock:
            self._epoch += 1
            self._marks.append((self._epoch, predicate))

    def _invalidated_since(self, epoch: int, params: Mapping[str, Any]) -> bool:
        with self._marks_lock:
            if self._epoch == epoch:
                return False
            marks = list(self._marks)
        # Marks older than the deque holds were dropped; assume they matched
        if not marks or marks[0][0] > epoch + 1:
            return True
        return any(
            marked > epoch and (predicate is None or predicate(params))
            for marked, predicate in marks
        )

    def _is_invalidated(self, entry: CacheEntry) -> bool:
        if self._cleared_at is not None and entry.created_at <= self._cleared_at:
            return True
        with self._pending_lock:
            pending = list(self._pending)
        return any(
            entry.created_at <= marked_at and predicate(entry.generation_params)
            for marked_at, predicate in pending
        )

    def clear_all(self) -> None:
        """Flush every entry."""
        self._mark(None)
        if self._call_backend("clear", self._backend.clear, default=False) is False:
            self._cleared_at = self._clock()
            logger.warning("cache_clear_deferred")
            return
        with self._pending_lock:
            self._pending = []
        self._cleared_at = None
        self._metrics.cache_evictions.labels(reason="cleared").inc()
        self._metrics.cache_entries.set(0)
        logger.info("cache_cleared")

    def purge_expired(self) -> int:
        """Remove entries whose lifetime has passed.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        items = self._call_backend("items", self._backend.items)
        if items is None:
            return 0
        self._retry_pending(items)
        removed = 0
        for key, entry in items:
            if entry.is_expired(now) and self._call_backend(
                "delete", self._backend.delete, key, default=False
            ):
                removed += 1
        if removed:
            self._metrics.cache_evictions.labels(reason="expired").inc(removed)
            logger.info("cache_expired_purged", removed=removed)
        self._refresh_entry_gauge()
        return removed

    def stats(self) -> Dict[str, Any]:
        """Get cache statistics.

        Returns:
            Entry counts and the total size of cached bodies
        """
        now = self._clock()
        items = self._call_backend("items", self._backend.items, default=[])
        expired = sum(1 for _, entry in items if entry.is_expired(now))
        size = sum(entry.size_bytes for _, entry in items)
        return {
            "total_entries": len(items),
            "expired_entries": expired,
            "active_entries": len(items) - expired,
            "cache_size_bytes": size,
            "cache_size_mb": round(size / 1024 / 1024, 2),
            "ttl_seconds": self._ttl_seconds,
            "backend_available": self.backend_available,
        }

    def _refresh_entry_gauge(self) -> None:
        self._metrics.cache_entries.set(len(self))

    def __len__(self) -> int:
        return self._call_backend("len", self._backend.__len__, default=0)


class CacheJanitor:
    """Background thread that periodically purges expired cache entries."""

    def __init__(self, store: FeedCacheStore, interval: float = 3600) -> None:
        """Initialize the janitor.

        Args:
            store: Cache store to clean
            interval: Seconds between purges
        """
        self.store = store
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Start the cleanup thread."""
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="feed-cache-janitor")
        self._thread.daemon = True
        self._thread.start()
        logger.info("cache_janitor_started", interval=self.interval)

    def stop(self) -> None:
        """Stop the cleanup thread and wait for it to exit."""
        self._stop.set()
        if self._thread:
            self._thread.join()
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.store.purge_expired()
            except Exception as e:
                logger.error("cache_janitor_failed", error=str(e))
