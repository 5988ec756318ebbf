"""Feed caching package.

This package provides:
- Cache entries holding uncompressed feed bodies and validators
- Pluggable storage backends
- Cache key and content hash derivation
- The cache store with TTL expiry and targeted eviction
"""

from feed_delivery.cache.backends import CacheBackend, MemoryCacheBackend
from feed_delivery.cache.entry import CacheEntry
from feed_delivery.cache.fingerprint import cache_key, content_hash, format_etag, normalize_params
from feed_delivery.cache.store import CacheJanitor, FeedCacheStore

__all__ = [
    "CacheBackend",
    "CacheEntry",
    "CacheJanitor",
    "FeedCacheStore",
    "MemoryCacheBackend",
    "cache_key",
    "content_hash",
    "format_etag",
    "normalize_params",
]
