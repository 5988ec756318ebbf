"""Tests for the feed cache store."""

import time

import pytest

from feed_delivery.cache import CacheJanitor, FeedCacheStore, content_hash


def sample(registry, name, labels=None):
    return registry.get_sample_value(name, labels or {}) or 0.0


class TestFeedCacheStore:
    """Test suite for FeedCacheStore."""

    def test_set_and_get(self, store, metrics_registry):
        """Test a stored body is returned with its hash."""
        entry = store.set("feed:1", b"<rss/>", {"post_types": ["post"]})

        cached = store.get("feed:1")
        assert cached is entry
        assert cached.body == b"<rss/>"
        assert cached.content_hash == content_hash(b"<rss/>")
        assert cached.generation_params["post_types"] == ["post"]
        assert sample(metrics_registry, "feed_cache_hits_total") == 1.0

    def test_get_missing_is_miss(self, store, metrics_registry):
        assert store.get("feed:missing") is None
        assert sample(metrics_registry, "feed_cache_misses_total") == 1.0

    def test_entry_expires_at_ttl(self, store, clock):
        """Test entries are served until expires_at and never after."""
        store.set("feed:1", b"body")

        clock.advance(3599)
        assert store.get("feed:1") is not None

        clock.advance(1)
        assert store.get("feed:1") is None
        assert len(store) == 0

    def test_set_overwrites(self, store):
        store.set("feed:1", b"first")
        store.set("feed:1", b"second")

        assert store.get("feed:1").body == b"second"
        assert len(store) == 1

    def test_per_entry_ttl(self, store, clock):
        store.set("feed:1", b"body", ttl=10)
        clock.advance(11)
        assert store.get("feed:1") is None

    def test_ttl_is_mutable(self, store, clock):
        """Test a new TTL applies to entries stored afterwards."""
        store.ttl_seconds = 60
        entry = store.set("feed:1", b"body")
        assert entry.expires_at == clock.now + 60

        with pytest.raises(ValueError):
            store.ttl_seconds = 0

    def test_delete(self, store):
        store.set("feed:1", b"body")
        assert store.delete("feed:1") is True
        assert store.delete("feed:1") is False
        assert store.get("feed:1") is None

    def test_delete_matching(self, store):
        """Test predicate eviction over generation parameters."""
        store.set("feed:posts", b"a", {"post_types": ["post"]})
        store.set("feed:pages", b"b", {"post_types": ["page"]})
        store.set("feed:both", b"c", {"post_types": ["post", "page"]})

        removed = store.delete_matching(lambda params: "page" in params["post_types"])

        assert removed == 2
        assert store.get("feed:posts") is not None
        assert store.get("feed:pages") is None
        assert store.get("feed:both") is None

    def test_clear_all(self, store):
        store.set("feed:1", b"a")
        store.set("feed:2", b"b")

        store.clear_all()

        assert store.get("feed:1") is None
        assert store.get("feed:2") is None
        assert len(store) == 0

    def test_purge_expired(self, store, clock):
        store.set("feed:short", b"a", ttl=10)
        store.set("feed:long", b"b")
        clock.advance(20)

        assert store.purge_expired() == 1
        assert len(store) == 1

    def test_stats(self, store, clock):
        store.set("feed:short", b"abc", ttl=10)
        store.set("feed:long", b"defgh")
        clock.advance(20)

        stats = store.stats()

        assert stats["total_entries"] == 2
        assert stats["expired_entries"] == 1
        assert stats["active_entries"] == 1
        assert stats["cache_size_bytes"] == 8
        assert stats["ttl_seconds"] == 3600
        assert stats["backend_available"] is True


class TestBackendFailure:
    """Test degradation when the cache backend is unavailable."""

    def test_failures_degrade_to_miss(self, failing_store, metrics_registry):
        entry = failing_store.set("feed:1", b"body")

        assert entry.body == b"body"
        assert failing_store.get("feed:1") is None
        assert failing_store.delete("feed:1") is False
        assert failing_store.delete_matching(lambda params: True) == 0
        failing_store.clear_all()
        assert failing_store.stats()["total_entries"] == 0
        assert sample(metrics_registry, "feed_cache_backend_errors_total") > 0

    def test_breaker_opens_after_threshold(self, failing_store):
        assert failing_store.backend_available is True
        failing_store.get("feed:1")
        failing_store.get("feed:1")
        assert failing_store.backend_available is False

    def test_failed_invalidation_is_enforced_on_read(self, flaky_backend, clock, cache_metrics):
        """Test entries covered by a failed eviction are never served."""
        store = FeedCacheStore(flaky_backend, clock=clock, metrics=cache_metrics)
        store.set("feed:pages", b"old", {"post_types": ["page"]})
        store.set("feed:posts", b"keep", {"post_types": ["post"]})

        flaky_backend.fail_scans = True
        assert store.delete_matching(lambda params: "page" in params["post_types"]) == 0

        assert store.get("feed:pages") is None
        assert store.get("feed:posts") is not None

        clock.advance(1)
        store.set("feed:pages", b"new", {"post_types": ["page"]})
        assert store.get("feed:pages").body == b"new"

    def test_failed_clear_is_enforced_on_read(self, flaky_backend, clock, cache_metrics):
        store = FeedCacheStore(flaky_backend, clock=clock, metrics=cache_metrics)
        store.set("feed:1", b"old")

        flaky_backend.fail_scans = True
        store.clear_all()

        assert store.get("feed:1") is None

    def test_deferred_invalidation_retried(self, flaky_backend, clock, cache_metrics):
        store = FeedCacheStore(flaky_backend, clock=clock, metrics=cache_metrics)
        store.set("feed:pages", b"old", {"post_types": ["page"]})

        flaky_backend.fail_scans = True
        store.delete_matching(lambda params: "page" in params["post_types"])
        flaky_backend.fail_scans = False
        store.delete_matching(lambda params: False)

        assert flaky_backend.get("feed:pages") is None

    def test_failed_delete_during_eviction_is_enforced_on_read(
        self, flaky_backend, clock, cache_metrics, metrics_registry
    ):
        """Test an entry whose delete failed is not served once the backend recovers."""
        store = FeedCacheStore(flaky_backend, clock=clock, metrics=cache_metrics)
        store.set("feed:posts", b"old", {"post_types": ["post"]})

        flaky_backend.fail_deletes = True
        assert store.delete_matching(lambda params: "post" in params["post_types"]) == 0
        flaky_backend.fail_deletes = False

        assert flaky_backend.get("feed:posts") is not None
        assert store.get("feed:posts") is None
        assert flaky_backend.get("feed:posts") is None
        labels = {"reason": "invalidated"}
        assert sample(metrics_registry, "feed_cache_evictions_total", labels) == 1.0

    def test_failed_retry_stays_pending(self, flaky_backend, clock, cache_metrics):
        store = FeedCacheStore(flaky_backend, clock=clock, metrics=cache_metrics)
        store.set("feed:pages", b"old", {"post_types": ["page"]})

        flaky_backend.fail_deletes = True
        store.delete_matching(lambda params: "page" in params["post_types"])
        store.delete_matching(lambda params: False)
        assert flaky_backend.get("feed:pages") is not None

        flaky_backend.fail_deletes = False
        store.purge_expired()

        assert flaky_backend.get("feed:pages") is None

    def test_set_skipped_after_matching_invalidation(self, store):
        """Test a body generated before an invalidation is served but not cached."""
        epoch = store.invalidation_epoch()
        store.delete_matching(lambda params: "post" in params["post_types"])

        entry = store.set("feed:1", b"stale", {"post_types": ["post"]}, since_epoch=epoch)

        assert entry.body == b"stale"
        assert store.get("feed:1") is None

    def test_set_kept_after_unrelated_invalidation(self, store):
        epoch = store.invalidation_epoch()
        store.delete_matching(lambda params: "page" in params["post_types"])

        store.set("feed:1", b"body", {"post_types": ["post"]}, since_epoch=epoch)

        assert store.get("feed:1") is not None

    def test_set_skipped_after_clear(self, store):
        epoch = store.invalidation_epoch()
        store.clear_all()

        store.set("feed:1", b"stale", {"post_types": ["post"]}, since_epoch=epoch)

        assert store.get("feed:1") is None

    def test_set_skipped_when_marks_were_dropped(self, clock, cache_metrics):
        store = FeedCacheStore(clock=clock, metrics=cache_metrics, max_invalidation_marks=1)
        epoch = store.invalidation_epoch()
        store.delete_matching(lambda params: "post" in params["post_types"])
        store.delete_matching(lambda params: "page" in params["post_types"])

        store.set("feed:1", b"stale", {"post_types": ["post"]}, since_epoch=epoch)

        assert store.get("feed:1") is None


class TestCacheJanitor:
    """Test the background cleanup thread."""

    def test_janitor_purges_expired_entries(self, store, clock):
        store.set("feed:1", b"body", ttl=10)
        clock.advance(20)

        janitor = CacheJanitor(store, interval=0.01)
        janitor.start()
        try:
            deadline = time.time() + 2
            while len(store) and time.time() < deadline:
                time.sleep(0.01)
        finally:
            janitor.stop()

        assert len(store) == 0
