"""Tests for content-change and administrative invalidation."""

import threading
import time

import pytest

from feed_delivery.cache.fingerprint import cache_key
from feed_delivery.core.orchestrator import FeedRequest
from feed_delivery.invalidation import ContentChange, ContentChangeEvent
from feed_delivery.routing import FeedIdentity, FeedRoute


def request(orchestrator, path):
    return orchestrator.handle(FeedRequest(path))


@pytest.fixture
def populated(orchestrator, registry, trigger):
    """Cache the default feed (posts) and a pages-only custom feed."""
    registry.add_route(FeedRoute("pages", post_types=("page",)))
    request(orchestrator, "/feed/")
    request(orchestrator, "/feed/pages/")
    return orchestrator


class TestContentChanges:
    """Test eviction on content changes."""

    def test_evicts_feeds_including_type(self, populated, trigger, store, generator):
        assert len(store) == 2

        assert trigger.on_content_changed("page", post_id=12) == 1

        assert store.get(cache_key(FeedIdentity.custom("pages"), "rss2", {})) is None
        assert store.get(cache_key(FeedIdentity.default(), "rss2", {})) is not None

        request(populated, "/feed/pages/")
        assert len(generator.calls) == 3

    def test_repeated_invalidation_is_noop(self, populated, trigger):
        assert trigger.on_content_changed("post", 1, ContentChange.DELETED) == 1
        assert trigger.on_content_changed("post", 1, ContentChange.DELETED) == 0

    def test_unaffected_type(self, populated, trigger, store):
        assert trigger.on_content_changed("attachment") == 0
        assert len(store) == 2

    @pytest.mark.parametrize("change", ["created", "updated", "deleted", "status_changed", "commented"])
    def test_change_names(self, populated, trigger, change):
        assert trigger.on_content_changed("post", 7, change) == 1

    def test_unknown_change_name(self, trigger):
        with pytest.raises(ValueError):
            trigger.on_content_changed("post", 7, "archived")

    def test_handle_event(self, populated, trigger, store):
        trigger.handle_event(ContentChangeEvent("page", 3, ContentChange.STATUS_CHANGED))
        assert len(store) == 1


class TestChangeDuringGeneration:
    """Test content changes that land while a feed is being generated."""

    def test_body_read_before_change_is_not_cached(self, orchestrator, trigger, store, generator):
        generator.release = threading.Event()
        responses = []
        worker = threading.Thread(target=lambda: responses.append(request(orchestrator, "/feed/")))
        worker.start()
        deadline = time.time() + 5
        while not generator.calls and time.time() < deadline:
            time.sleep(0.01)

        trigger.on_content_changed("post", post_id=4)
        generator.version = 2
        generator.release.set()
        worker.join(5)

        assert b"v='1'" in responses[0].body
        assert len(store) == 0
        assert b"v='2'" in request(orchestrator, "/feed/").body

    def test_unrelated_change_keeps_result(self, orchestrator, trigger, store, generator):
        generator.release = threading.Event()
        worker = threading.Thread(target=request, args=(orchestrator, "/feed/"))
        worker.start()
        deadline = time.time() + 5
        while not generator.calls and time.time() < deadline:
            time.sleep(0.01)

        trigger.on_content_changed("page")
        generator.release.set()
        worker.join(5)

        assert len(store) == 1


class TestRouteChanges:
    """Test eviction when a route definition changes."""

    def test_route_edit_evicts_its_entries(self, populated, registry, store, generator):
        request(populated, "/feed/pages/atom/")
        assert len(store) == 3

        registry.update_route("pages", FeedRoute("pages", post_types=("page",), item_limit=5))

        assert len(store) == 1
        request(populated, "/feed/pages/")
        assert generator.calls[-1][1]["item_limit"] == 5

    def test_route_delete_evicts_its_entries(self, populated, registry, store):
        registry.delete_route("pages")
        assert len(store) == 1


class TestAdministrative:
    """Test manual clear and warm operations."""

    def test_clear_all(self, populated, trigger, store):
        trigger.clear_all()
        assert len(store) == 0

    def test_warm_default_and_enabled_routes(self, registry, trigger, store):
        registry.add_route(FeedRoute("news"))
        registry.add_route(FeedRoute("pages", post_types=("page",)))
        registry.add_route(FeedRoute("drafts", enabled=False))

        result = trigger.warm()

        assert result == {"warmed": ["feed", "news", "pages"], "failed": []}
        assert len(store) == 3
        for identity in (FeedIdentity.default(), FeedIdentity.custom("news"), FeedIdentity.custom("pages")):
            assert store.get(cache_key(identity, "rss2", {})) is not None

    def test_warm_given_routes(self, trigger, store):
        result = trigger.warm([FeedRoute("news"), FeedRoute("off", enabled=False)])
        assert result["warmed"] == ["feed", "news"]

    def test_warm_reports_failures(self, trigger, generator, store):
        generator.error = RuntimeError("boom")
        result = trigger.warm()
        assert result == {"warmed": [], "failed": ["feed"]}
        assert len(store) == 0
