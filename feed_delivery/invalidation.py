"""Cache invalidation driven by content changes and admin actions.

The host platform calls :meth:`InvalidationTrigger.on_content_changed`
directly while handling a write; eviction completes before the call returns
so the next read of an affected feed regenerates it.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Union

import structlog

from feed_delivery.cache.store import FeedCacheStore
from feed_delivery.core.errors import GenerationError
from feed_delivery.core.orchestrator import DeliveryOrchestrator
from feed_delivery.routing.models import FeedIdentity, FeedKind, FeedRoute, normalize_slug
from feed_delivery.routing.registry import CustomRouteRegistry

logger = structlog.get_logger(__name__)


class ContentChange(Enum):
    """Kinds of content change reported by the host platform."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    STATUS_CHANGED = "status_changed"
    COMMENTED = "commented"


@dataclass(frozen=True)
class ContentChangeEvent:
    """A change to one piece of content."""

    content_type: str
    post_id: Optional[Union[int, str]] = None
    change: ContentChange = ContentChange.UPDATED


class InvalidationTrigger:
    """Evicts cache entries affected by content or route changes.

    Invalidation is coarse: every entry whose feed includes the changed
    content type is evicted, whether or not the item appeared in it.
    """

    def __init__(
        self,
        store: FeedCacheStore,
        orchestrator: DeliveryOrchestrator,
        registry: Optional[CustomRouteRegistry] = None,
    ) -> None:
        """Initialize the trigger.

        Args:
            store: Cache to evict from
            orchestrator: Used to regenerate feeds when warming
            registry: Route registry; route edits evict that route's entries
        """
        self.store = store
        self.orchestrator = orchestrator
        self.registry = registry or orchestrator.registry
        self.registry.subscribe(self.on_route_changed)

    def on_content_changed(
        self,
        content_type: str,
        post_id: Optional[Union[int, str]] = None,
        change: Union[ContentChange, str] = ContentChange.UPDATED,
    ) -> int:
        """Evict every feed that includes ``content_type``.

        Args:
            content_type: Content type identifier of the changed item
            post_id: Identifier of the changed item, for logging
            change: Kind of change

        Returns:
            Number of entries evicted; zero when nothing was cached
        """
        return self.handle_event(ContentChangeEvent(content_type, post_id, ContentChange(change)))

    def handle_event(self, event: ContentChangeEvent) -> int:
        """Apply a :class:`ContentChangeEvent`."""
        content_type = event.content_type

        def affected(params) -> bool:
            return content_type in params.get("post_types", ())

        removed = self.store.delete_matching(affected)
        logger.info(
            "cache_invalidated",
            content_type=content_type,
            post_id=event.post_id,
            change=event.change.value,
            removed=removed,
        )
        return removed

    def on_route_changed(self, slug: str) -> int:
        """Evict all entries of the custom route ``slug``."""
        slug = normalize_slug(slug)

        def affected(params) -> bool:
            return params.get("kind") == FeedKind.CUSTOM.value and params.get("feed") == slug

        removed = self.store.delete_matching(affected)
        logger.info("route_cache_invalidated", slug=slug, removed=removed)
        return removed

    def clear_all(self) -> None:
        """Flush the whole cache."""
        self.store.clear_all()
        logger.info("cache_clear_requested")

    def warm(self, routes: Optional[Iterable[FeedRoute]] = None) -> Dict[str, Any]:
        """Generate and cache the default feed and every enabled custom route.

        Each feed is warmed in its default format.

        Args:
            routes: Routes to warm, all routes of the registry if omitted.
                Disabled routes are skipped.

        Returns:
            Dictionary with the warmed and failed feed slugs
        """
        if routes is None:
            routes = self.registry.list_routes()

        targets = [(FeedIdentity.default(), None)]
        targets.extend((FeedIdentity.custom(route.slug), route) for route in routes if route.enabled)

        warmed, failed = [], []
        for identity, route in targets:
            try:
                self.orchestrator.prime(identity, route)
            except GenerationError as e:
                logger.error("cache_warm_failed", feed=identity.slug, error=str(e))
                failed.append(identity.slug)
            else:
                warmed.append(identity.slug)

        logger.info("cache_warmed", warmed=len(warmed), failed=len(failed))
        return {"warmed": warmed, "failed": failed}
