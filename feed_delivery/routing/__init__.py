"""Custom feed routes and redirects."""

from feed_delivery.routing.models import (
    FEED_FORMATS,
    RESERVED_FEED_SLUGS,
    FeedIdentity,
    FeedKind,
    FeedRoute,
    RedirectRule,
    ResolutionKind,
    RouteResolution,
    RouteSnapshot,
    normalize_path,
)
from feed_delivery.routing.registry import CustomRouteRegistry
from feed_delivery.routing.store import InMemoryRouteStore, JsonRouteStore, RouteDefinitionStore

__all__ = [
    "FEED_FORMATS",
    "RESERVED_FEED_SLUGS",
    "CustomRouteRegistry",
    "FeedIdentity",
    "FeedKind",
    "FeedRoute",
    "InMemoryRouteStore",
    "JsonRouteStore",
    "RedirectRule",
    "ResolutionKind",
    "RouteDefinitionStore",
    "RouteResolution",
    "RouteSnapshot",
    "normalize_path",
]
