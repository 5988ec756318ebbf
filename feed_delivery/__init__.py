"""Feed caching and delivery engine."""

from .api import DeliveryServices, build_services, create_app
from .cache import CacheEntry, FeedCacheStore
from .config import DeliveryConfig, load_config
from .core.orchestrator import (
    ContentGenerator,
    DeliveryOrchestrator,
    FeedRequest,
    FeedResponse,
    GeneratedFeed,
)
from .invalidation import ContentChange, InvalidationTrigger
from .routing import CustomRouteRegistry, FeedIdentity, FeedRoute, RedirectRule

__version__ = "1.0.0"

__all__ = [
    "CacheEntry",
    "ContentChange",
    "ContentGenerator",
    "CustomRouteRegistry",
    "DeliveryConfig",
    "DeliveryOrchestrator",
    "DeliveryServices",
    "FeedCacheStore",
    "FeedIdentity",
    "FeedRequest",
    "FeedResponse",
    "FeedRoute",
    "GeneratedFeed",
    "InvalidationTrigger",
    "RedirectRule",
    "build_services",
    "create_app",
    "load_config",
]
