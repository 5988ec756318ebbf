"""Metrics collection for the feed delivery engine.

Counters are exposed through Prometheus so an external collector can scrape
cache and delivery behaviour; nothing is persisted here.
"""

import os
from typing import Optional, Sequence

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram
from prometheus_client import start_http_server
import structlog

logger = structlog.get_logger(__name__)


def _existing(registry: CollectorRegistry, name: str):
    return registry._names_to_collectors.get(name)


def _counter(
    registry: CollectorRegistry, name: str, help_text: str, labels: Sequence[str] = ()
) -> Counter:
    return _existing(registry, name) or Counter(name, help_text, labels, registry=registry)


def _gauge(registry: CollectorRegistry, name: str, help_text: str) -> Gauge:
    return _existing(registry, name) or Gauge(name, help_text, registry=registry)


def _histogram(registry: CollectorRegistry, name: str, help_text: str, buckets) -> Histogram:
    return _existing(registry, name) or Histogram(
        name, help_text, buckets=buckets, registry=registry
    )


class CacheMetrics:
    """Metrics for feed cache behaviour.

    Tracks hits, misses, writes, evictions and backend failures.
    """

    def __init__(self, registry: CollectorRegistry = REGISTRY) -> None:
        """Initialize cache metrics.

        Args:
            registry: Prometheus registry to use for metrics
        """
        self.cache_hits = _counter(registry, "feed_cache_hits_total", "Number of cache hits")
        self.cache_misses = _counter(registry, "feed_cache_misses_total", "Number of cache misses")
        self.cache_sets = _counter(registry, "feed_cache_sets_total", "Number of cache writes")
        self.cache_evictions = _counter(
            registry,
            "feed_cache_evictions_total",
            "Number of cache entries removed",
            ["reason"],
        )
        self.cache_errors = _counter(
            registry, "feed_cache_backend_errors_total", "Number of cache backend failures"
        )
        self.cache_entries = _gauge(registry, "feed_cache_entries", "Current number of cache entries")


class DeliveryMetrics:
    """Metrics for feed responses and content generation."""

    def __init__(self, registry: CollectorRegistry = REGISTRY) -> None:
        """Initialize delivery metrics.

        Args:
            registry: Prometheus registry to use for metrics
        """
        self.responses = _counter(
            registry, "feed_responses_total", "Feed responses by status code", ["status"]
        )
        self.not_modified = _counter(
            registry, "feed_not_modified_total", "Conditional requests answered with 304"
        )
        self.redirects = _counter(
            registry, "feed_redirects_total", "Feed redirects served", ["status"]
        )
        self.compressed = _counter(
            registry, "feed_compressed_responses_total", "Responses sent gzip encoded"
        )
        self.generation_failures = _counter(
            registry, "feed_generation_failures_total", "Failed content generations", ["reason"]
        )
        self.generation_time = _histogram(
            registry,
            "feed_generation_seconds",
            "Time spent generating feed content",
            buckets=(0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0),
        )


_test_registry: Optional[CollectorRegistry] = None
_cache_metrics: Optional[CacheMetrics] = None
_delivery_metrics: Optional[DeliveryMetrics] = None


def get_registry() -> CollectorRegistry:
    """Get the appropriate metrics registry.

    Returns:
        CollectorRegistry: A private registry under pytest, the global one otherwise
    """
    global _test_registry
    if bool(os.getenv("PYTEST_CURRENT_TEST")):
        if _test_registry is None:
            _test_registry = CollectorRegistry()
        return _test_registry
    return REGISTRY


def get_cache_metrics() -> CacheMetrics:
    """Get the shared cache metrics instance."""
    global _cache_metrics
    if _cache_metrics is None:
        _cache_metrics = CacheMetrics(registry=get_registry())
    return _cache_metrics


def get_delivery_metrics() -> DeliveryMetrics:
    """Get the shared delivery metrics instance."""
    global _delivery_metrics
    if _delivery_metrics is None:
        _delivery_metrics = DeliveryMetrics(registry=get_registry())
    return _delivery_metrics


def start_metrics_server(port: int = 8000) -> None:
    """Start a Prometheus metrics server on the specified port.

    Args:
        port: Port number for metrics server
    """
    start_http_server(port)
    logger.info("metrics_server_started", port=port)


__all__ = [
    "CacheMetrics",
    "DeliveryMetrics",
    "get_registry",
    "get_cache_metrics",
    "get_delivery_metrics",
    "start_metrics_server",
]
