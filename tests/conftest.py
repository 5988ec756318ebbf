import threading

import pytest
from prometheus_client import CollectorRegistry

from feed_delivery.cache import FeedCacheStore, MemoryCacheBackend
from feed_delivery.cache.backends import CacheBackend
from feed_delivery.config import DeliveryConfig
from feed_delivery.core.errors import CacheBackendError
from feed_delivery.core.orchestrator import ContentGenerator, DeliveryOrchestrator, GeneratedFeed
from feed_delivery.invalidation import InvalidationTrigger
from feed_delivery.metrics import CacheMetrics, DeliveryMetrics
from feed_delivery.routing import CustomRouteRegistry, InMemoryRouteStore

T0 = 1_700_000_000.0


class FakeClock:
    """Manually advanced clock returning epoch seconds."""

    def __init__(self, start: float = T0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingGenerator(ContentGenerator):
    """Generator returning a deterministic body and recording every call."""

    def __init__(self, size: int = 2048, content_type=None):
        self.size = size
        self.content_type = content_type
        self.version = 1
        self.error = None
        self.release = None
        self.calls = []
        self._lock = threading.Lock()

    def generate(self, identity, params):
        with self._lock:
            self.calls.append((identity, params))
            version = self.version
        if self.release is not None:
            self.release.wait(5)
        if self.error is not None:
            raise self.error
        header = f"<rss feed='{identity.slug}' format='{identity.format}' v='{version}'>"
        return GeneratedFeed(header.encode("utf-8") + b"x" * self.size, self.content_type)


class FailingBackend(CacheBackend):
    """Backend whose every operation fails."""

    def get(self, key):
        raise CacheBackendError("backend down")

    def set(self, key, entry):
        raise CacheBackendError("backend down")

    def delete(self, key):
        raise CacheBackendError("backend down")

    def items(self):
        raise CacheBackendError("backend down")

    def clear(self):
        raise CacheBackendError("backend down")


class FlakyBackend(MemoryCacheBackend):
    """Memory backend whose scans, flushes and deletes can be made to fail."""

    def __init__(self):
        super().__init__()
        self.fail_scans = False
        self.fail_deletes = False

    def delete(self, key):
        if self.fail_deletes:
            raise CacheBackendError("delete failed")
        return super().delete(key)

    def items(self):
        if self.fail_scans:
            raise CacheBackendError("scan failed")
        return super().items()

    def clear(self):
        if self.fail_scans:
            raise CacheBackendError("flush failed")
        super().clear()

    def __len__(self):
        return len(super().items())


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def metrics_registry():
    return CollectorRegistry()


@pytest.fixture
def cache_metrics(metrics_registry):
    return CacheMetrics(registry=metrics_registry)


@pytest.fixture
def delivery_metrics(metrics_registry):
    return DeliveryMetrics(registry=metrics_registry)


@pytest.fixture
def config():
    return DeliveryConfig()


@pytest.fixture
def store(clock, cache_metrics):
    return FeedCacheStore(MemoryCacheBackend(), ttl_seconds=3600, clock=clock, metrics=cache_metrics)


@pytest.fixture
def route_store():
    return InMemoryRouteStore()


@pytest.fixture
def registry(route_store, clock):
    return CustomRouteRegistry(route_store, allowed_post_types=("post", "page"), clock=clock)


@pytest.fixture
def generator():
    return RecordingGenerator()


@pytest.fixture
def orchestrator(config, registry, store, generator, delivery_metrics, clock):
    orchestrator = DeliveryOrchestrator(
        config, registry, store, generator, metrics=delivery_metrics, clock=clock
    )
    yield orchestrator
    if generator.release is not None:
        generator.release.set()
    orchestrator.close()


@pytest.fixture
def trigger(store, orchestrator, registry):
    return InvalidationTrigger(store, orchestrator, registry)


@pytest.fixture
def failing_store(clock, cache_metrics):
    return FeedCacheStore(FailingBackend(), clock=clock, metrics=cache_metrics, failure_threshold=2)


@pytest.fixture
def flaky_backend():
    return FlakyBackend()


@pytest.fixture
def make_generator():
    """Factory for generators with a custom body size or content type."""
    return RecordingGenerator
