"""Delivery orchestrator: the per-request feed pipeline.

Each request moves through
``RESOLVE -> (REDIRECT | LOOKUP) -> (NOT_MODIFIED | GENERATE) -> COMPRESS -> RESPOND``.
"""

import concurrent.futures
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

import structlog

from feed_delivery.cache.entry import CacheEntry
from feed_delivery.cache.fingerprint import cache_key, content_hash, normalize_params
from feed_delivery.cache.store import FeedCacheStore
from feed_delivery.config.delivery_config import DeliveryConfig
from feed_delivery.core.errors import GenerationError, GenerationTimeoutError
from feed_delivery.http.compression import CompressionEncoder, Encoding
from feed_delivery.http.conditional import ConditionalNegotiator
from feed_delivery.metrics import DeliveryMetrics, get_delivery_metrics
from feed_delivery.routing.models import (
    FeedIdentity,
    FeedKind,
    FeedRoute,
    ResolutionKind,
    RouteResolution,
)
from feed_delivery.routing.registry import CustomRouteRegistry

logger = structlog.get_logger(__name__)

CONTENT_TYPES = {
    "rss2": "application/rss+xml; charset=UTF-8",
    "rss": "application/rss+xml; charset=UTF-8",
    "atom": "application/atom+xml; charset=UTF-8",
    "rdf": "application/rdf+xml; charset=UTF-8",
    "json": "application/feed+json; charset=UTF-8",
}


class DeliveryState(Enum):
    """Pipeline stages of a feed request."""

    RESOLVE = "resolve"
    REDIRECT = "redirect"
    NOT_FOUND = "not_found"
    LOOKUP = "lookup"
    NOT_MODIFIED = "not_modified"
    GENERATE = "generate"
    COMPRESS = "compress"
    RESPOND = "respond"


@dataclass
class FeedRequest:
    """Incoming feed request as seen by the orchestrator."""

    path: str
    query: Mapping[str, Any] = field(default_factory=dict)
    headers: Mapping[str, str] = field(default_factory=dict)

    def header(self, name: str) -> Optional[str]:
        """Case-insensitive header lookup."""
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None


@dataclass
class FeedResponse:
    """Status, headers and body to send back to the client."""

    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""


@dataclass(frozen=True)
class GeneratedFeed:
    """Output of the content generator."""

    body: bytes
    content_type: Optional[str] = None


class ContentGenerator(ABC):
    """Builds feed bodies. Supplied by the host platform."""

    @abstractmethod
    def generate(self, identity: FeedIdentity, params: Mapping[str, Any]) -> GeneratedFeed:
        """Build the feed for ``identity``.

        Args:
            identity: Resolved feed identity
            params: Generation parameters (post types, item limit, ordering
                and the normalized query)

        Returns:
            The generated body and its media type
        """


@dataclass
class RequestContext:
    """Per-request state, discarded once the response is built."""

    request: FeedRequest
    identity: Optional[FeedIdentity] = None
    route: Optional[FeedRoute] = None
    feed_format: Optional[str] = None
    cache_key: Optional[str] = None
    generation_params: Dict[str, Any] = field(default_factory=dict)
    encoding: Encoding = Encoding.NONE
    if_none_match: Optional[str] = None
    if_modified_since: Optional[str] = None
    cache_hit: bool = False
    states: List[DeliveryState] = field(default_factory=list)

    def advance(self, state: DeliveryState) -> None:
        self.states.append(state)


class DeliveryOrchestrator:
    """Coordinates route resolution, caching, negotiation and generation."""

    def __init__(
        self,
        config: DeliveryConfig,
        registry: CustomRouteRegistry,
        store: FeedCacheStore,
        generator: ContentGenerator,
        negotiator: Optional[ConditionalNegotiator] = None,
        encoder: Optional[CompressionEncoder] = None,
        metrics: Optional[DeliveryMetrics] = None,
        clock=time.time,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            config: Delivery settings
            registry: Route and redirect resolution
            store: Feed cache
            generator: Content generation collaborator
            negotiator: Conditional request handling, built from config if omitted
            encoder: Response compression, built from config if omitted
            metrics: Metrics sink, the shared delivery metrics by default
            clock: Returns the current time in epoch seconds
        """
        self.config = config
        self.registry = registry
        self.store = store
        self.generator = generator
        self.negotiator = negotiator or ConditionalNegotiator(
            etag_enabled=config.etag_enabled, enabled=config.conditional_requests_enabled
        )
        self.encoder = encoder or CompressionEncoder(
            enabled=config.compression_enabled,
            min_bytes=config.compression_min_bytes,
            level=config.compression_level,
        )
        self.metrics = metrics or get_delivery_metrics()
        self._clock = clock
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=config.generation_workers, thread_name_prefix="feed-generator"
        )
        self._locks_guard = threading.Lock()
        self._generation_locks: Dict[str, Tuple[threading.Lock, int]] = {}

    def handle(self, request: FeedRequest) -> FeedResponse:
        """Run one request through the delivery pipeline."""
        ctx = RequestContext(
            request=request,
            if_none_match=request.header("If-None-Match"),
            if_modified_since=request.header("If-Modified-Since"),
        )
        ctx.advance(DeliveryState.RESOLVE)
        resolution = self.registry.resolve(request.path)

        if resolution.kind is ResolutionKind.REDIRECT:
            return self._redirect(ctx, resolution)
        if resolution.kind is ResolutionKind.NOT_FOUND:
            ctx.advance(DeliveryState.NOT_FOUND)
            return self._finish(
                ctx, FeedResponse(404, {"Content-Type": "text/plain; charset=UTF-8"}, b"Feed not found")
            )

        self._prepare(ctx, resolution)
        entry = None
        if self.config.caching_enabled:
            ctx.advance(DeliveryState.LOOKUP)
            entry = self.store.get(ctx.cache_key)

        if entry is not None:
            ctx.cache_hit = True
            result = self.negotiator.evaluate(entry, ctx.if_none_match, ctx.if_modified_since)
            if result.not_modified:
                ctx.advance(DeliveryState.NOT_MODIFIED)
                self.metrics.not_modified.inc()
                return self._finish(ctx, FeedResponse(304, self._validator_headers(entry)))
        else:
            ctx.advance(DeliveryState.GENERATE)
            try:
                entry = self._generate(ctx)
            except GenerationError as e:
                return self._finish(ctx, self._error_response(e))

        return self._finish(ctx, self._full_response(ctx, entry))

    def prime(self, identity: FeedIdentity, route: Optional[FeedRoute] = None) -> CacheEntry:
        """Generate and cache ``identity`` ahead of any request.

        Raises:
            GenerationError: If content generation fails or times out
        """
        kind = ResolutionKind.CUSTOM if identity.kind is FeedKind.CUSTOM else ResolutionKind.DEFAULT
        ctx = RequestContext(request=FeedRequest(path=""))
        self._prepare(ctx, RouteResolution(kind, identity=identity, route=route))
        return self._generate(ctx, reuse_cached=False)

    def close(self) -> None:
        """Stop the generation worker pool."""
        self._executor.shutdown(wait=False)

    def _prepare(self, ctx: RequestContext, resolution: RouteResolution) -> None:
        identity = resolution.identity
        route = resolution.route
        recognized = list(self.config.recognized_query_params)
        if route is not None:
            recognized.extend(route.query_params)
        query = normalize_params(ctx.request.query, recognized)

        params: Dict[str, Any] = {
            "feed": identity.slug,
            "kind": identity.kind.value,
            "format": identity.format,
            "query": query,
        }
        if route is not None:
            params.update(
                post_types=list(route.post_types),
                item_limit=min(route.item_limit, self.config.max_items_per_feed),
                order_by=route.order_by,
                order=route.order_direction,
                title=route.title,
                description=route.description,
            )
        else:
            requested = query.get("post_type")
            if requested in self.config.allowed_post_types:
                post_types = [requested]
            else:
                post_types = list(self.config.default_post_types)
            params.update(
                post_types=post_types,
                item_limit=self.config.max_items_per_feed,
                order_by="date",
                order="DESC",
            )

        ctx.identity = identity
        ctx.route = route
        ctx.feed_format = identity.format
        ctx.generation_params = params
        ctx.cache_key = cache_key(identity, identity.format, query)

    @contextmanager
    def _generation_lock(self, key: str) -> Iterator[bool]:
        with self._locks_guard:
            lock, users = self._generation_locks.get(key, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._generation_locks[key] = (lock, users + 1)
        acquired = lock.acquire(timeout=self.config.generation_timeout_seconds)
        try:
            yield acquired
        finally:
            if acquired:
                lock.release()
            with self._locks_guard:
                lock, users = self._generation_locks[key]
                if users <= 1:
                    del self._generation_locks[key]
                else:
                    self._generation_locks[key] = (lock, users - 1)

    def _generate(self, ctx: RequestContext, reuse_cached: bool = True) -> CacheEntry:
        with self._generation_lock(ctx.cache_key) as acquired:
            if not acquired:
                self.metrics.generation_failures.labels(reason="timeout").inc()
                raise GenerationTimeoutError(
                    "Timed out waiting for concurrent generation", {"feed": ctx.identity.slug}
                )
            if reuse_cached and self.config.caching_enabled:
                # Another request may have filled the entry while we waited
                entry = self.store.get(ctx.cache_key)
                if entry is not None:
                    return entry
            epoch = self.store.invalidation_epoch()
            generated = self._run_generator(ctx)
            return self._store_generated(ctx, generated, epoch)

    def _run_generator(self, ctx: RequestContext) -> GeneratedFeed:
        timeout = self.config.generation_timeout_seconds
        start = time.perf_counter()
        future = self._executor.submit(
            self.generator.generate, ctx.identity, dict(ctx.generation_params)
        )
        try:
            generated = future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            self.metrics.generation_failures.labels(reason="timeout").inc()
            logger.error(
                "feed_generation_timeout",
                feed=ctx.identity.slug,
                format=ctx.feed_format,
                timeout=timeout,
            )
            raise GenerationTimeoutError(
                f"Feed generation exceeded {timeout}s",
                {"feed": ctx.identity.slug, "format": ctx.feed_format},
            )
        except GenerationError as e:
            self.metrics.generation_failures.labels(reason="error").inc()
            logger.error("feed_generation_failed", feed=ctx.identity.slug, error=str(e))
            raise
        except Exception as e:
            self.metrics.generation_failures.labels(reason="error").inc()
            logger.error(
                "feed_generation_failed",
                feed=ctx.identity.slug,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise GenerationError(
                "Feed generation failed", {"feed": ctx.identity.slug, "error": str(e)}
            ) from e
        finally:
            self.metrics.generation_time.observe(time.perf_counter() - start)

        body = generated.body
        if isinstance(body, str):
            body = body.encode("utf-8")
        if not isinstance(body, bytes):
            self.metrics.generation_failures.labels(reason="error").inc()
            raise GenerationError(
                "Generator returned a non-binary body", {"type": type(body).__name__}
            )
        return GeneratedFeed(body, generated.content_type or CONTENT_TYPES[ctx.feed_format])

    def _store_generated(
        self, ctx: RequestContext, generated: GeneratedFeed, epoch: Optional[int] = None
    ) -> CacheEntry:
        if self.config.caching_enabled:
            # Not stored if the content changed while the generator ran
            entry = self.store.set(
                ctx.cache_key,
                generated.body,
                generation_params=ctx.generation_params,
                content_type=generated.content_type,
                since_epoch=epoch,
            )
        else:
            now = self._clock()
            entry = CacheEntry(
                key=ctx.cache_key,
                body=generated.body,
                content_hash=content_hash(generated.body),
                content_type=generated.content_type,
                created_at=now,
                expires_at=now + self.store.ttl_seconds,
                generation_params=ctx.generation_params,
            )
        logger.info(
            "feed_generated",
            feed=ctx.identity.slug,
            format=ctx.feed_format,
            size=entry.size_bytes,
            cached=self.config.caching_enabled,
        )
        return entry

    def _full_response(self, ctx: RequestContext, entry: CacheEntry) -> FeedResponse:
        ctx.advance(DeliveryState.COMPRESS)
        headers = self._validator_headers(entry)
        headers["Content-Type"] = entry.content_type

        ctx.encoding = self.encoder.negotiate(ctx.request.header("Accept-Encoding"), entry.size_bytes)
        body, content_encoding = self.encoder.encode(entry.body, ctx.encoding)
        if content_encoding:
            headers["Content-Encoding"] = content_encoding
            self.metrics.compressed.inc()
        headers["Content-Length"] = str(len(body))
        return FeedResponse(200, headers, body)

    def _validator_headers(self, entry: CacheEntry) -> Dict[str, str]:
        headers = self.negotiator.cache_headers(entry, self._clock())
        if self.encoder.enabled:
            headers["Vary"] = "Accept-Encoding"
        return headers

    def _redirect(self, ctx: RequestContext, resolution: RouteResolution) -> FeedResponse:
        ctx.advance(DeliveryState.REDIRECT)
        rule = resolution.redirect
        self.registry.record_redirect(ctx.request.path, rule)
        self.metrics.redirects.labels(status=str(rule.status_code)).inc()
        logger.info(
            "feed_redirected",
            path=ctx.request.path,
            to_path=rule.to_path,
            status=rule.status_code,
        )
        return self._finish(ctx, FeedResponse(rule.status_code, {"Location": rule.to_path}))

    def _error_response(self, error: GenerationError) -> FeedResponse:
        headers = {"Content-Type": "text/plain; charset=UTF-8", "Cache-Control": "no-store"}
        body = b"Feed generation failed"
        if isinstance(error, GenerationTimeoutError):
            headers["Retry-After"] = "5"
            body = b"Feed temporarily unavailable"
        return FeedResponse(error.status_code, headers, body)

    def _finish(self, ctx: RequestContext, response: FeedResponse) -> FeedResponse:
        ctx.advance(DeliveryState.RESPOND)
        self.metrics.responses.labels(status=str(response.status)).inc()
        logger.debug(
            "feed_request_handled",
            path=ctx.request.path,
            status=response.status,
            cache_hit=ctx.cache_hit,
            states=[state.value for state in ctx.states],
        )
        return response
