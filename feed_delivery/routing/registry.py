"""Custom feed route registry.

Resolves request paths to the default feed, a custom feed route, a redirect
or nothing, and validates route and redirect definitions before they are
persisted to the definition store.
"""

import re
import threading
import time
from collections import deque
from typing import Callable, Dict, Iterable, List, Optional, Pattern, Tuple

import structlog

from feed_delivery.core.errors import ConfigurationError
from feed_delivery.routing.models import (
    DEFAULT_FEED_SLUG,
    FEED_FORMATS,
    ORDER_BY_VALUES,
    ORDER_DIRECTIONS,
    REDIRECT_STATUS_CODES,
    REGEX_PREFIX,
    RESERVED_FEED_SLUGS,
    FeedIdentity,
    FeedRoute,
    RedirectRule,
    ResolutionKind,
    RouteResolution,
    RouteSnapshot,
    feed_path,
    normalize_path,
    normalize_slug,
)
from feed_delivery.routing.store import RouteDefinitionStore

logger = structlog.get_logger(__name__)

SLUG_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_-]*$")
EXTERNAL_TARGET = re.compile(r"^https?://", re.IGNORECASE)

RouteListener = Callable[[str], None]


def compile_redirect(rule: RedirectRule) -> Optional[Pattern]:
    """Compile the pattern of a wildcard or regex rule.

    Returns None for exact rules. Wildcard rules match the whole normalized
    path with ``*`` standing for any run of characters; regex rules are
    searched anywhere in the normalized path, ignoring case since request
    paths are lowercased before matching.

    Raises:
        re.error: If a regex rule does not compile
    """
    if rule.is_regex:
        return re.compile(rule.from_path[len(REGEX_PREFIX):], re.IGNORECASE)
    if rule.is_wildcard:
        return re.compile("^" + re.escape(rule.identity).replace(r"\*", ".*") + "$")
    return None


def _redirect_matches(rule: RedirectRule, pattern: Optional[Pattern], path: str) -> bool:
    if pattern is None:
        return rule.identity == path
    if rule.is_regex:
        return pattern.search(path) is not None
    return pattern.match(path) is not None


def reserved_paths() -> List[str]:
    """Paths owned by the platform's default feeds."""
    paths = ["/feed/"]
    paths.extend(feed_path(slug) for slug in sorted(RESERVED_FEED_SLUGS) if slug != DEFAULT_FEED_SLUG)
    return paths


def route_paths(route: FeedRoute) -> List[str]:
    """Every path under which ``route`` is served."""
    return [route.path] + [feed_path(route.slug, fmt) for fmt in FEED_FORMATS]


class _RouteIndex:
    """Immutable lookup structure built from one snapshot."""

    def __init__(self, snapshot: RouteSnapshot) -> None:
        self.revision = snapshot.revision
        self.snapshot = snapshot
        self.routes: Dict[str, FeedRoute] = {route.slug: route for route in snapshot.routes}
        self.exact_redirects: Dict[str, RedirectRule] = {}
        self.pattern_redirects: List[Tuple[Pattern, RedirectRule]] = []
        for rule in snapshot.redirects:
            if not rule.enabled:
                continue
            try:
                pattern = compile_redirect(rule)
            except re.error as e:
                logger.warning("redirect_pattern_invalid", from_path=rule.from_path, error=str(e))
                continue
            if pattern is None:
                self.exact_redirects.setdefault(rule.identity, rule)
            else:
                self.pattern_redirects.append((pattern, rule))

    def match_redirect(self, path: str) -> Optional[RedirectRule]:
        rule = self.exact_redirects.get(path)
        if rule is not None:
            return rule
        for pattern, rule in self.pattern_redirects:
            if _redirect_matches(rule, pattern, path):
                return rule
        return None


class CustomRouteRegistry:
    """Maps feed request paths onto feed identities.

    The lookup index is rebuilt only when the definition store's revision
    changes. A new index is built aside and published by a single reference
    assignment, so concurrent ``resolve`` calls see either the old or the new
    index in full.
    """

    def __init__(
        self,
        store: RouteDefinitionStore,
        allowed_post_types: Iterable[str] = ("post", "page"),
        redirect_log_size: int = 1000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the registry.

        Args:
            store: Owner of the route and redirect definitions
            allowed_post_types: Content types a route may select
            redirect_log_size: Number of redirect hits kept for inspection
            clock: Returns the current time in epoch seconds
        """
        self._store = store
        self.allowed_post_types = tuple(allowed_post_types)
        self._clock = clock
        self._index: Optional[_RouteIndex] = None
        self._rebuild_lock = threading.Lock()
        self._write_lock = threading.RLock()
        self._listeners: List[RouteListener] = []
        self._redirect_log = deque(maxlen=redirect_log_size)
        self._redirect_log_lock = threading.Lock()

    def _current_index(self) -> _RouteIndex:
        index = self._index
        if index is not None and index.revision == self._store.revision:
            return index
        with self._rebuild_lock:
            index = self._index
            if index is None or index.revision != self._store.revision:
                index = _RouteIndex(self._store.snapshot())
                self._index = index
                logger.info(
                    "route_index_rebuilt",
                    revision=index.revision,
                    routes=len(index.routes),
                    redirects=len(index.snapshot.redirects),
                )
        return index

    @property
    def revision(self) -> int:
        return self._current_index().revision

    def resolve(self, request_path: str) -> RouteResolution:
        """Resolve a request path.

        Redirect rules are consulted first, then the default feed paths,
        then the enabled custom routes.

        Args:
            request_path: Raw request path, query string allowed

        Returns:
            The resolution; unknown or disabled feeds resolve as NOT_FOUND
        """
        index = self._current_index()
        path = normalize_path(request_path)

        rule = index.match_redirect(path)
        if rule is not None:
            return RouteResolution(ResolutionKind.REDIRECT, redirect=rule)

        segments = path.strip("/").split("/")
        if segments[0] != DEFAULT_FEED_SLUG or len(segments) > 3:
            return RouteResolution.not_found()

        if len(segments) == 1:
            return RouteResolution(ResolutionKind.DEFAULT, identity=FeedIdentity.default())

        slug = segments[1]
        if len(segments) == 2 and slug in FEED_FORMATS:
            return RouteResolution(ResolutionKind.DEFAULT, identity=FeedIdentity.default(slug))

        feed_format = segments[2] if len(segments) == 3 else None
        if feed_format is not None and feed_format not in FEED_FORMATS:
            return RouteResolution.not_found()

        route = index.routes.get(slug)
        if route is None or not route.enabled:
            return RouteResolution.not_found()
        identity = (
            FeedIdentity.custom(slug, feed_format) if feed_format else FeedIdentity.custom(slug)
        )
        return RouteResolution(ResolutionKind.CUSTOM, identity=identity, route=route)

    def get_route(self, slug: str) -> Optional[FeedRoute]:
        return self._current_index().routes.get(normalize_slug(slug))

    def list_routes(self) -> List[FeedRoute]:
        return list(self._current_index().snapshot.routes)

    def enabled_routes(self) -> List[FeedRoute]:
        return [route for route in self.list_routes() if route.enabled]

    def list_redirects(self) -> List[RedirectRule]:
        return list(self._current_index().snapshot.redirects)

    def validate_route(self, route: FeedRoute, replacing: Optional[str] = None) -> None:
        """Check a route definition against the current definitions.

        Args:
            route: Candidate route
            replacing: Slug of the route being edited, if any

        Raises:
            ConfigurationError: Listing every problem found
        """
        index = self._current_index()
        problems = []

        if not SLUG_PATTERN.match(route.slug):
            problems.append(
                "slug must start with a letter or digit and contain only "
                "lowercase letters, digits, '-' and '_'"
            )
        elif route.slug in RESERVED_FEED_SLUGS:
            problems.append(f"slug '{route.slug}' is reserved by the default feeds")
        elif route.slug in index.routes and route.slug != replacing:
            problems.append(f"slug '{route.slug}' is already used by another route")
        else:
            for rule in index.snapshot.redirects:
                if self._rule_shadows(rule, route_paths(route)):
                    problems.append(
                        f"slug '{route.slug}' collides with redirect '{rule.from_path}'"
                    )

        if isinstance(route.item_limit, bool) or not isinstance(route.item_limit, int):
            problems.append("item_limit must be an integer")
        elif route.item_limit <= 0:
            problems.append("item_limit must be greater than zero")

        if not route.post_types:
            problems.append("at least one post type is required")
        unknown = [t for t in route.post_types if t not in self.allowed_post_types]
        if unknown:
            problems.append(f"unknown post types: {', '.join(unknown)}")

        if route.order_by not in ORDER_BY_VALUES:
            problems.append(f"unknown order_by '{route.order_by}'")
        if route.order_direction not in ORDER_DIRECTIONS:
            problems.append(f"unknown order direction '{route.order_direction}'")

        if problems:
            raise ConfigurationError(
                f"Invalid feed route '{route.slug}'", {"slug": route.slug, "problems": problems}
            )

    def validate_redirect(self, rule: RedirectRule, replacing: Optional[str] = None) -> None:
        """Check a redirect definition against the current definitions.

        Args:
            rule: Candidate redirect
            replacing: Source of the redirect being edited, if any

        Raises:
            ConfigurationError: Listing every problem found
        """
        index = self._current_index()
        problems = []

        if rule.status_code not in REDIRECT_STATUS_CODES:
            problems.append(f"status code {rule.status_code} is not a redirect status")
        if not rule.to_path:
            problems.append("target is required")
        elif not (rule.to_path.startswith("/") or EXTERNAL_TARGET.match(rule.to_path)):
            problems.append("target must be an absolute path or an http(s) URL")

        source_valid = True
        if not rule.from_path or rule.from_path == REGEX_PREFIX:
            problems.append("source is required")
            source_valid = False
        else:
            try:
                compile_redirect(rule)
            except re.error as e:
                problems.append(f"invalid regular expression: {e}")
                source_valid = False

        if source_valid:
            replacing_identity = RedirectRule(replacing, "").identity if replacing else None
            if not rule.is_regex and not rule.is_wildcard and rule.to_path.startswith("/"):
                if normalize_path(rule.to_path) == rule.identity:
                    problems.append("source and target are the same path")
            if any(
                existing.identity == rule.identity and existing.identity != replacing_identity
                for existing in index.snapshot.redirects
            ):
                problems.append(f"a redirect from '{rule.from_path}' already exists")
            if self._rule_shadows(rule, reserved_paths()):
                problems.append("source matches a reserved default feed path")
            for route in index.snapshot.routes:
                if self._rule_shadows(rule, route_paths(route)):
                    problems.append(f"source matches the path of route '{route.slug}'")

        if problems:
            raise ConfigurationError(
                f"Invalid redirect '{rule.from_path}'",
                {"from_path": rule.from_path, "problems": problems},
            )

    @staticmethod
    def _rule_shadows(rule: RedirectRule, paths: Iterable[str]) -> bool:
        try:
            pattern = compile_redirect(rule)
        except re.error:
            return False
        return any(_redirect_matches(rule, pattern, path) for path in paths)

    def subscribe(self, listener: RouteListener) -> None:
        """Register a callback invoked with the slug of each changed route."""
        self._listeners.append(listener)

    def _notify(self, slug: str) -> None:
        for listener in list(self._listeners):
            listener(slug)

    def add_route(self, route: FeedRoute) -> FeedRoute:
        """Validate and persist a new route.

        Raises:
            ConfigurationError: If the route is invalid; nothing is persisted
        """
        with self._write_lock:
            self.validate_route(route)
            self._store.save_route(route)
        logger.info("feed_route_added", slug=route.slug)
        self._notify(route.slug)
        return route

    def update_route(self, slug: str, route: FeedRoute) -> FeedRoute:
        """Replace the route identified by ``slug``.

        Raises:
            KeyError: If no route has that slug
            ConfigurationError: If the new definition is invalid
        """
        slug = normalize_slug(slug)
        with self._write_lock:
            if self.get_route(slug) is None:
                raise KeyError(slug)
            self.validate_route(route, replacing=slug)
            if route.slug != slug:
                self._store.remove_route(slug)
            self._store.save_route(route)
        logger.info("feed_route_updated", slug=slug, new_slug=route.slug)
        self._notify(slug)
        if route.slug != slug:
            self._notify(route.slug)
        return route

    def delete_route(self, slug: str) -> bool:
        """Delete the route identified by ``slug``.

        Returns:
            False if no route had that slug
        """
        slug = normalize_slug(slug)
        with self._write_lock:
            removed = self._store.remove_route(slug)
        if removed:
            logger.info("feed_route_deleted", slug=slug)
            self._notify(slug)
        return removed

    def add_redirect(self, rule: RedirectRule) -> RedirectRule:
        """Validate and persist a new redirect.

        Raises:
            ConfigurationError: If the redirect is invalid; nothing is persisted
        """
        with self._write_lock:
            self.validate_redirect(rule)
            self._store.save_redirect(rule)
        logger.info("redirect_added", from_path=rule.from_path, to_path=rule.to_path)
        return rule

    def delete_redirect(self, from_path: str) -> bool:
        """Delete the redirect whose source is ``from_path``.

        Returns:
            False if no redirect had that source
        """
        with self._write_lock:
            removed = self._store.remove_redirect(from_path)
        if removed:
            logger.info("redirect_deleted", from_path=from_path)
        return removed

    def record_redirect(self, request_path: str, rule: RedirectRule) -> None:
        """Append a redirect hit to the bounded redirect log."""
        with self._redirect_log_lock:
            self._redirect_log.append(
                {
                    "path": request_path,
                    "from_path": rule.from_path,
                    "to_path": rule.to_path,
                    "status_code": rule.status_code,
                    "timestamp": self._clock(),
                }
            )

    def recent_redirects(self, limit: int = 50) -> List[dict]:
        """Most recent redirect hits, newest first."""
        with self._redirect_log_lock:
            entries = list(self._redirect_log)
        entries.reverse()
        return entries[: max(0, limit)]
