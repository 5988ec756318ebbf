"""Data models for feed routes, redirects and route resolution."""

import re
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

DEFAULT_FEED_SLUG = "feed"
DEFAULT_FORMAT = "rss2"
FEED_FORMATS: Tuple[str, ...] = ("rss2", "rss", "atom", "rdf", "json")
RESERVED_FEED_SLUGS = frozenset({DEFAULT_FEED_SLUG, "comments", *FEED_FORMATS})

ORDER_BY_VALUES: Tuple[str, ...] = ("date", "modified", "title", "rand", "comment_count", "author")
ORDER_DIRECTIONS: Tuple[str, ...] = ("ASC", "DESC")
REDIRECT_STATUS_CODES: Tuple[int, ...] = (301, 302, 307, 308)

# Redirect sources starting with this prefix are regular expressions
REGEX_PREFIX = "re:"

_MULTI_SLASH = re.compile(r"/{2,}")


def normalize_path(path: str) -> str:
    """Canonicalize a request path for matching.

    Drops any query string or fragment, lowercases, collapses repeated
    slashes and guarantees leading and trailing slashes.
    """
    path = path.split("?", 1)[0].split("#", 1)[0].strip().lower()
    path = _MULTI_SLASH.sub("/", "/" + path.strip("/") + "/")
    return path


def normalize_slug(slug: str) -> str:
    return str(slug).strip().strip("/").lower()


def _as_tuple(value) -> Tuple[str, ...]:
    if isinstance(value, str):
        return (value,) if value else ()
    return tuple(value)


def feed_path(slug: str, feed_format: Optional[str] = None) -> str:
    """Public path of a feed, e.g. ``/feed/news/`` or ``/feed/news/atom/``."""
    if feed_format:
        return f"/feed/{slug}/{feed_format}/"
    return f"/feed/{slug}/"


class FeedKind(Enum):
    """Whether a request targets the platform's default feed or a custom route."""

    DEFAULT = "default"
    CUSTOM = "custom"


class ResolutionKind(Enum):
    """Outcome of resolving a request path."""

    DEFAULT = "default"
    CUSTOM = "custom"
    REDIRECT = "redirect"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class FeedIdentity:
    """Logical feed a request resolves to, independent of the literal URL."""

    kind: FeedKind
    slug: str = DEFAULT_FEED_SLUG
    format: str = DEFAULT_FORMAT

    @classmethod
    def default(cls, feed_format: str = DEFAULT_FORMAT) -> "FeedIdentity":
        return cls(FeedKind.DEFAULT, DEFAULT_FEED_SLUG, feed_format)

    @classmethod
    def custom(cls, slug: str, feed_format: str = DEFAULT_FORMAT) -> "FeedIdentity":
        return cls(FeedKind.CUSTOM, slug, feed_format)


@dataclass(frozen=True)
class FeedRoute:
    """Definition of an additional feed endpoint.

    Attributes:
        slug: URL segment under ``/feed/``, unique across routes
        title: Display title passed to content generation
        description: Display description passed to content generation
        post_types: Content types included in the feed
        item_limit: Maximum items per response
        order_by: Item ordering field
        order_direction: ``ASC`` or ``DESC``
        enabled: Disabled routes resolve as not found
        query_params: Extra query parameters that take part in the cache key
    """

    slug: str
    title: str = ""
    description: str = ""
    post_types: Tuple[str, ...] = ("post",)
    item_limit: int = 10
    order_by: str = "date"
    order_direction: str = "DESC"
    enabled: bool = True
    query_params: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "slug", normalize_slug(self.slug))
        object.__setattr__(self, "post_types", _as_tuple(self.post_types))
        object.__setattr__(self, "query_params", _as_tuple(self.query_params))
        object.__setattr__(self, "order_direction", str(self.order_direction).upper())

    @property
    def path(self) -> str:
        return feed_path(self.slug)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["post_types"] = list(self.post_types)
        data["query_params"] = list(self.query_params)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeedRoute":
        """Build a route from a dictionary, ignoring unknown keys."""
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass(frozen=True)
class RedirectRule:
    """Redirect from a feed path to another path or an external URL.

    ``from_path`` is an exact path, a wildcard pattern using ``*``, or a
    regular expression when prefixed with ``re:``. Request paths are
    lowercased before matching, so regular expressions match without regard
    to case.
    """

    from_path: str
    to_path: str
    status_code: int = 301
    enabled: bool = True
    description: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "from_path", str(self.from_path).strip())
        object.__setattr__(self, "to_path", str(self.to_path).strip())
        object.__setattr__(self, "status_code", int(self.status_code))

    @property
    def is_regex(self) -> bool:
        return self.from_path.startswith(REGEX_PREFIX)

    @property
    def is_wildcard(self) -> bool:
        return not self.is_regex and "*" in self.from_path

    @property
    def identity(self) -> str:
        """Content-derived identifier used for lookup and deletion."""
        if self.is_regex:
            return self.from_path
        return normalize_path(self.from_path)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RedirectRule":
        """Build a rule from a dictionary, ignoring unknown keys."""
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass(frozen=True)
class RouteResolution:
    """Result of :meth:`CustomRouteRegistry.resolve`."""

    kind: ResolutionKind
    identity: Optional[FeedIdentity] = None
    route: Optional[FeedRoute] = None
    redirect: Optional[RedirectRule] = None

    @classmethod
    def not_found(cls) -> "RouteResolution":
        return cls(ResolutionKind.NOT_FOUND)


@dataclass(frozen=True)
class RouteSnapshot:
    """Point-in-time copy of all route and redirect definitions."""

    routes: Tuple[FeedRoute, ...] = ()
    redirects: Tuple[RedirectRule, ...] = ()
    revision: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "revision": self.revision,
            "routes": [route.to_dict() for route in self.routes],
            "redirects": [rule.to_dict() for rule in self.redirects],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RouteSnapshot":
        return cls(
            routes=tuple(FeedRoute.from_dict(r) for r in data.get("routes", [])),
            redirects=tuple(RedirectRule.from_dict(r) for r in data.get("redirects", [])),
            revision=int(data.get("revision", 0)),
        )
