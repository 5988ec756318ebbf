"""Cache key and content hash derivation.

Keys are built from a canonical JSON document so that equivalent requests
(same recognised parameters in any order) share one cache entry, while
tracking parameters and other unrecognised names never fragment the cache.
"""

import hashlib
import json
from typing import Dict, Iterable, Mapping, Optional, Union

from werkzeug.http import quote_etag

from feed_delivery.routing.models import FeedIdentity

KEY_PREFIX = "feed:"
CONTENT_HASH_LENGTH = 16  # hex characters, 64 bits

QueryValue = Union[str, Iterable[str]]


def normalize_params(
    query: Optional[Mapping[str, QueryValue]], recognized: Iterable[str]
) -> Dict[str, str]:
    """Reduce a query mapping to the recognised parameters.

    Args:
        query: Raw query parameters; values may be strings or lists of strings
        recognized: Parameter names that influence generated content

    Returns:
        A new dict sorted by name holding the first non-empty value of each
        recognised parameter
    """
    if not query:
        return {}

    allowed = set(recognized)
    normalized = {}
    for name in sorted(query):
        if name not in allowed:
            continue
        value = query[name]
        if not isinstance(value, str):
            value = next((v for v in value if str(v).strip()), "")
        value = str(value).strip()
        if value:
            normalized[name] = value
    return normalized


def cache_key(identity: FeedIdentity, feed_format: str, normalized_params: Mapping[str, str]) -> str:
    """Derive the cache key for one logical feed response.

    Args:
        identity: Resolved feed identity (default or custom feed)
        feed_format: Requested output format
        normalized_params: Output of :func:`normalize_params`

    Returns:
        A key of the form ``feed:<sha256 hex>``
    """
    document = {
        "kind": identity.kind.value,
        "slug": identity.slug,
        "format": feed_format,
        "params": sorted(normalized_params.items()),
    }
    canonical = json.dumps(document, sort_keys=True, separators=(",", ":"))
    return KEY_PREFIX + hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def content_hash(body: bytes) -> str:
    """Return a fixed-length hash of ``body`` suitable as an ETag value."""
    return hashlib.sha256(body).hexdigest()[:CONTENT_HASH_LENGTH]


def format_etag(hash_value: str) -> str:
    """Quote a content hash per HTTP ETag syntax, e.g. ``"a1b2c3d4"``."""
    return quote_etag(hash_value)
