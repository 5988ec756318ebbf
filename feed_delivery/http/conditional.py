"""Conditional request negotiation.

Compares the validators a client sends (``If-None-Match`` and
``If-Modified-Since``) with those of a cached entry and decides between a
304 Not Modified and a full response.
"""

import calendar
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

from werkzeug.http import http_date, parse_date, parse_etags

from feed_delivery.cache.entry import CacheEntry
from feed_delivery.cache.fingerprint import format_etag


class NegotiationState(Enum):
    """States visited while evaluating a conditional request."""

    NO_VALIDATORS = "no_validators"
    COMPARE_ETAG = "compare_etag"
    COMPARE_LAST_MODIFIED = "compare_last_modified"
    NOT_MODIFIED = "not_modified"
    SERVE = "serve"


@dataclass(frozen=True)
class NegotiationResult:
    """Final decision plus the states visited to reach it."""

    decision: NegotiationState
    state_path: Tuple[NegotiationState, ...]

    @property
    def not_modified(self) -> bool:
        return self.decision is NegotiationState.NOT_MODIFIED


def _http_timestamp(value: str) -> Optional[int]:
    parsed = parse_date(value)
    if parsed is None:
        return None
    return calendar.timegm(parsed.utctimetuple())


class ConditionalNegotiator:
    """Decides whether a cached entry can be answered with 304.

    An ``If-None-Match`` header takes precedence: when it is present the
    modification date is not consulted at all.
    """

    def __init__(self, etag_enabled: bool = True, enabled: bool = True) -> None:
        """Initialize the negotiator.

        Args:
            etag_enabled: Whether ETags are emitted and compared
            enabled: Whether conditional requests are honoured at all
        """
        self.etag_enabled = etag_enabled
        self.enabled = enabled

    def evaluate(
        self,
        entry: CacheEntry,
        if_none_match: Optional[str] = None,
        if_modified_since: Optional[str] = None,
    ) -> NegotiationResult:
        """Evaluate the request validators against ``entry``.

        Args:
            entry: Fresh cache entry for the requested feed
            if_none_match: Raw ``If-None-Match`` header, may list several tags
            if_modified_since: Raw ``If-Modified-Since`` header

        Returns:
            NegotiationResult with decision NOT_MODIFIED or SERVE
        """
        path = [NegotiationState.NO_VALIDATORS]
        if not self.etag_enabled:
            if_none_match = None

        if not self.enabled or not (if_none_match or if_modified_since):
            decision = NegotiationState.SERVE
        elif if_none_match:
            path.append(NegotiationState.COMPARE_ETAG)
            etags = parse_etags(if_none_match)
            if etags.contains_weak(entry.content_hash):
                decision = NegotiationState.NOT_MODIFIED
            else:
                decision = NegotiationState.SERVE
        else:
            path.append(NegotiationState.COMPARE_LAST_MODIFIED)
            since = _http_timestamp(if_modified_since)
            # HTTP dates carry whole seconds only
            if since is not None and since >= int(entry.created_at):
                decision = NegotiationState.NOT_MODIFIED
            else:
                decision = NegotiationState.SERVE

        path.append(decision)
        return NegotiationResult(decision, tuple(path))

    def cache_headers(self, entry: CacheEntry, now: float) -> Dict[str, str]:
        """Validator and freshness headers for ``entry`` at time ``now``."""
        headers = {}
        if self.etag_enabled:
            headers["ETag"] = format_etag(entry.content_hash)
        headers["Last-Modified"] = http_date(int(entry.created_at))
        headers["Cache-Control"] = f"max-age={entry.remaining_ttl(now)}"
        return headers
