"""Cache entry type shared by the store and its backends."""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping


@dataclass(frozen=True)
class CacheEntry:
    """A cached feed body and its validators.

    Entries are immutable; replacing one is a single reference swap inside the
    backend, so readers never see a partially written entry.

    Attributes:
        key: Cache key derived from feed identity, format and parameters
        body: Generated feed content, always uncompressed
        content_hash: Stable hash of ``body`` used as the ETag value
        content_type: Media type reported by the content generator
        created_at: Epoch seconds when the entry was stored
        expires_at: Epoch seconds after which the entry must not be served
        generation_params: Normalized inputs used to build ``body``
    """

    key: str
    body: bytes
    content_hash: str
    content_type: str
    created_at: float
    expires_at: float
    generation_params: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "generation_params", MappingProxyType(dict(self.generation_params))
        )

    def is_expired(self, now: float) -> bool:
        """Return True once ``now`` has reached ``expires_at``."""
        return now >= self.expires_at

    def remaining_ttl(self, now: float) -> int:
        """Whole seconds until expiry, never negative."""
        return max(0, int(self.expires_at - now))

    @property
    def size_bytes(self) -> int:
        return len(self.body)
