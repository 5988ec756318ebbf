"""Response compression negotiation.

Cached entries always hold the uncompressed body; encoding happens per
response so one entry serves clients with and without gzip support.
"""

import gzip
import zlib
from enum import Enum
from typing import Optional, Tuple

import structlog
from werkzeug.http import parse_accept_header

logger = structlog.get_logger(__name__)


class Encoding(Enum):
    """Content codings the encoder can apply."""

    NONE = "identity"
    GZIP = "gzip"


class CompressionEncoder:
    """Chooses and applies a content coding for one response."""

    def __init__(self, enabled: bool = True, min_bytes: int = 1024, level: int = 6) -> None:
        """Initialize the encoder.

        Args:
            enabled: Whether compression may be applied at all
            min_bytes: Bodies of this size or smaller are sent uncompressed
            level: gzip compression level, 1 (fast) to 9 (small)
        """
        self.enabled = enabled
        self.min_bytes = min_bytes
        self.level = level

    def negotiate(self, accept_encoding: Optional[str], body_size: int) -> Encoding:
        """Select an encoding for a body of ``body_size`` bytes.

        Args:
            accept_encoding: Raw ``Accept-Encoding`` request header
            body_size: Length of the uncompressed body

        Returns:
            Encoding.GZIP if the client accepts gzip with a non-zero quality
            and the body exceeds the minimum size, Encoding.NONE otherwise
        """
        if not self.enabled or not accept_encoding or body_size <= self.min_bytes:
            return Encoding.NONE
        accepted = parse_accept_header(accept_encoding)
        if max(accepted["gzip"], accepted["x-gzip"]) > 0:
            return Encoding.GZIP
        return Encoding.NONE

    def encode(self, body: bytes, encoding: Encoding) -> Tuple[bytes, Optional[str]]:
        """Apply ``encoding`` to ``body``.

        Returns:
            The encoded body and the ``Content-Encoding`` header value, or the
            original body and None when no coding was applied. Encoder errors
            fall back to the original body.
        """
        if encoding is not Encoding.GZIP:
            return body, None
        try:
            return gzip.compress(body, compresslevel=self.level, mtime=0), Encoding.GZIP.value
        except (OSError, ValueError, zlib.error) as e:
            logger.warning("compression_failed", error=str(e), size=len(body))
            return body, None
