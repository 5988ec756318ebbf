"""HTTP negotiation helpers for feed responses."""

from feed_delivery.http.compression import CompressionEncoder, Encoding
from feed_delivery.http.conditional import (
    ConditionalNegotiator,
    NegotiationResult,
    NegotiationState,
)

__all__ = [
    "CompressionEncoder",
    "ConditionalNegotiator",
    "Encoding",
    "NegotiationResult",
    "NegotiationState",
]
