"""Error types for the feed delivery engine."""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(Enum):
    """Error categories for classification and logging."""

    CONFIGURATION_ERROR = "configuration_error"
    GENERATION_ERROR = "generation_error"
    CACHE_BACKEND_ERROR = "cache_backend_error"


class BaseError(Exception):
    """Base exception class for all feed delivery errors."""

    category: Optional[ErrorCategory] = None

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        """Initialize base error with optional context.

        Args:
            message: Error message
            context: Optional error context
        """
        super().__init__(message)
        self.context = context or {}

    def __str__(self) -> str:
        """Return string representation of error."""
        return str(super().__str__())

    def __repr__(self) -> str:
        """Return detailed string representation of error."""
        return f"{self.__class__.__name__}({super().__str__()}, context={self.context})"


class ConfigurationError(BaseError):
    """Use this error when a route, redirect or setting is invalid.

    Raised before anything is persisted; it never reaches the request path.
    """

    category = ErrorCategory.CONFIGURATION_ERROR


class GenerationError(BaseError):
    """Use this error when the content generator fails."""

    category = ErrorCategory.GENERATION_ERROR
    status_code = 500


class GenerationTimeoutError(GenerationError):
    """Use this error when the content generator exceeds its time budget."""

    status_code = 503


class CacheBackendError(BaseError):
    """Use this error when the cache backend is unavailable.

    The cache store catches it and degrades to bypass mode.
    """

    category = ErrorCategory.CACHE_BACKEND_ERROR
