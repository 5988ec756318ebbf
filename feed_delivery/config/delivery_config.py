"""Configuration settings for feed caching and delivery."""

import json
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from dotenv import find_dotenv, load_dotenv

from feed_delivery.core.errors import ConfigurationError

ENV_PREFIX = "FEED_DELIVERY_"


@dataclass
class DeliveryConfig:
    """Configuration for the feed delivery engine.

    Attributes:
        cache_ttl_seconds: Lifetime of a cached feed body
        caching_enabled: If False, every request regenerates its feed
        etag_enabled: Emit ETag headers and honour If-None-Match
        conditional_requests_enabled: Answer matching validators with 304
        compression_enabled: Allow gzip responses
        compression_min_bytes: Bodies of this size or smaller are never compressed
        compression_level: gzip compression level (1-9)
        max_items_per_feed: Upper bound on items in any generated feed
        default_post_types: Content types included in the default feed
        allowed_post_types: Content types a custom route may select
        recognized_query_params: Query parameters that take part in the cache key
        generation_timeout_seconds: Time budget for one content generation
        generation_workers: Size of the generation thread pool
        cache_max_entries: Capacity of the in-memory cache backend
        cache_cleanup_interval_seconds: Janitor period, 0 disables it
        backend_failure_threshold: Backend failures before the cache is bypassed
        backend_reset_timeout_seconds: Seconds before a bypassed backend is retried
        redirect_log_size: Number of redirect hits kept for inspection
        admin_token: Token required by admin endpoints, empty disables the check
        metrics_port: Port for the Prometheus metrics server, 0 disables it
    """

    cache_ttl_seconds: int = 3600
    caching_enabled: bool = True
    etag_enabled: bool = True
    conditional_requests_enabled: bool = True
    compression_enabled: bool = True
    compression_min_bytes: int = 1024
    compression_level: int = 6
    max_items_per_feed: int = 50
    default_post_types: Tuple[str, ...] = ("post",)
    allowed_post_types: Tuple[str, ...] = ("post", "page")
    recognized_query_params: Tuple[str, ...] = ("paged", "cat", "tag", "author", "post_type")
    generation_timeout_seconds: float = 10.0
    generation_workers: int = 8
    cache_max_entries: int = 1000
    cache_cleanup_interval_seconds: int = 3600
    backend_failure_threshold: int = 5
    backend_reset_timeout_seconds: int = 60
    redirect_log_size: int = 1000
    admin_token: str = ""
    metrics_port: int = 0

    def __post_init__(self) -> None:
        # JSON and env sources hand us lists or comma-separated strings
        for name in ("default_post_types", "allowed_post_types", "recognized_query_params"):
            value = getattr(self, name)
            if isinstance(value, str):
                value = [part.strip() for part in value.split(",") if part.strip()]
            setattr(self, name, tuple(value))

    def validate(self) -> "DeliveryConfig":
        """Check every option against its allowed range.

        Returns:
            The config itself, so calls can be chained

        Raises:
            ConfigurationError: If any option is out of range
        """
        problems = []
        if self.cache_ttl_seconds <= 0:
            problems.append("cache_ttl_seconds must be positive")
        if self.compression_min_bytes < 0:
            problems.append("compression_min_bytes must not be negative")
        if not 1 <= self.compression_level <= 9:
            problems.append("compression_level must be between 1 and 9")
        if self.max_items_per_feed <= 0:
            problems.append("max_items_per_feed must be positive")
        if not self.default_post_types:
            problems.append("default_post_types must not be empty")
        if not self.allowed_post_types:
            problems.append("allowed_post_types must not be empty")
        missing = set(self.default_post_types) - set(self.allowed_post_types)
        if missing:
            problems.append(f"default_post_types not allowed: {', '.join(sorted(missing))}")
        if self.generation_timeout_seconds <= 0:
            problems.append("generation_timeout_seconds must be positive")
        if self.generation_workers <= 0:
            problems.append("generation_workers must be positive")
        if self.cache_max_entries <= 0:
            problems.append("cache_max_entries must be positive")
        if self.cache_cleanup_interval_seconds < 0:
            problems.append("cache_cleanup_interval_seconds must not be negative")
        if self.backend_failure_threshold <= 0:
            problems.append("backend_failure_threshold must be positive")
        if self.backend_reset_timeout_seconds <= 0:
            problems.append("backend_reset_timeout_seconds must be positive")
        if self.redirect_log_size <= 0:
            problems.append("redirect_log_size must be positive")
        if not 0 <= self.metrics_port <= 65535:
            problems.append("metrics_port must be a valid port number")

        if problems:
            raise ConfigurationError("Invalid configuration", {"problems": problems})
        return self

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> "DeliveryConfig":
        """Create a DeliveryConfig instance from a dictionary.

        Args:
            config_dict: Dictionary containing configuration values

        Returns:
            DeliveryConfig instance with values from dictionary
        """
        return cls(**{k: v for k, v in config_dict.items() if k in cls.__dataclass_fields__})

    def to_dict(self) -> Dict[str, Any]:
        """Return the configuration as plain JSON-compatible values."""
        result = {}
        for f in fields(self):
            value = getattr(self, f.name)
            result[f.name] = list(value) if isinstance(value, tuple) else value
        return result


def _coerce(raw: str, default: Any) -> Any:
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw


def _env_overrides() -> Dict[str, Any]:
    overrides = {}
    for f in fields(DeliveryConfig):
        raw = os.getenv(ENV_PREFIX + f.name.upper())
        if raw is None:
            continue
        try:
            overrides[f.name] = _coerce(raw, f.default)
        except ValueError as e:
            raise ConfigurationError(
                f"Invalid value for {ENV_PREFIX + f.name.upper()}", {"value": raw}
            ) from e
    return overrides


def load_config(config_path: Optional[Path] = None) -> DeliveryConfig:
    """Load configuration from defaults, a JSON file and the environment.

    Later sources win: defaults, then the file, then ``FEED_DELIVERY_*``
    variables (a ``.env`` file is honoured).

    Args:
        config_path: Optional path to a JSON configuration file

    Returns:
        A validated DeliveryConfig

    Raises:
        ConfigurationError: If the file is unreadable or a value is invalid
    """
    load_dotenv(find_dotenv(usecwd=True))

    values: Dict[str, Any] = {}
    if config_path is not None:
        try:
            with open(config_path) as f:
                values.update(json.load(f))
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(
                f"Cannot read configuration file {config_path}", {"error": str(e)}
            ) from e

    values.update(_env_overrides())
    return DeliveryConfig.from_dict(values).validate()
