"""Configuration management for feed delivery components."""

from .delivery_config import DeliveryConfig, load_config

__all__ = ["DeliveryConfig", "load_config"]
