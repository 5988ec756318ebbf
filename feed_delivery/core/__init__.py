"""Core delivery components and error types."""
