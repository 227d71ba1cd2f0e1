"""
Configuration management for Backend Relgraph.

Loads settings from environment variables and an optional .env file at the
project root. Exposes a single source of truth for service configuration.
"""

from backend_relgraph.config.settings import Settings, get_settings, reset_settings_cache  # noqa: F401

__all__ = ["Settings", "get_settings", "reset_settings_cache"]
