"""Configuration for the GovChat resilience layer."""

from govchat.config.settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
