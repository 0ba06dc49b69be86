"""Configuration module - Settings and engine constants."""

from marketplace_sync.config.settings import Settings, settings

__all__ = ["Settings", "settings"]
