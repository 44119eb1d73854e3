"""Core module for configuration and utilities."""

from vidsqueeze.core.config import Settings, settings

__all__ = [
    "Settings",
    "settings",
]
