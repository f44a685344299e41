"""Core module for configuration, logging, tracing and metrics."""

from hlspipe.core.config import Settings, settings

__all__ = [
    "Settings",
    "settings",
]
