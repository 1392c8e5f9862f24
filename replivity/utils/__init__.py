"""Utility modules for Replivity."""

from .clock import utc_now
from .config import Settings, get_settings

__all__ = [
    "Settings",
    "get_settings",
    "utc_now",
]
