"""
UTC timestamps.

Stored and compared as naive UTC, matching the DateTime columns in
replivity.database.models.
"""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Current UTC time without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
