"""
Cache and Analytics Errors

Taxonomy:
- InvalidSpec: caller error, rejected before any cache access
- RemoteUnavailable: Redis down or slow, always treated as a miss
- SerializationError: value cannot be cached, caching is skipped
- ComputeError: the aggregate computation itself failed
- RefreshError: a materialized view refresh failed
"""

from typing import Optional


class CacheError(Exception):
    """Base class for cache-layer errors."""


class InvalidSpec(CacheError):
    """Malformed analytics query."""
    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class RemoteUnavailable(CacheError):
    """Remote tier unreachable, timed out, or short-circuited."""
    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation


class SerializationError(CacheError):
    """Value could not be serialized or deserialized."""


class ComputeError(CacheError):
    """Underlying aggregate computation failed."""
    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key


class ComputeTimeout(ComputeError):
    """In-flight computation exceeded the maximum compute time."""


class RefreshError(CacheError):
    """Materialized view refresh failed."""
    def __init__(self, message: str, view: Optional[str] = None):
        super().__init__(message)
        self.view = view
