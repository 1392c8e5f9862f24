"""
Replivity Caching Layer

Two-tier cache for expensive analytics aggregates:
- Tier 1: Memory (per process, LRU-bounded, O(1) reads)
- Tier 2: Redis (shared across processes, TTL-based, compressed)

Key components:
- CacheManager: Tiered get / set / invalidate with single-flight compute
- TagIndex: Tag -> keys registry behind invalidate_tag
- RemoteTier: Redis operations with deadlines and a circuit breaker
- CacheMonitor: Health checks and metrics

Related services (import from their modules):
- replivity.cache.invalidation: CacheInvalidator, CacheEvent
- replivity.cache.warming: CacheWarmer

Usage:
    cache = CacheManager(get_cache_config())
    await cache.start()

    value = await cache.get_or_compute(key, compute, ttl=ttl, tags=["scope:42"])

    # After a write for user 42
    await cache.invalidate_tag("scope:42")
"""

from replivity.cache.config import CacheConfig, CacheTTL, get_cache_config
from replivity.cache.errors import (
    CacheError,
    InvalidSpec,
    RemoteUnavailable,
    SerializationError,
    ComputeError,
    ComputeTimeout,
    RefreshError,
)
from replivity.cache.tags import TagIndex
from replivity.cache.memory import CacheEntry, MemoryTier
from replivity.cache.remote import CircuitBreaker, RemoteEntry, RemoteTier
from replivity.cache.single_flight import SingleFlightGuard
from replivity.cache.manager import CacheManager
from replivity.cache.monitoring import (
    CacheMonitor,
    CacheMetrics,
    HealthCheckResult,
    HealthStatus,
)

__all__ = [
    # Config
    "CacheConfig",
    "CacheTTL",
    "get_cache_config",
    # Errors
    "CacheError",
    "InvalidSpec",
    "RemoteUnavailable",
    "SerializationError",
    "ComputeError",
    "ComputeTimeout",
    "RefreshError",
    # Tiers
    "TagIndex",
    "CacheEntry",
    "MemoryTier",
    "CircuitBreaker",
    "RemoteEntry",
    "RemoteTier",
    "SingleFlightGuard",
    "CacheManager",
    # Monitoring
    "CacheMonitor",
    "CacheMetrics",
    "HealthCheckResult",
    "HealthStatus",
]
