"""
Cache Configuration

Centralized configuration for the tiered cache and analytics engine.
All values can be overridden via environment variables.

TTL tiers follow data volatility:
- Usage dashboards: low minutes
- Historical / revenue reports: tens of minutes
"""

import os
from dataclasses import dataclass, field
from datetime import timedelta
from functools import lru_cache
from typing import Optional


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_seconds(name: str, default: float) -> timedelta:
    return timedelta(seconds=float(os.getenv(name, str(default))))


@dataclass(frozen=True)
class CacheTTL:
    """
    Cache TTL configuration by analytics query kind.

    Dashboards back near-real-time usage widgets and must track new
    generations closely. Revenue reports are historical and change only
    when payments land, so they cache for much longer.
    """

    DASHBOARD: timedelta = field(default_factory=lambda: _env_seconds("CACHE_TTL_DASHBOARD", 120))
    USER_ANALYTICS: timedelta = field(default_factory=lambda: _env_seconds("CACHE_TTL_USER", 60))
    PLATFORM_ANALYTICS: timedelta = field(default_factory=lambda: _env_seconds("CACHE_TTL_PLATFORM", 60))
    HASHTAG_PERFORMANCE: timedelta = field(default_factory=lambda: _env_seconds("CACHE_TTL_HASHTAG", 300))
    BLOG_ANALYTICS: timedelta = field(default_factory=lambda: _env_seconds("CACHE_TTL_BLOG", 300))
    REVENUE_ANALYTICS: timedelta = field(default_factory=lambda: _env_seconds("CACHE_TTL_REVENUE", 1800))

    # Fallback for unknown kinds
    DEFAULT: timedelta = field(default_factory=lambda: _env_seconds("CACHE_DEFAULT_TTL", 300))

    def for_kind(self, kind: str) -> timedelta:
        """Get TTL for a query kind."""
        mapping = {
            "dashboard": self.DASHBOARD,
            "user": self.USER_ANALYTICS,
            "platform": self.PLATFORM_ANALYTICS,
            "hashtag": self.HASHTAG_PERFORMANCE,
            "blog": self.BLOG_ANALYTICS,
            "revenue": self.REVENUE_ANALYTICS,
        }
        return mapping.get(kind, self.DEFAULT)


@dataclass
class CacheConfig:
    """
    Main cache configuration.

    Settings can be overridden via environment variables:
    - CACHE_ENABLED: Enable/disable caching globally
    - CACHE_KEY_PREFIX: Namespace isolating environments sharing one Redis
    - CACHE_MEMORY_MAX_ENTRIES / CACHE_MEMORY_MAX_BYTES: Memory tier bounds
    - REDIS_URL: Remote tier endpoint and credentials
    - CACHE_REMOTE_ENABLED: Disable to run memory-only
    """

    # Cache namespace (for key prefixes)
    namespace: str = field(default_factory=lambda: os.getenv(
        "CACHE_KEY_PREFIX",
        "replivity:cache"
    ))

    # Global cache toggle
    enabled: bool = field(default_factory=lambda: _env_bool("CACHE_ENABLED", "true"))

    # Memory tier
    memory_max_entries: int = field(default_factory=lambda: int(os.getenv(
        "CACHE_MEMORY_MAX_ENTRIES",
        "10000"
    )))
    memory_max_bytes: Optional[int] = field(default_factory=lambda: (
        int(os.environ["CACHE_MEMORY_MAX_BYTES"])
        if os.getenv("CACHE_MEMORY_MAX_BYTES") else None
    ))
    memory_default_ttl: timedelta = field(default_factory=lambda: _env_seconds(
        "CACHE_MEMORY_DEFAULT_TTL", 300
    ))
    sweep_interval_seconds: float = 60.0

    # Remote tier (Redis)
    remote_enabled: bool = field(default_factory=lambda: _env_bool("CACHE_REMOTE_ENABLED", "true"))
    redis_url: str = field(default_factory=lambda: os.getenv(
        "REDIS_URL",
        "redis://localhost:6379/0"
    ))
    redis_max_connections: int = 50
    redis_socket_timeout: float = 1.0
    redis_connect_timeout: float = 1.0
    remote_timeout_seconds: float = field(default_factory=lambda: float(os.getenv(
        "CACHE_REMOTE_TIMEOUT",
        "0.25"
    )))
    # Tag sets outlive the entries they point to
    remote_tag_ttl: timedelta = timedelta(hours=24)
    default_ttl: timedelta = field(default_factory=lambda: _env_seconds("CACHE_DEFAULT_TTL", 300))

    # Compression (remote tier only)
    compression_enabled: bool = True
    compression_threshold: int = 1024

    # Circuit breaker (sliding window)
    circuit_breaker_enabled: bool = True
    circuit_breaker_threshold: int = 5
    circuit_breaker_window_seconds: float = 30.0
    circuit_breaker_timeout_seconds: float = 30.0

    # Health probing / degraded mode
    health_check_interval_seconds: float = 15.0
    health_check_timeout_seconds: float = 0.5
    health_failure_threshold: int = 3

    # Single-flight
    max_compute_seconds: float = field(default_factory=lambda: float(os.getenv(
        "CACHE_MAX_COMPUTE_SECONDS",
        "30"
    )))

    # Background warming
    warming_interval_seconds: float = field(default_factory=lambda: float(os.getenv(
        "CACHE_WARMING_INTERVAL",
        "600"
    )))

    # Stats
    latency_window: int = 1000

    # Monitoring thresholds
    min_hit_rate: float = 0.8
    max_latency_ms: float = 50.0

    ttl: CacheTTL = field(default_factory=CacheTTL)


@lru_cache(maxsize=1)
def get_cache_config() -> CacheConfig:
    """Get singleton cache configuration."""
    return CacheConfig()
