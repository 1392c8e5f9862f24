"""
Cache Monitoring

Health checks, metrics collection, and alerting thresholds for the
tiered cache. Provides visibility into cache performance and helps
identify issues before they show up as slow dashboards.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from replivity.cache.config import CacheConfig
from replivity.cache.manager import CacheManager
from replivity.utils.clock import utc_now


logger = logging.getLogger(__name__)

# Hit-rate alerts need enough traffic to mean anything
MIN_REQUESTS_FOR_HIT_RATE = 100
MEMORY_FILL_WARNING = 0.95


class HealthStatus(Enum):
    """Health check status."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class CacheMetrics:
    """Cache performance metrics."""
    timestamp: datetime

    # Hit/miss statistics
    memory_hits: int
    memory_misses: int
    remote_hits: int
    remote_misses: int
    hit_rate: float

    # Latency
    memory_avg_latency_ms: float
    remote_avg_latency_ms: float
    remote_p95_latency_ms: float
    remote_p99_latency_ms: float

    # Memory tier
    memory_entries: int
    memory_bytes: int
    evictions: int

    # Remote throughput
    bytes_read: int
    bytes_written: int
    bytes_saved_compression: int

    # Errors
    errors: int
    error_rate: float

    circuit_breaker_open: bool
    degraded: bool


@dataclass
class HealthCheckResult:
    """Result of a health check."""
    status: HealthStatus
    latency_ms: float
    checks: Dict[str, bool]
    issues: List[Dict[str, Any]]
    metrics: Optional[CacheMetrics] = None
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
            "checks": self.checks,
            "issues": self.issues,
            "timestamp": self.timestamp.isoformat(),
        }


class CacheMonitor:
    """
    Monitors cache health and performance.

    Provides:
    - Health checks (remote connectivity, latency, hit rate, memory fill)
    - Performance metrics with a bounded history
    - Trend analysis over the last hour
    """

    def __init__(
        self,
        cache: CacheManager,
        config: Optional[CacheConfig] = None,
    ):
        self._cache = cache
        self._config = config or cache.config
        self._metrics_history: List[CacheMetrics] = []
        self._max_history = 1000  # Keep last 1000 samples

    @staticmethod
    def _hit_rate(stats: Dict) -> float:
        """Share of lookups answered by either tier."""
        memory, remote = stats["memory"], stats["remote"]
        lookups = memory["hits"] + memory["misses"]
        if lookups == 0:
            return 0.0
        return (memory["hits"] + remote["hits"]) / lookups

    async def health_check(self) -> HealthCheckResult:
        """
        Perform comprehensive health check.

        Returns:
            HealthCheckResult with status, latency, and issues
        """
        start_time = time.time()
        checks: Dict[str, bool] = {}
        issues: List[Dict[str, Any]] = []

        health = await self._cache.get_health()
        stats = self._cache.get_stats()

        # Check 1: Remote connectivity
        if health["remote_enabled"]:
            checks["connectivity"] = health["remote_reachable"]
            if not checks["connectivity"]:
                issues.append({
                    "type": "connectivity",
                    "severity": "critical" if health["degraded"] else "warning",
                    "message": f"Redis unreachable: {health.get('last_error')}",
                    "action": "Check Redis server status and network connectivity",
                })

            # Check 2: Degraded mode
            checks["degraded"] = not health["degraded"]
            if health["degraded"]:
                issues.append({
                    "type": "degraded",
                    "severity": "critical",
                    "message": (
                        f"Serving from memory only after "
                        f"{health['consecutive_failures']} failed probes"
                    ),
                    "action": "Restore Redis; the next successful probe leaves degraded mode",
                })

            # Check 3: Latency
            latency = health.get("latency_ms")
            if latency is not None:
                checks["latency"] = latency < self._config.max_latency_ms
                if not checks["latency"]:
                    issues.append({
                        "type": "latency",
                        "severity": "warning",
                        "message": f"High cache latency: {latency:.2f}ms",
                        "threshold": self._config.max_latency_ms,
                        "action": "Check Redis server load and network conditions",
                    })

            # Check 4: Circuit breaker
            checks["circuit_breaker"] = not health["circuit_breaker_open"]
            if health["circuit_breaker_open"]:
                issues.append({
                    "type": "circuit_breaker",
                    "severity": "warning",
                    "message": "Circuit breaker is open (remote tier bypassed)",
                    "action": "Investigate Redis connectivity issues",
                })

        # Check 5: Hit rate
        hit_rate = self._hit_rate(stats)
        lookups = stats["memory"]["hits"] + stats["memory"]["misses"]
        checks["hit_rate"] = hit_rate >= self._config.min_hit_rate or lookups < MIN_REQUESTS_FOR_HIT_RATE
        if not checks["hit_rate"]:
            issues.append({
                "type": "hit_rate",
                "severity": "warning",
                "message": f"Low cache hit rate: {hit_rate * 100:.1f}%",
                "threshold": self._config.min_hit_rate * 100,
                "action": "Review cache TTLs and invalidation tags",
            })

        # Check 6: Memory fill
        memory = stats["memory"]
        fill = memory["entries"] / max(1, memory["max_entries"])
        checks["memory"] = fill < MEMORY_FILL_WARNING
        if not checks["memory"]:
            issues.append({
                "type": "memory",
                "severity": "warning",
                "message": f"Memory tier {fill * 100:.0f}% full ({memory['evictions']} evictions)",
                "threshold": MEMORY_FILL_WARNING * 100,
                "action": "Raise CACHE_MEMORY_MAX_ENTRIES or shorten TTLs",
            })

        # Determine overall status
        if health["degraded"]:
            status = HealthStatus.UNHEALTHY
        elif not all(checks.values()):
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY

        if issues:
            logger.warning(f"Cache health {status.value}: {len(issues)} issue(s)")

        return HealthCheckResult(
            status=status,
            latency_ms=(time.time() - start_time) * 1000,
            checks=checks,
            issues=issues,
            metrics=self._collect_metrics(stats),
        )

    def _collect_metrics(self, stats: Optional[Dict] = None) -> CacheMetrics:
        """Collect detailed metrics."""
        stats = stats or self._cache.get_stats()
        memory, remote = stats["memory"], stats["remote"]
        percentiles = self._cache.latency_percentiles("remote")

        errors = memory["errors"] + remote["errors"]
        lookups = memory["hits"] + memory["misses"]

        metrics = CacheMetrics(
            timestamp=utc_now(),
            memory_hits=memory["hits"],
            memory_misses=memory["misses"],
            remote_hits=remote["hits"],
            remote_misses=remote["misses"],
            hit_rate=self._hit_rate(stats),
            memory_avg_latency_ms=memory["avg_latency_ms"],
            remote_avg_latency_ms=remote["avg_latency_ms"],
            remote_p95_latency_ms=percentiles["p95_ms"],
            remote_p99_latency_ms=percentiles["p99_ms"],
            memory_entries=memory["entries"],
            memory_bytes=memory["size_bytes"],
            evictions=memory["evictions"],
            bytes_read=remote.get("bytes_read", 0),
            bytes_written=remote.get("bytes_written", 0),
            bytes_saved_compression=remote.get("bytes_saved_compression", 0),
            errors=errors,
            error_rate=errors / max(1, lookups + errors),
            circuit_breaker_open=remote.get("circuit_breaker_open", False),
            degraded=remote["degraded"],
        )

        # Store in history
        self._metrics_history.append(metrics)
        if len(self._metrics_history) > self._max_history:
            self._metrics_history = self._metrics_history[-self._max_history:]

        return metrics

    def get_metrics(self) -> CacheMetrics:
        """Get current metrics."""
        return self._collect_metrics()

    def get_metrics_history(
        self,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[CacheMetrics]:
        """Get metrics history."""
        history = self._metrics_history

        if since:
            history = [m for m in history if m.timestamp >= since]

        return history[-limit:]

    async def get_summary(self) -> Dict[str, Any]:
        """Get summary of cache performance."""
        health = await self.health_check()
        metrics = health.metrics

        recent = self.get_metrics_history(
            since=utc_now() - timedelta(hours=1),
            limit=60,
        )

        hit_rate_trend = "stable"
        latency_trend = "stable"

        if len(recent) >= 10:
            first_half = recent[:len(recent)//2]
            second_half = recent[len(recent)//2:]

            first_hit_rate = sum(m.hit_rate for m in first_half) / len(first_half)
            second_hit_rate = sum(m.hit_rate for m in second_half) / len(second_half)
            if second_hit_rate > first_hit_rate + 0.05:
                hit_rate_trend = "improving"
            elif second_hit_rate < first_hit_rate - 0.05:
                hit_rate_trend = "degrading"

            first_latency = sum(m.remote_avg_latency_ms for m in first_half) / len(first_half)
            second_latency = sum(m.remote_avg_latency_ms for m in second_half) / len(second_half)
            if second_latency < first_latency - 5:
                latency_trend = "improving"
            elif second_latency > first_latency + 5:
                latency_trend = "degrading"

        return {
            "health": {
                "status": health.status.value,
                "issues_count": len(health.issues),
                "critical_issues": len([i for i in health.issues if i.get("severity") == "critical"]),
            },
            "performance": {
                "hit_rate_percent": round(metrics.hit_rate * 100, 2),
                "hit_rate_trend": hit_rate_trend,
                "remote_avg_latency_ms": metrics.remote_avg_latency_ms,
                "remote_p95_latency_ms": metrics.remote_p95_latency_ms,
                "latency_trend": latency_trend,
            },
            "storage": {
                "memory_entries": metrics.memory_entries,
                "memory_bytes": metrics.memory_bytes,
                "evictions": metrics.evictions,
                "bytes_written": metrics.bytes_written,
                "bytes_saved_compression": metrics.bytes_saved_compression,
            },
            "reliability": {
                "errors": metrics.errors,
                "error_rate": round(metrics.error_rate, 4),
                "circuit_breaker_open": metrics.circuit_breaker_open,
                "degraded": metrics.degraded,
            },
            "timestamp": utc_now().isoformat(),
        }
