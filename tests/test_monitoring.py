"""
Tests for cache health checks and metrics.
"""

from datetime import timedelta

import pytest

from replivity.cache.monitoring import CacheMonitor, HealthStatus
from replivity.utils.clock import utc_now


MINUTE = timedelta(seconds=60)


@pytest.mark.asyncio
class TestCacheMonitor:

    async def test_healthy(self, cache):
        result = await CacheMonitor(cache).health_check()

        assert result.status == HealthStatus.HEALTHY
        assert result.checks["connectivity"] is True
        assert result.issues == []
        assert result.to_dict()["status"] == "healthy"

    async def test_unreachable_remote_is_degraded_status(self, cache, fake_redis):
        fake_redis.down = True
        result = await CacheMonitor(cache).health_check()

        assert result.status == HealthStatus.DEGRADED
        assert result.checks["connectivity"] is False
        assert result.issues[0]["type"] == "connectivity"

    async def test_degraded_mode_is_unhealthy(self, cache, fake_redis):
        fake_redis.down = True
        monitor = CacheMonitor(cache)
        for _ in range(3):
            result = await monitor.health_check()

        assert result.status == HealthStatus.UNHEALTHY
        assert result.metrics.degraded is True
        assert any(i["severity"] == "critical" for i in result.issues)

    async def test_low_hit_rate_needs_traffic(self, memory_cache):
        monitor = CacheMonitor(memory_cache)
        for i in range(10):
            await memory_cache.get(f"missing-{i}")
        assert (await monitor.health_check()).checks["hit_rate"] is True

        for i in range(100):
            await memory_cache.get(f"missing-{i}")
        result = await monitor.health_check()
        assert result.checks["hit_rate"] is False
        assert result.status == HealthStatus.DEGRADED

    async def test_memory_only_has_no_remote_checks(self, memory_cache):
        result = await CacheMonitor(memory_cache).health_check()
        assert "connectivity" not in result.checks
        assert result.status == HealthStatus.HEALTHY

    async def test_metrics(self, cache):
        await cache.set("k1", {"total": 1}, ["scope:42"], MINUTE)
        await cache.get("k1")
        await cache.get("missing")

        metrics = CacheMonitor(cache).get_metrics()
        assert metrics.memory_hits == 1
        assert metrics.memory_misses == 1
        assert metrics.remote_misses == 1
        assert metrics.hit_rate == 0.5
        assert metrics.memory_entries == 1
        assert metrics.bytes_written > 0

    async def test_metrics_history(self, memory_cache):
        monitor = CacheMonitor(memory_cache)
        for _ in range(3):
            monitor.get_metrics()

        assert len(monitor.get_metrics_history()) == 3
        assert monitor.get_metrics_history(since=utc_now() + timedelta(minutes=1)) == []

    async def test_summary(self, cache):
        summary = await CacheMonitor(cache).get_summary()

        assert summary["health"]["status"] == "healthy"
        assert summary["performance"]["hit_rate_trend"] == "stable"
        assert summary["reliability"]["degraded"] is False
