"""
Tests for the Redis remote tier and its circuit breaker.

Uses the in-process Redis double from conftest, so no Redis server is
required.
"""

import pytest
from datetime import timedelta

from replivity.cache.errors import RemoteUnavailable
from replivity.cache.remote import CircuitBreaker


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


# =============================================================================
# CIRCUIT BREAKER TESTS
# =============================================================================

@pytest.mark.asyncio
class TestCircuitBreaker:

    async def test_opens_after_threshold(self):
        breaker = CircuitBreaker(threshold=3, window=30, timeout=10, clock=FakeClock())
        for _ in range(3):
            await breaker.record_failure()

        assert breaker.state.is_open
        assert not breaker.is_available()

    async def test_failures_outside_window_ignored(self):
        clock = FakeClock()
        breaker = CircuitBreaker(threshold=3, window=30, timeout=10, clock=clock)
        await breaker.record_failure()
        await breaker.record_failure()
        clock.now = 31
        await breaker.record_failure()

        assert not breaker.state.is_open
        assert breaker.recent_failures == 1

    async def test_half_open_after_timeout(self):
        clock = FakeClock()
        breaker = CircuitBreaker(threshold=1, window=30, timeout=10, clock=clock)
        await breaker.record_failure()
        assert not breaker.is_available()

        clock.now = 10
        assert breaker.is_available()

    async def test_success_closes(self):
        breaker = CircuitBreaker(threshold=2, clock=FakeClock())
        await breaker.record_failure()
        await breaker.record_success()
        await breaker.record_failure()
        assert not breaker.state.is_open


# =============================================================================
# REMOTE TIER TESTS
# =============================================================================

@pytest.mark.asyncio
class TestRemoteTier:

    async def test_set_and_get(self, remote_tier, fake_redis):
        await remote_tier.set("k1", b'{"total": 5}', ["scope:42", "kind:dashboard"], timedelta(seconds=60))

        entry = await remote_tier.get("k1")
        assert entry.value == b'{"total": 5}'
        assert entry.tags == frozenset({"scope:42", "kind:dashboard"})
        assert timedelta(seconds=59) < entry.ttl <= timedelta(seconds=60)
        assert fake_redis.exists("test:entry:k1")
        assert fake_redis.exists("test:tag:scope:42")

    async def test_get_missing(self, remote_tier):
        assert await remote_tier.get("nope") is None

    async def test_large_values_compressed(self, remote_tier):
        value = b'{"rows": "' + b"x" * 5000 + b'"}'
        await remote_tier.set("big", value, [], timedelta(seconds=60))

        assert remote_tier.bytes_saved_compression > 0
        assert (await remote_tier.get("big")).value == value

    async def test_invalidate_tag(self, remote_tier, fake_redis):
        ttl = timedelta(seconds=60)
        await remote_tier.set("k1", b"1", ["scope:42"], ttl)
        await remote_tier.set("k2", b"2", ["scope:42", "kind:user"], ttl)
        await remote_tier.set("k3", b"3", ["scope:57"], ttl)

        assert await remote_tier.invalidate_tag("scope:42") == ["k1", "k2"]
        assert await remote_tier.get("k1") is None
        assert await remote_tier.get("k2") is None
        assert await remote_tier.get("k3") is not None
        assert not fake_redis.exists("test:tag:scope:42")

    async def test_delete(self, remote_tier):
        await remote_tier.set("k1", b"1", [], timedelta(seconds=60))
        assert await remote_tier.delete("k1") is True
        assert await remote_tier.delete("k1") is False

    async def test_clear_only_touches_namespace(self, remote_tier, fake_redis):
        await fake_redis.hset("other:entry:x", mapping={"v": b"1"})
        await remote_tier.set("k1", b"1", ["scope:42"], timedelta(seconds=60))

        assert await remote_tier.clear() == 2  # entry + tag set
        assert fake_redis.exists("other:entry:x")

    async def test_connection_error_raises_remote_unavailable(self, remote_tier, fake_redis):
        fake_redis.down = True
        with pytest.raises(RemoteUnavailable) as exc:
            await remote_tier.get("k1")
        assert exc.value.operation == "get"

    async def test_timeout_raises_remote_unavailable(self, remote_tier, fake_redis):
        fake_redis.latency = 0.5
        with pytest.raises(RemoteUnavailable, match="timed out"):
            await remote_tier.get("k1")

    async def test_circuit_breaker_short_circuits(self, remote_tier, fake_redis):
        fake_redis.down = True
        for _ in range(remote_tier.config.circuit_breaker_threshold):
            with pytest.raises(RemoteUnavailable):
                await remote_tier.get("k1")

        assert remote_tier.circuit_open
        calls = len(fake_redis.commands)
        with pytest.raises(RemoteUnavailable, match="Circuit breaker"):
            await remote_tier.get("k1")
        assert len(fake_redis.commands) == calls

    async def test_ping_and_info(self, remote_tier):
        assert await remote_tier.ping() >= 0
        info = await remote_tier.get_info()
        assert info["connected"] is True
        assert info["redis_version"] == "7.2.0"

    async def test_info_when_down(self, remote_tier, fake_redis):
        fake_redis.down = True
        info = await remote_tier.get_info()
        assert info["connected"] is False
