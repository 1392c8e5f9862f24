"""
Cache Manager

Orchestrates the memory tier, remote tier, tag index and single-flight
guard behind one get / set / invalidate API.

Guarantees:
- The cache is a performance layer only: remote failures are misses,
  serialization failures skip caching, neither ever fails a query.
- Invalidation is linearizable within the process: once invalidate_tag
  returns, no later get observes a purged value from the memory tier.
- Remote failures past the health threshold switch the manager into
  degraded (memory-only) mode until a probe succeeds again.
"""

import asyncio
import logging
import time
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from replivity.cache.compression import deserialize_value, serialize_value
from replivity.cache.config import CacheConfig, get_cache_config
from replivity.cache.errors import CacheError, RemoteUnavailable, SerializationError
from replivity.cache.memory import MemoryTier
from replivity.cache.remote import RemoteTier
from replivity.cache.single_flight import SingleFlightGuard
from replivity.cache.stats import TierStats
from replivity.cache.tags import TagIndex


logger = logging.getLogger(__name__)


class CacheManager:
    """
    Tiered cache with tag-based invalidation.

    Usage:
        cache = CacheManager(config)
        await cache.start()

        value = await cache.get_or_compute(
            key, compute, ttl=timedelta(minutes=2), tags=["scope:42"],
        )

        # After a write elsewhere
        await cache.invalidate_tag("scope:42")

        await cache.stop()
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        remote: Optional[RemoteTier] = None,
    ):
        self.config = config or get_cache_config()
        self.tags = TagIndex()
        self.memory = MemoryTier(
            self.tags,
            max_entries=self.config.memory_max_entries,
            max_bytes=self.config.memory_max_bytes,
        )
        if remote is None and self.config.remote_enabled:
            remote = RemoteTier(self.config)
        self.remote = remote
        self._flight = SingleFlightGuard(timeout=self.config.max_compute_seconds)

        self._memory_stats = TierStats(window=self.config.latency_window)
        self._remote_stats = TierStats(window=self.config.latency_window)

        self._degraded = False
        self._remote_reachable = remote is not None
        self._probe_failures = 0
        self._last_probe_at: Optional[float] = None
        self._last_probe_error: Optional[str] = None

        self._task: Optional[asyncio.Task] = None
        self._running = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self):
        """Connect the remote tier and start background probing/sweeping."""
        if self._running:
            return

        if self.remote is not None:
            await self.remote.initialize()
            await self.get_health()

        self._running = True
        self._task = asyncio.create_task(self._maintenance_loop())
        logger.info(
            f"Cache manager started (memory max {self.config.memory_max_entries} entries, "
            f"remote {'enabled' if self.remote else 'disabled'})"
        )

    async def stop(self):
        """Stop background work and close the remote tier."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self.remote is not None:
            await self.remote.close()
        logger.info("Cache manager stopped")

    async def _maintenance_loop(self):
        interval = min(
            self.config.health_check_interval_seconds,
            self.config.sweep_interval_seconds,
        )
        last_sweep = time.monotonic()
        last_probe = time.monotonic()

        while self._running:
            await asyncio.sleep(interval)
            now = time.monotonic()

            if now - last_sweep >= self.config.sweep_interval_seconds:
                swept = self.memory.sweep_expired()
                if swept:
                    logger.info(f"Cleaned up {swept} expired cache entries")
                last_sweep = now

            if self.remote is not None and now - last_probe >= self.config.health_check_interval_seconds:
                await self.get_health()
                last_probe = now

    # =========================================================================
    # Core Operations
    # =========================================================================

    @property
    def _remote_active(self) -> bool:
        return self.config.enabled and self.remote is not None and not self._degraded

    async def get(self, key: str) -> Tuple[Optional[Any], bool]:
        """
        Look up key in memory, then the remote tier.

        Returns (value, found). Never raises for cache-layer failures.
        """
        if not self.config.enabled:
            return None, False

        start = time.perf_counter()
        entry = self.memory.get(key)
        if entry is not None:
            try:
                value = deserialize_value(entry.value)
            except SerializationError as e:
                logger.error(f"Dropping unreadable memory entry {key}: {e}")
                self.memory.delete(key)
            else:
                self._memory_stats.record_hit(time.perf_counter() - start)
                return value, True
        self._memory_stats.record_miss(time.perf_counter() - start)

        if not self._remote_active:
            return None, False

        # Any invalidation during the remote read forbids write-back
        sequence = self.tags.sequence
        start = time.perf_counter()
        try:
            remote_entry = await self.remote.get(key)
        except RemoteUnavailable as e:
            self._remote_stats.record_error()
            self._remote_stats.record_miss(time.perf_counter() - start)
            logger.warning(f"Remote tier unavailable on get, treating as miss: {e}")
            return None, False
        except SerializationError as e:
            self._remote_stats.record_error()
            self._remote_stats.record_miss(time.perf_counter() - start)
            logger.error(f"Unreadable remote entry {key}: {e}")
            return None, False

        if remote_entry is None:
            self._remote_stats.record_miss(time.perf_counter() - start)
            return None, False

        try:
            value = deserialize_value(remote_entry.value)
        except SerializationError as e:
            self._remote_stats.record_error()
            self._remote_stats.record_miss(time.perf_counter() - start)
            logger.error(f"Unreadable remote entry {key}: {e}")
            return None, False
        self._remote_stats.record_hit(time.perf_counter() - start)

        if self.tags.sequence == sequence and not self.tags.invalidating(remote_entry.tags):
            ttl = self.config.memory_default_ttl
            if remote_entry.ttl is not None:
                ttl = min(ttl, remote_entry.ttl)
            evicted = self.memory.set(key, remote_entry.value, remote_entry.tags, ttl)
            self._memory_stats.record_evictions(len(evicted))
        else:
            logger.debug(f"Skipping write-back of {key}: invalidation ran during remote read")

        return value, True

    async def set(
        self,
        key: str,
        value: Any,
        tags: Iterable[str] = (),
        ttl: Optional[timedelta] = None,
    ) -> Optional[CacheError]:
        """
        Write value to both tiers and register its tags.

        Returns None on success, or the error that caused caching to be
        skipped (serialization) or the remote write to be dropped. The
        error is returned for inspection, never raised.
        """
        if not self.config.enabled:
            return None

        try:
            payload = serialize_value(value)
        except SerializationError as e:
            logger.warning(f"Skipping cache for {key}, value not serializable: {e}")
            return e

        tag_set = frozenset(tags)
        memory_ttl = ttl if ttl is not None else self.config.memory_default_ttl
        remote_ttl = ttl if ttl is not None else self.config.default_ttl

        evicted = self.memory.set(key, payload, tag_set, memory_ttl)
        self._memory_stats.record_evictions(len(evicted))

        if not self._remote_active:
            return None

        try:
            await self.remote.set(key, payload, tag_set, remote_ttl)
        except RemoteUnavailable as e:
            self._remote_stats.record_error()
            logger.warning(f"Remote tier unavailable on set, memory only for {key}: {e}")
            return e
        return None

    async def delete(self, key: str) -> bool:
        """Remove a single key from both tiers."""
        deleted = self.memory.delete(key)
        if self._remote_active:
            try:
                deleted = await self.remote.delete(key) or deleted
            except RemoteUnavailable as e:
                self._remote_stats.record_error()
                logger.warning(f"Remote tier unavailable on delete of {key}: {e}")
        return deleted

    async def invalidate_tag(self, tag: str) -> int:
        """
        Purge every key registered under tag from both tiers.

        The memory purge is atomic and happens before any I/O. Until the
        remote purge finishes, remote reads of entries under tag are not
        written back to memory.
        Returns the number of distinct keys purged.
        """
        self.tags.begin_invalidation(tag)
        try:
            purged = set(self.memory.purge_tag(tag))

            if self._remote_active:
                try:
                    purged.update(await self.remote.invalidate_tag(tag))
                except RemoteUnavailable as e:
                    self._remote_stats.record_error()
                    logger.warning(
                        f"Remote tier unavailable during invalidation of {tag}; "
                        f"remote copies expire by TTL: {e}"
                    )
        finally:
            self.tags.end_invalidation(tag)

        if purged:
            logger.info(f"Invalidated {len(purged)} cache entries for tag {tag}")
        return len(purged)

    async def invalidate_tags(self, tags: Iterable[str]) -> int:
        """Invalidate several tags. Returns total distinct keys purged."""
        total = 0
        for tag in sorted(set(tags)):
            total += await self.invalidate_tag(tag)
        return total

    async def clear(self) -> int:
        """Drop everything from both tiers."""
        count = len(self.memory)
        self.memory.clear()
        if self._remote_active:
            try:
                count = max(count, await self.remote.clear())
            except RemoteUnavailable as e:
                self._remote_stats.record_error()
                logger.warning(f"Remote tier unavailable on clear: {e}")
        logger.warning(f"Cache cleared ({count} entries)")
        return count

    async def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Awaitable[Any]],
        ttl: Optional[timedelta] = None,
        tags: Iterable[str] = (),
    ) -> Any:
        """
        Cache-aside lookup with single-flight recomputation.

        Concurrent callers missing the same key share one compute call and
        its outcome. Compute errors propagate to every waiter and nothing
        is cached.
        """
        value, found = await self.get(key)
        if found:
            return value

        tag_set = frozenset(tags)

        async def compute_and_store():
            # A previous flight may have populated the key meanwhile
            entry = self.memory.get(key)
            if entry is not None:
                try:
                    return deserialize_value(entry.value)
                except SerializationError:
                    self.memory.delete(key)

            sequence = self.tags.sequence
            result = await compute()

            if self.tags.invalidating(tag_set) or self.tags.invalidated_since(tag_set, sequence):
                logger.info(f"Not caching {key}: its tags were invalidated during compute")
                return result

            await self.set(key, result, tag_set, ttl)
            return result

        return await self._flight.do(key, compute_and_store)

    # =========================================================================
    # Statistics and Health
    # =========================================================================

    @property
    def degraded(self) -> bool:
        return self._degraded

    def get_stats(self) -> Dict:
        """Per-tier statistics since the last reset."""
        memory = self._memory_stats.snapshot()
        memory.update({
            "entries": len(self.memory),
            "max_entries": self.memory.max_entries,
            "size_bytes": self.memory.size_bytes,
            "tags": len(self.tags),
        })

        remote = self._remote_stats.snapshot()
        remote.update({
            "enabled": self.remote is not None,
            "degraded": self._degraded,
        })
        if self.remote is not None:
            remote.update(self.remote.get_stats())

        return {
            "enabled": self.config.enabled,
            "memory": memory,
            "remote": remote,
            "single_flight": {
                "in_flight": len(self._flight),
                "started": self._flight.started,
                "joined": self._flight.joined,
            },
        }

    def latency_percentiles(self, tier: str) -> Dict[str, float]:
        stats = self._memory_stats if tier == "memory" else self._remote_stats
        return {"p95_ms": stats.percentile_ms(0.95), "p99_ms": stats.percentile_ms(0.99)}

    def reset_stats(self):
        self._memory_stats.reset()
        self._remote_stats.reset()

    async def get_health(self) -> Dict:
        """
        Probe the remote tier with a bounded timeout.

        health_failure_threshold consecutive failed probes enter degraded
        mode; the first successful probe leaves it.
        """
        if self.remote is None:
            return {
                "remote_reachable": False,
                "degraded": False,
                "remote_enabled": False,
                "memory_entries": len(self.memory),
            }

        self._last_probe_at = time.time()
        latency_ms: Optional[float] = None
        try:
            latency_ms = await self.remote.ping(timeout=self.config.health_check_timeout_seconds)
        except RemoteUnavailable as e:
            self._probe_failures += 1
            self._remote_reachable = False
            self._last_probe_error = str(e)
            if not self._degraded and self._probe_failures >= self.config.health_failure_threshold:
                self._degraded = True
                logger.error(
                    f"Remote tier unreachable after {self._probe_failures} probes, "
                    "entering degraded (memory-only) mode"
                )
            else:
                logger.warning(f"Remote health probe failed ({self._probe_failures}): {e}")
        else:
            if self._degraded:
                logger.info("Remote tier recovered, leaving degraded mode")
            self._probe_failures = 0
            self._remote_reachable = True
            self._degraded = False
            self._last_probe_error = None

        return {
            "remote_reachable": self._remote_reachable,
            "degraded": self._degraded,
            "remote_enabled": True,
            "consecutive_failures": self._probe_failures,
            "latency_ms": round(latency_ms, 2) if latency_ms is not None else None,
            "last_error": self._last_probe_error,
            "circuit_breaker_open": self.remote.circuit_open,
            "memory_entries": len(self.memory),
        }

    # =========================================================================
    # Warmup
    # =========================================================================

    async def warmup(self, entries: List[Dict[str, Any]]) -> int:
        """
        Preload precomputed values.

        Each entry: {"key", "value", "tags" (optional), "ttl" (optional)}.
        Returns how many were cached.
        """
        logger.info(f"Warming up cache with {len(entries)} entries...")
        cached = 0
        for entry in entries:
            error = await self.set(
                entry["key"],
                entry["value"],
                entry.get("tags", ()),
                entry.get("ttl"),
            )
            if not isinstance(error, SerializationError):
                cached += 1
        logger.info(f"Cache warmup completed ({cached}/{len(entries)})")
        return cached
