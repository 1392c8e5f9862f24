"""
Remote Tier (Redis)

Shared, TTL-based cache reachable over the network, used as the
cross-process layer. Features:
- Namespace isolation for environments sharing one Redis
- Per-call deadlines (a slow Redis is a miss, never a stall)
- Sliding-window circuit breaker
- Automatic compression for large values
- Redis-side tag sets so any process can invalidate by tag

Key layout:
    {namespace}:entry:{key}  hash {"v": payload, "t": json tags}, PEXPIRE ttl
    {namespace}:tag:{tag}    set of keys, EXPIRE remote_tag_ttl
"""

import asyncio
import json
import logging
import time
from collections import deque
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Deque, Dict, FrozenSet, Iterable, List, Optional, TypeVar

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import RedisError

from replivity.cache.compression import CacheCompressor
from replivity.cache.config import CacheConfig, get_cache_config
from replivity.cache.errors import RemoteUnavailable


logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class CircuitBreakerState:
    """Circuit breaker state tracking."""
    is_open: bool = False
    opened_at: float = 0.0
    last_failure: float = 0.0


class CircuitBreaker:
    """
    Circuit breaker for the Redis connection.

    Opens when `threshold` failures occur within a sliding window of
    `window` seconds, fails fast for `timeout` seconds, then lets
    requests through again (half-open). A success closes it.
    """

    def __init__(
        self,
        threshold: int = 5,
        window: float = 30.0,
        timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.threshold = threshold
        self.window = window
        self.timeout = timeout
        self.state = CircuitBreakerState()
        self._failures: Deque[float] = deque()
        self._clock = clock
        self._lock = asyncio.Lock()

    def is_available(self) -> bool:
        """Check if circuit allows requests."""
        if not self.state.is_open:
            return True

        if self._clock() - self.state.opened_at >= self.timeout:
            # Half-open state - allow requests through
            self.state.is_open = False
            self._failures.clear()
            logger.info("Circuit breaker half-open, allowing requests")
            return True

        return False

    async def record_success(self):
        """Record successful operation."""
        async with self._lock:
            self._failures.clear()
            self.state.is_open = False

    async def record_failure(self):
        """Record failed operation."""
        async with self._lock:
            now = self._clock()
            self.state.last_failure = now
            self._failures.append(now)
            while self._failures and now - self._failures[0] > self.window:
                self._failures.popleft()

            if not self.state.is_open and len(self._failures) >= self.threshold:
                self.state.is_open = True
                self.state.opened_at = now
                logger.warning(
                    f"Circuit breaker opened after {len(self._failures)} failures "
                    f"in {self.window}s. Will retry in {self.timeout} seconds."
                )

    @property
    def recent_failures(self) -> int:
        return len(self._failures)


@dataclass
class RemoteEntry:
    """Value and tags read back from the remote tier."""
    value: bytes
    tags: FrozenSet[str]
    ttl: Optional[timedelta] = None


class RemoteTier:
    """
    Redis-backed shared cache tier.

    Every public coroutine raises RemoteUnavailable on timeout, Redis
    error, or open circuit; the CacheManager treats that as a miss.
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        client: Optional[Redis] = None,
    ):
        self.config = config or get_cache_config()
        self._pool: Optional[ConnectionPool] = None
        self._redis: Optional[Redis] = client
        self._owns_client = client is None
        self._compressor = CacheCompressor(
            enabled=self.config.compression_enabled,
            threshold=self.config.compression_threshold,
        )
        self._circuit_breaker = CircuitBreaker(
            threshold=self.config.circuit_breaker_threshold,
            window=self.config.circuit_breaker_window_seconds,
            timeout=self.config.circuit_breaker_timeout_seconds,
        ) if self.config.circuit_breaker_enabled else None
        self.bytes_written = 0
        self.bytes_read = 0
        self.bytes_saved_compression = 0

    async def initialize(self):
        """Create the pooled client. Does not require Redis to be up."""
        if self._redis is not None:
            return

        self._pool = ConnectionPool.from_url(
            self.config.redis_url,
            max_connections=self.config.redis_max_connections,
            socket_timeout=self.config.redis_socket_timeout,
            socket_connect_timeout=self.config.redis_connect_timeout,
            decode_responses=False,  # We handle bytes directly
        )
        self._redis = Redis(connection_pool=self._pool)
        logger.info(f"Remote cache tier configured: {self._redacted_url()}")

    async def close(self):
        """Close Redis connection pool."""
        if self._redis is not None and self._owns_client:
            await self._redis.aclose()
            self._redis = None
        if self._pool is not None:
            await self._pool.disconnect()
            self._pool = None
        logger.info("Remote cache tier closed")

    def _redacted_url(self) -> str:
        url = self.config.redis_url
        if "@" in url:
            scheme, rest = url.split("://", 1)
            return f"{scheme}://***@{rest.split('@', 1)[1]}"
        return url

    # =========================================================================
    # Keys
    # =========================================================================

    def entry_key(self, key: str) -> str:
        return f"{self.config.namespace}:entry:{key}"

    def tag_key(self, tag: str) -> str:
        return f"{self.config.namespace}:tag:{tag}"

    # =========================================================================
    # Call wrapper
    # =========================================================================

    async def _call(
        self,
        operation: str,
        fn: Callable[[], Awaitable[T]],
        timeout: Optional[float] = None,
    ) -> T:
        """Run a Redis call under the circuit breaker and a deadline."""
        if self._redis is None:
            await self.initialize()

        if self._circuit_breaker and not self._circuit_breaker.is_available():
            raise RemoteUnavailable("Circuit breaker is open", operation=operation)

        deadline = timeout if timeout is not None else self.config.remote_timeout_seconds
        try:
            result = await asyncio.wait_for(fn(), timeout=deadline)
        except asyncio.TimeoutError as e:
            if self._circuit_breaker:
                await self._circuit_breaker.record_failure()
            raise RemoteUnavailable(
                f"Redis {operation} timed out after {deadline}s", operation=operation
            ) from e
        except (RedisError, OSError) as e:
            if self._circuit_breaker:
                await self._circuit_breaker.record_failure()
            raise RemoteUnavailable(f"Redis {operation} failed: {e}", operation=operation) from e

        if self._circuit_breaker:
            await self._circuit_breaker.record_success()
        return result

    # =========================================================================
    # Core Operations
    # =========================================================================

    async def get(self, key: str) -> Optional[RemoteEntry]:
        """Get value, tags and remaining TTL for key, or None if absent."""
        ek = self.entry_key(key)

        async def read():
            pipe = self._redis.pipeline(transaction=False)
            pipe.hmget(ek, "v", "t")
            pipe.pttl(ek)
            return await pipe.execute()

        (data, raw_tags), pttl = await self._call("get", read)

        if data is None:
            return None

        self.bytes_read += len(data)
        value = self._compressor.decompress(data)
        tags = frozenset(json.loads(raw_tags)) if raw_tags else frozenset()
        # -1 means no expiry, -2 means the key vanished between commands
        ttl = timedelta(milliseconds=pttl) if pttl and pttl > 0 else None
        return RemoteEntry(value=value, tags=tags, ttl=ttl)

    async def set(
        self,
        key: str,
        value: bytes,
        tags: Iterable[str],
        ttl: timedelta,
    ) -> None:
        """Store value with TTL and add key to each tag set."""
        tag_list = sorted(set(tags))
        payload, stats = self._compressor.compress(value)
        if stats:
            self.bytes_saved_compression += stats.original_size - stats.compressed_size

        ek = self.entry_key(key)
        ttl_ms = max(1, int(ttl.total_seconds() * 1000))
        tag_ttl = int(self.config.remote_tag_ttl.total_seconds())

        async def write():
            pipe = self._redis.pipeline(transaction=False)
            pipe.hset(ek, mapping={"v": payload, "t": json.dumps(tag_list)})
            pipe.pexpire(ek, ttl_ms)
            for tag in tag_list:
                tk = self.tag_key(tag)
                pipe.sadd(tk, key)
                pipe.expire(tk, tag_ttl)
            return await pipe.execute()

        await self._call("set", write)
        self.bytes_written += len(payload)

    async def delete(self, key: str) -> bool:
        """Delete a key. Tag sets are left to expire or be popped."""
        ek = self.entry_key(key)
        return await self._call("delete", lambda: self._redis.delete(ek)) > 0

    async def invalidate_tag(self, tag: str) -> List[str]:
        """Delete every entry in the tag set and the set itself."""
        tk = self.tag_key(tag)

        async def purge():
            members = await self._redis.smembers(tk)
            keys = sorted(m.decode() if isinstance(m, bytes) else m for m in members)
            await self._redis.delete(*[self.entry_key(k) for k in keys], tk)
            return keys

        keys = await self._call("invalidate_tag", purge)
        if keys:
            logger.info(f"Remote tier invalidated {len(keys)} keys for tag {tag}")
        return keys

    async def clear(self) -> int:
        """Delete everything under the namespace. Returns count deleted."""
        pattern = f"{self.config.namespace}:*"

        async def purge():
            keys = [k async for k in self._redis.scan_iter(match=pattern, count=100)]
            if keys:
                return await self._redis.delete(*keys)
            return 0

        # Scans can be slow; give them more headroom than point reads
        deleted = await self._call("clear", purge, timeout=self.config.remote_timeout_seconds * 20)
        logger.info(f"Deleted {deleted} remote keys matching {pattern}")
        return deleted

    async def ping(self, timeout: Optional[float] = None) -> float:
        """Ping Redis. Returns round-trip latency in milliseconds."""
        start = time.perf_counter()
        await self._call("ping", lambda: self._redis.ping(), timeout=timeout)
        return (time.perf_counter() - start) * 1000

    async def get_info(self) -> Dict[str, Any]:
        """Get Redis server info."""
        try:
            info = await self._call("info", lambda: self._redis.info())
        except RemoteUnavailable as e:
            return {"connected": False, "error": str(e)}
        return {
            "connected": True,
            "redis_version": info.get("redis_version"),
            "used_memory_mb": info.get("used_memory", 0) / 1024 / 1024,
            "connected_clients": info.get("connected_clients"),
        }

    @property
    def circuit_open(self) -> bool:
        return bool(self._circuit_breaker and self._circuit_breaker.state.is_open)

    def get_stats(self) -> Dict:
        return {
            "bytes_written": self.bytes_written,
            "bytes_read": self.bytes_read,
            "bytes_saved_compression": self.bytes_saved_compression,
            "circuit_breaker_open": self.circuit_open,
        }
