"""
Pytest Configuration and Shared Fixtures

Provides an in-process Redis double, cache configurations, and a seeded
in-memory SQLite database for all test modules.
"""

import asyncio
import fnmatch
import time
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from replivity.cache.config import CacheConfig
from replivity.cache.manager import CacheManager
from replivity.cache.remote import RemoteTier
from replivity.database import (
    Billing,
    BlogPost,
    Generation,
    HashtagPerformance,
    User,
    init_db,
)


# ============================================================================
# Redis Double
# ============================================================================

class FakePipeline:
    """Queues commands and runs them in order on execute()."""

    def __init__(self, redis: "FakeRedis"):
        self._redis = redis
        self._commands: List[Any] = []

    def __getattr__(self, name):
        command = getattr(self._redis, name)

        def queue(*args, **kwargs):
            self._commands.append((command, args, kwargs))
            return self

        return queue

    async def execute(self) -> List[Any]:
        results = []
        for command, args, kwargs in self._commands:
            results.append(await command(*args, **kwargs))
        self._commands = []
        return results


class FakeRedis:
    """
    Minimal asyncio Redis double covering the commands RemoteTier uses.

    Set `down` to make every command fail with ConnectionError, or
    `latency` / `ping_latency` (seconds) to make commands slow.
    """

    def __init__(self):
        self._data: Dict[str, Any] = {}
        self._expires: Dict[str, float] = {}
        self.down = False
        self.latency = 0.0
        self.ping_latency = 0.0
        self.commands: List[str] = []

    async def _enter(self, name: str, latency: Optional[float] = None):
        self.commands.append(name)
        delay = self.latency if latency is None else latency
        if delay:
            await asyncio.sleep(delay)
        if self.down:
            raise RedisConnectionError("Connection refused")

    def _alive(self, key: str) -> bool:
        expires = self._expires.get(key)
        if expires is not None and time.monotonic() >= expires:
            self._data.pop(key, None)
            self._expires.pop(key, None)
        return key in self._data

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def hset(self, key: str, mapping: Dict[str, Any]) -> int:
        await self._enter("hset")
        if not self._alive(key):
            self._data[key] = {}
        self._data[key].update(mapping)
        return len(mapping)

    async def hmget(self, key: str, *fields: str) -> List[Any]:
        await self._enter("hmget")
        if not self._alive(key):
            return [None] * len(fields)
        return [self._data[key].get(f) for f in fields]

    async def pexpire(self, key: str, ms: int) -> bool:
        await self._enter("pexpire")
        if not self._alive(key):
            return False
        self._expires[key] = time.monotonic() + ms / 1000
        return True

    async def expire(self, key: str, seconds: int) -> bool:
        await self._enter("expire")
        if not self._alive(key):
            return False
        self._expires[key] = time.monotonic() + seconds
        return True

    async def pttl(self, key: str) -> int:
        await self._enter("pttl")
        if not self._alive(key):
            return -2
        expires = self._expires.get(key)
        if expires is None:
            return -1
        return int((expires - time.monotonic()) * 1000)

    async def sadd(self, key: str, *members: str) -> int:
        await self._enter("sadd")
        if not self._alive(key):
            self._data[key] = set()
        before = len(self._data[key])
        self._data[key].update(m.encode() for m in members)
        return len(self._data[key]) - before

    async def smembers(self, key: str) -> set:
        await self._enter("smembers")
        if not self._alive(key):
            return set()
        return set(self._data[key])

    async def delete(self, *keys: str) -> int:
        await self._enter("delete")
        deleted = 0
        for key in keys:
            if isinstance(key, bytes):
                key = key.decode()
            if self._alive(key):
                deleted += 1
            self._data.pop(key, None)
            self._expires.pop(key, None)
        return deleted

    async def scan_iter(self, match: str = "*", count: int = 10):
        await self._enter("scan")
        for key in list(self._data):
            if self._alive(key) and fnmatch.fnmatchcase(key, match):
                yield key.encode()

    async def ping(self) -> bool:
        await self._enter("ping", latency=self.ping_latency or self.latency)
        return True

    async def info(self) -> Dict[str, Any]:
        await self._enter("info")
        return {"redis_version": "7.2.0", "used_memory": 1024 * 1024, "connected_clients": 1}

    async def aclose(self):
        pass

    def exists(self, key: str) -> bool:
        return self._alive(key)


# ============================================================================
# Cache Fixtures
# ============================================================================

@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def cache_config() -> CacheConfig:
    """Remote-enabled config with short deadlines and no background churn."""
    return CacheConfig(
        namespace="test",
        enabled=True,
        memory_max_entries=100,
        remote_enabled=True,
        remote_timeout_seconds=0.05,
        health_check_timeout_seconds=0.05,
        health_check_interval_seconds=3600,
        sweep_interval_seconds=3600,
        health_failure_threshold=3,
        compression_threshold=64,
        max_compute_seconds=5.0,
    )


@pytest.fixture
def memory_config() -> CacheConfig:
    """Memory-only config."""
    return CacheConfig(
        namespace="test",
        enabled=True,
        memory_max_entries=100,
        remote_enabled=False,
        max_compute_seconds=5.0,
    )


@pytest.fixture
def remote_tier(cache_config, fake_redis) -> RemoteTier:
    return RemoteTier(cache_config, client=fake_redis)


@pytest.fixture
def cache(cache_config, remote_tier) -> CacheManager:
    """Two-tier cache backed by the Redis double (not started)."""
    return CacheManager(cache_config, remote=remote_tier)


@pytest.fixture
def memory_cache(memory_config) -> CacheManager:
    return CacheManager(memory_config)


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def db_engine():
    """In-memory SQLite shared across threads."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def seeded_session_factory(session_factory):
    """
    Two users with activity on known dates.

    User 42: 3 generations (2 twitter on 2024-03-01, 1 linkedin on
    2024-03-02), two completed stripe payments, one published and one
    draft post, three hashtag samples.
    User 57: 1 twitter generation, one failed paypal payment, one
    published post, one hashtag sample.
    """
    db = session_factory()
    db.add_all([
        User(id="42", name="Ada", email="ada@example.com"),
        User(id="57", name="Grace", email="grace@example.com"),
    ])
    db.flush()

    g1 = Generation(user_id="42", source="twitter", post="hello", reply="hi there",
                    created_at=datetime(2024, 3, 1, 10, 0))
    db.add_all([
        g1,
        Generation(user_id="42", source="twitter", post="abc", reply="yes",
                   created_at=datetime(2024, 3, 1, 15, 0)),
        Generation(user_id="42", source="linkedin", post="longer post", reply="ok",
                   created_at=datetime(2024, 3, 2, 9, 0)),
        Generation(user_id="57", source="twitter", post="x", reply="y",
                   created_at=datetime(2024, 3, 2, 12, 0)),
    ])
    db.add_all([
        Billing(user_id="42", status="completed", provider="stripe", amount=Decimal("10.00"),
                created_at=datetime(2024, 3, 1, 11, 0)),
        Billing(user_id="42", status="completed", provider="stripe", amount=Decimal("20.00"),
                created_at=datetime(2024, 4, 2, 11, 0)),
        Billing(user_id="57", status="failed", provider="paypal", amount=Decimal("5.50"),
                created_at=datetime(2024, 3, 5, 11, 0)),
    ])
    db.add_all([
        BlogPost(title="A", slug="a", status="published", reading_time=4, view_count=100,
                 created_by="42", created_at=datetime(2024, 3, 1, 8, 0)),
        BlogPost(title="B", slug="b", status="draft", reading_time=None, view_count=0,
                 created_by="42", created_at=datetime(2024, 3, 3, 8, 0)),
        BlogPost(title="C", slug="c", status="published", reading_time=6, view_count=50,
                 created_by="57", created_at=datetime(2024, 3, 3, 9, 0)),
    ])
    db.flush()
    db.add_all([
        HashtagPerformance(user_id="42", generation_id=g1.id, hashtag="ai", platform="twitter",
                           impressions=1000, engagements=50, clicks=10,
                           created_at=datetime(2024, 3, 1, 12, 0)),
        HashtagPerformance(user_id="42", hashtag="ai", platform="linkedin",
                           impressions=500, engagements=25, clicks=5,
                           created_at=datetime(2024, 3, 2, 12, 0)),
        HashtagPerformance(user_id="42", hashtag="python", platform="twitter",
                           impressions=200, engagements=30, clicks=2,
                           created_at=datetime(2024, 3, 2, 13, 0)),
        HashtagPerformance(user_id="57", hashtag="ai", platform="twitter",
                           impressions=100, engagements=1, clicks=0,
                           created_at=datetime(2024, 3, 2, 14, 0)),
    ])
    db.commit()
    db.close()
    return session_factory
