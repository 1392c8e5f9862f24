"""
Tests for single-flight deduplication of cold-key computations.
"""

import asyncio

import pytest

from replivity.cache.errors import ComputeTimeout
from replivity.cache.single_flight import SingleFlightGuard


@pytest.mark.asyncio
class TestSingleFlightGuard:

    async def test_concurrent_callers_share_one_call(self):
        guard = SingleFlightGuard()
        calls = 0

        async def compute():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.05)
            return {"total": calls}

        results = await asyncio.gather(*(guard.do("k", compute) for _ in range(20)))

        assert calls == 1
        assert all(r == {"total": 1} for r in results)
        assert guard.started == 1
        assert guard.joined == 19
        assert len(guard) == 0

    async def test_errors_shared_by_all_waiters(self):
        guard = SingleFlightGuard()

        async def compute():
            await asyncio.sleep(0.01)
            raise ValueError("boom")

        results = await asyncio.gather(
            *(guard.do("k", compute) for _ in range(5)),
            return_exceptions=True,
        )
        assert all(isinstance(r, ValueError) for r in results)
        assert not guard.in_flight("k")

    async def test_distinct_keys_run_independently(self):
        guard = SingleFlightGuard()

        async def compute(value):
            await asyncio.sleep(0.01)
            return value

        a, b = await asyncio.gather(
            guard.do("a", lambda: compute("A")),
            guard.do("b", lambda: compute("B")),
        )
        assert (a, b) == ("A", "B")
        assert guard.started == 2

    async def test_timeout_releases_waiters(self):
        guard = SingleFlightGuard(timeout=0.05)

        async def compute():
            await asyncio.sleep(10)

        with pytest.raises(ComputeTimeout):
            await guard.do("slow", compute)
        assert not guard.in_flight("slow")

    async def test_cancelled_waiter_does_not_cancel_computation(self):
        guard = SingleFlightGuard()
        release = asyncio.Event()

        async def compute():
            await release.wait()
            return 42

        first = asyncio.ensure_future(guard.do("k", compute))
        second = asyncio.ensure_future(guard.do("k", compute))
        await asyncio.sleep(0.01)

        first.cancel()
        release.set()

        assert await second == 42
        with pytest.raises(asyncio.CancelledError):
            await first

    async def test_new_call_after_completion_recomputes(self):
        guard = SingleFlightGuard()
        calls = 0

        async def compute():
            nonlocal calls
            calls += 1
            return calls

        assert await guard.do("k", compute) == 1
        assert await guard.do("k", compute) == 2
