"""
Single-Flight Guard

Deduplicates concurrent computation of the same cold key. The first
caller starts the computation as a task; everyone arriving while it is
in flight awaits the same task and receives the same value or exception.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from replivity.cache.errors import ComputeTimeout


logger = logging.getLogger(__name__)


class SingleFlightGuard:
    """
    At most one in-flight computation per key.

    A computation running longer than `timeout` seconds is cancelled and
    every waiter receives ComputeTimeout. A waiter that is itself
    cancelled does not cancel the shared computation.
    """

    def __init__(self, timeout: Optional[float] = 30.0):
        self.timeout = timeout
        self._calls: Dict[str, "asyncio.Task[Any]"] = {}
        self.started = 0
        self.joined = 0

    async def do(self, key: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        """Run fn for key, or join the computation already in flight."""
        task = self._calls.get(key)
        if task is None:
            task = asyncio.ensure_future(self._run(key, fn))
            self._calls[key] = task
            self.started += 1
        else:
            self.joined += 1
            logger.debug(f"Joining in-flight computation for {key}")

        return await asyncio.shield(task)

    async def _run(self, key: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await asyncio.wait_for(fn(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.warning(f"Computation for {key} exceeded {self.timeout}s, releasing waiters")
            raise ComputeTimeout(
                f"Computation for {key} exceeded {self.timeout}s", key=key
            ) from e
        finally:
            if self._calls.get(key) is asyncio.current_task():
                del self._calls[key]

    def in_flight(self, key: str) -> bool:
        return key in self._calls

    def __len__(self) -> int:
        return len(self._calls)
