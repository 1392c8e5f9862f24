"""
Materialized View Manager

Keeps in-process snapshots of expensive aggregate views and refreshes
them on a schedule. Every successful refresh invalidates the cache tag
`view:<name>`, so results derived from the previous snapshot are dropped
and recomputed from the new one.

State machine per view:

    UNINITIALIZED -> POPULATING -> FRESH -> STALE -> POPULATING -> ...

Guarantees:
- The same view never refreshes concurrently; distinct views refresh in
  parallel through a bounded worker pool.
- Each refresh is bounded by a deadline equal to its refresh interval.
- A failed refresh keeps the last good snapshot and retries with
  exponential backoff.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from replivity.analytics.keys import view_tag
from replivity.cache.errors import RefreshError
from replivity.cache.manager import CacheManager
from replivity.utils.clock import utc_now


logger = logging.getLogger(__name__)


class ViewState(Enum):
    UNINITIALIZED = "uninitialized"
    POPULATING = "populating"
    FRESH = "fresh"
    STALE = "stale"


@dataclass(frozen=True)
class ViewDefinition:
    """
    A view to keep materialized.

    staleness_seconds is how old a snapshot may be and still answer
    queries. Defaults to twice the refresh interval: one interval until
    the next refresh is due plus one refresh deadline.
    """
    name: str
    refresh: Callable[[], Awaitable[List[Dict[str, Any]]]]
    refresh_interval_seconds: float
    staleness_seconds: Optional[float] = None

    @property
    def staleness_threshold(self) -> float:
        if self.staleness_seconds is not None:
            return self.staleness_seconds
        return self.refresh_interval_seconds * 2


@dataclass
class ViewSnapshot:
    """Rows of one successful refresh."""
    rows: List[Dict[str, Any]]
    refreshed_at: datetime
    # Monotonic clock reading at refresh, used for age checks
    taken_at: float


@dataclass
class MaterializedView:
    """Runtime state of a view. Mutated only by the refresh path."""
    definition: ViewDefinition
    state: ViewState = ViewState.UNINITIALIZED
    snapshot: Optional[ViewSnapshot] = None
    last_error: Optional[str] = None
    consecutive_failures: int = 0
    next_attempt_at: float = 0.0
    refresh_count: int = 0
    failure_count: int = 0
    last_duration_ms: Optional[float] = None

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def refresh_interval_seconds(self) -> float:
        return self.definition.refresh_interval_seconds

    @property
    def populated(self) -> bool:
        return self.snapshot is not None

    @property
    def last_refreshed_at(self) -> Optional[datetime]:
        return self.snapshot.refreshed_at if self.snapshot else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "populated": self.populated,
            "rows": len(self.snapshot.rows) if self.snapshot else 0,
            "refresh_interval_seconds": self.refresh_interval_seconds,
            "staleness_seconds": self.definition.staleness_threshold,
            "last_refreshed_at": self.last_refreshed_at.isoformat() if self.last_refreshed_at else None,
            "last_error": self.last_error,
            "consecutive_failures": self.consecutive_failures,
            "refresh_count": self.refresh_count,
            "failure_count": self.failure_count,
            "last_duration_ms": self.last_duration_ms,
        }


class MaterializedViewManager:
    """
    Schedules and runs view refreshes.

    Usage:
        views = MaterializedViewManager(cache)
        views.register(ViewDefinition("daily_analytics", refresh_fn, 300))
        await views.start()
        ...
        snapshot = views.fresh_snapshot("daily_analytics")
        await views.stop()
    """

    def __init__(
        self,
        cache: CacheManager,
        max_concurrent_refreshes: int = 4,
        tick_seconds: float = 1.0,
        retry_base_seconds: float = 1.0,
        max_backoff_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cache = cache
        self.tick_seconds = tick_seconds
        self.retry_base_seconds = retry_base_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self._clock = clock
        self._views: Dict[str, MaterializedView] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._inflight: Dict[str, "asyncio.Task[bool]"] = {}
        self._pool = asyncio.Semaphore(max_concurrent_refreshes)
        self._task: Optional[asyncio.Task] = None
        self._running = False

    def register(self, definition: ViewDefinition) -> MaterializedView:
        """Register a view. Views are registered once, at boot."""
        if definition.name in self._views:
            raise ValueError(f"View already registered: {definition.name}")
        if definition.refresh_interval_seconds <= 0:
            raise ValueError(f"refresh_interval_seconds must be positive for {definition.name}")

        view = MaterializedView(definition=definition)
        self._views[definition.name] = view
        self._locks[definition.name] = asyncio.Lock()
        logger.info(
            f"Registered materialized view {definition.name} "
            f"(every {definition.refresh_interval_seconds}s)"
        )
        return view

    def __contains__(self, name: str) -> bool:
        return name in self._views

    def get_view(self, name: str) -> MaterializedView:
        try:
            return self._views[name]
        except KeyError:
            raise RefreshError(f"Unknown view: {name}", view=name) from None

    # =========================================================================
    # Scheduler
    # =========================================================================

    async def start(self):
        """Start the background scheduler."""
        if self._running:
            logger.warning("View scheduler already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._scheduler_loop())
        logger.info(f"View scheduler started ({len(self._views)} views)")

    async def stop(self):
        """Stop the scheduler and cancel refreshes in flight."""
        self._running = False
        tasks = [t for t in (self._task, *self._inflight.values()) if t is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._inflight.clear()
        logger.info("View scheduler stopped")

    async def _scheduler_loop(self):
        while self._running:
            self.run_due()
            await asyncio.sleep(self.tick_seconds)

    def _is_due(self, view: MaterializedView, now: float) -> bool:
        if now < view.next_attempt_at:
            return False
        if view.snapshot is None:
            return True
        return now - view.snapshot.taken_at >= view.refresh_interval_seconds

    def run_due(self) -> List[str]:
        """Start refreshes for every view whose interval has elapsed."""
        now = self._clock()
        started = []
        for name, view in self._views.items():
            if name in self._inflight or not self._is_due(view, now):
                continue
            if view.state == ViewState.FRESH:
                view.state = ViewState.STALE
            self._launch(name)
            started.append(name)
        return started

    def _launch(self, name: str) -> "asyncio.Task[bool]":
        task = asyncio.create_task(self._refresh(name))
        self._inflight[name] = task
        task.add_done_callback(lambda t, n=name: self._forget(n, t))
        return task

    def _forget(self, name: str, task: "asyncio.Task[bool]"):
        if self._inflight.get(name) is task:
            del self._inflight[name]

    # =========================================================================
    # Refresh
    # =========================================================================

    async def refresh(self, name: str) -> bool:
        """
        Refresh a view now, or wait for the refresh already running.

        Returns True on success. Failures are recorded on the view, not
        raised.
        """
        self.get_view(name)
        task = self._inflight.get(name)
        if task is None:
            task = self._launch(name)
        return await asyncio.shield(task)

    async def refresh_all(self) -> Dict[str, bool]:
        names = list(self._views)
        results = await asyncio.gather(*(self.refresh(name) for name in names))
        return dict(zip(names, results))

    async def _refresh(self, name: str) -> bool:
        view = self._views[name]
        async with self._locks[name], self._pool:
            view.state = ViewState.POPULATING
            deadline = view.refresh_interval_seconds
            start = time.perf_counter()

            try:
                rows = await asyncio.wait_for(view.definition.refresh(), timeout=deadline)
            except asyncio.TimeoutError:
                self._record_failure(view, RefreshError(
                    f"Refresh of {name} exceeded its {deadline}s deadline", view=name
                ))
                return False
            except Exception as e:
                self._record_failure(view, RefreshError(f"Refresh of {name} failed: {e}", view=name))
                return False
            finally:
                view.last_duration_ms = round((time.perf_counter() - start) * 1000, 2)

            now = self._clock()
            view.snapshot = ViewSnapshot(rows=list(rows), refreshed_at=utc_now(), taken_at=now)
            view.state = ViewState.FRESH
            view.last_error = None
            view.consecutive_failures = 0
            view.next_attempt_at = 0.0
            view.refresh_count += 1

        purged = await self.cache.invalidate_tag(view_tag(name))
        logger.info(
            f"Refreshed view {name}: {len(view.snapshot.rows)} rows in "
            f"{view.last_duration_ms}ms, {purged} cached results invalidated"
        )
        return True

    def _record_failure(self, view: MaterializedView, error: RefreshError):
        view.consecutive_failures += 1
        view.failure_count += 1
        view.last_error = str(error)
        view.state = ViewState.STALE if view.populated else ViewState.UNINITIALIZED

        backoff = min(
            self.retry_base_seconds * (2 ** (view.consecutive_failures - 1)),
            self.max_backoff_seconds,
        )
        view.next_attempt_at = self._clock() + backoff
        logger.error(
            f"{error} (attempt {view.consecutive_failures}, retrying in {backoff}s"
            f"{', serving last snapshot' if view.populated else ''})"
        )

    # =========================================================================
    # Reads
    # =========================================================================

    def read(self, name: str) -> Optional[ViewSnapshot]:
        """Last good snapshot regardless of age."""
        return self.get_view(name).snapshot

    def is_fresh(self, name: str) -> bool:
        view = self.get_view(name)
        if view.snapshot is None:
            return False
        return self._clock() - view.snapshot.taken_at < view.definition.staleness_threshold

    def fresh_snapshot(self, name: str) -> Optional[ViewSnapshot]:
        """Snapshot if it is within the view's staleness threshold, else None."""
        if name not in self._views or not self.is_fresh(name):
            return None
        return self._views[name].snapshot

    def statuses(self) -> List[Dict[str, Any]]:
        return [view.to_dict() for view in self._views.values()]
