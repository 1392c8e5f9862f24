"""
Cache Warming Service

Proactively warms caches so the first dashboard load after a deploy or a
flush is a hit.

Strategies:
1. Common warming: admin-wide ("global") reports everyone shares
2. Scope warming: every query kind for one user
3. Periodic warming: users active in the last few days, in the background
"""

import asyncio
import logging
from datetime import timedelta
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import desc, func
from sqlalchemy.orm import Session

from replivity.analytics.optimizer import AnalyticsOptimizer
from replivity.analytics.specs import (
    GLOBAL_SCOPE,
    BlogSpec,
    DashboardSpec,
    HashtagPerformanceSpec,
    PlatformAnalyticsSpec,
    QuerySpec,
    RevenueSpec,
    UserAnalyticsSpec,
)
from replivity.cache.errors import CacheError
from replivity.database.models import Generation
from replivity.utils.clock import utc_now


logger = logging.getLogger(__name__)


DEFAULT_PLATFORMS = ("twitter", "linkedin", "facebook", "instagram", "reddit")


class CacheWarmer:
    """
    Proactive cache warming through the analytics optimizer.

    Features:
    - Common warming (global reports)
    - Per-scope warming
    - Background warming of recently active users
    """

    def __init__(
        self,
        optimizer: AnalyticsOptimizer,
        session_factory: Optional[Callable[[], Session]] = None,
        platforms: Sequence[str] = DEFAULT_PLATFORMS,
    ):
        self._optimizer = optimizer
        self._session_factory = session_factory
        self._platforms = tuple(platforms)
        self._config = optimizer.cache.config
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def warm_specs(self, specs: Iterable[QuerySpec]) -> Dict[str, bool]:
        """
        Run each spec through the optimizer.

        Returns:
            Dict of "<kind>:<scope>" -> success status
        """
        results: Dict[str, bool] = {}
        for spec in specs:
            label = f"{spec.kind}:{spec.scope_id}"
            if spec.platform:
                label += f":{spec.platform}"
            try:
                await self._optimizer.query(spec)
                results[label] = True
            except CacheError as e:
                logger.error(f"Failed to warm {label}: {e}")
                results[label] = False
        return results

    def specs_for_scope(self, scope_id: str) -> List[QuerySpec]:
        specs: List[QuerySpec] = [
            DashboardSpec(scope_id),
            UserAnalyticsSpec(scope_id),
            RevenueSpec(scope_id),
            BlogSpec(scope_id),
            HashtagPerformanceSpec(scope_id),
        ]
        specs.extend(PlatformAnalyticsSpec(scope_id, platform=p) for p in self._platforms)
        return specs

    async def warm_scope(self, scope_id: str) -> Dict[str, bool]:
        """Warm every query kind for one scope."""
        logger.info(f"Warming cache for scope {scope_id}")
        results = await self.warm_specs(self.specs_for_scope(scope_id))

        success_count = sum(1 for v in results.values() if v)
        logger.info(f"Cache warming complete for {scope_id}: {success_count}/{len(results)} queries")
        return results

    async def warm_common(self) -> Dict[str, bool]:
        """Warm the admin-wide reports."""
        return await self.warm_scope(GLOBAL_SCOPE)

    def active_users(self, days: int = 7, limit: int = 50) -> List[str]:
        """Users with the most generations in the last `days` days."""
        if self._session_factory is None:
            return []

        cutoff = utc_now() - timedelta(days=days)
        db = self._session_factory()
        try:
            rows = (
                db.query(Generation.user_id, func.count(Generation.id).label("generations"))
                .filter(Generation.created_at >= cutoff)
                .group_by(Generation.user_id)
                .order_by(desc("generations"))
                .limit(limit)
                .all()
            )
        finally:
            db.close()
        return [row.user_id for row in rows]

    async def warm_active_users(self, days: int = 7, limit: int = 50) -> Dict[str, Dict[str, bool]]:
        """Warm cache for recently active users."""
        user_ids = await asyncio.to_thread(self.active_users, days, limit)
        results = {}
        for user_id in user_ids:
            results[user_id] = await self.warm_scope(user_id)
        return results

    async def start_background_warmer(
        self,
        interval_seconds: Optional[float] = None,
    ):
        """
        Start background warming task.

        Runs periodically to:
        1. Warm the global reports
        2. Warm recently active users
        """
        if self._running:
            logger.warning("Background warmer already running")
            return

        interval = interval_seconds or self._config.warming_interval_seconds
        self._running = True

        async def warming_loop():
            while self._running:
                try:
                    logger.info("Running background cache warming...")
                    await self.warm_common()
                    await self.warm_active_users(limit=20)
                    logger.info(f"Background warming complete, sleeping for {interval}s")
                except Exception as e:
                    logger.error(f"Background warming error: {e}")

                await asyncio.sleep(interval)

        self._task = asyncio.create_task(warming_loop())
        logger.info(f"Background cache warmer started (interval: {interval}s)")

    async def stop_background_warmer(self):
        """Stop background warming task."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Background cache warmer stopped")
