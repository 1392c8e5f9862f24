"""
Analytics Optimizer

Answers analytics queries through the tiered cache:

    spec -> KeyCodec -> CacheManager.get_or_compute
                           miss -> fresh view snapshot (filtered in memory)
                                   or live aggregate from the source

Results carry the tags of their spec plus `view:<name>`, so writers can
invalidate by tenant/kind/platform and view refreshes drop everything
derived from the previous snapshot.
"""

import logging
from datetime import date
from typing import Any, Dict, FrozenSet, Optional

from replivity.analytics.aggregates import (
    VIEW_FOR_KIND,
    AggregateResult,
    AggregateSource,
    filter_rows,
    summarize,
)
from replivity.analytics.keys import KeyCodec, view_tag
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
from replivity.analytics.views import MaterializedViewManager
from replivity.cache.config import CacheTTL
from replivity.cache.manager import CacheManager
from replivity.utils.clock import utc_now


logger = logging.getLogger(__name__)


class AnalyticsOptimizer:
    """
    Cached analytics queries.

    Usage:
        optimizer = AnalyticsOptimizer(cache, views, SqlAggregateSource(factory))
        result = await optimizer.query(DashboardSpec(scope_id="42"))
        result.data["total_generations"]
    """

    def __init__(
        self,
        cache: CacheManager,
        views: MaterializedViewManager,
        source: AggregateSource,
        codec: Optional[KeyCodec] = None,
        ttl: Optional[CacheTTL] = None,
    ):
        self.cache = cache
        self.views = views
        self.source = source
        self.codec = codec or KeyCodec(cache.config.namespace)
        self.ttl = ttl or cache.config.ttl

    def view_for(self, spec: QuerySpec) -> str:
        return VIEW_FOR_KIND[spec.kind]

    def tags_for(self, spec: QuerySpec) -> FrozenSet[str]:
        encoded = self.codec.encode(spec)
        return encoded.tags | {view_tag(self.view_for(spec))}

    async def query(self, spec: QuerySpec) -> AggregateResult:
        """
        Answer spec from cache, a fresh view snapshot, or a live aggregate.

        Raises:
            InvalidSpec: malformed spec (before any cache access)
            ComputeError: the aggregate source failed
        """
        encoded = self.codec.encode(spec)
        view = self.view_for(spec)
        tags = encoded.tags | {view_tag(view)}

        async def compute() -> Dict[str, Any]:
            return (await self._compute(spec, view)).to_dict()

        value = await self.cache.get_or_compute(
            encoded.key,
            compute,
            ttl=self.ttl.for_kind(spec.kind),
            tags=tags,
        )
        return AggregateResult.from_dict(value)

    async def _compute(self, spec: QuerySpec, view: str) -> AggregateResult:
        snapshot = self.views.fresh_snapshot(view)
        if snapshot is not None:
            rows = filter_rows(snapshot.rows, spec)
            logger.debug(f"Answering {spec.kind} for {spec.scope_id} from {view} snapshot")
            return AggregateResult(
                kind=spec.kind,
                scope_id=spec.scope_id,
                data=summarize(spec, rows),
                source="view",
                view=view,
                as_of=snapshot.refreshed_at,
            )

        logger.debug(f"No fresh {view} snapshot, running live {spec.kind} aggregate")
        rows = await self.source.live_rows(view, spec)
        return AggregateResult(
            kind=spec.kind,
            scope_id=spec.scope_id,
            data=summarize(spec, rows),
            source="live",
            view=view,
        )

    # =========================================================================
    # Convenience queries
    # =========================================================================

    async def get_dashboard_analytics(
        self,
        scope_id: str,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> AggregateResult:
        return await self.query(DashboardSpec(scope_id, date_from, date_to))

    async def get_user_analytics(self, user_id: str) -> AggregateResult:
        return await self.query(UserAnalyticsSpec(user_id))

    async def get_platform_analytics(
        self,
        platform: str,
        scope_id: str = GLOBAL_SCOPE,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> AggregateResult:
        return await self.query(PlatformAnalyticsSpec(scope_id, date_from, date_to, platform))

    async def get_revenue_analytics(
        self,
        scope_id: str = GLOBAL_SCOPE,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> AggregateResult:
        return await self.query(RevenueSpec(scope_id, date_from, date_to))

    async def get_blog_analytics(self, scope_id: str = GLOBAL_SCOPE) -> AggregateResult:
        return await self.query(BlogSpec(scope_id))

    async def get_hashtag_performance(
        self,
        scope_id: str,
        hashtag: Optional[str] = None,
        platform: Optional[str] = None,
    ) -> AggregateResult:
        return await self.query(HashtagPerformanceSpec(scope_id, platform=platform, hashtag=hashtag))

    def get_status(self) -> Dict[str, Any]:
        return {
            "checked_at": utc_now().isoformat(),
            "views": self.views.statuses(),
            "cache": self.cache.get_stats(),
        }
