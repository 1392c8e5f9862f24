"""
Tests for the AnalyticsOptimizer facade.

These tests verify:
- Cache-aside answers with single computation per key
- Snapshot answers when a view is fresh, live answers otherwise
- View refresh and writer invalidation reach cached results
- Compute failures surface unchanged and are never cached
"""

import asyncio
from datetime import date, datetime

import pytest

from replivity.analytics import (
    AggregateSource,
    AnalyticsOptimizer,
    DashboardSpec,
    HashtagPerformanceSpec,
    MaterializedViewManager,
    RevenueSpec,
    SqlAggregateSource,
    default_view_definitions,
)
from replivity.analytics.aggregates import DAILY_ANALYTICS
from replivity.cache.errors import ComputeError, InvalidSpec


def daily_row(user_id, day, platform="twitter", generations=1):
    return {
        "day": day,
        "user_id": user_id,
        "platform": platform,
        "generations": generations,
        "post_chars": 10 * generations,
        "reply_chars": 5 * generations,
        "last_activity": datetime(day.year, day.month, day.day, 12, 0),
    }


class FakeSource(AggregateSource):
    """Row source with call counting."""

    def __init__(self):
        self.rows = {
            DAILY_ANALYTICS: [
                daily_row("42", date(2024, 3, 1), generations=2),
                daily_row("42", date(2024, 3, 2), platform="linkedin"),
                daily_row("57", date(2024, 3, 2)),
            ],
        }
        self.view_calls = 0
        self.live_calls = 0
        self.fail = False

    async def view_rows(self, view):
        self.view_calls += 1
        return list(self.rows.get(view, []))

    async def live_rows(self, view, spec):
        self.live_calls += 1
        await asyncio.sleep(0.01)
        if self.fail:
            raise ComputeError(f"{view} unavailable")
        return [r for r in self.rows.get(view, []) if spec.is_global or r["user_id"] == spec.scope_id]


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def views(memory_cache, source):
    views = MaterializedViewManager(memory_cache)
    for definition in default_view_definitions(source):
        views.register(definition)
    return views


@pytest.fixture
def optimizer(memory_cache, views, source):
    return AnalyticsOptimizer(memory_cache, views, source)


# =============================================================================
# CACHE-ASIDE
# =============================================================================

@pytest.mark.asyncio
class TestQuery:

    async def test_live_answer_when_no_snapshot(self, optimizer, source):
        result = await optimizer.query(DashboardSpec("42"))

        assert result.source == "live"
        assert result.view == DAILY_ANALYTICS
        assert result.data["total_generations"] == 3
        assert source.live_calls == 1

    async def test_second_query_is_a_cache_hit(self, optimizer, source):
        first = await optimizer.query(DashboardSpec("42"))
        second = await optimizer.query(DashboardSpec("42"))

        assert second == first
        assert source.live_calls == 1

    async def test_concurrent_queries_compute_once(self, optimizer, source):
        results = await asyncio.gather(*(optimizer.query(DashboardSpec("42")) for _ in range(20)))

        assert source.live_calls == 1
        assert all(r.data == results[0].data for r in results)

    async def test_snapshot_answer_when_view_fresh(self, optimizer, views, source):
        await views.refresh(DAILY_ANALYTICS)
        result = await optimizer.query(DashboardSpec("42", date_from=date(2024, 3, 2)))

        assert result.source == "view"
        assert result.as_of == views.get_view(DAILY_ANALYTICS).last_refreshed_at
        assert result.data["total_generations"] == 1
        assert source.live_calls == 0

    async def test_view_refresh_drops_cached_results(self, optimizer, views, source):
        live = await optimizer.query(DashboardSpec("42"))
        assert live.source == "live"

        source.rows[DAILY_ANALYTICS].append(daily_row("42", date(2024, 3, 3)))
        await views.refresh(DAILY_ANALYTICS)

        fresh = await optimizer.query(DashboardSpec("42"))
        assert fresh.source == "view"
        assert fresh.data["total_generations"] == 4

    async def test_scope_invalidation(self, optimizer, memory_cache, source):
        await optimizer.query(DashboardSpec("42"))
        await optimizer.query(DashboardSpec("global"))

        assert await memory_cache.invalidate_tag("scope:42") == 1
        await optimizer.query(DashboardSpec("42"))
        await optimizer.query(DashboardSpec("global"))

        # Only the user's result was recomputed
        assert source.live_calls == 3

    async def test_invalid_spec_rejected_before_cache(self, optimizer, memory_cache, source):
        with pytest.raises(InvalidSpec):
            await optimizer.query(DashboardSpec("42", date(2024, 3, 5), date(2024, 3, 1)))

        assert source.live_calls == 0
        assert memory_cache.get_stats()["memory"]["misses"] == 0

    async def test_compute_error_surfaces_and_is_not_cached(self, optimizer, source):
        source.fail = True
        with pytest.raises(ComputeError):
            await optimizer.query(RevenueSpec("42"))

        source.fail = False
        result = await optimizer.query(RevenueSpec("42"))
        assert result.data["transactions"] == 0
        assert source.live_calls == 2

    async def test_tags_include_view(self, optimizer):
        tags = optimizer.tags_for(HashtagPerformanceSpec("42", hashtag="ai"))
        assert tags == frozenset({"scope:42", "kind:hashtag", "hashtag:ai", "view:hashtag_performance"})

    async def test_ttl_follows_kind(self, optimizer, memory_cache):
        await optimizer.query(RevenueSpec("42"))
        key = optimizer.codec.encode(RevenueSpec("42")).key
        entry = memory_cache.memory.get(key)

        ttl = entry.expires_at - entry.created_at
        assert ttl == pytest.approx(memory_cache.config.ttl.REVENUE_ANALYTICS.total_seconds())

    async def test_convenience_queries(self, optimizer):
        dashboard = await optimizer.get_dashboard_analytics("42")
        platform = await optimizer.get_platform_analytics("linkedin", scope_id="42")

        assert dashboard.kind == "dashboard"
        assert platform.data["platform"] == "linkedin"

    async def test_status(self, optimizer):
        status = optimizer.get_status()
        assert {v["name"] for v in status["views"]} == {
            "daily_analytics", "revenue_analytics", "blog_analytics", "hashtag_performance",
        }
        assert "memory" in status["cache"]


# =============================================================================
# END TO END OVER SQL
# =============================================================================

@pytest.mark.asyncio
class TestOptimizerOverSql:

    async def test_view_and_live_answers_agree(self, memory_cache, seeded_session_factory):
        source = SqlAggregateSource(seeded_session_factory)
        views = MaterializedViewManager(memory_cache)
        for definition in default_view_definitions(source):
            views.register(definition)
        optimizer = AnalyticsOptimizer(memory_cache, views, source)

        spec = DashboardSpec("42", date_from=date(2024, 3, 1), date_to=date(2024, 3, 1))
        live = await optimizer.query(spec)

        await views.refresh(DAILY_ANALYTICS)
        from_view = await optimizer.query(spec)

        assert live.source == "live"
        assert from_view.source == "view"
        assert from_view.data == live.data
        assert from_view.data["total_generations"] == 2
