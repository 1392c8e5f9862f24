"""
Tests for aggregate computation over the SQLAlchemy models.

Runs against an in-memory SQLite database seeded in conftest.
"""

import pytest
from datetime import date, datetime

from replivity.analytics.aggregates import (
    BLOG_ANALYTICS,
    DAILY_ANALYTICS,
    HASHTAG_PERFORMANCE,
    REVENUE_ANALYTICS,
    VIEW_FOR_KIND,
    VIEW_NAMES,
    AggregateResult,
    SqlAggregateSource,
    filter_rows,
    row_matches,
    summarize,
)
from replivity.analytics.specs import (
    GLOBAL_SCOPE,
    BlogSpec,
    DashboardSpec,
    HashtagPerformanceSpec,
    PlatformAnalyticsSpec,
    RevenueSpec,
    UserAnalyticsSpec,
)
from replivity.cache.errors import ComputeError


@pytest.fixture
def source(seeded_session_factory):
    return SqlAggregateSource(seeded_session_factory)


# =============================================================================
# LIVE AGGREGATES
# =============================================================================

@pytest.mark.asyncio
class TestLiveAggregates:

    async def test_dashboard_for_user(self, source):
        spec = DashboardSpec("42")
        data = summarize(spec, await source.live_rows(DAILY_ANALYTICS, spec))

        assert data["total_generations"] == 3
        assert data["active_days"] == 2
        assert data["avg_post_length"] == pytest.approx(6.33)
        assert data["avg_reply_length"] == pytest.approx(4.33)
        assert data["platforms"] == [
            {"platform": "twitter", "generations": 2},
            {"platform": "linkedin", "generations": 1},
        ]
        assert data["daily"] == [
            {"date": "2024-03-01", "generations": 2},
            {"date": "2024-03-02", "generations": 1},
        ]
        assert data["last_activity"] == "2024-03-02T09:00:00"

    async def test_dashboard_date_range(self, source):
        spec = DashboardSpec("42", date_from=date(2024, 3, 2), date_to=date(2024, 3, 2))
        data = summarize(spec, await source.live_rows(DAILY_ANALYTICS, spec))
        assert data["total_generations"] == 1
        assert data["platforms"] == [{"platform": "linkedin", "generations": 1}]

    async def test_global_user_analytics(self, source):
        spec = UserAnalyticsSpec(GLOBAL_SCOPE)
        data = summarize(spec, await source.live_rows(DAILY_ANALYTICS, spec))

        assert data["total_generations"] == 4
        assert data["unique_users"] == 2
        assert data["platforms_used"] == 2
        assert data["most_used_platform"] == "twitter"

    async def test_platform_analytics(self, source):
        spec = PlatformAnalyticsSpec(GLOBAL_SCOPE, platform="twitter")
        data = summarize(spec, await source.live_rows(DAILY_ANALYTICS, spec))

        assert data["platform"] == "twitter"
        assert data["total_generations"] == 3
        assert data["unique_users"] == 2

    async def test_revenue(self, source):
        spec = RevenueSpec(GLOBAL_SCOPE)
        data = summarize(spec, await source.live_rows(REVENUE_ANALYTICS, spec))

        assert data["total_revenue"] == pytest.approx(35.5)
        assert data["transactions"] == 3
        assert data["avg_transaction_value"] == pytest.approx(11.83)
        assert data["unique_customers"] == 2
        assert data["by_status"]["completed"] == {"transactions": 2, "revenue": pytest.approx(30.0)}
        assert data["by_provider"]["paypal"] == {"transactions": 1, "revenue": pytest.approx(5.5)}
        assert [m["month"] for m in data["monthly"]] == ["2024-03", "2024-04"]

    async def test_revenue_ignores_platform_filter(self, source):
        spec = RevenueSpec("42", platform="twitter")
        data = summarize(spec, await source.live_rows(REVENUE_ANALYTICS, spec))
        assert data["transactions"] == 2

    async def test_blog(self, source):
        spec = BlogSpec(GLOBAL_SCOPE)
        data = summarize(spec, await source.live_rows(BLOG_ANALYTICS, spec))

        assert data["total_posts"] == 3
        assert data["published_posts"] == 2
        assert data["draft_posts"] == 1
        assert data["total_views"] == 150
        # Posts without a reading time are left out of the average
        assert data["avg_reading_time"] == 5.0
        assert data["daily"] == [
            {"date": "2024-03-01", "posts": 1},
            {"date": "2024-03-03", "posts": 2},
        ]

    async def test_hashtag_performance(self, source):
        spec = HashtagPerformanceSpec("42")
        data = summarize(spec, await source.live_rows(HASHTAG_PERFORMANCE, spec))

        assert data["samples"] == 3
        assert data["impressions"] == 1700
        assert data["engagements"] == 105
        assert data["clicks"] == 17
        assert data["engagement_rate"] == pytest.approx(6.18)
        assert [h["hashtag"] for h in data["top_hashtags"]] == ["ai", "python"]
        assert data["top_hashtags"][1]["engagement_rate"] == 15.0
        assert data["engagements_by_platform"] == {"linkedin": 25, "twitter": 80}

    async def test_single_hashtag(self, source):
        spec = HashtagPerformanceSpec(GLOBAL_SCOPE, hashtag="ai")
        data = summarize(spec, await source.live_rows(HASHTAG_PERFORMANCE, spec))
        assert data["samples"] == 3
        assert data["impressions"] == 1600

    async def test_empty_scope(self, source):
        spec = DashboardSpec("nobody")
        data = summarize(spec, await source.live_rows(DAILY_ANALYTICS, spec))
        assert data["total_generations"] == 0
        assert data["avg_post_length"] == 0.0
        assert data["last_activity"] is None

    async def test_unknown_view(self, source):
        with pytest.raises(ComputeError):
            await source.view_rows("weekly_analytics")

    async def test_database_error_becomes_compute_error(self, db_engine, session_factory):
        source = SqlAggregateSource(session_factory)
        # Tables gone: the query fails inside SQLAlchemy
        from replivity.database import Base
        Base.metadata.drop_all(bind=db_engine)

        with pytest.raises(ComputeError):
            await source.view_rows(DAILY_ANALYTICS)


# =============================================================================
# SNAPSHOT / LIVE EQUIVALENCE
# =============================================================================

@pytest.mark.asyncio
class TestSnapshotEquivalence:

    @pytest.mark.parametrize("spec", [
        DashboardSpec("42"),
        DashboardSpec("42", date_from=date(2024, 3, 2)),
        UserAnalyticsSpec(GLOBAL_SCOPE),
        PlatformAnalyticsSpec("42", platform="linkedin"),
        RevenueSpec("42", date_to=date(2024, 3, 31)),
        BlogSpec("57"),
        HashtagPerformanceSpec(GLOBAL_SCOPE, hashtag="ai", platform="twitter"),
    ])
    async def test_filtered_snapshot_matches_live(self, source, spec):
        view = VIEW_FOR_KIND[spec.kind]
        snapshot = await source.view_rows(view)
        live = await source.live_rows(view, spec)

        assert summarize(spec, filter_rows(snapshot, spec)) == summarize(spec, live)


# =============================================================================
# ROW FILTERS AND RESULTS
# =============================================================================

class TestRowFilters:

    def test_scope_filter(self):
        row = {"day": date(2024, 3, 1), "user_id": "42", "platform": "twitter"}
        assert row_matches(row, DashboardSpec("42"))
        assert not row_matches(row, DashboardSpec("57"))
        assert row_matches(row, DashboardSpec(GLOBAL_SCOPE))

    def test_date_bounds_inclusive(self):
        row = {"day": date(2024, 3, 1), "user_id": "42"}
        assert row_matches(row, DashboardSpec("42", date(2024, 3, 1), date(2024, 3, 1)))
        assert not row_matches(row, DashboardSpec("42", date_from=date(2024, 3, 2)))

    def test_platform_only_applies_to_rows_with_platform(self):
        row = {"day": date(2024, 3, 1), "user_id": "42", "provider": "stripe"}
        assert row_matches(row, RevenueSpec("42", platform="twitter"))

    def test_every_kind_has_a_view(self):
        assert set(VIEW_FOR_KIND.values()) == set(VIEW_NAMES)


class TestAggregateResult:

    def test_dict_round_trip(self):
        result = AggregateResult(
            kind="dashboard",
            scope_id="42",
            data={"total_generations": 3},
            source="view",
            view=DAILY_ANALYTICS,
            computed_at=datetime(2024, 3, 3, 12, 0),
            as_of=datetime(2024, 3, 3, 11, 55),
        )
        assert AggregateResult.from_dict(result.to_dict()) == result
        assert result.to_dict()["as_of"] == "2024-03-03T11:55:00"
