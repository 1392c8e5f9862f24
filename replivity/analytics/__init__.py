"""
Replivity Analytics

Cached answers to the expensive aggregate queries behind dashboards,
revenue and blog reports, and hashtag performance.

Usage:
    views = MaterializedViewManager(cache)
    for definition in default_view_definitions(source):
        views.register(definition)

    optimizer = AnalyticsOptimizer(cache, views, source)
    result = await optimizer.query(DashboardSpec(scope_id="42"))
"""

from typing import Dict, List, Optional

from replivity.analytics.specs import (
    GLOBAL_SCOPE,
    SPEC_TYPES,
    AnalyticsQuerySpec,
    QuerySpec,
    DashboardSpec,
    UserAnalyticsSpec,
    PlatformAnalyticsSpec,
    RevenueSpec,
    BlogSpec,
    HashtagPerformanceSpec,
    parse_spec,
)
from replivity.analytics.keys import EncodedQuery, KeyCodec
from replivity.analytics.aggregates import (
    VIEW_NAMES,
    AggregateResult,
    AggregateSource,
    SqlAggregateSource,
)
from replivity.analytics.views import (
    MaterializedView,
    MaterializedViewManager,
    ViewDefinition,
    ViewSnapshot,
    ViewState,
)
from replivity.analytics.optimizer import AnalyticsOptimizer


# Refresh cadence per view, in seconds
DEFAULT_REFRESH_INTERVALS = {
    "daily_analytics": 300,
    "revenue_analytics": 1800,
    "blog_analytics": 900,
    "hashtag_performance": 600,
}


def default_view_definitions(
    source: AggregateSource,
    intervals: Optional[Dict[str, int]] = None,
) -> List[ViewDefinition]:
    """One ViewDefinition per bundled view, refreshed from source."""
    intervals = {**DEFAULT_REFRESH_INTERVALS, **(intervals or {})}
    return [
        ViewDefinition(
            name=name,
            refresh=lambda name=name: source.view_rows(name),
            refresh_interval_seconds=intervals[name],
        )
        for name in VIEW_NAMES
    ]


__all__ = [
    "GLOBAL_SCOPE",
    "SPEC_TYPES",
    "AnalyticsQuerySpec",
    "QuerySpec",
    "DashboardSpec",
    "UserAnalyticsSpec",
    "PlatformAnalyticsSpec",
    "RevenueSpec",
    "BlogSpec",
    "HashtagPerformanceSpec",
    "parse_spec",
    "EncodedQuery",
    "KeyCodec",
    "AggregateResult",
    "AggregateSource",
    "SqlAggregateSource",
    "MaterializedView",
    "MaterializedViewManager",
    "ViewDefinition",
    "ViewSnapshot",
    "ViewState",
    "AnalyticsOptimizer",
    "DEFAULT_REFRESH_INTERVALS",
    "default_view_definitions",
]
