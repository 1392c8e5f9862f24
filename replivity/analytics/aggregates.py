"""
Aggregate Computation

Turns source-of-truth rows into analytics payloads. Two paths share one
set of row shapes and one summarizer:

1. View snapshot: the MaterializedViewManager refreshes a view by calling
   `view_rows(view)` (every row, grouped by day/user/dimension). Queries
   then filter that snapshot in memory.
2. Live: when no fresh snapshot exists, `live_rows(view, spec)` runs the
   same grouping with the spec's filters pushed into SQL.

Rows keep sums and counts rather than averages so a filtered subset of
a snapshot summarizes to exactly what a live query would return.
"""

import asyncio
import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Query, Session

from replivity.analytics.specs import QuerySpec
from replivity.cache.errors import ComputeError
from replivity.database.models import BlogPost, Billing, Generation, HashtagPerformance
from replivity.utils.clock import utc_now


logger = logging.getLogger(__name__)


# View names
DAILY_ANALYTICS = "daily_analytics"
REVENUE_ANALYTICS = "revenue_analytics"
BLOG_ANALYTICS = "blog_analytics"
HASHTAG_PERFORMANCE = "hashtag_performance"

VIEW_NAMES = (DAILY_ANALYTICS, REVENUE_ANALYTICS, BLOG_ANALYTICS, HASHTAG_PERFORMANCE)

# Which view answers which query kind
VIEW_FOR_KIND: Dict[str, str] = {
    "dashboard": DAILY_ANALYTICS,
    "user": DAILY_ANALYTICS,
    "platform": DAILY_ANALYTICS,
    "revenue": REVENUE_ANALYTICS,
    "blog": BLOG_ANALYTICS,
    "hashtag": HASHTAG_PERFORMANCE,
}


Row = Dict[str, Any]


# =============================================================================
# RESULT
# =============================================================================

@dataclass
class AggregateResult:
    """Answer to one analytics query."""
    kind: str
    scope_id: str
    data: Dict[str, Any]
    source: str  # "view" or "live"
    view: Optional[str] = None
    computed_at: datetime = field(default_factory=utc_now)
    # When source == "view": the snapshot's refresh time
    as_of: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "scope_id": self.scope_id,
            "data": self.data,
            "source": self.source,
            "view": self.view,
            "computed_at": self.computed_at.isoformat(),
            "as_of": self.as_of.isoformat() if self.as_of else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AggregateResult":
        as_of = data.get("as_of")
        return cls(
            kind=data["kind"],
            scope_id=data["scope_id"],
            data=data["data"],
            source=data["source"],
            view=data.get("view"),
            computed_at=datetime.fromisoformat(data["computed_at"]),
            as_of=datetime.fromisoformat(as_of) if as_of else None,
        )


# =============================================================================
# ROW FILTERING
# =============================================================================

def _as_date(value: Any) -> Optional[date]:
    # SQLite returns DATE() as text, PostgreSQL as a date
    if value is None or isinstance(value, date) and not isinstance(value, datetime):
        return value
    if isinstance(value, datetime):
        return value.date()
    return date.fromisoformat(str(value)[:10])


def _number(value: Any) -> Any:
    if value is None:
        return 0
    if isinstance(value, Decimal):
        return float(value)
    return value


def _normalize(row: Row) -> Row:
    out = {}
    for name, value in row.items():
        if name == "day":
            out[name] = _as_date(value)
        elif name in ("user_id", "platform", "provider", "status", "hashtag"):
            out[name] = value
        elif isinstance(value, datetime):
            out[name] = value
        else:
            out[name] = _number(value)
    return out


def row_matches(row: Row, spec: QuerySpec) -> bool:
    """In-memory equivalent of the SQL filters applied by live_rows."""
    if not spec.is_global and row.get("user_id") != spec.scope_id:
        return False
    day = row.get("day")
    if spec.date_from and day is not None and day < spec.date_from:
        return False
    if spec.date_to and day is not None and day > spec.date_to:
        return False
    if spec.platform and "platform" in row and row["platform"] != spec.platform:
        return False
    hashtag = getattr(spec, "hashtag", None)
    if hashtag and "hashtag" in row and row["hashtag"] != hashtag:
        return False
    return True


def filter_rows(rows: Iterable[Row], spec: QuerySpec) -> List[Row]:
    return [row for row in rows if row_matches(row, spec)]


# =============================================================================
# SUMMARIZERS
# =============================================================================

def _avg(total: float, count: int) -> float:
    return round(total / count, 2) if count else 0.0


def _last_activity(rows: List[Row]) -> Optional[str]:
    values = [r["last_activity"] for r in rows if r.get("last_activity")]
    return max(values).isoformat() if values else None


def _daily(rows: List[Row], metric: str) -> List[Dict[str, Any]]:
    by_day: Dict[date, int] = defaultdict(int)
    for row in rows:
        by_day[row["day"]] += row[metric]
    return [{"date": d.isoformat(), metric: by_day[d]} for d in sorted(by_day)]


def _summarize_dashboard(rows: List[Row], spec: QuerySpec) -> Dict[str, Any]:
    total = sum(r["generations"] for r in rows)
    by_platform: Counter = Counter()
    for row in rows:
        by_platform[row["platform"]] += row["generations"]

    daily = _daily(rows, "generations")
    return {
        "total_generations": total,
        "active_days": len(daily),
        "avg_post_length": _avg(sum(r["post_chars"] for r in rows), total),
        "avg_reply_length": _avg(sum(r["reply_chars"] for r in rows), total),
        "platforms": [
            {"platform": p, "generations": n}
            for p, n in sorted(by_platform.items(), key=lambda item: (-item[1], item[0]))
        ],
        "daily": daily,
        "last_activity": _last_activity(rows),
    }


def _summarize_user(rows: List[Row], spec: QuerySpec) -> Dict[str, Any]:
    total = sum(r["generations"] for r in rows)
    by_platform: Counter = Counter()
    for row in rows:
        by_platform[row["platform"]] += row["generations"]
    most_used = (
        sorted(by_platform.items(), key=lambda item: (-item[1], item[0]))[0][0]
        if by_platform else None
    )

    return {
        "total_generations": total,
        "unique_users": len({r["user_id"] for r in rows}),
        "platforms_used": len(by_platform),
        "most_used_platform": most_used,
        "avg_post_length": _avg(sum(r["post_chars"] for r in rows), total),
        "active_days": len({r["day"] for r in rows}),
        "last_activity": _last_activity(rows),
    }


def _summarize_platform(rows: List[Row], spec: QuerySpec) -> Dict[str, Any]:
    total = sum(r["generations"] for r in rows)
    return {
        "platform": spec.platform,
        "total_generations": total,
        "unique_users": len({r["user_id"] for r in rows}),
        "avg_post_length": _avg(sum(r["post_chars"] for r in rows), total),
        "avg_reply_length": _avg(sum(r["reply_chars"] for r in rows), total),
        "daily": _daily(rows, "generations"),
        "last_activity": _last_activity(rows),
    }


def _summarize_revenue(rows: List[Row], spec: QuerySpec) -> Dict[str, Any]:
    transactions = sum(r["transactions"] for r in rows)
    revenue = sum(r["revenue"] for r in rows)

    by_status: Dict[str, Dict[str, float]] = defaultdict(lambda: {"transactions": 0, "revenue": 0.0})
    by_provider: Dict[str, Dict[str, float]] = defaultdict(lambda: {"transactions": 0, "revenue": 0.0})
    monthly: Dict[str, Dict[str, float]] = defaultdict(lambda: {"transactions": 0, "revenue": 0.0})
    for row in rows:
        for bucket in (by_status[row["status"]], by_provider[row["provider"]], monthly[row["day"].strftime("%Y-%m")]):
            bucket["transactions"] += row["transactions"]
            bucket["revenue"] = round(bucket["revenue"] + row["revenue"], 2)

    return {
        "total_revenue": round(revenue, 2),
        "transactions": transactions,
        "avg_transaction_value": _avg(revenue, transactions),
        "unique_customers": len({r["user_id"] for r in rows}),
        "by_status": dict(sorted(by_status.items())),
        "by_provider": dict(sorted(by_provider.items())),
        "monthly": [{"month": m, **monthly[m]} for m in sorted(monthly)],
    }


def _summarize_blog(rows: List[Row], spec: QuerySpec) -> Dict[str, Any]:
    by_status: Counter = Counter()
    for row in rows:
        by_status[row["status"]] += row["posts"]
    return {
        "total_posts": sum(by_status.values()),
        "published_posts": by_status.get("published", 0),
        "draft_posts": by_status.get("draft", 0),
        "total_views": sum(r["views"] for r in rows),
        "avg_reading_time": _avg(
            sum(r["reading_time_total"] for r in rows),
            sum(r["reading_time_posts"] for r in rows),
        ),
        "daily": _daily(rows, "posts"),
    }


def _summarize_hashtag(rows: List[Row], spec: QuerySpec) -> Dict[str, Any]:
    impressions = sum(r["impressions"] for r in rows)
    engagements = sum(r["engagements"] for r in rows)
    clicks = sum(r["clicks"] for r in rows)

    per_hashtag: Dict[str, Dict[str, int]] = defaultdict(lambda: {"impressions": 0, "engagements": 0, "clicks": 0})
    by_platform: Counter = Counter()
    for row in rows:
        stats = per_hashtag[row["hashtag"]]
        for metric in ("impressions", "engagements", "clicks"):
            stats[metric] += row[metric]
        by_platform[row["platform"]] += row["engagements"]

    top = sorted(per_hashtag.items(), key=lambda item: (-item[1]["engagements"], item[0]))[:10]
    return {
        "samples": sum(r["samples"] for r in rows),
        "impressions": impressions,
        "engagements": engagements,
        "clicks": clicks,
        "engagement_rate": _avg(engagements * 100, impressions),
        "click_through_rate": _avg(clicks * 100, impressions),
        "top_hashtags": [
            {"hashtag": h, **s, "engagement_rate": _avg(s["engagements"] * 100, s["impressions"])}
            for h, s in top
        ],
        "engagements_by_platform": dict(sorted(by_platform.items())),
    }


_SUMMARIZERS: Dict[str, Callable[[List[Row], QuerySpec], Dict[str, Any]]] = {
    "dashboard": _summarize_dashboard,
    "user": _summarize_user,
    "platform": _summarize_platform,
    "revenue": _summarize_revenue,
    "blog": _summarize_blog,
    "hashtag": _summarize_hashtag,
}


def summarize(spec: QuerySpec, rows: List[Row]) -> Dict[str, Any]:
    """Build the analytics payload for spec from already-filtered rows."""
    return _SUMMARIZERS[spec.kind](rows, spec)


# =============================================================================
# SOURCES
# =============================================================================

class AggregateSource:
    """
    Interface for row providers.

    Implementations are opaque compute backends: they may be slow and may
    raise ComputeError; callers never see their internals.
    """

    async def view_rows(self, view: str) -> List[Row]:
        raise NotImplementedError

    async def live_rows(self, view: str, spec: QuerySpec) -> List[Row]:
        raise NotImplementedError


class SqlAggregateSource(AggregateSource):
    """
    SQLAlchemy-backed source over the replier_* tables.

    Queries are blocking, so they run in a worker thread with a session
    of their own.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory
        self._builders: Dict[str, Callable[[Session], Query]] = {
            DAILY_ANALYTICS: self._daily_analytics,
            REVENUE_ANALYTICS: self._revenue_analytics,
            BLOG_ANALYTICS: self._blog_analytics,
            HASHTAG_PERFORMANCE: self._hashtag_performance,
        }

    async def view_rows(self, view: str) -> List[Row]:
        return await asyncio.to_thread(self._fetch, view, None)

    async def live_rows(self, view: str, spec: QuerySpec) -> List[Row]:
        return await asyncio.to_thread(self._fetch, view, spec)

    def _fetch(self, view: str, spec: Optional[QuerySpec]) -> List[Row]:
        builder = self._builders.get(view)
        if builder is None:
            raise ComputeError(f"Unknown view: {view}")

        db = self._session_factory()
        try:
            query = builder(db)
            if spec is not None:
                query = self._apply_filters(query, view, spec)
            rows = [_normalize(row._asdict()) for row in query.all()]
        except SQLAlchemyError as e:
            logger.error(f"Aggregate query for {view} failed: {e}")
            raise ComputeError(f"Aggregate query for {view} failed: {e}") from e
        finally:
            db.close()

        logger.debug(f"Fetched {len(rows)} {view} rows ({'live' if spec else 'snapshot'})")
        return rows

    # =========================================================================
    # View definitions
    # =========================================================================

    @staticmethod
    def _daily_analytics(db: Session) -> Query:
        day = func.date(Generation.created_at)
        return db.query(
            day.label("day"),
            Generation.user_id.label("user_id"),
            Generation.source.label("platform"),
            func.count(Generation.id).label("generations"),
            func.sum(func.length(Generation.post)).label("post_chars"),
            func.sum(func.length(Generation.reply)).label("reply_chars"),
            func.max(Generation.created_at).label("last_activity"),
        ).group_by(day, Generation.user_id, Generation.source)

    @staticmethod
    def _revenue_analytics(db: Session) -> Query:
        day = func.date(Billing.created_at)
        return db.query(
            day.label("day"),
            Billing.user_id.label("user_id"),
            Billing.provider.label("provider"),
            Billing.status.label("status"),
            func.count(Billing.id).label("transactions"),
            func.sum(Billing.amount).label("revenue"),
        ).group_by(day, Billing.user_id, Billing.provider, Billing.status)

    @staticmethod
    def _blog_analytics(db: Session) -> Query:
        day = func.date(BlogPost.created_at)
        return db.query(
            day.label("day"),
            BlogPost.created_by.label("user_id"),
            BlogPost.status.label("status"),
            func.count(BlogPost.id).label("posts"),
            func.sum(func.coalesce(BlogPost.view_count, 0)).label("views"),
            func.sum(func.coalesce(BlogPost.reading_time, 0)).label("reading_time_total"),
            func.count(BlogPost.reading_time).label("reading_time_posts"),
        ).group_by(day, BlogPost.created_by, BlogPost.status)

    @staticmethod
    def _hashtag_performance(db: Session) -> Query:
        day = func.date(HashtagPerformance.created_at)
        return db.query(
            day.label("day"),
            HashtagPerformance.user_id.label("user_id"),
            HashtagPerformance.hashtag.label("hashtag"),
            HashtagPerformance.platform.label("platform"),
            func.count(HashtagPerformance.id).label("samples"),
            func.sum(func.coalesce(HashtagPerformance.impressions, 0)).label("impressions"),
            func.sum(func.coalesce(HashtagPerformance.engagements, 0)).label("engagements"),
            func.sum(func.coalesce(HashtagPerformance.clicks, 0)).label("clicks"),
        ).group_by(
            day,
            HashtagPerformance.user_id,
            HashtagPerformance.hashtag,
            HashtagPerformance.platform,
        )

    _COLUMNS = {
        DAILY_ANALYTICS: (Generation.user_id, Generation.created_at, Generation.source, None),
        REVENUE_ANALYTICS: (Billing.user_id, Billing.created_at, None, None),
        BLOG_ANALYTICS: (BlogPost.created_by, BlogPost.created_at, None, None),
        HASHTAG_PERFORMANCE: (
            HashtagPerformance.user_id,
            HashtagPerformance.created_at,
            HashtagPerformance.platform,
            HashtagPerformance.hashtag,
        ),
    }

    def _apply_filters(self, query: Query, view: str, spec: QuerySpec) -> Query:
        user_col, created_col, platform_col, hashtag_col = self._COLUMNS[view]

        if not spec.is_global:
            query = query.filter(user_col == spec.scope_id)
        if spec.date_from:
            query = query.filter(created_col >= datetime.combine(spec.date_from, time.min))
        if spec.date_to:
            query = query.filter(created_col < datetime.combine(spec.date_to + timedelta(days=1), time.min))
        if spec.platform and platform_col is not None:
            query = query.filter(platform_col == spec.platform)
        hashtag = getattr(spec, "hashtag", None)
        if hashtag and hashtag_col is not None:
            query = query.filter(hashtag_col == hashtag)
        return query
