"""
Analytics Query Specs

An explicit tagged union of query kinds. Specs are immutable and used
purely to derive a cache key, invalidation tags, and row filters.

Kinds:
- dashboard: usage overview for a user (or "global" for admins)
- user: per-user generation analytics
- platform: analytics for one platform (requires platform)
- revenue: billing/revenue report
- blog: blog post and engagement analytics
- hashtag: hashtag performance samples (optionally one hashtag)
"""

from dataclasses import dataclass, fields
from datetime import date, datetime
from typing import Any, ClassVar, Dict, Mapping, Optional, Type, Union

from replivity.cache.errors import InvalidSpec


# Admin-wide scope: disables the per-user filter
GLOBAL_SCOPE = "global"


@dataclass(frozen=True)
class QuerySpec:
    """Fields common to every analytics query."""
    scope_id: str
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    platform: Optional[str] = None

    kind: ClassVar[str] = ""

    @property
    def is_global(self) -> bool:
        return self.scope_id == GLOBAL_SCOPE

    def validate(self) -> None:
        """Raise InvalidSpec if the spec cannot be answered."""
        if not isinstance(self.scope_id, str) or not self.scope_id.strip():
            raise InvalidSpec(f"{self.kind} query requires a scope_id", field="scope_id")
        for name in ("date_from", "date_to"):
            value = getattr(self, name)
            if value is not None and not isinstance(value, date):
                raise InvalidSpec(f"{name} must be a date", field=name)
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise InvalidSpec("date_from is after date_to", field="date_from")

    def canonical(self) -> Dict[str, Any]:
        """Field values in a JSON-safe form, including the kind."""
        data: Dict[str, Any] = {"kind": self.kind}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, date):
                value = value.isoformat()
            data[f.name] = value
        return data


@dataclass(frozen=True)
class DashboardSpec(QuerySpec):
    kind: ClassVar[str] = "dashboard"


@dataclass(frozen=True)
class UserAnalyticsSpec(QuerySpec):
    kind: ClassVar[str] = "user"


@dataclass(frozen=True)
class PlatformAnalyticsSpec(QuerySpec):
    kind: ClassVar[str] = "platform"

    def validate(self) -> None:
        super().validate()
        if not self.platform:
            raise InvalidSpec("platform query requires a platform", field="platform")


@dataclass(frozen=True)
class RevenueSpec(QuerySpec):
    kind: ClassVar[str] = "revenue"


@dataclass(frozen=True)
class BlogSpec(QuerySpec):
    kind: ClassVar[str] = "blog"


@dataclass(frozen=True)
class HashtagPerformanceSpec(QuerySpec):
    hashtag: Optional[str] = None

    kind: ClassVar[str] = "hashtag"


AnalyticsQuerySpec = Union[
    DashboardSpec,
    UserAnalyticsSpec,
    PlatformAnalyticsSpec,
    RevenueSpec,
    BlogSpec,
    HashtagPerformanceSpec,
]

SPEC_TYPES: Dict[str, Type[QuerySpec]] = {
    cls.kind: cls
    for cls in (
        DashboardSpec,
        UserAnalyticsSpec,
        PlatformAnalyticsSpec,
        RevenueSpec,
        BlogSpec,
        HashtagPerformanceSpec,
    )
}


def _parse_date(value: Any, name: str) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value[:10])
        except ValueError as e:
            raise InvalidSpec(f"Invalid {name}: {value!r}", field=name) from e
    raise InvalidSpec(f"Invalid {name}: {value!r}", field=name)


def parse_spec(data: Mapping[str, Any]) -> AnalyticsQuerySpec:
    """
    Build a spec from a request payload.

    Accepts camelCase (scopeId, dateFrom) or snake_case keys.
    """
    kind = data.get("kind")
    spec_type = SPEC_TYPES.get(kind)
    if spec_type is None:
        raise InvalidSpec(f"Unknown analytics kind: {kind!r}", field="kind")

    scope = data.get("scope_id", data.get("scopeId"))
    kwargs: Dict[str, Any] = {
        "scope_id": str(scope) if scope is not None else "",
        "date_from": _parse_date(data.get("date_from", data.get("dateFrom")), "date_from"),
        "date_to": _parse_date(data.get("date_to", data.get("dateTo")), "date_to"),
        "platform": data.get("platform") or None,
    }
    if spec_type is HashtagPerformanceSpec:
        hashtag = data.get("hashtag")
        kwargs["hashtag"] = str(hashtag).lstrip("#").lower() if hashtag else None

    spec = spec_type(**kwargs)
    spec.validate()
    return spec
