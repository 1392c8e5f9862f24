"""
Key Codec

Maps an analytics query spec to a cache key and its structural tags.

Key format:
    {namespace}:analytics:{kind}:{scope_id}:{digest}

The digest covers the canonical (sorted-key JSON) form of every spec
field, so equal specs always produce equal keys and any field change
produces a different key.

Tags:
    scope:{scope_id}      every entry for one tenant (or "global")
    kind:{kind}           every entry of one query kind
    platform:{platform}   when the spec filters by platform
    hashtag:{hashtag}     hashtag queries for one hashtag
"""

import hashlib
import json
from dataclasses import dataclass
from typing import FrozenSet, List

from replivity.analytics.specs import (
    BlogSpec,
    DashboardSpec,
    HashtagPerformanceSpec,
    PlatformAnalyticsSpec,
    QuerySpec,
    RevenueSpec,
    UserAnalyticsSpec,
)
from replivity.cache.errors import InvalidSpec


@dataclass(frozen=True)
class EncodedQuery:
    key: str
    tags: FrozenSet[str]


def scope_tag(scope_id: str) -> str:
    return f"scope:{scope_id}"


def kind_tag(kind: str) -> str:
    return f"kind:{kind}"


def platform_tag(platform: str) -> str:
    return f"platform:{platform}"


def view_tag(view_name: str) -> str:
    return f"view:{view_name}"


def hashtag_tag(hashtag: str) -> str:
    return f"hashtag:{hashtag}"


class KeyCodec:
    """Pure, deterministic spec -> (key, tags) encoder."""

    def __init__(self, namespace: str = "replivity:cache"):
        self.namespace = namespace

    def encode(self, spec: QuerySpec) -> EncodedQuery:
        """
        Encode a spec.

        Raises:
            InvalidSpec: unknown spec type or malformed fields
        """
        tags = self._tags(spec)
        spec.validate()

        canonical = json.dumps(spec.canonical(), sort_keys=True, separators=(",", ":"))
        digest = hashlib.md5(canonical.encode()).hexdigest()[:16]
        key = f"{self.namespace}:analytics:{spec.kind}:{spec.scope_id}:{digest}"
        return EncodedQuery(key=key, tags=frozenset(tags))

    def _tags(self, spec: QuerySpec) -> List[str]:
        if isinstance(spec, HashtagPerformanceSpec):
            tags = self._common_tags(spec)
            if spec.hashtag:
                tags.append(hashtag_tag(spec.hashtag))
            return tags
        if isinstance(spec, (DashboardSpec, UserAnalyticsSpec, PlatformAnalyticsSpec, RevenueSpec, BlogSpec)):
            return self._common_tags(spec)
        raise InvalidSpec(f"Unsupported query spec: {type(spec).__name__}", field="kind")

    @staticmethod
    def _common_tags(spec: QuerySpec) -> List[str]:
        tags = [scope_tag(spec.scope_id), kind_tag(spec.kind)]
        if spec.platform:
            tags.append(platform_tag(spec.platform))
        return tags
