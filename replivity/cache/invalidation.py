"""
Cache Invalidation Service

Event-driven cache invalidation with minimal scope.
Principle: Invalidate as narrowly as possible.

Writers report what changed; the invalidator maps the event to tags:
- GENERATION_CREATED: every cached result for that user (scope:<user>)
  and the admin-wide results that aggregate its rows (scope:global)
- BILLING_*, BLOG_POST_*, USER_DELETED: same as generations
- HASHTAG_PERFORMANCE_RECORDED: as above, plus hashtag:<tag>
- USER_UPDATED: the user's results only; include_global widens it
- MANUAL_INVALIDATE_KIND: every result of one query kind
- MANUAL_INVALIDATE_ALL: everything
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from replivity.analytics.keys import hashtag_tag, kind_tag, scope_tag
from replivity.analytics.specs import GLOBAL_SCOPE
from replivity.cache.manager import CacheManager


logger = logging.getLogger(__name__)


class CacheEvent(Enum):
    """Events that trigger cache invalidation."""

    # Generation lifecycle
    GENERATION_CREATED = "generation_created"
    GENERATION_DELETED = "generation_deleted"

    # Billing
    BILLING_CREATED = "billing_created"
    BILLING_UPDATED = "billing_updated"

    # Blog
    BLOG_POST_CREATED = "blog_post_created"
    BLOG_POST_UPDATED = "blog_post_updated"
    BLOG_POST_DELETED = "blog_post_deleted"

    # Hashtags
    HASHTAG_PERFORMANCE_RECORDED = "hashtag_performance_recorded"

    # Users
    USER_UPDATED = "user_updated"
    USER_DELETED = "user_deleted"

    # Manual invalidation
    MANUAL_INVALIDATE_SCOPE = "manual_invalidate_scope"
    MANUAL_INVALIDATE_KIND = "manual_invalidate_kind"
    MANUAL_INVALIDATE_ALL = "manual_invalidate_all"


# Events carrying the writing user's id
_USER_SCOPED_EVENTS = {
    CacheEvent.GENERATION_CREATED,
    CacheEvent.GENERATION_DELETED,
    CacheEvent.BILLING_CREATED,
    CacheEvent.BILLING_UPDATED,
    CacheEvent.BLOG_POST_CREATED,
    CacheEvent.BLOG_POST_UPDATED,
    CacheEvent.BLOG_POST_DELETED,
    CacheEvent.HASHTAG_PERFORMANCE_RECORDED,
    CacheEvent.USER_UPDATED,
    CacheEvent.USER_DELETED,
}

# Events that change rows the global aggregates are built from
_DATA_EVENTS = _USER_SCOPED_EVENTS - {CacheEvent.USER_UPDATED}


@dataclass
class InvalidationResult:
    """Result of a cache invalidation operation."""
    event: CacheEvent
    keys_invalidated: int
    tags: List[str]
    duration_ms: float

    def to_dict(self):
        return {
            "event": self.event.value,
            "keys_invalidated": self.keys_invalidated,
            "tags": self.tags,
            "duration_ms": round(self.duration_ms, 2),
        }


class CacheInvalidator:
    """
    Handles cache invalidation based on events.

    Each event type has a specific invalidation scope.
    """

    def __init__(self, cache: CacheManager):
        self._cache = cache

    @staticmethod
    def tags_for_event(
        event: CacheEvent,
        scope_id: Optional[str] = None,
        kind: Optional[str] = None,
        hashtag: Optional[str] = None,
        include_global: bool = False,
    ) -> List[str]:
        """
        Tags an event invalidates.

        Raises:
            ValueError: the event needs an identifier that was not given
        """
        tags: List[str] = []

        if event in _USER_SCOPED_EVENTS:
            if not scope_id:
                raise ValueError(f"{event.value} requires a user/scope id")
            tags.append(scope_tag(scope_id))
            if event == CacheEvent.HASHTAG_PERFORMANCE_RECORDED and hashtag:
                tags.append(hashtag_tag(hashtag.lstrip("#").lower()))

        elif event == CacheEvent.MANUAL_INVALIDATE_SCOPE:
            if not scope_id:
                raise ValueError("manual_invalidate_scope requires a scope id")
            tags.append(scope_tag(scope_id))

        elif event == CacheEvent.MANUAL_INVALIDATE_KIND:
            if not kind:
                raise ValueError("manual_invalidate_kind requires a kind")
            tags.append(kind_tag(kind))

        if event in _DATA_EVENTS or (include_global and event != CacheEvent.MANUAL_INVALIDATE_ALL):
            tags.append(scope_tag(GLOBAL_SCOPE))

        return sorted(set(tags))

    async def handle_event(
        self,
        event: CacheEvent,
        scope_id: Optional[str] = None,
        kind: Optional[str] = None,
        hashtag: Optional[str] = None,
        include_global: bool = False,
    ) -> InvalidationResult:
        """
        Handle cache invalidation for an event.

        Raises:
            ValueError: missing identifier for the event
        """
        start_time = time.perf_counter()
        tags = self.tags_for_event(event, scope_id, kind, hashtag, include_global)

        logger.info(f"Cache invalidation event: {event.value}, scope={scope_id}, tags={tags}")

        if event == CacheEvent.MANUAL_INVALIDATE_ALL:
            # Nuclear option - use sparingly
            keys_invalidated = await self._cache.clear()
        else:
            keys_invalidated = await self._cache.invalidate_tags(tags)

        duration = (time.perf_counter() - start_time) * 1000
        result = InvalidationResult(
            event=event,
            keys_invalidated=keys_invalidated,
            tags=tags,
            duration_ms=duration,
        )

        logger.info(f"Invalidation complete: {keys_invalidated} keys, duration: {duration:.2f}ms")
        return result
