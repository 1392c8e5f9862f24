"""
Cache Management API

Provides endpoints for cache monitoring and manual operations.

Endpoints:
- Health check for monitoring/alerting
- Statistics for dashboard insights
- Tag and event invalidation for writers and debugging
"""

import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from replivity.cache import CacheManager, CacheMonitor
from replivity.cache.invalidation import CacheEvent, CacheInvalidator
from replivity.utils.clock import utc_now

from .dependencies import get_cache, get_invalidator, get_monitor


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/cache", tags=["Cache Management"])


# =============================================================================
# REQUEST / RESPONSE MODELS
# =============================================================================

class CacheHealthResponse(BaseModel):
    """Cache health check response."""
    status: str = Field(..., description="healthy, degraded or unhealthy")
    remote_reachable: bool
    degraded: bool
    checks: Dict[str, bool]
    issues: List[Dict[str, Any]] = []
    timestamp: datetime = Field(default_factory=utc_now)


class InvalidationResponse(BaseModel):
    """Cache invalidation response."""
    keys_invalidated: int
    tags: List[str]
    duration_ms: float


class EventInvalidationRequest(BaseModel):
    """Writer-side notification of a data change."""
    event: CacheEvent
    scope_id: Optional[str] = Field(default=None, description="User id the change belongs to")
    kind: Optional[str] = Field(default=None, description="Query kind for manual_invalidate_kind")
    hashtag: Optional[str] = None
    include_global: bool = Field(default=False, description="Also purge admin-wide results")


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.get("/health", response_model=CacheHealthResponse)
async def cache_health_check(monitor: CacheMonitor = Depends(get_monitor)):
    """
    Check cache infrastructure health.

    Use this endpoint for monitoring and alerting systems. Degraded means
    the cache still serves from memory.
    """
    result = await monitor.health_check()
    metrics = result.metrics

    return CacheHealthResponse(
        status=result.status.value,
        remote_reachable=result.checks.get("connectivity", False),
        degraded=bool(metrics and metrics.degraded),
        checks=result.checks,
        issues=result.issues,
        timestamp=result.timestamp,
    )


@router.get("/stats")
async def get_cache_stats(cache: CacheManager = Depends(get_cache)):
    """
    Get current cache statistics per tier.

    Note: Stats are reset on application restart or via /stats/reset.
    """
    stats = cache.get_stats()
    stats["memory"].update(cache.latency_percentiles("memory"))
    stats["remote"].update(cache.latency_percentiles("remote"))
    return stats


@router.post("/stats/reset")
async def reset_cache_stats(cache: CacheManager = Depends(get_cache)):
    cache.reset_stats()
    return {"status": "reset"}


@router.get("/summary")
async def get_cache_summary(monitor: CacheMonitor = Depends(get_monitor)):
    """Health, performance trends and storage in one payload."""
    return await monitor.get_summary()


@router.post("/invalidate/tag/{tag}", response_model=InvalidationResponse)
async def invalidate_tag(tag: str, cache: CacheManager = Depends(get_cache)):
    """
    Invalidate every cached result carrying a tag.

    Tags look like scope:<user_id>, kind:<kind>, platform:<platform> or
    view:<view_name>.
    """
    start = time.perf_counter()
    count = await cache.invalidate_tag(tag)
    elapsed = (time.perf_counter() - start) * 1000

    return InvalidationResponse(keys_invalidated=count, tags=[tag], duration_ms=elapsed)


@router.post("/invalidate/event", response_model=InvalidationResponse)
async def invalidate_event(
    request: EventInvalidationRequest,
    invalidator: CacheInvalidator = Depends(get_invalidator),
):
    """
    Invalidate for a data-change event.

    CAUTION: manual_invalidate_all clears the entire cache and will
    temporarily degrade performance until caches are repopulated.
    """
    try:
        result = await invalidator.handle_event(
            request.event,
            scope_id=request.scope_id,
            kind=request.kind,
            hashtag=request.hashtag,
            include_global=request.include_global,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    return InvalidationResponse(
        keys_invalidated=result.keys_invalidated,
        tags=result.tags,
        duration_ms=result.duration_ms,
    )
