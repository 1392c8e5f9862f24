"""
Analytics API

Endpoints:
- POST /api/analytics/query            answer one analytics query spec
- GET  /api/analytics/views            materialized view status
- POST /api/analytics/views/{name}/refresh   refresh a view now
"""

import logging
from datetime import date
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from replivity.analytics import AnalyticsOptimizer, MaterializedViewManager, parse_spec
from replivity.cache.errors import ComputeError, InvalidSpec, RefreshError

from .dependencies import get_optimizer, get_views


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/analytics", tags=["Analytics"])


# =============================================================================
# REQUEST / RESPONSE MODELS
# =============================================================================

class AnalyticsQueryRequest(BaseModel):
    """
    One analytics query.

    scope_id is a user id, or "global" for admin-wide figures.
    """
    kind: Literal["dashboard", "user", "platform", "revenue", "blog", "hashtag"]
    scope_id: str = Field(..., min_length=1)
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    platform: Optional[str] = Field(default=None, description="Required for kind=platform")
    hashtag: Optional[str] = Field(default=None, description="Only for kind=hashtag")


class AnalyticsQueryResponse(BaseModel):
    kind: str
    scope_id: str
    source: str = Field(..., description="view or live")
    view: Optional[str] = None
    computed_at: str
    as_of: Optional[str] = None
    data: Dict[str, Any]


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("/query", response_model=AnalyticsQueryResponse)
async def query_analytics(
    request: AnalyticsQueryRequest,
    optimizer: AnalyticsOptimizer = Depends(get_optimizer),
):
    """
    Answer an analytics query through the cache.

    Returns 422 for a malformed spec and 503 when the aggregate could not
    be computed. Cache outages never fail a query.
    """
    try:
        spec = parse_spec(request.model_dump(exclude_none=True))
        result = await optimizer.query(spec)
    except InvalidSpec as e:
        raise HTTPException(status_code=422, detail=str(e))
    except ComputeError as e:
        logger.error(f"Analytics query failed ({request.kind}, {request.scope_id}): {e}")
        raise HTTPException(status_code=503, detail="Analytics temporarily unavailable")

    return AnalyticsQueryResponse(**result.to_dict())


@router.get("/views")
async def list_views(views: MaterializedViewManager = Depends(get_views)) -> List[Dict[str, Any]]:
    """Status of every materialized view."""
    return views.statuses()


@router.post("/views/{name}/refresh")
async def refresh_view(name: str, views: MaterializedViewManager = Depends(get_views)):
    """Refresh a view now (or wait for the refresh already running)."""
    try:
        refreshed = await views.refresh(name)
        status = views.get_view(name).to_dict()
    except RefreshError as e:
        raise HTTPException(status_code=404, detail=str(e))

    if not refreshed:
        raise HTTPException(status_code=503, detail=status["last_error"])
    return status
