"""
Request dependencies.

The service components are built once in the application lifespan and
stored on app.state; routes reach them through these dependencies.
"""

from fastapi import HTTPException, Request

from replivity.analytics import AnalyticsOptimizer, MaterializedViewManager
from replivity.cache import CacheManager, CacheMonitor
from replivity.cache.invalidation import CacheInvalidator


def _component(request: Request, name: str):
    component = getattr(request.app.state, name, None)
    if component is None:
        raise HTTPException(status_code=503, detail=f"Service not ready: {name}")
    return component


def get_cache(request: Request) -> CacheManager:
    return _component(request, "cache")


def get_monitor(request: Request) -> CacheMonitor:
    return _component(request, "monitor")


def get_invalidator(request: Request) -> CacheInvalidator:
    return _component(request, "invalidator")


def get_views(request: Request) -> MaterializedViewManager:
    return _component(request, "views")


def get_optimizer(request: Request) -> AnalyticsOptimizer:
    return _component(request, "optimizer")
