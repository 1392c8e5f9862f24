"""
Replivity Analytics Service

FastAPI application wiring the cache, materialized views and analytics
optimizer together:
1. Builds one CacheManager and starts its probe/sweep loop
2. Registers the materialized views and starts their scheduler
3. Serves analytics queries and cache management endpoints
"""

import logging
import sys
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI

# Cache and database config read os.environ directly
load_dotenv()

from replivity import __version__
from replivity.analytics import (
    AnalyticsOptimizer,
    MaterializedViewManager,
    SqlAggregateSource,
    default_view_definitions,
)
from replivity.cache import CacheManager, CacheMonitor, get_cache_config
from replivity.cache.invalidation import CacheInvalidator
from replivity.cache.warming import CacheWarmer
from replivity.database import check_db_connection, get_session_factory, init_db
from replivity.utils import get_settings

from .analytics import router as analytics_router
from .cache import router as cache_router

# Configure logging to stdout
logging.basicConfig(
    level=get_settings().LOG_LEVEL.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stdout,  # Explicitly use stdout
    force=True,  # Override any existing config
)
logger = logging.getLogger(__name__)

# Quiet down chatty loggers
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


# ============================================================================
# LIFESPAN - Build and start components
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()

    logger.info("Initializing database...")
    try:
        init_db()
        if not check_db_connection():
            logger.warning("Database connection check failed - continuing anyway")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")

    cache = CacheManager(get_cache_config())
    await cache.start()

    source = SqlAggregateSource(get_session_factory())
    views = MaterializedViewManager(
        cache,
        max_concurrent_refreshes=settings.MAX_CONCURRENT_VIEW_REFRESHES,
    )
    for definition in default_view_definitions(source, settings.view_refresh_intervals):
        views.register(definition)
    await views.start()

    optimizer = AnalyticsOptimizer(cache, views, source)
    warmer = CacheWarmer(optimizer, session_factory=get_session_factory())

    app.state.cache = cache
    app.state.monitor = CacheMonitor(cache)
    app.state.invalidator = CacheInvalidator(cache)
    app.state.views = views
    app.state.optimizer = optimizer
    app.state.warmer = warmer

    if settings.WARM_CACHE_ON_STARTUP:
        await warmer.warm_common()
    if settings.BACKGROUND_WARMING:
        await warmer.start_background_warmer()

    logger.info(f"Replivity analytics service started ({settings.ENVIRONMENT})")
    try:
        yield
    finally:
        await warmer.stop_background_warmer()
        await views.stop()
        await cache.stop()
        logger.info("Replivity analytics service stopped")


# Create FastAPI app
app = FastAPI(
    title="Replivity Analytics",
    description="Tiered cache and analytics aggregation for Replivity dashboards",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(cache_router)
app.include_router(analytics_router)


@app.get("/")
async def root():
    return {"service": "replivity-analytics", "version": __version__, "status": "running"}


@app.get("/health")
async def health():
    """Liveness probe. Cache health lives at /api/cache/health."""
    return {"status": "ok"}
