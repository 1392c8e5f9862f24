#!/usr/bin/env python3
"""
Cache Warmup Script

Populate the shared cache before traffic arrives (after a deploy or a
Redis flush).

Usage:
    python scripts/warmup_cache.py --common
    python scripts/warmup_cache.py --scope 42 --scope 57
    python scripts/warmup_cache.py --active 20 --days 3
"""

import asyncio
import argparse
import logging
import sys
from pathlib import Path
from typing import List

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv

from replivity.analytics import (
    AnalyticsOptimizer,
    MaterializedViewManager,
    SqlAggregateSource,
    default_view_definitions,
)
from replivity.cache import CacheManager, get_cache_config
from replivity.cache.warming import CacheWarmer
from replivity.database import get_session_factory
from replivity.utils import get_settings


def setup_logging(verbose: bool = False):
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(),
        ]
    )


async def run_warmup(scopes: List[str], common: bool, active: int, days: int, refresh_views: bool) -> int:
    """Warm the requested scopes. Returns the number of failed queries."""
    settings = get_settings()

    cache = CacheManager(get_cache_config())
    await cache.start()

    source = SqlAggregateSource(get_session_factory())
    views = MaterializedViewManager(cache)
    for definition in default_view_definitions(source, settings.view_refresh_intervals):
        views.register(definition)

    warmer = CacheWarmer(
        AnalyticsOptimizer(cache, views, source),
        session_factory=get_session_factory(),
    )

    results = {}
    try:
        if refresh_views:
            # Answer from snapshots instead of one live query per spec
            refreshed = await views.refresh_all()
            print(f"Views refreshed: {sum(refreshed.values())}/{len(refreshed)}")

        if common:
            results.update(await warmer.warm_common())
        for scope in scopes:
            results.update(await warmer.warm_scope(scope))
        if active:
            for per_user in (await warmer.warm_active_users(days=days, limit=active)).values():
                results.update(per_user)
    finally:
        await views.stop()
        await cache.stop()

    failed = [label for label, ok in results.items() if not ok]
    print(f"\n{'='*60}")
    print(f"Warmed {len(results) - len(failed)}/{len(results)} queries")
    for label in failed:
        print(f"  FAILED: {label}")
    print(f"{'='*60}\n")
    return len(failed)


def main():
    parser = argparse.ArgumentParser(
        description="Warm the Replivity analytics cache"
    )
    parser.add_argument(
        "--scope",
        action="append",
        default=[],
        help="User id to warm (repeatable)",
    )
    parser.add_argument(
        "--common",
        action="store_true",
        help="Warm the admin-wide (global) reports",
    )
    parser.add_argument(
        "--active",
        type=int,
        default=0,
        help="Warm the N most active users",
    )
    parser.add_argument(
        "--days",
        type=int,
        default=7,
        help="Activity window for --active (default: 7)",
    )
    parser.add_argument(
        "--no-views",
        action="store_true",
        help="Skip the initial materialized view refresh",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Verbose logging",
    )

    args = parser.parse_args()

    if not (args.scope or args.common or args.active):
        parser.error("nothing to warm: pass --scope, --common or --active")

    load_dotenv()
    setup_logging(args.verbose)

    failed = asyncio.run(run_warmup(
        scopes=args.scope,
        common=args.common,
        active=args.active,
        days=args.days,
        refresh_views=not args.no_views,
    ))
    sys.exit(1 if failed else 0)


if __name__ == "__main__":
    main()
