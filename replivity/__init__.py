"""
Replivity Analytics Engine

Tiered cache and analytics aggregation core:
- cache: memory + Redis tiers, tag invalidation, single-flight, health
- analytics: query specs, key codec, materialized views, optimizer facade
- database: SQLAlchemy models for the source-of-truth tables
"""

__version__ = "0.4.0"
