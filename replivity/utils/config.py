"""
Configuration Management

Uses Pydantic Settings for environment-based configuration.
Loads from .env file automatically.

Cache tuning (TTLs, tier sizes, Redis deadlines) lives in
replivity.cache.config; this module covers the service around it.
"""

from typing import Dict, Optional
from functools import lru_cache
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Application Settings
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Database (SQLite fallback when unset)
    DATABASE_URL: Optional[str] = None

    # Materialized view refresh intervals (seconds)
    VIEW_REFRESH_DAILY_ANALYTICS: int = 300
    VIEW_REFRESH_REVENUE_ANALYTICS: int = 1800
    VIEW_REFRESH_BLOG_ANALYTICS: int = 900
    VIEW_REFRESH_HASHTAG_PERFORMANCE: int = 600
    MAX_CONCURRENT_VIEW_REFRESHES: int = 4

    # Warming
    WARM_CACHE_ON_STARTUP: bool = False
    BACKGROUND_WARMING: bool = False

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra fields in .env file
        case_sensitive = False  # Allow both UPPERCASE and lowercase

    @property
    def view_refresh_intervals(self) -> Dict[str, int]:
        return {
            "daily_analytics": self.VIEW_REFRESH_DAILY_ANALYTICS,
            "revenue_analytics": self.VIEW_REFRESH_REVENUE_ANALYTICS,
            "blog_analytics": self.VIEW_REFRESH_BLOG_ANALYTICS,
            "hashtag_performance": self.VIEW_REFRESH_HASHTAG_PERFORMANCE,
        }


@lru_cache
def get_settings() -> Settings:
    """Get or create cached settings instance."""
    return Settings()
