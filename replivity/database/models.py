"""
SQLAlchemy Models for the Replivity source-of-truth tables.

Only the columns the analytics engine aggregates over are mapped. The
tables are owned by the application; this package reads them.
"""

from uuid import uuid4

from sqlalchemy import (
    Column, String, Integer, DateTime, Text, Numeric,
    ForeignKey, Index,
)
from sqlalchemy.orm import declarative_base, relationship

from replivity.utils.clock import utc_now

Base = declarative_base()


def _uuid() -> str:
    return str(uuid4())


# =============================================================================
# CORE TABLES
# =============================================================================

class User(Base):
    """Application users (tenants of the analytics scope)"""
    __tablename__ = "replier_user"

    id = Column(String(255), primary_key=True, default=_uuid)
    name = Column(String(255))
    email = Column(String(255), unique=True)
    role = Column(String(50), default="user")

    created_at = Column(DateTime, default=utc_now)

    generations = relationship("Generation", back_populates="user", cascade="all, delete-orphan")


class Generation(Base):
    """One generated reply. Drives usage dashboards."""
    __tablename__ = "replier_generation"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(255), ForeignKey("replier_user.id"), nullable=False)

    source = Column(String(50), nullable=False)  # platform: twitter, linkedin, ...
    post = Column(Text, nullable=False)
    reply = Column(Text, nullable=False)

    created_at = Column(DateTime, default=utc_now)

    user = relationship("User", back_populates="generations")

    __table_args__ = (
        Index("generation_user_id_idx", "user_id"),
        Index("generation_source_idx", "source"),
    )


class Billing(Base):
    """Payment / subscription records"""
    __tablename__ = "replier_billing"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(255), ForeignKey("replier_user.id"), nullable=False)

    status = Column(String(20), nullable=False, default="pending")
    provider = Column(String(50), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")

    created_at = Column(DateTime, default=utc_now)

    __table_args__ = (
        Index("billing_user_id_idx", "user_id"),
        Index("billing_status_idx", "status"),
    )


class BlogPost(Base):
    """Blog posts authored by users"""
    __tablename__ = "replier_blog_post"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(500), nullable=False)
    slug = Column(String(500), nullable=False, unique=True)
    status = Column(String(20), nullable=False, default="draft")  # draft, published, archived

    reading_time = Column(Integer)
    view_count = Column(Integer, default=0)

    created_by = Column(String(255), ForeignKey("replier_user.id"), nullable=False)
    created_at = Column(DateTime, default=utc_now)
    published_at = Column(DateTime)

    __table_args__ = (
        Index("blog_post_created_by_idx", "created_by"),
        Index("blog_post_status_idx", "status"),
    )


class HashtagPerformance(Base):
    """Engagement samples per hashtag and platform"""
    __tablename__ = "hashtag_performance"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(255), ForeignKey("replier_user.id"), nullable=False)
    generation_id = Column(String(36), ForeignKey("replier_generation.id", ondelete="CASCADE"))

    hashtag = Column(String(255), nullable=False)
    platform = Column(String(50), nullable=False)
    impressions = Column(Integer, default=0)
    engagements = Column(Integer, default=0)
    clicks = Column(Integer, default=0)

    created_at = Column(DateTime, default=utc_now)

    __table_args__ = (
        Index("hashtag_performance_user_id_idx", "user_id"),
        Index("hashtag_performance_hashtag_idx", "hashtag"),
        Index("hashtag_performance_created_at_idx", "created_at"),
    )
