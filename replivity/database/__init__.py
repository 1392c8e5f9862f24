"""
Replivity Database Layer

Usage:
    from replivity.database import init_db, get_db_context, Generation

    init_db()
    with get_db_context() as db:
        db.add(Generation(user_id="42", source="twitter", post="...", reply="..."))
"""

from .models import (
    Base,
    User,
    Generation,
    Billing,
    BlogPost,
    HashtagPerformance,
)
from .session import (
    get_database_url,
    create_db_engine,
    get_engine,
    get_session_factory,
    get_db_context,
    init_db,
    check_db_connection,
)

__all__ = [
    "Base",
    "User",
    "Generation",
    "Billing",
    "BlogPost",
    "HashtagPerformance",
    "get_database_url",
    "create_db_engine",
    "get_engine",
    "get_session_factory",
    "get_db_context",
    "init_db",
    "check_db_connection",
]
