# ============================================================================
# Campus Gate Pass
# Database Module - SQLAlchemy Session Management
# ============================================================================

from app.database.session import (
    get_db,
    engine,
    SessionLocal,
    ScopedSession,
    check_database_connection,
    is_database_enabled,
)

__all__ = [
    "get_db",
    "engine",
    "SessionLocal",
    "ScopedSession",
    "check_database_connection",
    "is_database_enabled",
]
