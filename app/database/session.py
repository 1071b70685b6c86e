"""
============================================================================
Campus Gate Pass
Database Session - SQLAlchemy Engine & Session Management
============================================================================

Reliability Level: L6 Critical
Input Constraints: PostgreSQL connection configured via GATEPASS_DB_* variables
Side Effects: Database connections

The stores run against PostgreSQL when GATEPASS_DATABASE_ENABLED is true;
otherwise the application wires in-memory stores and this engine is never
connected.

============================================================================
"""

import os
from typing import Generator

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import sessionmaker, scoped_session, Session
from sqlalchemy.pool import QueuePool
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


# ============================================================================
# DATABASE CONFIGURATION
# ============================================================================

def get_database_url() -> str:
    """
    PostgreSQL connection URL.

    GATEPASS_DATABASE_URL wins when set; otherwise the URL is assembled from
    GATEPASS_DB_HOST, GATEPASS_DB_PORT, GATEPASS_DB_NAME, GATEPASS_DB_USER
    and GATEPASS_DB_PASSWORD.
    """
    url = os.getenv("GATEPASS_DATABASE_URL")
    if url:
        return url

    host = os.getenv("GATEPASS_DB_HOST", "localhost")
    port = os.getenv("GATEPASS_DB_PORT", "5432")
    name = os.getenv("GATEPASS_DB_NAME", "gatepass")
    user = os.getenv("GATEPASS_DB_USER", "gatepass_app")
    password = os.getenv("GATEPASS_DB_PASSWORD", "")

    return f"postgresql://{user}:{password}@{host}:{port}/{name}"


def is_database_enabled() -> bool:
    return os.getenv("GATEPASS_DATABASE_ENABLED", "false").lower() in ("true", "1", "yes")


# ============================================================================
# SQLALCHEMY ENGINE
# ============================================================================

DATABASE_URL = get_database_url()

engine = create_engine(
    DATABASE_URL,
    poolclass=QueuePool,
    pool_size=10,
    max_overflow=20,
    pool_timeout=30,
    pool_recycle=1800,
    pool_pre_ping=True,
    echo=os.getenv("GATEPASS_DB_ECHO", "false").lower() == "true",
    execution_options={
        "isolation_level": "READ COMMITTED"
    }
)


# ============================================================================
# SESSION FACTORY
# ============================================================================

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine
)

# Thread-local sessions for the long-lived stores (request threads and the
# expiry worker thread each get their own)
ScopedSession = scoped_session(SessionLocal)


# ============================================================================
# DEPENDENCY INJECTION
# ============================================================================

def get_db() -> Generator[Session, None, None]:
    """
    FastAPI dependency for database session injection.

    Yields:
        Session: SQLAlchemy database session, closed after the request
    """
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


# ============================================================================
# CONNECTION EVENT LISTENERS
# ============================================================================

@event.listens_for(engine, "connect")
def set_search_path(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("SET search_path TO public")
    cursor.close()


@event.listens_for(engine, "connect")
def set_timezone(dbapi_connection, connection_record):
    """All timestamps are stored and compared in UTC."""
    cursor = dbapi_connection.cursor()
    cursor.execute("SET timezone TO 'UTC'")
    cursor.close()


# ============================================================================
# HEALTH CHECK
# ============================================================================

def check_database_connection() -> bool:
    """
    Verify database connectivity.

    Raises:
        ConnectionError: If the database cannot be reached
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        raise ConnectionError(f"Database connection failed: {e}") from e


# ============================================================================
# END OF DATABASE SESSION MODULE
# ============================================================================
