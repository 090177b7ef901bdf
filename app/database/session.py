"""
============================================================================
Tradegate Risk Engine
Database Session - SQLAlchemy Engine & Session Management
============================================================================

Reliability Level: L6 Critical
Input Constraints: DB_URL, or DB_HOST / DB_PORT / DB_NAME / DB_USER / DB_PASSWORD
Side Effects: Database connections

MANDATE:
- The engine is built on first use, never at import time
- Subject status and finding resolution change only through
  single-row conditional updates (see services/subject_store.py)
- All timestamps are UTC

============================================================================
"""

import os
from typing import Generator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


# ============================================================================
# DATABASE CONFIGURATION
# ============================================================================

def get_database_url() -> str:
    """
    Resolve the database URL from the environment.

    DB_URL wins when set (e.g. sqlite:///tradegate.db for a local run).
    Otherwise a PostgreSQL URL is assembled from:
        DB_HOST: Database host (default: localhost)
        DB_PORT: Database port (default: 5432)
        DB_NAME: Database name (default: tradegate)
        DB_USER: Database user (default: tradegate_app)
        DB_PASSWORD: Database password
    """
    url = os.getenv("DB_URL")
    if url:
        return url

    host = os.getenv("DB_HOST", "localhost")
    port = os.getenv("DB_PORT", "5432")
    name = os.getenv("DB_NAME", "tradegate")
    user = os.getenv("DB_USER", "tradegate_app")
    password = os.getenv("DB_PASSWORD", "")

    return f"postgresql://{user}:{password}@{host}:{port}/{name}"


# ============================================================================
# SQLALCHEMY ENGINE
# ============================================================================

def build_engine(url: Optional[str] = None) -> Engine:
    """
    Create an engine for the given URL.

    PostgreSQL gets a pooled engine with UTC sessions. Anything else
    (sqlite for local runs) gets SQLAlchemy defaults.
    """
    url = url or get_database_url()
    echo = os.getenv("DB_ECHO", "false").lower() == "true"

    if not url.startswith("postgresql"):
        return create_engine(url, echo=echo)

    pg_engine = create_engine(
        url,
        poolclass=QueuePool,
        pool_size=5,
        max_overflow=10,
        pool_timeout=30,
        pool_recycle=1800,
        pool_pre_ping=True,
        echo=echo,
        execution_options={
            "isolation_level": "READ COMMITTED"
        }
    )

    @event.listens_for(pg_engine, "connect")
    def set_timezone(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("SET timezone TO 'UTC'")
        cursor.close()

    return pg_engine


_engine: Optional[Engine] = None


def get_engine() -> Engine:
    """Process-wide engine, built on first access."""
    global _engine
    if _engine is None:
        _engine = build_engine()
        SessionLocal.configure(bind=_engine)
    return _engine


# ============================================================================
# SESSION FACTORY
# ============================================================================

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
)


def get_db() -> Generator[Session, None, None]:
    """
    Yield a session bound to the process engine.

    Rolls back on exception and always closes.
    """
    get_engine()
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


# ============================================================================
# HEALTH CHECK
# ============================================================================

def check_database_connection(engine: Optional[Engine] = None) -> bool:
    """
    Verify database connectivity.

    Raises:
        ConnectionError: If the database cannot be reached
    """
    engine = engine or get_engine()
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        raise ConnectionError(f"Database connection failed: {e}") from e


# ============================================================================
# END OF DATABASE SESSION MODULE
# ============================================================================
