# ============================================================================
# Tradegate Risk Engine
# Database Module - SQLAlchemy Session Management & Schema
# ============================================================================

from app.database.session import (
    get_db,
    get_engine,
    build_engine,
    get_database_url,
    check_database_connection,
    SessionLocal,
)
from app.database.schema import metadata, create_schema

__all__ = [
    "get_db",
    "get_engine",
    "build_engine",
    "get_database_url",
    "check_database_connection",
    "SessionLocal",
    "metadata",
    "create_schema",
]
