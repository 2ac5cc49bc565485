"""Database session and base configuration.

WHAT:
    Provides the SQLAlchemy engine and session factory used by the sync
    engine, plus a FastAPI dependency and a context manager for workers.

WHY:
    - Report jobs are awaited on the event loop, but each tenant run owns a
      single sync Session that is only touched from that loop's thread.
    - Workers, the backfill CLI and tests open sessions without FastAPI.

USAGE:
    from adsync.database import SessionLocal, get_db, get_sync_session

    with get_sync_session() as db:
        results = await sync_meta_insights(db, request)

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/session_basics.html
    - adsync/services/meta_sync_service.py (main consumer)
"""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from .deps import get_settings


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

def _get_database_url() -> str:
    """Get DATABASE_URL from settings (environment or backend/.env).

    Returns:
        SQLAlchemy connection string

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    database_url = get_settings().DATABASE_URL
    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. "
            "Ensure backend/.env is loaded or env var is exported."
        )

    # Heroku-style URLs are not accepted by SQLAlchemy 2.x
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    return database_url


DATABASE_URL = _get_database_url()


# =============================================================================
# ENGINE
# =============================================================================

# NOTE: SQLite engines (used in tests/dev) do not support pool_size/max_overflow.
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
    )
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,      # Recycle connections every hour
        pool_pre_ping=True,     # Validate connections before use
    )

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


# Base is defined in adsync.models to ensure a single registry across the app
from .models import Base  # noqa: E402,F401


# =============================================================================
# FASTAPI DEPENDENCIES
# =============================================================================

def get_db() -> Generator[Session, None, None]:
    """Yield a database session for FastAPI dependency injection.

    Yields:
        SQLAlchemy Session instance
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# =============================================================================
# CONTEXT MANAGERS (for non-FastAPI usage)
# =============================================================================

@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """Context manager for sessions outside FastAPI.

    WHAT:
        Creates a session with automatic cleanup.

    WHY:
        For use in arq jobs, the backfill CLI, and tests where FastAPI
        dependency injection isn't available.

    Example:
        with get_sync_session() as db:
            connections = db.query(Connection).all()
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
