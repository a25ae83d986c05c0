"""Database session and base configuration.

WHAT:
    Provides the SQLAlchemy engine and session factory for the local store.
    Exposes the FastAPI dependency and a context manager for scripts.

WHY:
    The sync subsystem treats the database as a keyed record store
    (see storesync/services/record_store.py). Sessions are plain sync sessions;
    store calls never await, so concurrent sync tasks never interleave
    inside a single write.

USAGE:
    from storesync.database import SessionLocal, get_db

    @router.get("/items")
    def get_items(db: Session = Depends(get_db)):
        ...

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/session_basics.html
    - storesync/routers/ (consumers of these sessions)
"""

import os
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

def _get_database_url() -> str:
    """Get DATABASE_URL from environment, loading .env if needed.

    Returns:
        Database connection string

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        # Attempt to load from local .env for developer convenience
        from storesync.utils.env import load_env_file
        load_env_file()
        database_url = os.getenv("DATABASE_URL")

    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. "
            "Ensure backend/.env is loaded or env var is exported."
        )

    return database_url


DATABASE_URL = _get_database_url()


# =============================================================================
# ENGINE
# =============================================================================

# NOTE: SQLite engines (tests/dev) do not support pool_size/max_overflow.
# In-memory SQLite needs a single shared connection across threads.
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool if ":memory:" in DATABASE_URL else None,
    )
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=10,           # Base pool size
        max_overflow=20,        # Allow up to 30 total connections under load
        pool_recycle=3600,      # Recycle connections every hour
        pool_pre_ping=True,     # Validate connections before use
    )

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


# Base is defined in storesync.models to ensure a single registry across the app
from .models import Base  # noqa: E402


def init_db() -> None:
    """Create tables that do not exist yet (dev/SQLite convenience)."""
    Base.metadata.create_all(bind=engine)


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


@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """Context manager for sessions outside FastAPI (scripts, startup hooks).

    Example:
        with get_sync_session() as db:
            store = RecordStore(db)
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
