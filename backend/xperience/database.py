"""Database session and base configuration.

WHAT:
    Provides the SQLAlchemy engine and session factory for the funnel tables.
    Exposes a FastAPI dependency and a context manager for scripts.

WHY:
    - Flow graphs are read on every funnel step; purchases and visits are
      written as the buyer advances. A single pooled engine serves both.
    - Scripts (backend/scripts/) and tests need sessions outside FastAPI.

USAGE:
    from xperience.database import get_db, get_sync_session

    @router.get("/flows/{company_id}")
    async def get_flow(company_id: str, db: Session = Depends(get_db)):
        ...

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/session_basics.html
    - xperience/routers/ (consumers of these sessions)
"""

import os
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker


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
        from xperience.utils.env import load_env_file
        load_env_file()
        database_url = os.getenv("DATABASE_URL")

    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. "
            "Ensure backend/.env is loaded or env var is exported."
        )

    # Supabase/Heroku hand out postgres:// URLs which SQLAlchemy 2.x rejects
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
        pool_size=10,           # Base pool size
        max_overflow=20,        # Allow up to 30 total connections under load
        pool_recycle=3600,      # Recycle connections every hour
        pool_pre_ping=True,     # Validate connections before use
    )

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


# Base is defined in xperience.models to ensure a single registry across the app
from .models import Base  # noqa: E402,F401


# =============================================================================
# FASTAPI DEPENDENCIES
# =============================================================================

def get_db() -> Generator[Session, None, None]:
    """Yield a database session for FastAPI dependency injection.

    Yields:
        SQLAlchemy Session instance, closed after the request
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
        For use in diagnostic scripts where FastAPI dependency injection
        isn't available.

    Example:
        with get_sync_session() as db:
            flows = db.query(CompanyFlow).all()
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
