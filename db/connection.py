"""
Database connection management for the analytics service.

Handles MySQL (production), PostgreSQL and SQLite (local development and
tests) connections. The URL is supplied once at startup via configure().
"""

import logging
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .models import Base

logger = logging.getLogger(__name__)

# Global engine and session factory
_database_url: str | None = None
_echo: bool = False
_engine: Engine | None = None
_SessionLocal: sessionmaker | None = None


def _redact(url: str) -> str:
    return url.split("@")[-1] if "@" in url else url


def configure(url: str, echo: bool = False) -> None:
    """
    Set the database URL used by get_engine().

    Drops any existing engine so the next session uses the new URL.
    """
    global _database_url, _echo

    reset_connection()
    _database_url = url
    _echo = echo


def get_engine() -> Engine:
    """Get or create the database engine."""
    global _engine

    if _engine is None:
        if _database_url is None:
            raise RuntimeError("Database URL not configured; call configure() first")

        url = _database_url
        logger.info(f"Connecting to database: {_redact(url)}")

        # SQLite-specific settings
        if url.startswith("sqlite"):
            _engine = create_engine(
                url,
                connect_args={
                    "check_same_thread": False
                },  # Allow multi-threaded access
                echo=_echo,
            )
        else:
            # MySQL, PostgreSQL or other databases
            _engine = create_engine(
                url,
                echo=_echo,
                pool_pre_ping=True,  # Verify connections before use
                pool_recycle=3600,
            )

    return _engine


def get_session_factory() -> sessionmaker:
    """Get or create the session factory."""
    global _SessionLocal

    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            bind=get_engine(),
            autocommit=False,
            autoflush=False,
        )

    return _SessionLocal


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """
    Context manager for database sessions.

    Commits when the block exits cleanly and rolls back otherwise, so
    every write made inside one block lands or fails together.
    """
    SessionLocal = get_session_factory()
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db() -> None:
    """
    Initialize the database schema.

    Tables and their indexes are created only if they do not exist yet.
    """
    logger.info("Creating database tables")
    Base.metadata.create_all(bind=get_engine())


def check_db_initialized() -> bool:
    """Check if the database has been initialized with tables."""
    try:
        tables = set(inspect(get_engine()).get_table_names())
    except SQLAlchemyError as e:
        logger.warning(f"Database schema check failed: {e}")
        return False
    return set(Base.metadata.tables) <= tables


def check_db_connection() -> bool:
    """Check the database answers a trivial query."""
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")
        return False


def reset_connection() -> None:
    """Reset the database connection (useful for testing)."""
    global _engine, _SessionLocal

    if _engine:
        _engine.dispose()

    _engine = None
    _SessionLocal = None
