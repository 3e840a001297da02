"""
Database session management with connection pooling.

Provides a shared FastAPI dependency for database sessions across all routes,
and a session factory for the reconciliation job and the notifier.

Usage:
    from tradersutopia.database.session import get_db_session

    @router.get("/api/subscription/access")
    async def access(db: Session = Depends(get_db_session)):
        ...
"""

import os
import logging
from typing import Generator, List, Optional

from sqlalchemy import create_engine, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool
from fastapi import HTTPException, status

from tradersutopia.db_base import Base
# Import all models to register them with Base.metadata
import tradersutopia.models  # noqa: F401

logger = logging.getLogger(__name__)

# Module-level engine singleton
_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def _get_database_url() -> str:
    """
    Get and normalize the database URL from environment.

    Handles Render's postgres:// URL format by converting to postgresql://.
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is not set")

    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    return database_url


def get_engine() -> Engine:
    """
    Get or create the database engine singleton.

    Postgres gets a QueuePool (5 + 10 overflow, pre-ping, 30 minute recycle).
    SQLite URLs are accepted for local runs and use the driver's default pool.
    """
    global _engine
    if _engine is None:
        try:
            database_url = _get_database_url()
        except ValueError as e:
            logger.error("Failed to create database engine", extra={"error": str(e)})
            raise

        if database_url.startswith("sqlite"):
            _engine = create_engine(
                database_url,
                connect_args={"check_same_thread": False},
            )
        else:
            _engine = create_engine(
                database_url,
                poolclass=QueuePool,
                pool_size=5,
                max_overflow=10,
                pool_pre_ping=True,
                pool_recycle=1800,
            )
        logger.info("Database engine created", extra={"dialect": _engine.dialect.name})
    return _engine


def get_session_factory() -> sessionmaker:
    """Get or create the session factory singleton."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=get_engine()
        )
    return _SessionLocal


def configure_session_factory(factory: Optional[sessionmaker]) -> None:
    """Install an explicit session factory (tests, embedded runs). None resets."""
    global _SessionLocal, _engine
    _SessionLocal = factory
    if factory is None:
        _engine = None


async def get_db_session() -> Generator[Session, None, None]:
    """
    FastAPI dependency for database sessions.

    Creates a new session for each request and ensures proper cleanup.
    Raises HTTP 503 if database is not configured.
    """
    try:
        SessionLocal = get_session_factory()
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not configured"
        )

    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def get_db_session_sync() -> Generator[Session, None, None]:
    """
    Synchronous version of get_db_session for non-async contexts.

    Usage:
        for session in get_db_session_sync():
            # use session
    """
    try:
        SessionLocal = get_session_factory()
    except ValueError as e:
        raise RuntimeError(f"Database not configured: {e}")

    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def create_tables(engine: Optional[Engine] = None) -> List[str]:
    """
    Create any missing tables for the registered models.

    Existing tables are left untouched. Returns the names of the tables
    present afterwards.

    Args:
        engine: Engine to use. Defaults to the DATABASE_URL engine.
    """
    engine = engine if engine is not None else get_engine()
    Base.metadata.create_all(bind=engine)

    table_names = sorted(inspect(engine).get_table_names())
    missing = sorted(set(Base.metadata.tables) - set(table_names))
    if missing:
        logger.error("Tables missing after create_all", extra={"missing": missing})
    logger.info("Database schema ready", extra={
        "dialect": engine.dialect.name,
        "tables": table_names,
    })
    return table_names
