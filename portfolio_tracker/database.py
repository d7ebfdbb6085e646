# portfolio_tracker/database.py
"""
Database connection and session management.

This module configures SQLAlchemy with:
- StaticPool for SQLite (single shared connection, usable across threads)
- QueuePool with configurable sizing for server databases
- Table creation for fresh installs (no migration tooling)
- A health check helper
"""

import logging
from collections.abc import Generator

from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool, QueuePool

from .config import settings
from .models import Base

logger = logging.getLogger(__name__)


def _create_engine():
    """
    Create SQLAlchemy engine with environment-appropriate configuration.

    - SQLite: StaticPool, check_same_thread=False (valuation uses worker threads)
    - Anything else: QueuePool sized from settings
    """
    if settings.is_sqlite:
        logger.info("Configuring SQLite database")
        return create_engine(
            settings.database_url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
            echo=settings.debug,
        )

    logger.info(
        f"Configuring database pool: "
        f"size={settings.db_pool_size}, "
        f"max_overflow={settings.db_pool_max_overflow}, "
        f"recycle={settings.db_pool_recycle}s, "
        f"pre_ping={settings.db_pool_pre_ping}"
    )

    return create_engine(
        settings.database_url,
        poolclass=QueuePool,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_pool_max_overflow,
        pool_recycle=settings.db_pool_recycle,
        pool_pre_ping=settings.db_pool_pre_ping,
        pool_timeout=30,
        echo=settings.debug,
    )


engine = _create_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db() -> None:
    """Create all tables defined on the declarative Base."""
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created")


def get_db() -> Generator[Session, None, None]:
    """
    Provide a session that is closed after use.

    Usage:
        db = next(get_db())
        # or wrap with contextlib.closing(SessionLocal())
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_database_health() -> dict:
    """
    Check database connectivity.

    Returns:
        dict: {"status": "healthy"|"unhealthy", ...}
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))

        return {
            "status": "healthy",
            "database": "sqlite" if settings.is_sqlite else engine.dialect.name,
        }
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return {
            "status": "unhealthy",
            "error": str(e),
        }
