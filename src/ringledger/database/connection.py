"""Database connection and session management."""

from collections.abc import AsyncGenerator, Callable
from typing import Any

import structlog
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ringledger.config import settings
from ringledger.database.models import Base

logger = structlog.get_logger()


def _engine_kwargs(database_url: str) -> dict[str, Any]:
    """Pool settings apply to server databases only."""
    if database_url.startswith("sqlite"):
        return {}
    return {
        "pool_pre_ping": True,
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_POOL_MAX_OVERFLOW,
        "pool_timeout": settings.DB_POOL_TIMEOUT,
        "pool_recycle": settings.DB_POOL_RECYCLE,
    }


engine: AsyncEngine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    **_engine_kwargs(settings.DATABASE_URL),
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


def insert_for(db: AsyncSession) -> Callable[..., Any]:
    """Return the dialect-specific ``insert`` construct for the session's backend.

    Both PostgreSQL and SQLite expose ``on_conflict_do_nothing`` on their own
    insert constructs; the generic one does not.
    """
    if db.get_bind().dialect.name == "sqlite":
        return sqlite.insert
    return postgresql.insert


async def init_database() -> None:
    """Initialize database connection and create tables if needed.

    In development/test: Creates tables from models using create_all().
    In production: Relies on Alembic migrations for schema management.
    """
    try:
        db_host = settings.DATABASE_URL.split("@")[-1].split(":")[0].split("/")[0]
    except (IndexError, AttributeError):
        db_host = "unknown"
    logger.info("Initializing database connection", host=db_host)

    if settings.ENVIRONMENT in ("development", "test"):
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            logger.info("Database tables created/verified (development mode)")
    else:
        logger.info("Skipping create_all in production - Alembic manages schema")


async def close_database() -> None:
    """Close database connection pool."""
    logger.info("Closing database connection pool")
    await engine.dispose()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for getting database session.

    Ledger services commit explicitly (accounting must be durable before the
    metering call), so this only rolls back on error.
    """
    async with async_session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise

