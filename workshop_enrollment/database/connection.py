"""
Database engine and session factory.

Enrollment storage and the notification outbox share the process-wide
engine returned by get_engine.
"""
from typing import Any, Optional

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from workshop_enrollment.config import get_settings
from workshop_enrollment.database.models import Base

logger = structlog.get_logger(__name__)

_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def build_engine(database_url: str, echo: bool = False, **pool_options: Any) -> AsyncEngine:
    """
    Create an async engine for a database URL.

    SQLite URLs get a single shared connection (in-memory databases vanish
    when their connection closes); other backends get the pooled settings.

    Args:
        database_url: Async SQLAlchemy URL
        echo: Echo SQL statements
        **pool_options: pool_size / max_overflow for pooled backends

    Returns:
        AsyncEngine: SQLAlchemy async engine instance
    """
    if database_url.startswith("sqlite"):
        return create_async_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_async_engine(
        database_url,
        echo=echo,
        pool_pre_ping=True,  # Verify connections before using
        pool_recycle=3600,  # Recycle connections after 1 hour
        **pool_options,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_engine() -> AsyncEngine:
    """
    Get or create the database engine.

    Returns:
        AsyncEngine: SQLAlchemy async engine instance
    """
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = build_engine(
            settings.database_url,
            echo=settings.database_echo,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
        )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    Get or create the session factory.

    Returns:
        async_sessionmaker: SQLAlchemy async session factory
    """
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = build_session_factory(get_engine())
    return _async_session_factory


async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """
    Initialize database tables.

    Creates all tables defined in models if they don't exist.

    Args:
        engine: Engine to initialize (defaults to the configured engine)
    """
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_tables_ready", tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    """Close database connections and dispose of the engine."""
    global _engine, _async_session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
