"""taskmail database module.

- SQLAlchemy 2.x async engine and session factory
- Alembic migration configuration
- Connection pooling via psycopg
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from sqlalchemy.ext.asyncio import AsyncEngine

    from taskmail.core.config import DatabaseSettings

# Module-level session factory (initialized on first use)
_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def to_async_url(url: str) -> str:
    """Rewrite a plain PostgreSQL URL to use the async psycopg driver.

    Args:
        url: Connection URL as configured (postgresql:// or postgres://).

    Returns:
        URL with the postgresql+psycopg scheme; other schemes are unchanged.
    """
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    return url


def create_engine_from_settings(database: DatabaseSettings) -> AsyncEngine:
    """Create an async engine from database settings."""
    return create_async_engine(
        to_async_url(str(database.url)),
        pool_size=database.pool_size,
        max_overflow=database.max_overflow,
        pool_timeout=database.pool_timeout,
        pool_pre_ping=True,
        echo=database.echo,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a session factory whose objects stay usable after commit."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


def _init_engine() -> None:
    """Initialize the module-level engine and session factory."""
    global _engine, _async_session_factory

    if _engine is not None:
        return

    from taskmail.core.settings import get_settings

    settings = get_settings()
    _engine = create_engine_from_settings(settings.database)
    _async_session_factory = create_session_factory(_engine)


@asynccontextmanager
async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """Get an async database session.

    Producers use this to enqueue notifications from domain code:

        async with get_async_session() as session:
            await NotificationService(session).queue_email(...)
            await session.commit()

    Yields:
        AsyncSession for database operations.
    """
    _init_engine()

    if _async_session_factory is None:
        msg = "Database session factory not initialized"
        raise RuntimeError(msg)

    session = _async_session_factory()
    try:
        yield session
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def close_engine() -> None:
    """Close the database engine.

    Call this during application shutdown to clean up connections.
    """
    global _engine, _async_session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
