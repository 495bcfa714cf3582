"""
MemCore — Database Session Management
=======================================
Async SQLAlchemy engine factory and transactional session scope.

Usage:
    from memcore.db.session import create_engine, create_session_factory, session_scope

    engine = create_engine("sqlite+aiosqlite:///./memcore.db")
    factory = create_session_factory(engine)
    async with session_scope(factory) as session:
        result = await session.execute(...)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from memcore.core.config import Settings, get_settings


def create_engine(
    url: str,
    *,
    pool_size: int = 10,
    max_overflow: int = 5,
    echo: bool = False,
) -> AsyncEngine:
    """
    Create an async engine.

    Pool sizing is only passed to pooled server dialects; SQLite picks its
    own pool class and rejects the arguments.
    """
    kwargs: dict[str, Any] = {"echo": echo}
    if make_url(url).get_backend_name() != "sqlite":
        kwargs["pool_size"] = pool_size
        kwargs["max_overflow"] = max_overflow
    return create_async_engine(url, **kwargs)


def create_engine_from_settings(settings: Settings | None = None) -> AsyncEngine:
    """Create the async engine described by application settings."""
    settings = settings or get_settings()
    return create_engine(
        settings.database_url.get_secret_value(),
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_pool_overflow,
        echo=settings.db_echo_sql,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to ``engine``."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Provide a transactional async session.

    Commits on clean exit, rolls back on exception.
    """
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
