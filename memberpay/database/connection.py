"""
Database engine and session factory.

One engine per process. Sessions are short units of work: callers open one,
commit, and close it before any gateway call.
"""
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from memberpay.config import Settings, get_settings
from memberpay.database.models import Base

# Process-wide engine and session factory
_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine(settings: Optional[Settings] = None) -> AsyncEngine:
    """
    Get or create the database engine.

    Pool options apply to server databases only; SQLite uses its default pool.
    """
    global _engine
    if _engine is None:
        settings = settings or get_settings()
        kwargs: Dict[str, Any] = {"echo": settings.database_echo}
        if not settings.database_url.startswith("sqlite"):
            kwargs.update(
                pool_size=settings.database_pool_size,
                max_overflow=settings.database_max_overflow,
                pool_pre_ping=True,
                pool_recycle=3600,
            )
        _engine = create_async_engine(settings.database_url, **kwargs)
    return _engine


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Sessions keep loaded attributes after commit and never autoflush."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_session_factory(settings: Optional[Settings] = None) -> async_sessionmaker[AsyncSession]:
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = build_session_factory(get_engine(settings))
    return _async_session_factory


async def init_db(engine: AsyncEngine | None = None) -> None:
    """
    Create missing tables.

    Production schemas are managed by the Alembic migrations; this is for
    development databases and first start.
    """
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine and forget the session factory."""
    global _engine, _async_session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
