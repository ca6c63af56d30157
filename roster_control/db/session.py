"""
Process-wide async engine and session factory.

The reconciliation engine opens one short session per transaction attempt
from :func:`get_session_factory`; tools use :func:`get_background_session`
for read-only lookups.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from roster_control.core.config import get_settings
from roster_control.core.logging import get_logger

logger = get_logger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _engine_options(database_url: str) -> dict[str, Any]:
    settings = get_settings()
    if database_url.startswith("sqlite"):
        # SQLite has no server-side pool; sessions wait on its file lock instead
        return {"connect_args": {"timeout": settings.database_pool_timeout}}
    return {
        "pool_size": settings.database_pool_size,
        "max_overflow": settings.database_max_overflow,
        "pool_timeout": settings.database_pool_timeout,
        "pool_pre_ping": True,
    }


async def init_db() -> None:
    """Create the engine for ``DATABASE_URL``. Safe to call once per process."""
    global _engine, _session_factory

    settings = get_settings()
    _engine = create_async_engine(
        settings.database_url,
        echo=settings.debug,
        **_engine_options(settings.database_url),
    )
    _session_factory = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    logger.info("database_initialized", dialect=_engine.dialect.name)


async def close_db() -> None:
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory


@asynccontextmanager
async def get_background_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Standalone session for read-only lookups.

    Writes to identity links and role-sourced entries go through the
    reconciliation engine, which owns its transactions.
    """
    async with get_session_factory()() as session:
        yield session


async def create_schema() -> None:
    """Create missing tables on a fresh database (tools and local development)."""
    from roster_control.db.models import Base

    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
