"""
Pytest fixtures for roster-control testing.
Provides database engines, session factories, settings and a recording notification sink.
"""

import os
from collections.abc import AsyncGenerator, Awaitable, Callable

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from roster_control.core.config import Settings, get_settings
from roster_control.core.notifications import NotificationPayload, drain_notifications
from roster_control.db.models import AuditRecord, Base, EntrySource, WhitelistEntry
from roster_control.modules.reconciliation.engine import ReconciliationEngine

# Test database URL (in-memory SQLite unless a real PostgreSQL is provided)
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL") or "sqlite+aiosqlite:///:memory:"


class RecordingSink:
    """Notification sink that keeps every payload it receives."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, NotificationPayload]] = []

    async def send(self, category: str, payload: NotificationPayload) -> bool:
        self.sent.append((category, payload))
        return True

    def titles(self) -> list[str]:
        return [payload.title for _, payload in self.sent]


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep tests independent of the developer's environment and .env file."""
    monkeypatch.setenv("REDIS_URL", "")
    monkeypatch.delenv("NOTIFICATION_WEBHOOK_URLS", raising=False)
    monkeypatch.setenv("DATABASE_URL", TEST_DATABASE_URL)
    get_settings.cache_clear()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        redis_url=None,
        reconcile_retry_base_delay=0.0,
        bulk_sync_batch_pause_seconds=0.0,
    )


@pytest_asyncio.fixture
async def test_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create a test database engine with a fresh schema."""
    engine_kwargs: dict[str, object] = {}
    if TEST_DATABASE_URL.startswith("sqlite"):
        engine_kwargs = {
            "poolclass": StaticPool,
            "connect_args": {"check_same_thread": False},
        }
    engine = create_async_engine(TEST_DATABASE_URL, echo=False, **engine_kwargs)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Provide a database session for store-level tests."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def recording_sink() -> RecordingSink:
    return RecordingSink()


@pytest_asyncio.fixture
async def engine(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
    recording_sink: RecordingSink,
) -> AsyncGenerator[ReconciliationEngine, None]:
    yield ReconciliationEngine(session_factory, settings=settings, sink=recording_sink)
    await drain_notifications()


@pytest.fixture
def role_rows(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[[str], Awaitable[list[WhitelistEntry]]]:
    """Load every role-sourced row of a subject, oldest first."""

    async def _load(external_id: str) -> list[WhitelistEntry]:
        async with session_factory() as session:
            result = await session.execute(
                select(WhitelistEntry)
                .where(
                    WhitelistEntry.subject_external_id == external_id,
                    WhitelistEntry.source == EntrySource.ROLE,
                )
                .order_by(WhitelistEntry.id)
            )
            return list(result.scalars().all())

    return _load


@pytest.fixture
def audit_records(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[list[AuditRecord]]]:
    """Load audit records, optionally filtered by action type."""

    async def _load(action_type: str | None = None) -> list[AuditRecord]:
        async with session_factory() as session:
            stmt = select(AuditRecord).order_by(AuditRecord.id)
            if action_type is not None:
                stmt = stmt.where(AuditRecord.action_type == action_type)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    return _load
