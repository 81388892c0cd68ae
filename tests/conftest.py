"""Shared fixtures: a throwaway SQLite database per test and partner factories."""

import os
import tempfile

# Must be set before postback_tracker.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="postback-tracker-logs-"))
os.environ.setdefault("ENCRYPTION_KEY", "MDEyMzQ1Njc4OWFiY2RlZjAxMjM0NTY3ODlhYmNkZWY=")
os.environ.setdefault("TELEGRAM_GLOBALLY_ENABLED", "false")

from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from postback_tracker.db.models import Base, Partner
from postback_tracker.worker.processor import QueueProcessor


@pytest.fixture
async def engine(tmp_path):
    """File-backed SQLite so separate sessions see each other's commits."""
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'tracker.db'}",
        poolclass=NullPool,
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_partner(session_factory):
    """Insert a partner row; keyword arguments override the defaults."""

    async def _make(partner_id: str = "acme", **overrides) -> Partner:
        values = {
            "name": partner_id.title(),
            "clickid_keys": ["clickid", "cid"],
            "sum_keys": ["sum", "payout"],
            "sum_mapping": [],
            "allowed_ips": [],
        }
        values.update(overrides)
        partner = Partner(id=partner_id, **values)
        async with session_factory() as session:
            session.add(partner)
            await session.commit()
        return partner

    return _make


@pytest.fixture
def notifier():
    fake = MagicMock()
    fake.notify = AsyncMock(return_value=True)
    fake.close = AsyncMock()
    return fake


@pytest.fixture
def exporter():
    fake = MagicMock()
    fake.export = AsyncMock(return_value=False)
    fake.close = AsyncMock()
    return fake


@pytest.fixture
def processor(session_factory, notifier, exporter):
    return QueueProcessor(
        session_factory=session_factory,
        notifier=notifier,
        exporter=exporter,
        max_retries=3,
        stale_after_seconds=600,
        side_effect_timeout=5.0,
    )
