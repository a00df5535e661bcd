import os

# Settings are read at import time
os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENABLE_SESSION_MONITORING", "false")

from datetime import timedelta
from typing import AsyncGenerator
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import lockguard.models  # noqa: F401
from lockguard.database import Base
from lockguard.services.alerting import AlertDispatcher
from lockguard.services.lockout_service import AccountLockoutService
from lockguard.services.notifications import SecurityNotifier
from lockguard.utils.helpers import utcnow


class FakeClock:
    """Controllable stand-in for utcnow()."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    # Close to real time: unlock tokens are JWTs checked against the wall clock
    return FakeClock(utcnow().replace(microsecond=0))


@pytest.fixture
async def engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def notifier() -> AsyncMock:
    return AsyncMock(spec=SecurityNotifier)


@pytest.fixture
def dispatcher(db_session, clock) -> AlertDispatcher:
    return AlertDispatcher(db_session, webhook_url=None, clock=clock)


@pytest.fixture
def lockout_service(db_session, notifier, dispatcher, clock) -> AccountLockoutService:
    return AccountLockoutService(db_session, notifier=notifier, dispatcher=dispatcher, clock=clock)
