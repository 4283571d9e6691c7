"""
Global pytest fixtures for the Costwatch test suite.

Provides:
- Async database session backed by a temporary SQLite file
- A frozen, steerable clock shared by every component under test
- Credential vault and a WorkerContext wired to test doubles
- Account factory
"""
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator, Callable
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

# Set test environment BEFORE any app imports
os.environ["TESTING"] = "true"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENCRYPTION_KEY"] = "0123456789abcdef" * 4
os.environ["LIVE_PRICING_ENABLED"] = "false"

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import app.models  # noqa: F401, E402 - registers every mapping on Base.metadata

TEST_ENCRYPTION_KEY = os.environ["ENCRYPTION_KEY"]


class FrozenClock:
    """Callable clock; tests move time forward explicitly."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# ============================================================================
# Async Database Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def async_engine(tmp_path):
    """Async SQLite engine on a temporary file so sessions get real isolation."""
    from app.shared.db.base import Base

    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'costwatch_test.sqlite'}",
        echo=False,
        connect_args={"timeout": 15},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        try:
            yield session
        finally:
            await session.rollback()
            await session.close()


@pytest_asyncio.fixture
async def db(db_session):
    """Alias for db_session."""
    return db_session


# ============================================================================
# Core Service Fixtures
# ============================================================================

@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def vault():
    from app.shared.core.security import CredentialVault

    return CredentialVault.from_hex(TEST_ENCRYPTION_KEY)


@pytest.fixture
def queue_client(session_factory, clock):
    from app.modules.governance.domain.jobs.queue import QueueClient

    return QueueClient(session_factory, clock=clock)


@pytest.fixture
def fake_adapter() -> MagicMock:
    """Provider adapter double: empty inventory, billing unavailable."""
    from app.shared.core.exceptions import ProviderTransientError

    adapter = MagicMock()
    adapter.list_instances = AsyncMock(return_value=[])
    adapter.list_databases = AsyncMock(return_value=[])
    adapter.get_cost_and_usage = AsyncMock(
        side_effect=ProviderTransientError("Cost Explorer unavailable")
    )
    adapter.get_ec2_hourly_price = AsyncMock(return_value=None)
    return adapter


@pytest.fixture
def mock_dispatcher() -> MagicMock:
    from app.modules.notifications.domain.base import DeliveryResult, DeliveryStatus
    from app.shared.core.constants import Channel

    dispatcher = MagicMock()
    dispatcher.deliver = AsyncMock(
        return_value=DeliveryResult(
            channel=Channel.EMAIL, status=DeliveryStatus.DELIVERED, attempts=1
        )
    )
    return dispatcher


@pytest.fixture
def worker_context(session_factory, queue_client, vault, fake_adapter, mock_dispatcher, clock):
    from app.shared.core.async_utils import TaskSupervisor
    from app.shared.core.cache import CacheService
    from app.worker import WorkerContext

    return WorkerContext(
        session_factory=session_factory,
        queue=queue_client,
        vault=vault,
        cache=CacheService(),
        dispatcher=mock_dispatcher,
        supervisor=TaskSupervisor(),
        adapter_factory=lambda access_key, secret_key, region: fake_adapter,
        clock=clock,
    )


# ============================================================================
# Data Factories
# ============================================================================

@pytest.fixture
def make_account(vault, clock) -> Callable[..., Any]:
    """Persist an Account with sealed test credentials."""
    from app.models.account import Account

    async def _make(db: AsyncSession, **overrides: Any) -> Account:
        webhook = overrides.pop("chat_webhook_url", None)
        fields: dict[str, Any] = {
            "owner_id": uuid4(),
            "name": "Production",
            "region": "us-east-1",
            "access_key_sealed": vault.seal("AKIATESTKEY"),
            "secret_key_sealed": vault.seal("test-secret-key"),
            "budget_amount": Decimal("100.00"),
            "tier": "free",
            "notify_email": True,
            "notify_chat": False,
            "notify_sms": False,
            "contact_email": "owner@example.com",
            "is_active": True,
            "created_at": clock(),
            "updated_at": clock(),
        }
        if webhook:
            fields["chat_webhook_url_sealed"] = vault.seal(webhook)
        fields.update(overrides)
        account = Account(**fields)
        db.add(account)
        await db.commit()
        return account

    return _make
