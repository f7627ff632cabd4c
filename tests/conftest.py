"""Shared fixtures.

Each test gets its own SQLite database file so units of work commit for real
and optimistic-locking conflicts behave as they do in production.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import uuid
from datetime import datetime

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from tenant_billing.core.database import Base, get_session, get_session_factory, unit_of_work
from tenant_billing.modules.billing import models as billing_models  # noqa: F401
from tenant_billing.modules.billing.notifications import (
    BillingNotificationService,
    RecordingNotificationDispatcher,
)
from tenant_billing.modules.billing.service import SubscriptionService
from tenant_billing.modules.payment_gateway import models as payment_models  # noqa: F401
from tenant_billing.modules.payment_gateway.service import GatewayRegistry


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def dispatcher():
    return RecordingNotificationDispatcher()


@pytest.fixture
def notifier(dispatcher):
    return BillingNotificationService(dispatcher)


@pytest.fixture
def now():
    return datetime.utcnow().replace(microsecond=0)


@pytest.fixture
def make_subscription(session_factory):
    """Create and commit a subscription, returning it detached."""

    async def _make(
        tier="BASIC",
        billing_cycle="MONTHLY",
        payment_confirmed=True,
        start_date=None,
        **fields,
    ):
        async with unit_of_work(session_factory) as session:
            subscription = await SubscriptionService(session).create_subscription(
                organization_id=uuid.uuid4(),
                tier=tier,
                billing_cycle=billing_cycle,
                start_date=start_date,
                payment_confirmed=payment_confirmed,
            )
            for name, value in fields.items():
                setattr(subscription, name, value)
        return subscription

    return _make


@pytest.fixture
def gateway_registry():
    return GatewayRegistry()


@pytest_asyncio.fixture
async def client(session_factory, notifier, gateway_registry):
    """HTTP client for the app, bound to the test database."""
    from tenant_billing.main import app

    async def override_get_session():
        async with session_factory() as session:
            yield session
            await session.commit()

    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_session] = override_get_session
    app.state.notifier = notifier
    app.state.gateway_registry = gateway_registry

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
