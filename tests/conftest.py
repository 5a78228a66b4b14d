"""
Pytest fixtures for ledger tests.

This module provides:
- An in-memory SQLite database per test
- A file-backed SQLite database for tests that need separate connections
- Business / subscription factories
- Fake metering and billing clients
- An HTTP client for the FastAPI app with services wired on app.state
"""

import asyncio
import os
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from ringledger.billing.plans import PlanType, SubscriptionStatus
from ringledger.database.connection import get_db
from ringledger.database.models import Base, Business, Subscription, utcnow
from ringledger.exceptions import BillingProviderError, MeteringServiceError
from ringledger.services.call_recorder import CallRecorder
from ringledger.services.metering import MeteringReporter
from ringledger.services.subscription_sync import SubscriptionSync
from ringledger.services.usage import UsageAccumulator


class FakeMeteringClient:
    """Records overage reports and, like the provider, drops repeated identifiers.

    ``delay_seconds`` delays the response after the report has landed, so a
    timeout looks like a lost acknowledgement. ``failures_remaining`` rejects
    requests outright.
    """

    def __init__(self) -> None:
        self.reports: list[dict[str, Any]] = []
        self.attempts: list[str] = []
        self.failures_remaining = 0
        self.delay_seconds = 0.0

    @property
    def total_units(self) -> int:
        return sum(report["units"] for report in self.reports)

    async def report_overage(
        self,
        customer_id: str | None,
        subscription_item_id: str,
        units: int,
        timestamp: datetime,
        identifier: str,
    ) -> None:
        self.attempts.append(identifier)
        if self.failures_remaining > 0:
            self.failures_remaining -= 1
            raise MeteringServiceError("provider unavailable")
        if identifier not in {report["identifier"] for report in self.reports}:
            self.reports.append(
                {
                    "customer_id": customer_id,
                    "subscription_item_id": subscription_item_id,
                    "units": units,
                    "timestamp": timestamp,
                    "identifier": identifier,
                }
            )
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)


class FakeBillingClient:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.attached: list[tuple[str, str]] = []

    async def attach_metered_item(self, external_subscription_id: str, price_id: str) -> str:
        if self.fail:
            raise BillingProviderError("attach_metered_item", "boom")
        self.attached.append((external_subscription_id, price_id))
        return f"si_{external_subscription_id}"


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Sessions on separate connections to one SQLite file.

    Every transaction opens with BEGIN IMMEDIATE, so concurrent writers queue
    on the database lock instead of failing with "database is locked".
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_implicit_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_business(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[Business]]:
    """Create and commit a Business in its own session."""

    async def _make(**kwargs: Any) -> Business:
        async with session_factory() as session:
            business = Business(**kwargs)
            session.add(business)
            await session.commit()
            return business

    return _make


@pytest.fixture
def make_subscriber(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[Business]]:
    """Create a business on an active paid plan with a metered item."""

    async def _make(
        plan: PlanType = PlanType.TIER_1,
        metered_item_id: str | None = "si_metered",
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        **kwargs: Any,
    ) -> Business:
        now = utcnow()
        async with session_factory() as session:
            business = Business(
                plan_type=plan.value,
                subscription_status=status.value,
                billing_customer_id="cus_test",
                **kwargs,
            )
            session.add(business)
            await session.flush()
            session.add(
                Subscription(
                    business_id=business.id,
                    external_subscription_id=f"sub_{business.id[:8]}",
                    external_customer_id="cus_test",
                    metered_item_id=metered_item_id,
                    plan_type=plan.value,
                    status=status.value,
                    current_period_start=now,
                    current_period_end=now + timedelta(days=30),
                )
            )
            await session.commit()
            return business

    return _make


@pytest.fixture
def metering_client() -> FakeMeteringClient:
    return FakeMeteringClient()


@pytest.fixture
def billing_client() -> FakeBillingClient:
    return FakeBillingClient()


@pytest.fixture
def reporter(metering_client: FakeMeteringClient) -> MeteringReporter:
    return MeteringReporter(metering_client, timeout_seconds=0.5)


@pytest.fixture
def recorder(reporter: MeteringReporter) -> CallRecorder:
    return CallRecorder(UsageAccumulator(), reporter, max_duration_seconds=24 * 60 * 60)


@pytest.fixture
def subscription_sync(billing_client: FakeBillingClient) -> SubscriptionSync:
    return SubscriptionSync(billing_client, metered_price_id="price_overage")


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    recorder: CallRecorder,
    reporter: MeteringReporter,
    subscription_sync: SubscriptionSync,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client for the app; the lifespan does not run under ASGITransport."""
    from ringledger.main import app

    async def _get_test_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_test_db
    app.state.call_recorder = recorder
    app.state.metering_reporter = reporter
    app.state.subscription_sync = subscription_sync

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
