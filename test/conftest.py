"""
Pytest configuration and shared fixtures.

Every test gets a fresh in-memory SQLite database (aiosqlite) holding the
full schema. Rows are created through small factory fixtures.
"""
from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime, time, timezone
from typing import Any
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import dialer.billing.models  # noqa: F401
import dialer.calls.models  # noqa: F401
import dialer.campaigns.models  # noqa: F401
import dialer.contacts.models  # noqa: F401
import dialer.webhook_errors.models  # noqa: F401
from dialer.billing.config import BillingConfig
from dialer.billing.models import CreditBalance
from dialer.calls.models import CallAttempt, CallStatus
from dialer.campaigns.models import Campaign, CampaignStatus
from dialer.config import Settings
from dialer.contacts.models import Contact
from dialer.shared.database import Base

ALL_DAYS = ["mon", "tue", "wed", "thu", "fri", "sat", "sun"]

# Monday
MONDAY_10AM = datetime(2025, 1, 6, 10, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory database shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def test_settings() -> Settings:
    """Settings used by services under test."""
    return Settings(
        app_env="dev",
        database_url="sqlite+aiosqlite://",
        webhook_secret="",
        short_call_threshold_ms=30_000,
        webhook_retry_base_seconds=1.0,
        webhook_max_retries=3,
        stale_attempt_minutes=60,
    )


@pytest.fixture
def billing_config() -> BillingConfig:
    return BillingConfig(
        markup_multiplier="1.667",
        low_balance_warning_cents=500,
        low_balance_critical_cents=100,
    )


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_balance(db_session: AsyncSession) -> Callable[..., Awaitable[UUID]]:
    """Create a credit balance row; returns the account id."""

    async def _make(balance_cents: int = 10_000, **fields: Any) -> UUID:
        account_id = fields.pop("account_id", None) or uuid4()
        db_session.add(
            CreditBalance(account_id=account_id, balance_cents=balance_cents, **fields)
        )
        await db_session.commit()
        return account_id

    return _make


@pytest.fixture
def make_contacts(db_session: AsyncSession) -> Callable[..., Awaitable[list[UUID]]]:
    """Create contacts in a group, in creation order; returns their ids."""

    async def _make(
        contact_group_id: UUID,
        count: int = 1,
        phone_numbers: list[str] | None = None,
    ) -> list[UUID]:
        ids: list[UUID] = []
        for i in range(count):
            contact = Contact(
                contact_group_id=contact_group_id,
                first_name=f"Contact{i}",
                last_name="Test",
                email=f"contact{i}@example.com",
                phone_numbers=list(phone_numbers) if phone_numbers else [f"+1555{i:07d}"],
                created_at=datetime(2025, 1, 1, tzinfo=timezone.utc).replace(second=i % 60, minute=i // 60),
            )
            db_session.add(contact)
            await db_session.flush()
            ids.append(contact.id)
        await db_session.commit()
        return ids

    return _make


@pytest.fixture
def make_campaign(db_session: AsyncSession) -> Callable[..., Awaitable[UUID]]:
    """Create a campaign row directly (bypassing the state machine)."""

    async def _make(**fields: Any) -> UUID:
        values: dict[str, Any] = {
            "account_id": uuid4(),
            "name": "Test campaign",
            "agent_id": uuid4(),
            "contact_group_id": uuid4(),
            "status": CampaignStatus.DRAFT,
            "concurrent_calls": 2,
            "max_retry_days": 0,
            "calling_start": time(9, 0),
            "calling_end": time(17, 0),
            "active_days": list(ALL_DAYS),
            "timezone": "UTC",
            "from_number": "+15550009999",
        }
        values.update(fields)
        campaign = Campaign(**values)
        db_session.add(campaign)
        await db_session.commit()
        return campaign.id

    return _make


@pytest.fixture
def make_attempt(db_session: AsyncSession) -> Callable[..., Awaitable[UUID]]:
    """Insert a call attempt directly; returns its id."""

    async def _make(campaign_id: UUID, contact_id: UUID, **fields: Any) -> UUID:
        values: dict[str, Any] = {
            "phone_number": "+15550000000",
            "call_status": CallStatus.PENDING,
            "scheduled_at": MONDAY_10AM,
        }
        values.update(fields)
        attempt = CallAttempt(campaign_id=campaign_id, contact_id=contact_id, **values)
        db_session.add(attempt)
        await db_session.commit()
        return attempt.id

    return _make


# ---------------------------------------------------------------------------
# Fresh reads (bulk updates bypass the identity map)
# ---------------------------------------------------------------------------


async def load_campaign(session: AsyncSession, campaign_id: UUID) -> Campaign:
    stmt = select(Campaign).where(Campaign.id == campaign_id).execution_options(populate_existing=True)
    return (await session.execute(stmt)).scalar_one()


async def load_attempt(session: AsyncSession, attempt_id: UUID) -> CallAttempt:
    stmt = (
        select(CallAttempt)
        .where(CallAttempt.id == attempt_id)
        .execution_options(populate_existing=True)
    )
    return (await session.execute(stmt)).scalar_one()


async def load_balance(session: AsyncSession, account_id: UUID) -> CreditBalance:
    stmt = (
        select(CreditBalance)
        .where(CreditBalance.account_id == account_id)
        .execution_options(populate_existing=True)
    )
    return (await session.execute(stmt)).scalar_one()


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def async_client(
    session_factory: async_sessionmaker[AsyncSession],
    test_settings: Settings,
    billing_config: BillingConfig,
) -> AsyncGenerator[AsyncClient, None]:
    """Client for the FastAPI app bound to the test database."""
    from dialer.billing.config import get_billing_config
    from dialer.config import get_settings
    from dialer.main import app
    from dialer.shared.database import get_db_session

    async def _override_get_db_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = _override_get_db_session
    app.dependency_overrides[get_settings] = lambda: test_settings
    app.dependency_overrides[get_billing_config] = lambda: billing_config

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
