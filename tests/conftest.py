import os
import sys
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool, StaticPool
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

# Add parent directory to path to allow importing models and main
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import SettlementConfig
from database import get_session, make_session_factory
from main import app
from models import (
    Campaign,
    CampaignStatus,
    Creator,
    CreatorBalance,
    CreatorTrafficMetrics,
    PayoutQueueEntry,
    PayoutStatus,
    PayoutType,
    RiskLevel,
    VisitEvent,
)
from services.balances import get_creator_balance
from services.context import SettlementContext
from services.events import DomainEventBus
from services.geo import NullGeoLocator
from services.ledger import SqlBudgetLedger
from services.pricing import TrustTierCpmPricing
from services.traffic import SqlTrafficMetricsSource

TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL", "sqlite+aiosqlite:///:memory:")

# Every test runs against the same fixed clock
NOW = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)

BROWSER_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
)


@pytest_asyncio.fixture(name="engine", scope="function")
async def engine_fixture():
    if TEST_DATABASE_URL.startswith("sqlite"):
        test_engine = create_async_engine(
            TEST_DATABASE_URL,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        test_engine = create_async_engine(TEST_DATABASE_URL, poolclass=NullPool)

    async with test_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)
        await conn.run_sync(SQLModel.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest.fixture(name="session_factory")
def session_factory_fixture(engine):
    return make_session_factory(engine)


@pytest_asyncio.fixture(name="session")
async def session_fixture(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture(name="config")
def config_fixture():
    return SettlementConfig(hash_salt="test-salt", geo_lookup_enabled=False, admin_api_token="test-admin-token")


@pytest.fixture(name="events")
def events_fixture():
    return DomainEventBus()


@pytest.fixture(name="ctx")
def ctx_fixture(config, events):
    return SettlementContext(
        config=config,
        ledger=SqlBudgetLedger(platform_fee_rate=config.platform_fee_rate),
        pricing=TrustTierCpmPricing(),
        traffic=SqlTrafficMetricsSource(),
        geo=NullGeoLocator(),
        events=events,
        clock=lambda: NOW,
    )


@pytest.fixture(name="recorded_events")
def recorded_events_fixture(events):
    """Every event published on the test bus, in order."""
    received = []

    async def collect(event):
        received.append(event)

    events.subscribe_all(collect)
    return received


class Seeder:
    """Insert-and-commit helpers for test data."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _save(self, obj):
        self.session.add(obj)
        await self.session.commit()
        await self.session.refresh(obj)
        return obj

    async def campaign(self, **overrides) -> Campaign:
        values = {
            "title": "Spring launch",
            "status": CampaignStatus.ACTIVE,
            "cpm_cents": 50000,
            "total_budget_cents": 1_000_000,
        }
        values.update(overrides)
        return await self._save(Campaign(**values))

    async def creator(self, with_balance: bool = True, **overrides) -> Creator:
        creator = await self._save(Creator(display_name="creator", **overrides))
        if with_balance:
            await self.balance(creator.id)
        return creator

    async def balance(self, creator_id: int, **overrides) -> CreatorBalance:
        return await self._save(CreatorBalance(creator_id=creator_id, **overrides))

    async def metrics(self, creator_id: int, anomaly_score: float = 0.0, day: datetime = NOW, **overrides):
        return await self._save(CreatorTrafficMetrics(
            creator_id=creator_id,
            date=day.date(),
            anomaly_score=anomaly_score,
            **overrides,
        ))

    async def visit(self, campaign_id: int, creator_id: int, visitor_id: str = "visitor-1", **overrides) -> VisitEvent:
        values = {
            "campaign_id": campaign_id,
            "creator_id": creator_id,
            "link_id": "link-1",
            "visitor_id": visitor_id,
            "ip_hash": "ip-hash",
            "user_agent_hash": "ua-hash",
            "occurred_at": NOW - timedelta(hours=1),
        }
        values.update(overrides)
        return await self._save(VisitEvent(**values))

    async def payout(self, creator_id: int, campaign_id: int, amount_cents: int = 1000, **overrides) -> PayoutQueueEntry:
        """Queue entry plus the matching pending balance, as create_payout_queue_entry would leave them."""
        values = {
            "creator_id": creator_id,
            "campaign_id": campaign_id,
            "amount_cents": amount_cents,
            "type": PayoutType.VIEW_PAYOUT,
            "status": PayoutStatus.PENDING,
            "eligible_at": NOW - timedelta(days=1),
            "risk_level": RiskLevel.LOW,
        }
        values.update(overrides)
        entry = await self._save(PayoutQueueEntry(**values))

        balance = await get_creator_balance(self.session, creator_id)
        if entry.status in (PayoutStatus.PENDING, PayoutStatus.FROZEN):
            balance.pending_balance_cents += entry.amount_cents
        await self._save(balance)
        return entry


@pytest.fixture(name="seed")
def seed_fixture(session):
    return Seeder(session)


@pytest_asyncio.fixture(name="client")
async def client_fixture(session: AsyncSession, session_factory, ctx):
    def get_session_override():
        return session

    app.dependency_overrides[get_session] = get_session_override
    app.state.settlement_context = ctx
    app.state.session_factory = session_factory

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
    app.state.settlement_context = None
    app.state.session_factory = None


@pytest.fixture(name="admin_headers")
def admin_headers_fixture(config):
    return {"X-Admin-Token": config.admin_api_token}
