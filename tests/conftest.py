"""
Pytest configuration and fixtures.

Every test gets its own SQLite database file; provider clients run against
httpx.MockTransport handlers and rails against in-memory doubles.
"""
import asyncio
import uuid
from decimal import Decimal
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from payout_engine.config import Settings
from payout_engine.core.ledger import ViewTrackingLedger
from payout_engine.core.locks import LocalKeyedLock
from payout_engine.core.orchestrator import TransactionOrchestrator
from payout_engine.core.registry import PaymentMethodRegistry
from payout_engine.database.connection import create_session_factory
from payout_engine.database.models import (
    Base,
    Campaign,
    PaymentMethod,
    Rail,
    VerificationStatus,
)
from payout_engine.integrations.dwolla_client import DwollaClient
from payout_engine.integrations.plaid_client import PlaidClient
from payout_engine.integrations.rails import DisbursementResult, RailRegistry, SettlementStatus

Handler = Callable[[httpx.Request], httpx.Response]


class FakeRail:
    """Rail adapter double that records every disbursement."""

    def __init__(self, rail: Rail, delay: float = 0.0):
        self.rail = rail
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []
        self.error: Optional[Exception] = None
        self.status = SettlementStatus.PENDING
        self.status_error: Optional[Exception] = None

    async def disburse(
        self, amount: Decimal, destination: Dict[str, Any], idempotency_key: str
    ) -> DisbursementResult:
        self.calls.append(
            {"amount": amount, "destination": dict(destination), "idempotency_key": idempotency_key}
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return DisbursementResult(
            external_ref=f"{self.rail.value}-ref-{len(self.calls)}", provider_status="pending"
        )

    async def fetch_status(self, external_ref: str) -> SettlementStatus:
        if self.status_error is not None:
            raise self.status_error
        return self.status


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        database_url="sqlite+aiosqlite://",
        app_name="payout-engine-test",
        app_env="test",
        log_level="DEBUG",
        plaid_client_id="plaid-client-id",
        plaid_secret="plaid-secret",
        dwolla_key="dwolla-key",
        dwolla_secret="dwolla-secret",
        dwolla_master_funding_source="https://api-sandbox.dwolla.com/funding-sources/master",
        paypal_client_id="paypal-client-id",
        paypal_client_secret="paypal-client-secret",
        paypal_webhook_id="WH-TEST",
        coinbase_api_key="coinbase-key",
        coinbase_webhook_secret="coinbase-webhook-secret",
        tiktok_client_key="tiktok-key",
        tiktok_client_secret="tiktok-secret",
        tiktok_research_api_enabled=True,
        provider_retry_base_delay=0,
        metrics_batch_delay_seconds=0,
        admin_api_key="operator-key",
    )


@pytest_asyncio.fixture
async def engine(tmp_path: Any) -> AsyncGenerator[AsyncEngine, Any]:
    """Fresh SQLite database with all tables."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'payouts.db'}", poolclass=NullPool
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def test_db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def owner_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def brand_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest_asyncio.fixture
async def campaign(test_db: AsyncSession, brand_id: uuid.UUID) -> Campaign:
    """CPM campaign: $10 per 1,000 views, capped at 100,000 views."""
    campaign = Campaign(
        id=uuid.uuid4(),
        brand_id=brand_id,
        title="Summer launch",
        payment_model="cpm",
        cpm_rate=Decimal("10.00"),
        max_views=100_000,
    )
    test_db.add(campaign)
    await test_db.commit()
    return campaign


@pytest.fixture
def mock_http() -> Callable[[Handler], httpx.AsyncClient]:
    """Build an httpx client whose requests go to a handler function."""

    def _build(handler: Handler) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return _build


@pytest.fixture
def fake_rails() -> Dict[Rail, FakeRail]:
    return {rail: FakeRail(rail) for rail in Rail}


@pytest.fixture
def rail_registry(fake_rails: Dict[Rail, FakeRail]) -> RailRegistry:
    return RailRegistry(fake_rails.values())


@pytest.fixture
def plaid() -> AsyncMock:
    plaid = AsyncMock(spec=PlaidClient)
    plaid.create_link_token.return_value = "link-sandbox-token"
    return plaid


@pytest.fixture
def dwolla() -> AsyncMock:
    return AsyncMock(spec=DwollaClient)


@pytest.fixture
def registry(plaid: AsyncMock, dwolla: AsyncMock) -> PaymentMethodRegistry:
    return PaymentMethodRegistry(plaid=plaid, dwolla=dwolla)


@pytest.fixture
def ledger() -> ViewTrackingLedger:
    return ViewTrackingLedger(stale_after_seconds=3600, sync_batch_size=20)


@pytest.fixture
def orchestrator(
    rail_registry: RailRegistry,
    registry: PaymentMethodRegistry,
    ledger: ViewTrackingLedger,
    test_settings: Settings,
) -> TransactionOrchestrator:
    return TransactionOrchestrator(
        rail_registry, registry, ledger=ledger, lock=LocalKeyedLock(), settings=test_settings
    )


@pytest_asyncio.fixture
async def paypal_method(
    registry: PaymentMethodRegistry, test_db: AsyncSession, owner_id: uuid.UUID
) -> PaymentMethod:
    result = await registry.add(
        owner_id, Rail.PAYPAL, {"email": "Creator@Example.com"}, test_db, is_default=True
    )
    return result.method


@pytest_asyncio.fixture
async def ach_method(test_db: AsyncSession, owner_id: uuid.UUID) -> PaymentMethod:
    """Bank account that already went through Plaid/Dwolla verification."""
    method = PaymentMethod(
        id=uuid.uuid4(),
        owner_id=owner_id,
        type=Rail.ACH.value,
        details={
            "account_holder": "Jane Creator",
            "email": "jane@example.com",
            "account_type": "checking",
            "routing_number": "110000000",
            "account_mask": "6789",
            "funding_source_url": "https://api-sandbox.dwolla.com/funding-sources/fs-1",
        },
        status=VerificationStatus.VERIFIED.value,
        is_active=True,
        is_default=False,
    )
    test_db.add(method)
    await test_db.commit()
    return method
