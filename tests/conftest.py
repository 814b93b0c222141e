"""
Pytest configuration and fixtures.

Tests run against a throwaway SQLite database per test (aiosqlite) so the
compare-and-swap paths hit a real SQL engine without external services.
"""
import os

os.environ.setdefault("PAYSTACK_SECRET_KEY", "sk_test_fake_key_for_testing")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./order_reconciliation_test.db")

import uuid
from decimal import Decimal
from typing import Any, AsyncGenerator, Awaitable, Callable, List, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from order_reconciliation.config import Settings
from order_reconciliation.core.invoices import InvoiceDispatcher
from order_reconciliation.core.reconciliation import ReconciliationEngine
from order_reconciliation.core.types import (
    ConfirmationSource,
    DeliveryAddress,
    GatewayStatus,
    InvoiceDocument,
    LineItem,
    PaymentConfirmation,
    PaymentInitialization,
    PendingOrderResult,
)
from order_reconciliation.database.connection import build_session_factory
from order_reconciliation.database.models import Base

TEST_SECRET_KEY = "sk_test_fake_key_for_testing"


class FakeInvoiceRenderer:
    """Invoice collaborator that records calls and can be told to fail."""

    def __init__(self, fail_times: int = 0) -> None:
        self.fail_times = fail_times
        self.calls: List[uuid.UUID] = []

    async def render_invoice(self, order_id: uuid.UUID) -> InvoiceDocument:
        self.calls.append(order_id)
        if len(self.calls) <= self.fail_times:
            raise RuntimeError("invoice service unavailable")
        return InvoiceDocument(
            invoice_number="INV-TEST-0001",
            document_url=f"https://invoices.example.com/{order_id}.pdf",
        )


def build_confirmation(
    reference: str,
    amount_cents: int = 2000,
    gateway_status: GatewayStatus = GatewayStatus.SUCCESS,
    source: ConfirmationSource = ConfirmationSource.WEBHOOK,
) -> PaymentConfirmation:
    return PaymentConfirmation(
        reference=reference,
        gateway_status=gateway_status,
        amount_paid_cents=amount_cents,
        source=source,
    )


@pytest.fixture
def make_confirmation() -> Callable[..., PaymentConfirmation]:
    return build_confirmation


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings with no retry delays."""
    return Settings(
        paystack_secret_key=TEST_SECRET_KEY,
        database_url=f"sqlite+aiosqlite:///{tmp_path}/orders.db",
        app_name="order-reconciliation-test",
        app_env="test",
        log_level="DEBUG",
        currency="GHS",
        gateway_retry_max_attempts=3,
        gateway_retry_base_delay=0,
        invoice_retry_max_attempts=3,
        invoice_retry_base_delay=0,
        reconcile_min_age_minutes=0,
        invoice_grace_minutes=0,
    )


@pytest_asyncio.fixture
async def db_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """Create a fresh SQLite database with every table."""
    engine = create_async_engine(test_settings.database_url, poolclass=NullPool)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(db_engine)


@pytest.fixture
def mock_gateway() -> AsyncMock:
    """Gateway that initializes every transaction successfully."""
    gateway = AsyncMock()
    gateway.initialize.return_value = PaymentInitialization(
        authorization_url="https://checkout.paystack.com/abc123",
        access_code="abc123",
        reference="ignored",
    )
    return gateway


@pytest.fixture
def invoice_renderer() -> FakeInvoiceRenderer:
    return FakeInvoiceRenderer()


@pytest.fixture
def invoice_dispatcher(
    invoice_renderer: FakeInvoiceRenderer,
    session_factory: async_sessionmaker[AsyncSession],
    test_settings: Settings,
) -> InvoiceDispatcher:
    return InvoiceDispatcher(invoice_renderer, session_factory, settings=test_settings)


@pytest_asyncio.fixture
async def engine(
    session_factory: async_sessionmaker[AsyncSession],
    mock_gateway: AsyncMock,
    invoice_dispatcher: InvoiceDispatcher,
    test_settings: Settings,
) -> AsyncGenerator[ReconciliationEngine, Any]:
    engine = ReconciliationEngine(
        session_factory=session_factory,
        gateway=mock_gateway,
        invoice_dispatcher=invoice_dispatcher,
        settings=test_settings,
    )
    yield engine
    await invoice_dispatcher.drain()


@pytest.fixture
def user_id() -> uuid.UUID:
    return uuid.UUID("123e4567-e89b-12d3-a456-426614174000")


@pytest.fixture
def sample_items() -> List[LineItem]:
    """Two units at 10.00 for a total of 20.00."""
    return [LineItem(product_id="p1", quantity=2, unit_price=Decimal("10.00"), name="Tomatoes")]


@pytest.fixture
def sample_address() -> DeliveryAddress:
    return DeliveryAddress(
        street="12 Palm Avenue",
        city="Accra",
        region="Greater Accra",
        phone="+233201234567",
    )


@pytest.fixture
def place_order(
    engine: ReconciliationEngine,
    user_id: uuid.UUID,
    sample_items: List[LineItem],
    sample_address: DeliveryAddress,
) -> Callable[..., Awaitable[PendingOrderResult]]:
    """Create a pending order for the sample cart (or a given one)."""

    async def _place(
        items: Optional[List[LineItem]] = None,
        owner: Optional[uuid.UUID] = None,
        **kwargs: Any,
    ) -> PendingOrderResult:
        kwargs.setdefault("email", "customer@example.com")
        return await engine.create_pending_order(
            user_id=owner or user_id,
            cart_items=items if items is not None else sample_items,
            delivery_address=sample_address,
            **kwargs,
        )

    return _place


@pytest.fixture
def sample_order_payload() -> dict[str, Any]:
    """Sample create-order request body."""
    return {
        "items": [
            {"product_id": "p1", "name": "Tomatoes", "quantity": 2, "unit_price": "10.00"}
        ],
        "delivery_address": {
            "street": "12 Palm Avenue",
            "city": "Accra",
            "region": "Greater Accra",
            "phone": "+233201234567",
        },
    }


@pytest_asyncio.fixture
async def client(
    engine: ReconciliationEngine,
    session_factory: async_sessionmaker[AsyncSession],
    test_settings: Settings,
) -> AsyncGenerator[AsyncClient, Any]:
    """HTTP client against the app with services bound to the test database."""
    from order_reconciliation.api.dependencies import (
        get_gateway,
        get_health_check,
        get_reconciliation_engine,
    )
    from order_reconciliation.api.main import app
    from order_reconciliation.integrations.paystack_client import PaystackClient
    from order_reconciliation.monitoring.health import HealthCheck

    # Real client so webhook signatures are checked; it never reaches the network
    gateway = PaystackClient(settings=test_settings)

    app.dependency_overrides[get_reconciliation_engine] = lambda: engine
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_health_check] = lambda: HealthCheck(
        session_factory=session_factory, settings=test_settings
    )

    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    await gateway.aclose()
