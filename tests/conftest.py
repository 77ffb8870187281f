"""
Pytest configuration and fixtures.
"""
import asyncio
import os
import uuid
from typing import Any, AsyncGenerator, Dict, List, Union

# Settings are read at import time by the API module
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_fake_key_for_testing")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./checkout_test.db")
os.environ.setdefault("APP_ENV", "test")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from api.dependencies import get_health_check, get_orchestrator, get_reconciliation_engine
from api.main import app
from config import Settings
from core.checkout import CheckoutOrchestrator
from core.idempotency import IdempotencyManager
from core.order_store import LineItem, OrderStore
from core.reconciliation import ReconciliationEngine
from database.connection import build_session_factory, init_db
from integrations.gateway import ChargeOutcome, GatewayStatus, Succeeded
from monitoring.health import HealthCheck

Scripted = Union[ChargeOutcome, BaseException]


class FakeGateway:
    """
    Scripted payment gateway.

    Outcomes queued in `outcomes` are returned (or raised) in order; once the
    queue is empty every charge succeeds. Like a real gateway, a charge
    repeated with an idempotency key that already succeeded replays the
    first answer.
    """

    def __init__(self) -> None:
        self.outcomes: List[Scripted] = []
        self.delay = 0.0
        self.charge_calls: List[Dict[str, Any]] = []
        self.captured: Dict[str, int] = {}
        self.query_results: Dict[str, GatewayStatus] = {}
        self.query_calls: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def charge(
        self,
        order_id: uuid.UUID,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
    ) -> ChargeOutcome:
        self.charge_calls.append(
            {
                "order_id": order_id,
                "amount_cents": amount_cents,
                "currency": currency,
                "idempotency_key": idempotency_key,
            }
        )
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if idempotency_key in self.captured:
                return Succeeded(reference=f"pi_{idempotency_key}")
            outcome = self.outcomes.pop(0) if self.outcomes else None
            if isinstance(outcome, BaseException):
                raise outcome
            if outcome is None:
                outcome = Succeeded(reference=f"pi_{idempotency_key}")
            if isinstance(outcome, Succeeded):
                self.captured[idempotency_key] = amount_cents
            return outcome
        finally:
            self.in_flight -= 1

    async def query_status(self, reference: str) -> GatewayStatus:
        self.query_calls.append(reference)
        return self.query_results.get(reference, GatewayStatus.UNKNOWN)

    def charges_for(self, order_id: uuid.UUID) -> List[Dict[str, Any]]:
        return [c for c in self.charge_calls if c["order_id"] == order_id]

    def captured_count(self, order_id: uuid.UUID) -> int:
        keys = {c["idempotency_key"] for c in self.charges_for(order_id)}
        return len(keys & set(self.captured))


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings with short timeouts."""
    return Settings(
        stripe_secret_key="sk_test_fake_key_for_testing",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'checkout.db'}",
        redis_url=None,
        app_name="checkout-systems-test",
        app_env="test",
        log_level="DEBUG",
        gateway_timeout_seconds=0.5,
        idempotency_wait_seconds=2.0,
        idempotency_poll_interval_seconds=0.01,
        reconciliation_staleness_seconds=0,
        pending_order_ttl_seconds=0,
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """Per-test SQLite database file; NullPool gives each session its own connection."""
    engine = create_async_engine(test_settings.database_url, poolclass=NullPool)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> Any:
    return build_session_factory(engine)


@pytest.fixture
def order_store(session_factory: Any) -> OrderStore:
    return OrderStore(session_factory=session_factory)


@pytest.fixture
def idempotency_manager(session_factory: Any, test_settings: Settings) -> IdempotencyManager:
    return IdempotencyManager(session_factory=session_factory, settings=test_settings)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def orchestrator(
    order_store: OrderStore,
    idempotency_manager: IdempotencyManager,
    gateway: FakeGateway,
    test_settings: Settings,
) -> CheckoutOrchestrator:
    return CheckoutOrchestrator(
        order_store=order_store,
        idempotency_manager=idempotency_manager,
        gateway=gateway,
        settings=test_settings,
    )


@pytest.fixture
def sample_items() -> List[LineItem]:
    """A two-line cart totalling 4498 cents."""
    return [
        LineItem(product_id="sku-123", quantity=2, unit_price_cents=1999),
        LineItem(product_id="sku-456", quantity=1, unit_price_cents=500),
    ]


@pytest.fixture
def user_id() -> str:
    return "user-" + uuid.uuid4().hex[:8]


@pytest_asyncio.fixture
async def client(
    orchestrator: CheckoutOrchestrator,
    session_factory: Any,
    gateway: FakeGateway,
    test_settings: Settings,
) -> AsyncGenerator[AsyncClient, Any]:
    """HTTP client against the app, wired to the per-test database and fake gateway."""
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_reconciliation_engine] = lambda: ReconciliationEngine(
        orchestrator=orchestrator, settings=test_settings
    )
    app.dependency_overrides[get_health_check] = lambda: HealthCheck(
        session_factory=session_factory, gateway=gateway, settings=test_settings
    )

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def sample_checkout_data() -> Dict[str, Any]:
    """Checkout request body matching sample_items."""
    return {
        "items": [
            {"productId": "sku-123", "quantity": 2, "price": "19.99"},
            {"productId": "sku-456", "quantity": 1, "price": "5.00"},
        ],
    }
