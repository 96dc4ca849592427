"""
Pytest configuration and fixtures.
"""
import hashlib
import hmac
import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator, Callable, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from paybridge.api.main import create_app
from paybridge.config import Settings
from paybridge.core.ledger import TransactionLedger
from paybridge.core.orchestrator import PaymentOrchestrator
from paybridge.core.rate_limiter import InMemoryRateLimiter
from paybridge.core.reconciler import OrderReconciler
from paybridge.database.models import Base, Order
from paybridge.providers.base import CanonicalStatus, InitiateResult
from paybridge.providers.registry import AdapterRegistry, build_registry

WEBHOOK_SECRETS = {
    "pesapal": "pesapal_test_secret",
    "mpesa": "mpesa_test_secret",
    "airtel": "airtel_test_secret",
    "dpo": "dpo_test_secret",
}


def sign(provider: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of ``body`` with the provider's test secret."""
    return hmac.new(WEBHOOK_SECRETS[provider].encode(), body, hashlib.sha256).hexdigest()


def signed_webhook(provider: str, payload: dict[str, Any]) -> tuple[bytes, dict[str, str]]:
    """Serialise a webhook body and the headers that authenticate it."""
    body = json.dumps(payload).encode()
    return body, {"X-Paybridge-Signature": sign(provider, body), "Content-Type": "application/json"}


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        app_name="paybridge-test",
        app_env="test",
        log_level="DEBUG",
        database_url="sqlite+aiosqlite://",
        rate_limit_requests=5,
        rate_limit_window_seconds=60,
        redis_url=None,
        provider_timeout_seconds=2.0,
        pesapal_webhook_secret=WEBHOOK_SECRETS["pesapal"],
        mpesa_webhook_secret=WEBHOOK_SECRETS["mpesa"],
        airtel_webhook_secret=WEBHOOK_SECRETS["airtel"],
        dpo_webhook_secret=WEBHOOK_SECRETS["dpo"],
    )


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    """In-memory SQLite database shared by all sessions of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    await engine.dispose()


@pytest.fixture
def ledger(session_factory: async_sessionmaker[AsyncSession]) -> TransactionLedger:
    return TransactionLedger(session_factory)


@pytest.fixture
def reconciler(session_factory: async_sessionmaker[AsyncSession]) -> OrderReconciler:
    return OrderReconciler(session_factory)


@pytest_asyncio.fixture
async def registry(test_settings: Settings) -> AsyncGenerator[AdapterRegistry, Any]:
    """Adapters without API credentials: every initiation is absorbed as pending."""
    registry = build_registry(test_settings)
    yield registry
    await registry.close()


@pytest.fixture
def orchestrator(
    registry: AdapterRegistry, ledger: TransactionLedger, reconciler: OrderReconciler
) -> PaymentOrchestrator:
    return PaymentOrchestrator(registry, ledger, reconciler, default_webhook_provider="pesapal")


@pytest_asyncio.fixture
async def client(
    test_settings: Settings, orchestrator: PaymentOrchestrator
) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client."""
    app = create_app(
        test_settings,
        orchestrator=orchestrator,
        rate_limiter=InMemoryRateLimiter(
            test_settings.rate_limit_requests, test_settings.rate_limit_window_seconds
        ),
    )
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def make_result() -> Callable[..., InitiateResult]:
    """Factory for adapter initiation results."""

    def _make(
        transaction_id: str = "txn_test_1",
        provider: str = "mpesa",
        amount: str = "1000.00",
        currency: str = "KES",
        reference_id: Optional[str] = None,
    ) -> InitiateResult:
        return InitiateResult(
            transaction_id=transaction_id,
            provider=provider,
            status=CanonicalStatus.PENDING,
            amount=Decimal(amount),
            currency=currency,
            reference_id=reference_id,
            metadata={"has_keys": False},
        )

    return _make


@pytest_asyncio.fixture
async def create_order(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Any]:
    """Insert an order owned by the (external) order-management service."""

    async def _create(order_id: str = "order_1", user_id: str = "user_1") -> None:
        async with session_factory() as db:
            db.add(Order(id=order_id, user_id=user_id, updated_at=datetime.now(timezone.utc)))
            await db.commit()

    return _create


@pytest_asyncio.fixture
async def get_order(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Any]:
    async def _get(order_id: str) -> Optional[Order]:
        async with session_factory() as db:
            return await db.get(Order, order_id)

    return _get


@pytest.fixture
def webhook() -> Callable[[str, dict[str, Any]], tuple[bytes, dict[str, str]]]:
    """Signed webhook builder: ``body, headers = webhook(provider, payload)``."""
    return signed_webhook
