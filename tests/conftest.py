"""
Pytest configuration and fixtures.

Tests run against a throwaway SQLite file (aiosqlite) and in-memory fake
provider adapters; no provider sandbox or PostgreSQL instance is needed.
"""
import asyncio
import itertools
import os
from collections import defaultdict
from decimal import Decimal
from typing import Any, AsyncGenerator, Dict, List, Optional

# Settings are read at import time by the application module
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./ride_payments_test.db")
os.environ.setdefault("APP_ENV", "test")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from ride_payments.config import Settings
from ride_payments.core.enums import Provider, TransactionKind
from ride_payments.core.idempotency import IdempotencyManager
from ride_payments.core.notifications import (
    NotificationDispatcher,
    drain_background_notifications,
)
from ride_payments.core.orchestrator import PaymentOrchestrator
from ride_payments.core.store import TransactionStore
from ride_payments.database.models import Base
from ride_payments.integrations.base import CircuitBreaker, ProviderResult, ProviderStatus
from ride_payments.integrations.webhook_handler import CallbackHandler

MTN_PHONE = "+237 677 123 456"
ORANGE_PHONE = "699123456"
DRIVER_PHONE = "237670000001"


def accepted(token: str, provider_status: str = "PENDING") -> ProviderResult:
    """Provider result for an accepted submission."""
    return ProviderResult(
        success=True,
        verification_token=token,
        message="Request accepted",
        provider_status=provider_status,
        status_code=202,
        raw={"reference_id": token},
    )


def rejected(message: str, provider_status: Optional[str] = None) -> ProviderResult:
    """Provider result for a refused submission."""
    return ProviderResult(
        success=False,
        verification_token=None,
        message=message,
        provider_status=provider_status,
        status_code=400,
        raw={"message": message},
    )


class FakeAdapter:
    """
    In-memory provider adapter.

    Submissions pop queued outcomes (a ProviderResult or an exception to
    raise) and fall back to an accepted result with a fresh token.
    """

    def __init__(self, provider: Provider, reliable_callbacks: bool = True):
        self.provider = provider
        self.reliable_callbacks = reliable_callbacks
        self.circuit_breaker = CircuitBreaker(provider)
        self.payin_results: List[Any] = []
        self.payout_results: List[Any] = []
        self.refund_results: List[Any] = []
        self.statuses: Dict[str, Any] = {}
        self.calls: Dict[str, List[Any]] = defaultdict(list)
        self._counter = itertools.count(1)

    def _next(self, queue: List[Any], operation: str) -> ProviderResult:
        if queue:
            outcome = queue.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return accepted(f"{self.provider.value}-{operation}-{next(self._counter)}")

    async def payin(self, phone: str, amount: Decimal, reason: str) -> ProviderResult:
        self.calls["payin"].append((phone, amount, reason))
        return self._next(self.payin_results, "payin")

    async def payout(
        self, phone: str, amount: Decimal, reason: str, currency: Optional[str] = None
    ) -> ProviderResult:
        self.calls["payout"].append((phone, amount, reason, currency))
        # Let concurrent callers interleave
        await asyncio.sleep(0)
        return self._next(self.payout_results, "payout")

    async def refund(
        self,
        original_token: str,
        amount: Decimal,
        reason: str,
        phone: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> ProviderResult:
        self.calls["refund"].append((original_token, amount, reason, phone, currency))
        return self._next(self.refund_results, "refund")

    async def check_status(
        self, token: str, kind: TransactionKind = TransactionKind.PAYIN
    ) -> ProviderStatus:
        self.calls["check_status"].append((token, kind))
        outcome = self.statuses.get(token)
        if outcome is None:
            return ProviderStatus(provider_status=None, reason="Transaction not found", found=False)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def close(self) -> None:
        pass


class RecordingNotifier(NotificationDispatcher):
    """Notification dispatcher that keeps what it was asked to send."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []

    async def send_notification(
        self, user_id: str, title: str, message: str, data: Dict[str, Any]
    ) -> None:
        self.sent.append({"user_id": user_id, "title": title, "message": message, "data": data})

    def of_type(self, notification_type: str) -> List[Dict[str, Any]]:
        return [n for n in self.sent if n["data"].get("type") == notification_type]


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        database_url="sqlite+aiosqlite://",
        redis_url=None,
        app_name="ride-payments-test",
        app_env="test",
        log_level="DEBUG",
        use_aggregator=False,
        default_currency="XAF",
        payout_max_retries=3,
        payout_retry_cooldown_seconds=300,
        reconciliation_stale_after_seconds=300,
        mtn_webhook_secret=None,
    )


@pytest_asyncio.fixture
async def engine(tmp_path: Any) -> AsyncGenerator[Any, Any]:
    """Fresh SQLite database file per test."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine: Any) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test database."""
    return async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest_asyncio.fixture
async def test_db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def adapters() -> Dict[Provider, FakeAdapter]:
    """One fake adapter per provider; Orange callbacks are unreliable."""
    return {
        provider: FakeAdapter(provider, reliable_callbacks=provider is not Provider.ORANGE)
        for provider in Provider
    }


@pytest_asyncio.fixture
async def notifier() -> AsyncGenerator[RecordingNotifier, Any]:
    """Recording notifier; pending notifications are flushed on teardown."""
    dispatcher = RecordingNotifier()
    yield dispatcher
    await drain_background_notifications()


@pytest.fixture
def orchestrator(
    adapters: Dict[Provider, FakeAdapter],
    test_settings: Settings,
    notifier: RecordingNotifier,
) -> PaymentOrchestrator:
    """Orchestrator wired to fake adapters and the recording notifier."""
    store = TransactionStore()
    return PaymentOrchestrator(
        adapters,
        store=store,
        settings=test_settings,
        use_aggregator=False,
        notifier=notifier,
        idempotency_manager=IdempotencyManager(store=store, settings=test_settings),
    )


@pytest.fixture
def callback_handler(orchestrator: PaymentOrchestrator) -> CallbackHandler:
    """Callback handler sharing the orchestrator's store."""
    return CallbackHandler(orchestrator)


@pytest_asyncio.fixture
async def client(
    orchestrator: PaymentOrchestrator,
    callback_handler: CallbackHandler,
    session_factory: async_sessionmaker[AsyncSession],
    test_settings: Settings,
) -> AsyncGenerator[AsyncClient, Any]:
    """HTTP client against the app with test services on ``app.state``."""
    from ride_payments.api.main import app
    from ride_payments.core.reconciliation import ReconciliationEngine
    from ride_payments.database.connection import get_db
    from ride_payments.monitoring.health import HealthCheck

    app.state.orchestrator = orchestrator
    app.state.callback_handler = callback_handler
    app.state.reconciliation_engine = ReconciliationEngine(
        orchestrator, session_factory=session_factory
    )
    app.state.health_check = HealthCheck(
        settings=test_settings,
        adapters=orchestrator.adapters,
        session_factory=session_factory,
    )

    async def override_get_db() -> AsyncGenerator[AsyncSession, Any]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def sample_payin_data() -> Dict[str, Any]:
    """Sample payin request data."""
    return {
        "booking_id": "B1",
        "amount": "5000",
        "phone_number": MTN_PHONE,
        "idempotency_key": "payment_B1_U1",
        "user_id": "U1",
    }
