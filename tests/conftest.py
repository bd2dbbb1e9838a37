"""
Pytest configuration and fixtures.

Tests run against a temporary SQLite database and scripted provider
endpoints served through ``httpx.MockTransport``.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import event, func, select
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from memberpay.config import Settings
from memberpay.core.ledger import AttemptSpec, PaymentLedger
from memberpay.core.orchestrator import PaymentOrchestrator, build_orchestrator
from memberpay.core.types import AttemptStatus, EntitlementKind, Gateway, utcnow
from memberpay.database.connection import build_session_factory
from memberpay.database.models import Base, PaymentAttempt
from memberpay.integrations.gateways import GatewayRegistry, build_gateways

ORANGE_TOKEN_URL = "https://api.orange.com/oauth/v3/token"
ORANGE_BASE_URL = "https://api.orange.com/orange-money-webpay/dev/v1"
SAMA_BASE_URL = "https://smarchandamatest.sama.money/V1"
CINETPAY_BASE_URL = "https://api-checkout.cinetpay.com/v2"

Handler = Callable[[httpx.Request], httpx.Response]


def pytest_configure(config: Any) -> None:
    """Register test markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "race: Concurrency and race condition tests")
    config.addinivalue_line("markers", "integration: Integration tests")


class ProviderStub:
    """
    Scripted provider endpoints.

    Routes are matched on method and URL (query string ignored); the last
    registration for a route wins. Every request is recorded.
    """

    def __init__(self) -> None:
        self.routes: Dict[tuple, Handler] = {}
        self.requests: List[httpx.Request] = []

    def on(self, method: str, url: str, handler: Any) -> None:
        if isinstance(handler, httpx.Response) or not callable(handler):
            response = handler

            def handler(request: httpx.Request) -> httpx.Response:
                return _copy(response)

        self.routes[(method.upper(), url)] = handler

    def json(self, method: str, url: str, body: Any, status_code: int = 200) -> None:
        self.on(method, url, lambda request: httpx.Response(status_code, json=body))

    def calls(self, method: str, url: str) -> List[httpx.Request]:
        return [
            r for r in self.requests if r.method == method.upper() and _base(r) == url
        ]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get((request.method, _base(request)))
        if handler is None:
            return httpx.Response(404, json={"message": f"no route for {request.url}"})
        return handler(request)


def _base(request: httpx.Request) -> str:
    return str(request.url).split("?")[0]


def _copy(response: httpx.Response) -> httpx.Response:
    return httpx.Response(response.status_code, content=response.content, headers=response.headers)


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, now: Optional[datetime] = None) -> None:
        self.now = now or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'memberpay_test.db'}",
        enabled_gateways="orange_money,sama_money,cinetpay",
        payment_environment="sandbox",
        app_url="https://memberpay.test",
        orange_money_client_id="om-client",
        orange_money_client_secret="om-secret",
        orange_money_merchant_key="om-merchant",
        sama_money_merchant_id="sama-merchant",
        sama_money_public_key="sama-public",
        sama_money_transac_header="sama-transac",
        cinetpay_api_key="cp-key",
        cinetpay_site_id="445566",
        gateway_retry_max_attempts=3,
        gateway_retry_base_delay=0,
        app_name="memberpay-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """
    Test engine on a temporary SQLite file.

    Every transaction starts with BEGIN IMMEDIATE, so concurrent sessions
    serialize on the write lock instead of failing a lock upgrade, and
    SAVEPOINTs behave as on PostgreSQL.
    """
    engine = create_async_engine(test_settings.database_url, poolclass=NullPool)

    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest.fixture
def provider() -> ProviderStub:
    """Provider endpoints answering every happy-path call."""
    stub = ProviderStub()
    stub.json("POST", ORANGE_TOKEN_URL, {"access_token": "om-token", "expires_in": 3600})
    stub.json(
        "POST",
        f"{ORANGE_BASE_URL}/webpayment",
        {
            "status": 201,
            "message": "OK",
            "pay_token": "REF123",
            "payment_url": "https://webpayment.orange.test/REF123",
            "notif_token": "notif-123",
        },
        status_code=201,
    )
    stub.json(
        "POST",
        f"{SAMA_BASE_URL}/marchand/auth",
        {"status": "1", "resultat": {"token": "sama-token", "dFin": "2099-01-01T00:00:00"}},
    )
    stub.on("POST", f"{SAMA_BASE_URL}/marchand/pay", _sama_pay)
    stub.json(
        "POST",
        f"{CINETPAY_BASE_URL}/payment",
        {
            "code": "201",
            "message": "CREATED",
            "data": {
                "payment_token": "cp-token",
                "payment_url": "https://checkout.cinetpay.test/cp-token",
            },
        },
    )
    return stub


def _sama_pay(request: httpx.Request) -> httpx.Response:
    form = dict(httpx.QueryParams(request.content.decode()))
    return httpx.Response(
        200,
        json={
            "status": "1",
            "msg": "Demande de paiement envoyee",
            "idCommande": form["idCommande"],
            "transNumber": "SAMA-TX-1",
        },
    )


@pytest_asyncio.fixture
async def http_client(provider: ProviderStub) -> AsyncGenerator[httpx.AsyncClient, Any]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(provider)) as client:
        yield client


@pytest.fixture
def gateways(test_settings: Settings, http_client: httpx.AsyncClient) -> GatewayRegistry:
    return build_gateways(test_settings, http_client)


@pytest.fixture
def notifier() -> AsyncMock:
    """Notifier recording user notifications and operator alerts."""
    return AsyncMock()


@pytest.fixture
def orchestrator(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    gateways: GatewayRegistry,
    notifier: AsyncMock,
) -> PaymentOrchestrator:
    return build_orchestrator(test_settings, session_factory, gateways, notifier=notifier)


@pytest.fixture
def create_attempt(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[PaymentAttempt]]:
    """Factory recording a pending attempt directly in the ledger."""

    async def _create(
        amount: str = "10000",
        currency: str = "XOF",
        gateway: Gateway = Gateway.ORANGE_MONEY,
        kind: EntitlementKind = EntitlementKind.MEMBERSHIP,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: str = "user-1",
        external_reference: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> PaymentAttempt:
        ledger = PaymentLedger(clock=(lambda: created_at) if created_at else utcnow)
        if metadata is None and kind is EntitlementKind.MEMBERSHIP:
            metadata = {"tier": "premium", "plan": "monthly"}
        async with session_factory() as db:
            attempt = await ledger.create_attempt(
                db,
                AttemptSpec(
                    user_id=user_id,
                    amount=Decimal(amount),
                    currency=currency,
                    gateway=gateway,
                    kind=kind,
                    metadata=metadata or {},
                ),
            )
            if external_reference:
                attempt = await ledger.set_external_reference(db, attempt.id, external_reference)
            await db.commit()
        return attempt

    return _create


@pytest.fixture
def complete_attempt(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[PaymentAttempt]]:
    """Factory moving an attempt to completed without activating it."""

    async def _complete(attempt_id: str, settled_reference: str = "REF123") -> PaymentAttempt:
        async with session_factory() as db:
            result = await PaymentLedger().transition(
                db, attempt_id, AttemptStatus.COMPLETED, settled_reference, source="test"
            )
            await db.commit()
        return result.attempt

    return _complete


@pytest.fixture
def count_rows(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[int]]:
    """Count rows of a model matching optional criteria."""

    async def _count(model: Any, *criteria: Any) -> int:
        async with session_factory() as db:
            result = await db.execute(select(func.count()).select_from(model).where(*criteria))
            return int(result.scalar_one())

    return _count


@pytest.fixture
def sample_payment_data() -> Dict[str, Any]:
    """Sample payment request data."""
    return {
        "user_id": "user-1",
        "amount": "10000",
        "currency": "XOF",
        "gateway": "orange_money",
        "kind": "membership_payment",
        "payer_contact": "70000000",
        "description": "Premium membership",
        "metadata": {"tier": "premium", "plan": "monthly"},
    }
