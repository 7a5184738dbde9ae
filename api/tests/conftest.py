"""Shared fixtures for billing API tests.

Services run against a real SQLite file database under ``tmp_path`` and the
in-memory :class:`FakeGatewayAdapter`.  Time is controlled by a
:class:`FrozenClock` injected into every service.
"""

from __future__ import annotations

import json
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from billing_core.catalog import PlanCatalog, default_catalog
from billing_core.lifecycle import SubscriptionLifecycle
from billing_core.policy import BillingPolicy
from billing_core.state.database import create_session_factory, run_with_tenant_context
from billing_core.state.repository import SubscriptionRepository
from billing_core.state.sqlite_adapter import create_tables, get_local_engine
from billing_core.state.tables import SubscriptionTable
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.config import BillingSettings
from api.dependencies import (
    get_catalog,
    get_db_session,
    get_settings,
    get_subscription_service,
    get_webhook_reconciler,
)
from api.main import create_app
from api.services.gateway import FakeGatewayAdapter, sign_payload
from api.services.renewal_engine import RenewalEngine
from api.services.subscription_service import SubscriptionService
from api.services.webhook_reconciler import WebhookReconciler

WEBHOOK_SECRET = "whsec_test_secret"
START = datetime(2026, 6, 1, 9, 0, tzinfo=UTC)

SeedFn = Callable[..., Awaitable[SubscriptionTable]]


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value


# ---------------------------------------------------------------------------
# Core objects
# ---------------------------------------------------------------------------


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock(START)


@pytest.fixture()
def catalog() -> PlanCatalog:
    return default_catalog()


@pytest.fixture()
def policy() -> BillingPolicy:
    return BillingPolicy()


@pytest.fixture()
def lifecycle(catalog: PlanCatalog, policy: BillingPolicy) -> SubscriptionLifecycle:
    return SubscriptionLifecycle(catalog, policy)


@pytest.fixture()
def gateway() -> FakeGatewayAdapter:
    return FakeGatewayAdapter(timeout_seconds=2.0)


@pytest_asyncio.fixture()
async def session_factory(tmp_path: Path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session factory bound to a fresh SQLite file with all tables created."""
    engine = get_local_engine(tmp_path / "billing.db")
    await create_tables(engine)
    yield create_session_factory(engine)
    await engine.dispose()


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


@pytest.fixture()
def service(
    session_factory: async_sessionmaker[AsyncSession],
    gateway: FakeGatewayAdapter,
    catalog: PlanCatalog,
    policy: BillingPolicy,
    clock: FrozenClock,
) -> SubscriptionService:
    return SubscriptionService(session_factory, gateway, catalog, policy, clock=clock)


@pytest.fixture()
def renewal_engine(
    session_factory: async_sessionmaker[AsyncSession],
    gateway: FakeGatewayAdapter,
    catalog: PlanCatalog,
    policy: BillingPolicy,
    clock: FrozenClock,
) -> RenewalEngine:
    return RenewalEngine(session_factory, gateway, catalog, policy, concurrency=3, clock=clock)


@pytest.fixture()
def reconciler(
    session_factory: async_sessionmaker[AsyncSession],
    gateway: FakeGatewayAdapter,
    lifecycle: SubscriptionLifecycle,
    clock: FrozenClock,
) -> WebhookReconciler:
    return WebhookReconciler(session_factory, gateway, lifecycle, WEBHOOK_SECRET, clock=clock)


@pytest.fixture()
def seed(
    session_factory: async_sessionmaker[AsyncSession],
    lifecycle: SubscriptionLifecycle,
) -> SeedFn:
    """Return an async helper that inserts an active subscription.

    ``seed("acme", "team", 2, start=..., payment_method="pm_card")`` stores a
    subscription whose current period began at *start*.
    """

    async def _seed(
        tenant_id: str,
        plan: str = "team",
        users: int = 2,
        *,
        start: datetime = START,
        addons: list[str] | None = None,
        payment_method: str | None = "pm_card_visa",
    ) -> SubscriptionTable:
        async def _do(session: AsyncSession) -> SubscriptionTable:
            sub = lifecycle.start_subscription(tenant_id, plan, users, start)
            sub.active_addons = addons or []
            if payment_method:
                sub.gateway_customer_reference = f"fake_cus_{tenant_id}"
                sub.gateway_default_payment_method_reference = payment_method
            return await SubscriptionRepository(session, tenant_id).add(sub)

        return await run_with_tenant_context(session_factory, tenant_id, _do)

    return _seed


@pytest.fixture()
def load_sub(session_factory: async_sessionmaker[AsyncSession]) -> Callable[[str], Awaitable[SubscriptionTable | None]]:
    """Return an async helper reading a tenant's subscription in a fresh transaction."""

    async def _load(tenant_id: str) -> SubscriptionTable | None:
        async def _do(session: AsyncSession) -> SubscriptionTable | None:
            return await SubscriptionRepository(session, tenant_id).get()

        return await run_with_tenant_context(session_factory, tenant_id, _do)

    return _load


def _webhook_event(event_type: str, reference: str, **extra: Any) -> bytes:
    """Serialise a minimal ``payment_intent.*`` event."""
    data_object: dict[str, Any] = {"id": reference, "object": "payment_intent"}
    data_object.update(extra)
    return json.dumps({"id": f"evt_{reference}", "type": event_type, "data": {"object": data_object}}).encode()


@pytest.fixture()
def make_event() -> Callable[..., bytes]:
    return _webhook_event


@pytest.fixture()
def sign() -> Callable[..., str]:
    """Return a signer producing valid ``t=...,v1=...`` headers for the test secret."""

    def _sign(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
        return sign_payload(payload, secret)

    return _sign


# ---------------------------------------------------------------------------
# FastAPI app (async httpx)
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings(tmp_path: Path) -> BillingSettings:
    return BillingSettings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}",
        platform_env="dev",
        cors_origins=["http://localhost:3000"],
        fake_webhook_secret=WEBHOOK_SECRET,
    )


@pytest.fixture()
def app(
    test_settings: BillingSettings,
    session_factory: async_sessionmaker[AsyncSession],
    catalog: PlanCatalog,
    service: SubscriptionService,
    reconciler: WebhookReconciler,
):
    """Create the FastAPI app with dependency overrides for testing.

    The lifespan does not run under ``ASGITransport``; every dependency the
    routers need is overridden here instead.
    """
    application = create_app()

    async def _override_db_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_catalog] = lambda: catalog
    application.dependency_overrides[get_db_session] = _override_db_session
    application.dependency_overrides[get_subscription_service] = lambda: service
    application.dependency_overrides[get_webhook_reconciler] = lambda: reconciler
    return application


@pytest_asyncio.fixture()
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async httpx client bound to the test app, acting as tenant ``acme``."""
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"X-Tenant-ID": "acme"},
    ) as ac:
        yield ac
