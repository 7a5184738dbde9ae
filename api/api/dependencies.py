"""FastAPI dependency injection for settings, sessions, catalog and services."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from billing_core.catalog import PlanCatalog, default_catalog, load_catalog
from billing_core.lifecycle import SubscriptionLifecycle
from billing_core.state.database import create_session_factory, get_engine
from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from api.config import BillingSettings, load_settings
from api.services.gateway import PaymentGatewayAdapter, build_gateway
from api.services.subscription_service import SubscriptionService
from api.services.webhook_reconciler import WebhookReconciler

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: BillingSettings | None = None


def get_settings() -> BillingSettings:
    """Return the cached :class:`BillingSettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_settings()
    return _settings_cache


SettingsDep = Annotated[BillingSettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: BillingSettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = create_session_factory(_engine)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory."""
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` **without** tenant RLS context.

    Only for health probes; tenant work goes through the services, which
    open their own tenant-scoped sessions.
    """
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


# ---------------------------------------------------------------------------
# Tenant identity (populated by TenantContextMiddleware)
# ---------------------------------------------------------------------------


def get_tenant_id(request: Request) -> str:
    """Extract tenant_id from request state."""
    tenant_id = getattr(request.state, "tenant_id", None)
    if tenant_id is None:
        raise HTTPException(status_code=401, detail="Tenant identity required")
    return tenant_id


TenantDep = Annotated[str, Depends(get_tenant_id)]

# ---------------------------------------------------------------------------
# Catalog and gateway
# ---------------------------------------------------------------------------

_catalog: PlanCatalog | None = None
_gateway: PaymentGatewayAdapter | None = None


def init_catalog(settings: BillingSettings) -> PlanCatalog:
    """Load the plan catalog once at startup."""
    global _catalog  # noqa: PLW0603
    _catalog = load_catalog(settings.catalog_path) if settings.catalog_path else default_catalog()
    return _catalog


def get_catalog() -> PlanCatalog:
    if _catalog is None:
        raise RuntimeError("Plan catalog has not been initialised. Ensure init_catalog() is called during startup.")
    return _catalog


def init_gateway(settings: BillingSettings) -> PaymentGatewayAdapter:
    """Create and cache the payment gateway adapter."""
    global _gateway  # noqa: PLW0603
    _gateway = build_gateway(settings)
    return _gateway


def get_gateway() -> PaymentGatewayAdapter:
    if _gateway is None:
        raise RuntimeError("Payment gateway has not been initialised. Ensure init_gateway() is called during startup.")
    return _gateway


CatalogDep = Annotated[PlanCatalog, Depends(get_catalog)]
GatewayDep = Annotated[PaymentGatewayAdapter, Depends(get_gateway)]

# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


def get_subscription_service(
    settings: SettingsDep,
    catalog: CatalogDep,
    gateway: GatewayDep,
) -> SubscriptionService:
    return SubscriptionService(get_session_factory(), gateway, catalog, settings.billing_policy())


def get_webhook_reconciler(
    settings: SettingsDep,
    catalog: CatalogDep,
    gateway: GatewayDep,
) -> WebhookReconciler:
    return WebhookReconciler(
        get_session_factory(),
        gateway,
        SubscriptionLifecycle(catalog, settings.billing_policy()),
        settings.webhook_secret.get_secret_value(),
    )


SubscriptionServiceDep = Annotated[SubscriptionService, Depends(get_subscription_service)]
WebhookReconcilerDep = Annotated[WebhookReconciler, Depends(get_webhook_reconciler)]
