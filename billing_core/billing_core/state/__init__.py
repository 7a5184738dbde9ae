"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from billing_core.state.database import (
    create_session_factory,
    get_engine,
    get_session,
    run_with_tenant_context,
    set_tenant_context,
    tenant_session,
)
from billing_core.state.repository import (
    BillingScanRepository,
    PaymentRepository,
    PlanChangeRepository,
    SubscriptionRepository,
)

__all__ = [
    "BillingScanRepository",
    "PaymentRepository",
    "PlanChangeRepository",
    "SubscriptionRepository",
    "create_session_factory",
    "get_engine",
    "get_session",
    "run_with_tenant_context",
    "set_tenant_context",
    "tenant_session",
]
