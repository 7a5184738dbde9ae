"""SQLAlchemy 2.0 ORM table definitions for the billing state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for use by Alembic migrations and the
repository layer.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Cross-dialect JSON type: JSONB on PostgreSQL, plain JSON (TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware timestamp that always round-trips as UTC.

    SQLite drops the offset on storage, so values are normalised to UTC on
    the way in and UTC is re-attached to naive values on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentOperation(str, Enum):
    UPGRADE = "upgrade"
    DOWNGRADE_NOOP = "downgrade-noop"
    ADDON_TOGGLE = "addon-toggle"
    RENEWAL = "renewal"


@dataclass(frozen=True)
class ScheduledTransition:
    """A deferred plan change that takes effect at ``effective_at``."""

    target_plan: str
    target_user_limit: int
    effective_at: datetime


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all billing tables."""


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class SubscriptionTable(Base):
    """Billing state of a single tenant.

    The three ``pending_*`` columns form one scheduled transition and are
    only ever written through :attr:`scheduled_transition`; the CHECK
    constraint rejects partial states written by any other path.

    ``version`` is the mapper's optimistic-lock counter: a flush that races
    another writer raises ``StaleDataError`` instead of losing an update.
    """

    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    plan: Mapped[str] = mapped_column(String(32), nullable=False)
    active_addons: Mapped[list[str]] = mapped_column(_JsonType, nullable=False, default=list)
    user_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=SubscriptionStatus.ACTIVE.value)
    is_trial: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    trial_ends_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    subscription_start_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    billing_period_started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    billing_period_ends_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    pending_plan: Mapped[str | None] = mapped_column(String(32), nullable=True)
    pending_user_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    pending_plan_effective_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_renewal_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    failed_renewal_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    grace_period_until: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    gateway_customer_reference: Mapped[str | None] = mapped_column(String(256), nullable=True)
    gateway_default_payment_method_reference: Mapped[str | None] = mapped_column(String(256), nullable=True)
    canceled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "(pending_plan IS NULL AND pending_user_limit IS NULL AND pending_plan_effective_at IS NULL)"
            " OR (pending_plan IS NOT NULL AND pending_user_limit IS NOT NULL"
            " AND pending_plan_effective_at IS NOT NULL)",
            name="ck_subscriptions_pending_all_or_none",
        ),
        CheckConstraint("user_count >= 1", name="ck_subscriptions_user_count_positive"),
        CheckConstraint(
            "status IN ('trialing', 'active', 'past_due', 'canceled')",
            name="ck_subscriptions_status",
        ),
        CheckConstraint(
            "billing_period_ends_at IS NULL OR billing_period_started_at IS NULL"
            " OR billing_period_ends_at >= billing_period_started_at",
            name="ck_subscriptions_period_order",
        ),
        Index("ix_subscriptions_status_period_end", "status", "billing_period_ends_at"),
    )

    @property
    def scheduled_transition(self) -> ScheduledTransition | None:
        if self.pending_plan is None:
            return None
        assert self.pending_user_limit is not None
        assert self.pending_plan_effective_at is not None
        return ScheduledTransition(
            target_plan=self.pending_plan,
            target_user_limit=self.pending_user_limit,
            effective_at=self.pending_plan_effective_at,
        )

    @scheduled_transition.setter
    def scheduled_transition(self, value: ScheduledTransition | None) -> None:
        if value is None:
            self.pending_plan = None
            self.pending_user_limit = None
            self.pending_plan_effective_at = None
            return
        self.pending_plan = value.target_plan
        self.pending_user_limit = value.target_user_limit
        self.pending_plan_effective_at = value.effective_at

    @property
    def addon_set(self) -> frozenset[str]:
        return frozenset(self.active_addons or ())


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


class PaymentTable(Base):
    """One row per charge attempt.  Rows are never deleted.

    ``status`` moves from ``pending`` to exactly one terminal value through
    a conditional UPDATE; ``metadata`` snapshots the price breakdown and the
    target state the charge pays for.
    """

    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    subscription_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("subscriptions.id", ondelete="RESTRICT"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=PaymentStatus.PENDING.value)
    gateway_transaction_reference: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)
    operation: Mapped[str] = mapped_column(String(32), nullable=False)
    period_ends_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column("metadata", _JsonType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    settled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_payments_amount_non_negative"),
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed')",
            name="ck_payments_status",
        ),
        Index("ix_payments_tenant_created", "tenant_id", "created_at"),
        Index("ix_payments_subscription_status", "subscription_id", "status"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status != PaymentStatus.PENDING.value


# ---------------------------------------------------------------------------
# Plan change history
# ---------------------------------------------------------------------------


class PlanChangeTable(Base):
    """Append-only audit trail of plan and seat changes."""

    __tablename__ = "plan_changes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    subscription_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("subscriptions.id", ondelete="RESTRICT"), nullable=False
    )
    from_plan: Mapped[str | None] = mapped_column(String(32), nullable=True)
    to_plan: Mapped[str] = mapped_column(String(32), nullable=False)
    from_user_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    to_user_count: Mapped[int] = mapped_column(Integer, nullable=False)
    actor: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[str] = mapped_column(String(64), nullable=False)
    payment_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("payments.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_plan_changes_tenant_created", "tenant_id", "created_at"),)
