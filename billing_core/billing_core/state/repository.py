"""Repository classes providing access to the billing state store.

Each tenant-scoped repository takes an ``AsyncSession`` and a tenant ID at
construction time and operates within the caller's transaction boundary.
All writes call ``session.flush()`` so that generated defaults are
populated; the caller is responsible for committing.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.state.tables import (
    PaymentOperation,
    PaymentStatus,
    PaymentTable,
    PlanChangeTable,
    SubscriptionStatus,
    SubscriptionTable,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class SubscriptionRepository:
    """Access to the tenant's single ``subscriptions`` row."""

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def get(self, *, for_update: bool = False) -> SubscriptionTable | None:
        """Fetch the tenant's subscription.

        With ``for_update=True`` the row is locked (``SELECT ... FOR UPDATE``)
        until the surrounding transaction ends and the identity map is
        refreshed from the database.
        """
        stmt = select(SubscriptionTable).where(SubscriptionTable.tenant_id == self._tenant_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def add(self, subscription: SubscriptionTable) -> SubscriptionTable:
        """Persist a new subscription for this tenant."""
        subscription.tenant_id = self._tenant_id
        self._session.add(subscription)
        await self._session.flush()
        return subscription

    async def save(self, subscription: SubscriptionTable) -> None:
        """Flush pending changes; raises ``StaleDataError`` on a lost race."""
        await self._session.flush()


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


class PaymentRepository:
    """CRUD and compare-and-set settlement for the ``payments`` table."""

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def create(
        self,
        *,
        subscription_id: int,
        amount: Decimal,
        currency: str,
        reference: str,
        operation: PaymentOperation | str,
        status: PaymentStatus | str = PaymentStatus.PENDING,
        period_ends_at: datetime | None = None,
        metadata: dict[str, Any] | None = None,
        failure_reason: str | None = None,
        settled_at: datetime | None = None,
        created_at: datetime | None = None,
    ) -> PaymentTable:
        """Insert a payment attempt and return the persisted row."""
        row = PaymentTable(
            tenant_id=self._tenant_id,
            subscription_id=subscription_id,
            amount=amount,
            currency=currency,
            status=PaymentStatus(status).value,
            gateway_transaction_reference=reference,
            operation=PaymentOperation(operation).value,
            period_ends_at=period_ends_at,
            metadata_json=metadata or {},
            failure_reason=failure_reason,
            settled_at=settled_at,
        )
        if created_at is not None:
            row.created_at = created_at
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, payment_id: int) -> PaymentTable | None:
        stmt = select(PaymentTable).where(
            PaymentTable.tenant_id == self._tenant_id,
            PaymentTable.id == payment_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_reference(self, reference: str) -> PaymentTable | None:
        """Fetch a payment by its gateway transaction reference."""
        stmt = select(PaymentTable).where(
            PaymentTable.tenant_id == self._tenant_id,
            PaymentTable.gateway_transaction_reference == reference,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_pending(
        self,
        subscription_id: int,
        *,
        operations: tuple[PaymentOperation, ...] | None = None,
        period_ends_at: datetime | None = None,
    ) -> PaymentTable | None:
        """Return the oldest pending payment matching the filters, if any."""
        stmt = select(PaymentTable).where(
            PaymentTable.tenant_id == self._tenant_id,
            PaymentTable.subscription_id == subscription_id,
            PaymentTable.status == PaymentStatus.PENDING.value,
        )
        if operations:
            stmt = stmt.where(PaymentTable.operation.in_([op.value for op in operations]))
        if period_ends_at is not None:
            stmt = stmt.where(PaymentTable.period_ends_at == period_ends_at)
        stmt = stmt.order_by(PaymentTable.created_at.asc(), PaymentTable.id.asc()).limit(1)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def mark_terminal(
        self,
        payment_id: int,
        status: PaymentStatus,
        *,
        settled_at: datetime,
        failure_reason: str | None = None,
    ) -> bool:
        """Atomically move a pending payment to *status*.

        Issues ``UPDATE ... WHERE status = 'pending'`` so exactly one caller
        wins.  Returns ``True`` for the winner and ``False`` when the payment
        was already terminal.
        """
        if status is PaymentStatus.PENDING:
            raise ValueError("mark_terminal requires a terminal status")
        stmt = (
            update(PaymentTable)
            .where(
                PaymentTable.tenant_id == self._tenant_id,
                PaymentTable.id == payment_id,
                PaymentTable.status == PaymentStatus.PENDING.value,
            )
            .values(status=status.value, settled_at=settled_at, failure_reason=failure_reason)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        won = (result.rowcount or 0) == 1  # type: ignore[attr-defined]
        await self._session.flush()
        return won

    async def list_for_tenant(self, limit: int = 20, offset: int = 0) -> tuple[list[PaymentTable], int]:
        """List payments newest first.

        Returns
        -------
        tuple
            ``(rows, total_count)`` for pagination support.
        """
        count_r = await self._session.execute(
            select(func.count()).select_from(PaymentTable).where(PaymentTable.tenant_id == self._tenant_id)
        )
        total = count_r.scalar_one()
        stmt = (
            select(PaymentTable)
            .where(PaymentTable.tenant_id == self._tenant_id)
            .order_by(PaymentTable.created_at.desc(), PaymentTable.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all()), total


# ---------------------------------------------------------------------------
# Plan change history
# ---------------------------------------------------------------------------


class PlanChangeRepository:
    """Append-only writes and reads of ``plan_changes``."""

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def record(
        self,
        *,
        subscription_id: int,
        from_plan: str | None,
        to_plan: str,
        from_user_count: int | None,
        to_user_count: int,
        actor: str,
        reason: str,
        payment_id: int | None = None,
    ) -> PlanChangeTable:
        row = PlanChangeTable(
            tenant_id=self._tenant_id,
            subscription_id=subscription_id,
            from_plan=from_plan,
            to_plan=to_plan,
            from_user_count=from_user_count,
            to_user_count=to_user_count,
            actor=actor,
            reason=reason,
            payment_id=payment_id,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_for_tenant(self, limit: int = 50) -> list[PlanChangeTable]:
        stmt = (
            select(PlanChangeTable)
            .where(PlanChangeTable.tenant_id == self._tenant_id)
            .order_by(PlanChangeTable.created_at.desc(), PlanChangeTable.id.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Cross-tenant scans
# ---------------------------------------------------------------------------


class BillingScanRepository:
    """Unscoped read-only queries used to discover per-tenant work.

    Results carry identifiers only.  All mutation happens afterwards in a
    tenant-scoped session.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def due_for_renewal(self, now: datetime, limit: int = 1000) -> list[str]:
        """Tenant IDs whose paid period has ended."""
        stmt = (
            select(SubscriptionTable.tenant_id)
            .where(
                SubscriptionTable.is_trial.is_(False),
                SubscriptionTable.status.in_([SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value]),
                SubscriptionTable.billing_period_ends_at.is_not(None),
                SubscriptionTable.billing_period_ends_at <= now,
            )
            .order_by(SubscriptionTable.billing_period_ends_at.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def expired_trials(self, now: datetime, limit: int = 1000) -> list[str]:
        """Tenant IDs whose trial has ended."""
        stmt = (
            select(SubscriptionTable.tenant_id)
            .where(
                SubscriptionTable.is_trial.is_(True),
                SubscriptionTable.status == SubscriptionStatus.TRIALING.value,
                SubscriptionTable.trial_ends_at.is_not(None),
                SubscriptionTable.trial_ends_at <= now,
            )
            .order_by(SubscriptionTable.trial_ends_at.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def tenant_for_reference(self, reference: str) -> str | None:
        """Resolve the owning tenant of a gateway transaction reference."""
        stmt = select(PaymentTable.tenant_id).where(PaymentTable.gateway_transaction_reference == reference)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def tenant_for_customer(self, customer_reference: str) -> str | None:
        """Resolve the tenant that owns a gateway customer reference."""
        stmt = select(SubscriptionTable.tenant_id).where(
            SubscriptionTable.gateway_customer_reference == customer_reference
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()
