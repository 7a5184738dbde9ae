"""Interactive subscription operations for a single tenant.

Each public method runs in its own tenant-scoped transaction and locks the
subscription row for its whole duration, gateway call included, so two
requests for the same tenant never interleave.  Errors raised inside the
transaction roll it back; a gateway failure therefore leaves the
Subscription and Payment tables untouched, except that a declined charge
the provider already recorded is kept as a failed Payment.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, TypeVar

from billing_core.catalog import PlanCatalog
from billing_core.entitlements import get_feature_flags_for_plan
from billing_core.errors import GatewayError, PolicyError
from billing_core.lifecycle import SubscriptionLifecycle
from billing_core.policy import BillingPolicy
from billing_core.state.database import run_with_tenant_context
from billing_core.state.repository import PaymentRepository, PlanChangeRepository, SubscriptionRepository
from billing_core.state.tables import (
    PaymentOperation,
    PaymentStatus,
    PaymentTable,
    PlanChangeTable,
    SubscriptionTable,
)
from billing_core.summary import build_summary
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.services.gateway import ChargeResult, ChargeStatus, PaymentGatewayAdapter
from api.services.settlement import PaymentSettlement

logger = logging.getLogger(__name__)

T = TypeVar("T")

_INTERACTIVE_OPERATIONS = (PaymentOperation.UPGRADE, PaymentOperation.ADDON_TOGGLE)


def noop_reference(operation: PaymentOperation, subscription_id: int) -> str:
    """Synthetic reference for zero-amount payments that never reach the gateway."""
    return f"noop_{operation.value}_{subscription_id}_{uuid.uuid4().hex[:12]}"


def payment_to_dict(row: PaymentTable) -> dict[str, Any]:
    return {
        "id": row.id,
        "amount": str(row.amount),
        "currency": row.currency,
        "status": row.status,
        "operation": row.operation,
        "reference": row.gateway_transaction_reference,
        "period_ends_at": row.period_ends_at.isoformat() if row.period_ends_at else None,
        "failure_reason": row.failure_reason,
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "settled_at": row.settled_at.isoformat() if row.settled_at else None,
    }


def plan_change_to_dict(row: PlanChangeTable) -> dict[str, Any]:
    return {
        "from_plan": row.from_plan,
        "to_plan": row.to_plan,
        "from_user_count": row.from_user_count,
        "to_user_count": row.to_user_count,
        "actor": row.actor,
        "reason": row.reason,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


class _DeferredGatewayError:
    """Carries a gateway failure out of a transaction that must still commit."""

    def __init__(self, error: GatewayError) -> None:
        self.error = error


class SubscriptionService:
    """Tenant-facing billing operations.

    Parameters
    ----------
    session_factory:
        Factory for tenant-scoped sessions.
    gateway:
        Payment gateway adapter.
    catalog:
        Plan catalog.
    policy:
        Billing policy values.
    clock:
        Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGatewayAdapter,
        catalog: PlanCatalog,
        policy: BillingPolicy,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._gateway = gateway
        self._catalog = catalog
        self._policy = policy
        self._lifecycle = SubscriptionLifecycle(catalog, policy)
        self._settlement = PaymentSettlement(self._lifecycle)
        self._clock = clock or (lambda: datetime.now(UTC))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _in_tenant(self, tenant_id: str, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        return await run_with_tenant_context(self._session_factory, tenant_id, fn)

    async def _load(self, session: AsyncSession, tenant_id: str, *, for_update: bool) -> SubscriptionTable:
        """Return the tenant's subscription, starting a trial on first access."""
        repo = SubscriptionRepository(session, tenant_id)
        sub = await repo.get(for_update=for_update)
        if sub is None:
            sub = self._lifecycle.start_trial(tenant_id, self._clock())
            await repo.add(sub)
            logger.info("Started %s trial for tenant=%s", sub.plan, tenant_id)
        return sub

    async def _ensure_no_pending_charge(self, session: AsyncSession, tenant_id: str, sub: SubscriptionTable) -> None:
        pending = await PaymentRepository(session, tenant_id).find_pending(sub.id, operations=_INTERACTIVE_OPERATIONS)
        if pending is not None:
            raise PolicyError(
                "Another payment for this subscription is still being processed",
                code="payment_pending",
                reference=pending.gateway_transaction_reference,
            )

    async def _expire_stale_charges(self, tenant_id: str) -> None:
        """Resolve interactive charges left unconfirmed past the pending timeout."""

        async def _do(session: AsyncSession) -> None:
            sub = await SubscriptionRepository(session, tenant_id).get(for_update=True)
            if sub is None:
                return
            payments = PaymentRepository(session, tenant_id)
            now = self._clock()
            while True:
                pending = await payments.find_pending(sub.id, operations=_INTERACTIVE_OPERATIONS)
                if pending is None or not self._settlement.is_stale(pending, now):
                    return
                await self._settlement.resolve_stale(session, tenant_id, pending, self._gateway, now=now)

        await self._in_tenant(tenant_id, _do)

    async def _ensure_customer(self, tenant_id: str) -> None:
        """Create the gateway customer in its own transaction so it persists."""

        async def _do(session: AsyncSession) -> None:
            sub = await self._load(session, tenant_id, for_update=True)
            if not sub.gateway_customer_reference:
                await self._gateway.ensure_customer(tenant_id, sub)

        await self._in_tenant(tenant_id, _do)

    async def _charge_and_record(
        self,
        session: AsyncSession,
        tenant_id: str,
        sub: SubscriptionTable,
        *,
        operation: PaymentOperation,
        amount: Decimal,
        snapshot: dict[str, Any],
        charge_metadata: dict[str, str],
        actor: str,
    ) -> dict[str, Any] | _DeferredGatewayError:
        """Charge on-session, record the Payment and settle a synchronous outcome."""
        if not sub.gateway_default_payment_method_reference:
            raise PolicyError(
                "A default payment method is required for this change",
                code="payment_method_required",
            )
        payments = PaymentRepository(session, tenant_id)
        now = self._clock()
        try:
            result: ChargeResult = await self._gateway.charge(
                tenant_id=tenant_id,
                subscription=sub,
                amount=amount,
                currency=self._policy.currency,
                metadata=charge_metadata,
                off_session=False,
                idempotency_key=f"{operation.value}-{sub.id}-{uuid.uuid4().hex}",
            )
        except GatewayError as exc:
            if exc.transaction_reference is None:
                raise
            await payments.create(
                subscription_id=sub.id,
                amount=amount,
                currency=self._policy.currency,
                reference=exc.transaction_reference,
                operation=operation,
                status=PaymentStatus.FAILED,
                metadata=snapshot,
                failure_reason=exc.message,
                settled_at=now,
                created_at=now,
            )
            logger.warning("Charge declined tenant=%s operation=%s: %s", tenant_id, operation.value, exc.message)
            return _DeferredGatewayError(exc)

        payment = await payments.get_by_reference(result.transaction_reference)
        if payment is None:
            payment = await payments.create(
                subscription_id=sub.id,
                amount=amount,
                currency=self._policy.currency,
                reference=result.transaction_reference,
                operation=operation,
                metadata=snapshot,
                created_at=now,
            )

        if result.status is ChargeStatus.COMPLETED:
            await self._settlement.settle(session, tenant_id, payment, PaymentStatus.COMPLETED, now=now, actor=actor)
        elif result.status is ChargeStatus.FAILED:
            await self._settlement.settle(
                session,
                tenant_id,
                payment,
                PaymentStatus.FAILED,
                now=now,
                failure_reason=result.failure_reason,
                actor=actor,
            )
        return {"payment": payment_to_dict(payment), "charge_status": result.status.value}

    @staticmethod
    def _raise_deferred(outcome: Any) -> None:
        if isinstance(outcome, _DeferredGatewayError):
            raise outcome.error

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_summary(self, tenant_id: str) -> dict[str, Any]:
        """Plan, price and renewal state for the tenant."""

        async def _do(session: AsyncSession) -> dict[str, Any]:
            sub = await self._load(session, tenant_id, for_update=False)
            return build_summary(sub, self._catalog, self._policy, self._clock())

        return await self._in_tenant(tenant_id, _do)

    async def get_features(self, tenant_id: str) -> dict[str, bool]:
        async def _do(session: AsyncSession) -> dict[str, bool]:
            sub = await self._load(session, tenant_id, for_update=False)
            return get_feature_flags_for_plan(sub, self._catalog)

        return await self._in_tenant(tenant_id, _do)

    async def list_payments(self, tenant_id: str, limit: int = 20, offset: int = 0) -> dict[str, Any]:
        async def _do(session: AsyncSession) -> dict[str, Any]:
            rows, total = await PaymentRepository(session, tenant_id).list_for_tenant(limit, offset)
            return {"payments": [payment_to_dict(r) for r in rows], "total": total}

        return await self._in_tenant(tenant_id, _do)

    async def list_plan_changes(self, tenant_id: str, limit: int = 50) -> dict[str, Any]:
        async def _do(session: AsyncSession) -> dict[str, Any]:
            rows = await PlanChangeRepository(session, tenant_id).list_for_tenant(limit)
            return {"plan_changes": [plan_change_to_dict(r) for r in rows]}

        return await self._in_tenant(tenant_id, _do)

    # ------------------------------------------------------------------
    # Upgrade
    # ------------------------------------------------------------------

    async def upgrade(self, tenant_id: str, plan: str, user_count: int, *, actor: str = "tenant") -> dict[str, Any]:
        """Charge the full price of the target plan and switch on completion.

        A zero-amount upgrade (e.g. leaving a trial for the free plan) is
        applied immediately with a completed ``noop_`` payment.

        Raises
        ------
        ValidationError
            Unknown plan or seat count out of range.
        PolicyError
            ``not_an_upgrade``, ``payment_pending``, ``payment_method_required``
            or ``subscription_canceled``.
        GatewayError
            The charge was declined or timed out.
        """

        async def _quote(session: AsyncSession) -> Decimal:
            sub = await self._load(session, tenant_id, for_update=False)
            return self._lifecycle.quote_upgrade(sub, plan, user_count).amount

        await self._expire_stale_charges(tenant_id)
        if await self._in_tenant(tenant_id, _quote) > 0:
            await self._ensure_customer(tenant_id)

        async def _do(session: AsyncSession) -> dict[str, Any] | _DeferredGatewayError:
            sub = await self._load(session, tenant_id, for_update=True)
            quote = self._lifecycle.quote_upgrade(sub, plan, user_count)
            await self._ensure_no_pending_charge(session, tenant_id, sub)
            snapshot = quote.snapshot()
            now = self._clock()

            if quote.amount == 0:
                payment = await PaymentRepository(session, tenant_id).create(
                    subscription_id=sub.id,
                    amount=Decimal("0.00"),
                    currency=self._policy.currency,
                    reference=noop_reference(PaymentOperation.UPGRADE, sub.id),
                    operation=PaymentOperation.UPGRADE,
                    status=PaymentStatus.COMPLETED,
                    metadata=snapshot,
                    settled_at=now,
                    created_at=now,
                )
                change = self._lifecycle.apply_upgrade(
                    sub,
                    target_plan=quote.target_plan,
                    target_user_count=quote.target_user_count,
                    target_addons=quote.target_addons,
                    now=now,
                )
                await PlanChangeRepository(session, tenant_id).record(
                    subscription_id=sub.id,
                    from_plan=change.from_plan,
                    to_plan=change.to_plan,
                    from_user_count=change.from_user_count,
                    to_user_count=change.to_user_count,
                    actor=actor,
                    reason=change.reason,
                    payment_id=payment.id,
                )
                await SubscriptionRepository(session, tenant_id).save(sub)
                outcome: dict[str, Any] = {"payment": payment_to_dict(payment), "charge_status": "completed"}
            else:
                charged = await self._charge_and_record(
                    session,
                    tenant_id,
                    sub,
                    operation=PaymentOperation.UPGRADE,
                    amount=quote.amount,
                    snapshot=snapshot,
                    charge_metadata={
                        "subscription_id": str(sub.id),
                        "operation": PaymentOperation.UPGRADE.value,
                        "target_plan": quote.target_plan,
                        "target_user_count": str(quote.target_user_count),
                        "target_addons": ",".join(quote.target_addons),
                    },
                    actor=actor,
                )
                if isinstance(charged, _DeferredGatewayError):
                    return charged
                outcome = charged
            outcome["amount"] = str(quote.amount)
            outcome["breakdown"] = quote.breakdown.to_dict()
            outcome["summary"] = build_summary(sub, self._catalog, self._policy, self._clock())
            return outcome

        result = await self._in_tenant(tenant_id, _do)
        self._raise_deferred(result)
        assert isinstance(result, dict)
        return result

    # ------------------------------------------------------------------
    # Downgrade
    # ------------------------------------------------------------------

    async def schedule_downgrade(self, tenant_id: str, plan: str, user_limit: int) -> dict[str, Any]:
        """Schedule a downgrade for the end of the current period (no charge)."""

        async def _do(session: AsyncSession) -> dict[str, Any]:
            sub = await self._load(session, tenant_id, for_update=True)
            now = self._clock()
            transition = self._lifecycle.schedule_downgrade(sub, plan, user_limit, now)
            payment = await PaymentRepository(session, tenant_id).create(
                subscription_id=sub.id,
                amount=Decimal("0.00"),
                currency=self._policy.currency,
                reference=noop_reference(PaymentOperation.DOWNGRADE_NOOP, sub.id),
                operation=PaymentOperation.DOWNGRADE_NOOP,
                status=PaymentStatus.COMPLETED,
                metadata={
                    "target_plan": transition.target_plan,
                    "target_user_limit": transition.target_user_limit,
                    "effective_at": transition.effective_at.isoformat(),
                },
                settled_at=now,
                created_at=now,
            )
            await SubscriptionRepository(session, tenant_id).save(sub)
            return {
                "amount": "0.00",
                "payment": payment_to_dict(payment),
                "summary": build_summary(sub, self._catalog, self._policy, now),
            }

        return await self._in_tenant(tenant_id, _do)

    async def cancel_downgrade(self, tenant_id: str) -> dict[str, Any]:
        """Drop the scheduled downgrade while the cancellation window is open."""

        async def _do(session: AsyncSession) -> dict[str, Any]:
            sub = await self._load(session, tenant_id, for_update=True)
            now = self._clock()
            self._lifecycle.cancel_scheduled_downgrade(sub, now)
            await SubscriptionRepository(session, tenant_id).save(sub)
            return {"summary": build_summary(sub, self._catalog, self._policy, now)}

        return await self._in_tenant(tenant_id, _do)

    # ------------------------------------------------------------------
    # Add-ons
    # ------------------------------------------------------------------

    async def toggle_addon(self, tenant_id: str, addon: str, *, actor: str = "tenant") -> dict[str, Any]:
        """Activate (charging the add-on amount) or deactivate (free) an add-on."""

        async def _needs_charge(session: AsyncSession) -> bool:
            sub = await self._load(session, tenant_id, for_update=False)
            if self._catalog.get_addon(addon).name in sub.addon_set:
                return False
            toggle = self._lifecycle.toggle_addon(sub, addon)
            return toggle.action == "activate" and toggle.amount > 0

        if await self._in_tenant(tenant_id, _needs_charge):
            await self._expire_stale_charges(tenant_id)
            await self._ensure_customer(tenant_id)

        async def _do(session: AsyncSession) -> dict[str, Any] | _DeferredGatewayError:
            sub = await self._load(session, tenant_id, for_update=True)
            now = self._clock()
            toggle = self._lifecycle.toggle_addon(sub, addon)
            payments = PaymentRepository(session, tenant_id)
            response: dict[str, Any] = {
                "addon": toggle.addon,
                "action": toggle.action,
                "code": toggle.code,
                "amount": str(toggle.amount),
            }

            if toggle.action == "included":
                response["summary"] = build_summary(sub, self._catalog, self._policy, now)
                return response

            if toggle.action == "deactivate" or toggle.amount == 0:
                if toggle.action == "activate":
                    self._lifecycle.activate_addon(sub, toggle.addon)
                payment = await payments.create(
                    subscription_id=sub.id,
                    amount=Decimal("0.00"),
                    currency=self._policy.currency,
                    reference=noop_reference(PaymentOperation.ADDON_TOGGLE, sub.id),
                    operation=PaymentOperation.ADDON_TOGGLE,
                    status=PaymentStatus.COMPLETED,
                    metadata={"addon": toggle.addon, "action": toggle.action},
                    settled_at=now,
                    created_at=now,
                )
                await SubscriptionRepository(session, tenant_id).save(sub)
                response["payment"] = payment_to_dict(payment)
                response["summary"] = build_summary(sub, self._catalog, self._policy, now)
                return response

            await self._ensure_no_pending_charge(session, tenant_id, sub)
            charged = await self._charge_and_record(
                session,
                tenant_id,
                sub,
                operation=PaymentOperation.ADDON_TOGGLE,
                amount=toggle.amount,
                snapshot={"addon": toggle.addon, "action": "activate"},
                charge_metadata={
                    "subscription_id": str(sub.id),
                    "operation": PaymentOperation.ADDON_TOGGLE.value,
                    "addon": toggle.addon,
                },
                actor=actor,
            )
            if isinstance(charged, _DeferredGatewayError):
                return charged
            response.update(charged)
            response["summary"] = build_summary(sub, self._catalog, self._policy, self._clock())
            return response

        result = await self._in_tenant(tenant_id, _do)
        self._raise_deferred(result)
        assert isinstance(result, dict)
        return result

    # ------------------------------------------------------------------
    # Payment method, cancellation
    # ------------------------------------------------------------------

    async def attach_payment_method(self, tenant_id: str, payment_method_reference: str) -> dict[str, Any]:
        """Make *payment_method_reference* the default for future charges."""

        async def _do(session: AsyncSession) -> dict[str, Any]:
            sub = await self._load(session, tenant_id, for_update=True)
            self._lifecycle.ensure_open(sub)
            await self._gateway.attach_payment_method(tenant_id, sub, payment_method_reference)
            await SubscriptionRepository(session, tenant_id).save(sub)
            logger.info("Attached default payment method for tenant=%s", tenant_id)
            return {
                "customer_reference": sub.gateway_customer_reference,
                "payment_method_reference": sub.gateway_default_payment_method_reference,
            }

        return await self._in_tenant(tenant_id, _do)

    async def cancel(self, tenant_id: str, *, actor: str = "tenant") -> dict[str, Any]:
        """Cancel the subscription (terminal)."""

        async def _do(session: AsyncSession) -> dict[str, Any]:
            sub = await self._load(session, tenant_id, for_update=True)
            now = self._clock()
            self._lifecycle.cancel(sub, now)
            await SubscriptionRepository(session, tenant_id).save(sub)
            return {"summary": build_summary(sub, self._catalog, self._policy, now)}

        return await self._in_tenant(tenant_id, _do)
