"""Idempotent payment settlement.

One "mark terminal" operation shared by the synchronous checkout path, the
renewal engine and the webhook reconciler.  The Payment row moves from
``pending`` to a terminal status through a conditional UPDATE; only the
caller that wins that compare-and-set applies side effects to the
subscription.  Whichever confirmation arrives first is authoritative and
every later one is a no-op.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from billing_core.errors import GatewayError
from billing_core.lifecycle import SubscriptionLifecycle
from billing_core.periods import ensure_utc
from billing_core.state.repository import PaymentRepository, PlanChangeRepository, SubscriptionRepository
from billing_core.state.tables import (
    PaymentOperation,
    PaymentStatus,
    PaymentTable,
    SubscriptionStatus,
    SubscriptionTable,
)
from sqlalchemy.ext.asyncio import AsyncSession

from api.services.gateway import ChargeStatus, PaymentGatewayAdapter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettlementResult:
    """What a settlement attempt did."""

    payment_id: int
    status: str
    applied: bool
    effect: str | None = None


class PaymentSettlement:
    """Applies the outcome of a payment exactly once.

    Parameters
    ----------
    lifecycle:
        Subscription state machine used to apply side effects.
    """

    def __init__(self, lifecycle: SubscriptionLifecycle) -> None:
        self._lifecycle = lifecycle

    async def settle(
        self,
        session: AsyncSession,
        tenant_id: str,
        payment: PaymentTable,
        outcome: PaymentStatus,
        *,
        now: datetime,
        failure_reason: str | None = None,
        actor: str = "system",
    ) -> SettlementResult:
        """Mark *payment* terminal and apply its side effects if this call wins.

        The subscription row is locked before the compare-and-set so that
        settlement serialises with renewals and interactive changes on the
        same tenant.
        """
        subscriptions = SubscriptionRepository(session, tenant_id)
        payments = PaymentRepository(session, tenant_id)

        sub = await subscriptions.get(for_update=True)
        won = await payments.mark_terminal(payment.id, outcome, settled_at=now, failure_reason=failure_reason)
        await session.refresh(payment)

        if not won:
            logger.info(
                "Payment %s already %s; settlement is a no-op (tenant=%s)",
                payment.gateway_transaction_reference,
                payment.status,
                tenant_id,
            )
            return SettlementResult(payment_id=payment.id, status=payment.status, applied=False)

        effect: str | None = None
        if sub is None or sub.id != payment.subscription_id:
            logger.error(
                "Payment %s settled but subscription %s is missing for tenant=%s",
                payment.gateway_transaction_reference,
                payment.subscription_id,
                tenant_id,
            )
        else:
            effect = await self._apply(session, tenant_id, sub, payment, outcome, now=now, actor=actor)
            await subscriptions.save(sub)

        logger.info(
            "Settled payment %s -> %s (operation=%s effect=%s tenant=%s)",
            payment.gateway_transaction_reference,
            outcome.value,
            payment.operation,
            effect,
            tenant_id,
        )
        return SettlementResult(payment_id=payment.id, status=payment.status, applied=True, effect=effect)

    async def _apply(
        self,
        session: AsyncSession,
        tenant_id: str,
        sub: SubscriptionTable,
        payment: PaymentTable,
        outcome: PaymentStatus,
        *,
        now: datetime,
        actor: str,
    ) -> str | None:
        operation = PaymentOperation(payment.operation)
        snapshot = payment.metadata_json or {}

        if operation is PaymentOperation.RENEWAL:
            if not self._period_still_open(sub, payment):
                return "period_already_advanced"
            if outcome is PaymentStatus.COMPLETED:
                self._lifecycle.apply_renewal_success(sub, now)
                return "period_advanced"
            self._lifecycle.apply_renewal_failure(sub, now)
            return "renewal_failed"

        if outcome is not PaymentStatus.COMPLETED:
            return None

        if sub.status == SubscriptionStatus.CANCELED.value:
            logger.warning(
                "Payment %s completed for canceled subscription tenant=%s; not applied",
                payment.gateway_transaction_reference,
                tenant_id,
            )
            return "subscription_canceled"

        if operation is PaymentOperation.UPGRADE:
            change = self._lifecycle.apply_upgrade(
                sub,
                target_plan=snapshot["target_plan"],
                target_user_count=int(snapshot["target_user_count"]),
                target_addons=snapshot.get("target_addons") or [],
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
            return "plan_upgraded"

        if operation is PaymentOperation.ADDON_TOGGLE:
            addon = snapshot.get("addon")
            if addon and self._lifecycle.activate_addon(sub, addon):
                return "addon_activated"
            return None

        return None

    @staticmethod
    def _period_still_open(sub: SubscriptionTable, payment: PaymentTable) -> bool:
        if payment.period_ends_at is None or sub.billing_period_ends_at is None:
            return False
        return ensure_utc(sub.billing_period_ends_at) == ensure_utc(payment.period_ends_at)

    # ------------------------------------------------------------------
    # Unconfirmed charges
    # ------------------------------------------------------------------

    def is_stale(self, payment: PaymentTable, now: datetime) -> bool:
        """Whether *payment* has stayed pending past the policy's timeout."""
        if payment.is_terminal or payment.created_at is None:
            return False
        deadline = ensure_utc(payment.created_at) + self._lifecycle.policy.pending_payment_timeout
        return deadline <= ensure_utc(now)

    async def resolve_stale(
        self,
        session: AsyncSession,
        tenant_id: str,
        payment: PaymentTable,
        gateway: PaymentGatewayAdapter,
        *,
        now: datetime,
        actor: str = "system",
    ) -> SettlementResult:
        """Settle a charge whose confirmation never arrived.

        The provider is asked for the charge's current status.  A charge it
        still reports as pending, or cannot look up, is settled as failed
        with reason ``pending_timeout``.
        """
        reference = payment.gateway_transaction_reference
        outcome = PaymentStatus.FAILED
        reason: str | None = "pending_timeout"
        try:
            result = await gateway.retrieve_charge(reference)
        except GatewayError as exc:
            logger.warning(
                "Lookup of unconfirmed payment %s failed (tenant=%s code=%s): %s",
                reference,
                tenant_id,
                exc.code,
                exc.message,
            )
        else:
            if result.status is ChargeStatus.COMPLETED:
                outcome, reason = PaymentStatus.COMPLETED, None
            elif result.status is ChargeStatus.FAILED:
                reason = result.failure_reason or "payment_failed"

        logger.warning(
            "Payment %s unconfirmed since %s; resolving as %s (tenant=%s)",
            reference,
            payment.created_at,
            outcome.value,
            tenant_id,
        )
        return await self.settle(
            session, tenant_id, payment, outcome, now=now, failure_reason=reason, actor=actor
        )
