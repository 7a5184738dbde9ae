"""Reconciles asynchronous payment confirmations from the gateway.

The signature is verified before anything else.  Events that can never be
reconciled (unhandled types, unknown references, unusable metadata) are
acknowledged and logged, and a duplicate delivery is a no-op because
settlement is idempotent.  Any other error propagates so the delivery fails
and the provider retries it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from billing_core.errors import ReconciliationConflict
from billing_core.lifecycle import SubscriptionLifecycle
from billing_core.state.database import TENANT_ID_RE, get_session, run_with_tenant_context
from billing_core.state.repository import BillingScanRepository, PaymentRepository, SubscriptionRepository
from billing_core.state.tables import PaymentOperation, PaymentStatus, PaymentTable
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.services.gateway import PaymentGatewayAdapter
from api.services.settlement import PaymentSettlement

logger = logging.getLogger(__name__)

_EVENT_OUTCOMES: dict[str, PaymentStatus] = {
    "payment_intent.succeeded": PaymentStatus.COMPLETED,
    "payment_intent.payment_failed": PaymentStatus.FAILED,
}


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


class WebhookReconciler:
    """Marks Payments terminal from gateway webhook events.

    Parameters
    ----------
    session_factory:
        Factory for database sessions.
    gateway:
        Adapter whose signature scheme authenticates the payload.
    lifecycle:
        Subscription state machine used by settlement.
    webhook_secret:
        Signing secret for the active driver.
    clock:
        Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGatewayAdapter,
        lifecycle: SubscriptionLifecycle,
        webhook_secret: str,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._gateway = gateway
        self._lifecycle = lifecycle
        self._settlement = PaymentSettlement(lifecycle)
        self._secret = webhook_secret
        self._clock = clock or (lambda: datetime.now(UTC))

    async def handle(self, payload: bytes, signature: str) -> dict[str, Any]:
        """Verify and process one webhook delivery.

        Raises
        ------
        WebhookSignatureError
            If the signature is missing or invalid.  Nothing is changed.

        Errors other than :class:`ReconciliationConflict` are not caught;
        the transaction rolls back and the provider redelivers the event.
        """
        event = self._gateway.verify_webhook_signature(payload, signature, self._secret)
        event_type = event.get("type", "")
        try:
            return await self._process(event)
        except ReconciliationConflict as exc:
            logger.warning("Webhook %s not reconciled: %s", event_type, exc.message)
            return {"status": "ignored", "reason": exc.code}

    async def _process(self, event: dict[str, Any]) -> dict[str, Any]:
        event_type = event.get("type", "")
        outcome = _EVENT_OUTCOMES.get(event_type)
        if outcome is None:
            logger.debug("Unhandled webhook event type: %s", event_type)
            return {"status": "ignored", "reason": "unhandled_event"}

        data_object: dict[str, Any] = (event.get("data") or {}).get("object") or {}
        reference = data_object.get("id")
        if not reference:
            raise ReconciliationConflict("Event has no transaction reference", code="missing_reference")
        metadata: dict[str, Any] = data_object.get("metadata") or {}

        async with get_session(self._session_factory) as session:
            tenant_id = await BillingScanRepository(session).tenant_for_reference(reference)

        if tenant_id is None:
            candidate = metadata.get("tenant_id")
            if not candidate or not TENANT_ID_RE.match(str(candidate)):
                raise ReconciliationConflict(
                    f"No payment matches reference {reference} and metadata names no tenant",
                    code="unknown_payment",
                )
            tenant_id = str(candidate)

        failure_reason = None
        if outcome is PaymentStatus.FAILED:
            last_error = data_object.get("last_payment_error") or {}
            failure_reason = last_error.get("message") or "payment_failed"

        async def _settle(session: AsyncSession) -> dict[str, Any]:
            # Lock first so a checkout still holding the row finishes its insert.
            sub = await SubscriptionRepository(session, tenant_id).get(for_update=True)
            payments = PaymentRepository(session, tenant_id)
            now = self._clock()
            payment = await payments.get_by_reference(reference)
            if payment is None and outcome is PaymentStatus.FAILED and metadata.get("idempotency_key"):
                # A renewal attempt that timed out is already counted under its key.
                payment = await payments.get_by_reference(str(metadata["idempotency_key"]))
            if payment is None:
                payment = await self._record_from_event(payments, sub, reference, data_object, metadata, now)
            if payment.is_terminal:
                if outcome is PaymentStatus.COMPLETED and payment.status == PaymentStatus.FAILED.value:
                    logger.error(
                        "Charge %s succeeded after payment %s was settled as failed (tenant=%s); needs review",
                        reference,
                        payment.gateway_transaction_reference,
                        tenant_id,
                    )
                logger.info("Duplicate webhook for %s (already %s)", reference, payment.status)
                return {"status": "duplicate", "payment_status": payment.status}
            result = await self._settlement.settle(
                session,
                tenant_id,
                payment,
                outcome,
                now=now,
                failure_reason=failure_reason,
                actor="webhook",
            )
            return {
                "status": "processed" if result.applied else "duplicate",
                "payment_status": result.status,
            }

        return await run_with_tenant_context(self._session_factory, tenant_id, _settle)

    async def _record_from_event(
        self,
        payments: PaymentRepository,
        sub: Any,
        reference: str,
        data_object: dict[str, Any],
        metadata: dict[str, Any],
        now: datetime,
    ) -> PaymentTable:
        """Create the Payment the charging side never stored.

        Covers a crash between the provider accepting a charge and the
        Payment row being committed.
        """
        operation_name = metadata.get("operation")
        try:
            operation = PaymentOperation(operation_name)
        except ValueError as exc:
            raise ReconciliationConflict(
                f"Unknown operation {operation_name!r} for {reference}", code="unresolvable_metadata"
            ) from exc
        if sub is None or str(sub.id) != str(metadata.get("subscription_id")):
            raise ReconciliationConflict(
                f"Metadata for {reference} does not match a subscription", code="unresolvable_metadata"
            )

        snapshot: dict[str, Any] = {"recovered_from_webhook": True}
        try:
            if operation is PaymentOperation.UPGRADE:
                addons = metadata.get("target_addons") or ""
                snapshot.update(
                    target_plan=metadata["target_plan"],
                    target_user_count=int(metadata["target_user_count"]),
                    target_addons=[a for a in addons.split(",") if a],
                )
            elif operation is PaymentOperation.ADDON_TOGGLE:
                snapshot.update(addon=metadata.get("addon"), action="activate")
            amount_minor = int(data_object.get("amount_received") or data_object.get("amount") or 0)
            period_ends_at = _parse_datetime(metadata.get("period_ends_at"))
        except (KeyError, TypeError, ValueError) as exc:
            raise ReconciliationConflict(
                f"Metadata for {reference} is incomplete: {exc}", code="unresolvable_metadata"
            ) from exc

        payment = await payments.create(
            subscription_id=sub.id,
            amount=(Decimal(amount_minor) / 100).quantize(Decimal("0.01")),
            currency=str(data_object.get("currency") or self._lifecycle.policy.currency).upper(),
            reference=reference,
            operation=operation,
            period_ends_at=period_ends_at,
            metadata=snapshot,
            created_at=now,
        )
        logger.warning("Recorded missing payment %s from webhook metadata (tenant=%s)", reference, sub.tenant_id)
        return payment
