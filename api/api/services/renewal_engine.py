"""Daily renewal pass and its background scheduler.

:class:`RenewalEngine` is the only actor that executes scheduled
downgrades and off-session renewal charges.  Each due subscription is
processed in its own tenant-scoped transaction with the row locked, so a
failure on one tenant never affects another and a re-run on the same day
finds nothing left to do.

:class:`RenewalScheduler` runs passes on an ``asyncio`` task at the times
given by a daily cron expression (``M H * * *``).
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections import Counter
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

from billing_core.catalog import PlanCatalog
from billing_core.errors import GatewayError
from billing_core.lifecycle import PlanChange, SubscriptionLifecycle
from billing_core.policy import BillingPolicy
from billing_core.state.database import get_session, run_with_tenant_context
from billing_core.state.repository import (
    BillingScanRepository,
    PaymentRepository,
    PlanChangeRepository,
    SubscriptionRepository,
)
from billing_core.state.tables import PaymentOperation, PaymentStatus, SubscriptionTable
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.services.gateway import ChargeStatus, PaymentGatewayAdapter
from api.services.settlement import PaymentSettlement

logger = logging.getLogger(__name__)

RENEWED = "renewed"
PENDING = "pending"
FAILED = "failed"
PAST_DUE = "past_due"
CANCELED = "canceled"
SKIPPED = "skipped"
TRIAL_EXPIRED = "trials_expired"
ERROR = "errors"

_COUNT_KEYS = (RENEWED, PENDING, FAILED, PAST_DUE, CANCELED, SKIPPED, TRIAL_EXPIRED, ERROR)


def renewal_idempotency_key(sub: SubscriptionTable) -> str:
    """Gateway idempotency key for the current period's renewal charge.

    Retries after a failed attempt get a distinct key so the provider does
    not replay the earlier decline.
    """
    assert sub.billing_period_ends_at is not None
    key = f"renewal-{sub.id}-{sub.billing_period_ends_at.isoformat()}"
    attempts = sub.failed_renewal_attempts or 0
    return f"{key}-retry{attempts}" if attempts else key


class RenewalEngine:
    """Executes one renewal pass across all tenants.

    Parameters
    ----------
    session_factory:
        Factory for database sessions.
    gateway:
        Payment gateway adapter used for off-session charges.
    catalog:
        Plan catalog.
    policy:
        Grace, retry and trial rules.
    concurrency:
        Maximum number of tenants processed in parallel.
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
        concurrency: int = 5,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._gateway = gateway
        self._policy = policy
        self._lifecycle = SubscriptionLifecycle(catalog, policy)
        self._settlement = PaymentSettlement(self._lifecycle)
        self._semaphore = asyncio.Semaphore(max(1, concurrency))
        self._clock = clock or (lambda: datetime.now(UTC))

    async def run(self) -> dict[str, int]:
        """Process every due renewal and expired trial once.

        Returns
        -------
        dict
            Counts keyed by ``total``, ``renewed``, ``pending``, ``failed``,
            ``past_due``, ``canceled``, ``skipped``, ``trials_expired`` and
            ``errors``.
        """
        now = self._clock()
        async with get_session(self._session_factory) as session:
            scan = BillingScanRepository(session)
            due = await scan.due_for_renewal(now)
            trials = await scan.expired_trials(now)

        logger.info("Renewal pass starting: %d due renewal(s), %d expired trial(s)", len(due), len(trials))

        outcomes = await asyncio.gather(
            *(self._guarded(tenant_id, self._renew_tenant) for tenant_id in due),
            *(self._guarded(tenant_id, self._expire_trial) for tenant_id in trials),
        )
        counter = Counter(outcomes)
        counts = {key: counter.get(key, 0) for key in _COUNT_KEYS}
        counts["total"] = len(due)
        logger.info("Renewal pass complete: %s", counts)
        return counts

    async def _guarded(self, tenant_id: str, handler: Callable[[AsyncSession, str], Any]) -> str:
        async with self._semaphore:
            try:
                return await run_with_tenant_context(
                    self._session_factory,
                    tenant_id,
                    lambda session: handler(session, tenant_id),
                )
            except Exception as exc:
                logger.error("Renewal processing failed for tenant=%s: %s", tenant_id, exc, exc_info=True)
                return ERROR

    async def _record_plan_change(self, session: AsyncSession, tenant_id: str, sub: SubscriptionTable, change: PlanChange) -> None:
        await PlanChangeRepository(session, tenant_id).record(
            subscription_id=sub.id,
            from_plan=change.from_plan,
            to_plan=change.to_plan,
            from_user_count=change.from_user_count,
            to_user_count=change.to_user_count,
            actor="renewal_engine",
            reason=change.reason,
        )

    async def _renew_tenant(self, session: AsyncSession, tenant_id: str) -> str:
        subscriptions = SubscriptionRepository(session, tenant_id)
        payments = PaymentRepository(session, tenant_id)
        sub = await subscriptions.get(for_update=True)
        now = self._clock()

        if sub is None or not self._lifecycle.renewal_due(sub, now):
            return SKIPPED

        if self._lifecycle.grace_expired(sub, now):
            self._lifecycle.cancel(sub, now)
            await subscriptions.save(sub)
            logger.warning("Grace period expired; canceled subscription tenant=%s", tenant_id)
            return CANCELED
        if self._lifecycle.attempts_exhausted(sub):
            logger.info(
                "Renewal attempts exhausted for tenant=%s; waiting for grace expiry at %s",
                tenant_id,
                sub.grace_period_until,
            )
            return SKIPPED

        change = self._lifecycle.apply_due_transition(sub, now)
        if change is not None:
            await self._record_plan_change(session, tenant_id, sub, change)

        breakdown = self._lifecycle.calculator.for_subscription(sub)
        period_end = sub.billing_period_ends_at

        if breakdown.total == 0:
            await payments.create(
                subscription_id=sub.id,
                amount=Decimal("0.00"),
                currency=self._policy.currency,
                reference=f"noop_renewal_{sub.id}_{int(period_end.timestamp())}",
                operation=PaymentOperation.RENEWAL,
                status=PaymentStatus.COMPLETED,
                period_ends_at=period_end,
                metadata={"breakdown": breakdown.to_dict()},
                settled_at=now,
                created_at=now,
            )
            self._lifecycle.apply_renewal_success(sub, now)
            await subscriptions.save(sub)
            return RENEWED

        existing = await payments.find_pending(
            sub.id, operations=(PaymentOperation.RENEWAL,), period_ends_at=period_end
        )
        if existing is not None:
            await subscriptions.save(sub)
            if not self._settlement.is_stale(existing, now):
                logger.info(
                    "Renewal payment %s still pending for tenant=%s; skipping",
                    existing.gateway_transaction_reference,
                    tenant_id,
                )
                return SKIPPED
            settled = await self._settlement.resolve_stale(
                session, tenant_id, existing, self._gateway, now=now, actor="renewal_engine"
            )
            return RENEWED if settled.status == PaymentStatus.COMPLETED.value else FAILED

        if not sub.gateway_default_payment_method_reference:
            self._lifecycle.mark_past_due(sub)
            await subscriptions.save(sub)
            logger.warning("No default payment method for tenant=%s; marked past_due", tenant_id)
            return PAST_DUE

        idempotency_key = renewal_idempotency_key(sub)
        snapshot = {
            "breakdown": breakdown.to_dict(),
            "attempt": (sub.failed_renewal_attempts or 0) + 1,
            "idempotency_key": idempotency_key,
        }
        try:
            result = await self._gateway.charge(
                tenant_id=tenant_id,
                subscription=sub,
                amount=breakdown.total,
                currency=self._policy.currency,
                metadata={
                    "subscription_id": str(sub.id),
                    "operation": PaymentOperation.RENEWAL.value,
                    "period_ends_at": period_end.isoformat(),
                    "idempotency_key": idempotency_key,
                },
                off_session=True,
                idempotency_key=idempotency_key,
            )
        except GatewayError as exc:
            await self._record_failed_charge(
                payments, sub, snapshot, exc.transaction_reference or idempotency_key, exc.message, now
            )
            self._lifecycle.apply_renewal_failure(sub, now)
            await subscriptions.save(sub)
            logger.warning(
                "Renewal charge failed for tenant=%s (code=%s attempt=%d): %s",
                tenant_id,
                exc.code,
                sub.failed_renewal_attempts,
                exc.message,
            )
            return FAILED
        except Exception as exc:
            # The outcome of the charge is unknown; count it as a failed attempt.
            await self._record_failed_charge(payments, sub, snapshot, idempotency_key, "gateway_unavailable", now)
            self._lifecycle.apply_renewal_failure(sub, now)
            await subscriptions.save(sub)
            logger.error(
                "Renewal charge raised unexpectedly for tenant=%s (attempt=%d): %s",
                tenant_id,
                sub.failed_renewal_attempts,
                exc,
                exc_info=True,
            )
            return FAILED

        payment = await payments.get_by_reference(result.transaction_reference)
        if payment is None:
            payment = await payments.create(
                subscription_id=sub.id,
                amount=breakdown.total,
                currency=self._policy.currency,
                reference=result.transaction_reference,
                operation=PaymentOperation.RENEWAL,
                period_ends_at=period_end,
                metadata=snapshot,
                created_at=now,
            )
        await subscriptions.save(sub)

        if result.status is ChargeStatus.PENDING:
            logger.info("Renewal charge pending for tenant=%s; awaiting webhook", tenant_id)
            return PENDING

        outcome = PaymentStatus.COMPLETED if result.status is ChargeStatus.COMPLETED else PaymentStatus.FAILED
        await self._settlement.settle(
            session,
            tenant_id,
            payment,
            outcome,
            now=now,
            failure_reason=result.failure_reason,
            actor="renewal_engine",
        )
        return RENEWED if outcome is PaymentStatus.COMPLETED else FAILED

    async def _record_failed_charge(
        self,
        payments: PaymentRepository,
        sub: SubscriptionTable,
        snapshot: dict[str, Any],
        reference: str,
        reason: str,
        now: datetime,
    ) -> None:
        """Keep a failed renewal attempt on the ledger under *reference*.

        Attempts the provider never identified are recorded under their
        idempotency key, which a late webhook for the same charge carries
        in its metadata.
        """
        if await payments.get_by_reference(reference) is not None:
            return
        await payments.create(
            subscription_id=sub.id,
            amount=Decimal(snapshot["breakdown"]["total"]),
            currency=self._policy.currency,
            reference=reference,
            operation=PaymentOperation.RENEWAL,
            status=PaymentStatus.FAILED,
            period_ends_at=sub.billing_period_ends_at,
            metadata=snapshot,
            failure_reason=reason,
            settled_at=now,
            created_at=now,
        )


    async def _expire_trial(self, session: AsyncSession, tenant_id: str) -> str:
        subscriptions = SubscriptionRepository(session, tenant_id)
        sub = await subscriptions.get(for_update=True)
        now = self._clock()
        if sub is None or not self._lifecycle.trial_expired(sub, now):
            return SKIPPED
        change = self._lifecycle.end_trial(sub, now)
        await self._record_plan_change(session, tenant_id, sub, change)
        await subscriptions.save(sub)
        return TRIAL_EXPIRED


# ---------------------------------------------------------------------------
# Cron expression helpers
# ---------------------------------------------------------------------------

_DAILY_RE = re.compile(r"^(\d{1,2})\s+(\d{1,2})\s+\*\s+\*\s+\*$")


def compute_next_run(cron_expression: str, from_time: datetime) -> datetime:
    """Compute the next run time after *from_time*.

    Only the daily form ``M H * * *`` (every day at *H*:*M*) is supported.

    Raises
    ------
    ValueError
        If the expression is not a daily schedule or a field is out of
        range.
    """
    expr = cron_expression.strip()

    match = _DAILY_RE.match(expr)
    if match:
        minute, hour = int(match.group(1)), int(match.group(2))
        _check_range(minute, 59, "minute")
        _check_range(hour, 23, "hour")
        candidate = from_time.replace(hour=hour, minute=minute, second=0, microsecond=0)
        if candidate <= from_time:
            candidate += timedelta(days=1)
        return candidate

    raise ValueError(
        f"Unsupported cron expression: '{cron_expression}'. "
        "Only daily schedules of the form 'M H * * *' are supported."
    )


def _check_range(value: int, upper: int, field: str) -> None:
    if not 0 <= value <= upper:
        raise ValueError(f"Cron {field} out of range: {value}")


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class RenewalScheduler:
    """AsyncIO background task that runs :class:`RenewalEngine` on a cron.

    Parameters
    ----------
    engine:
        The renewal engine to run.
    cron_expression:
        When to run (default: daily at 02:00 UTC).
    """

    def __init__(self, engine: RenewalEngine, cron_expression: str = "0 2 * * *") -> None:
        compute_next_run(cron_expression, datetime.now(UTC))
        self._engine = engine
        self._cron = cron_expression
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self.last_result: dict[str, int] | None = None
        self.next_run_at: datetime | None = None

    @property
    def running(self) -> bool:
        """Whether the scheduler loop is active."""
        return self._running

    async def start(self) -> None:
        """Start the scheduler background task."""
        if self._running:
            logger.warning("RenewalScheduler already running; ignoring start()")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("RenewalScheduler started (cron=%s)", self._cron)

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("RenewalScheduler stopped")

    async def run_once(self) -> dict[str, int]:
        self.last_result = await self._engine.run()
        return self.last_result

    async def _run_loop(self) -> None:
        while self._running:
            now = datetime.now(UTC)
            self.next_run_at = compute_next_run(self._cron, now)
            await asyncio.sleep(max(0.0, (self.next_run_at - now).total_seconds()))
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except (OperationalError, InterfaceError) as exc:
                logger.error("RenewalScheduler database error: %s", exc, exc_info=True)
            except Exception as exc:
                logger.critical("RenewalScheduler unexpected error: %s", exc, exc_info=True)
