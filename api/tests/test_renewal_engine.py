"""Tests for the renewal pass."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from billing_core.errors import GatewayError
from billing_core.state.database import run_with_tenant_context
from billing_core.state.repository import PaymentRepository

from api.services.gateway import ChargeStatus
from api.services.renewal_engine import renewal_idempotency_key

PERIOD_END = datetime(2026, 7, 1, 9, 0, tzinfo=UTC)
RENEWAL_DAY = datetime(2026, 7, 1, 10, 0, tzinfo=UTC)


async def _payments(session_factory, tenant_id):  # type: ignore[no-untyped-def]
    async def _do(session):  # type: ignore[no-untyped-def]
        rows, _ = await PaymentRepository(session, tenant_id).list_for_tenant(100, 0)
        return rows

    return await run_with_tenant_context(session_factory, tenant_id, _do)


class TestRenewalSuccess:
    @pytest.mark.asyncio
    async def test_renews_due_subscription(self, renewal_engine, seed, load_sub, gateway, clock) -> None:
        await seed("acme", "team", 2)
        clock.set(RENEWAL_DAY)

        counts = await renewal_engine.run()

        assert counts["total"] == 1
        assert counts["renewed"] == 1
        charge = gateway.charges[0]
        assert str(charge["amount"]) == "88.00"
        assert charge["off_session"] is True
        assert charge["idempotency_key"].startswith("renewal-")

        sub = await load_sub("acme")
        assert sub.billing_period_started_at == PERIOD_END
        assert sub.billing_period_ends_at == datetime(2026, 8, 1, 9, 0, tzinfo=UTC)
        assert sub.last_renewal_at == RENEWAL_DAY
        assert sub.status == "active"

    @pytest.mark.asyncio
    async def test_rerun_same_day_does_nothing(self, renewal_engine, seed, gateway, clock) -> None:
        await seed("acme", "team", 2)
        clock.set(RENEWAL_DAY)
        await renewal_engine.run()

        counts = await renewal_engine.run()

        assert counts["total"] == 0
        assert counts["renewed"] == 0
        assert len(gateway.charges) == 1

    @pytest.mark.asyncio
    async def test_not_due_is_untouched(self, renewal_engine, seed, clock) -> None:
        await seed("acme", "team", 2)
        clock.set(PERIOD_END - timedelta(minutes=1))
        counts = await renewal_engine.run()
        assert counts["total"] == 0

    @pytest.mark.asyncio
    async def test_free_plan_renews_without_charge(
        self, renewal_engine, seed, load_sub, gateway, session_factory, clock
    ) -> None:
        await seed("acme", "starter", 1, payment_method=None)
        clock.set(RENEWAL_DAY)

        counts = await renewal_engine.run()

        assert counts["renewed"] == 1
        assert gateway.charges == []
        payments = await _payments(session_factory, "acme")
        assert payments[0].amount == 0
        assert payments[0].gateway_transaction_reference.startswith("noop_renewal_")
        assert (await load_sub("acme")).billing_period_ends_at == datetime(2026, 8, 1, 9, 0, tzinfo=UTC)


class TestScheduledDowngrade:
    @pytest.mark.asyncio
    async def test_downgrade_applied_before_charge(
        self, renewal_engine, service, seed, load_sub, gateway, clock
    ) -> None:
        await seed("acme", "enterprise", 3)
        await service.schedule_downgrade("acme", "team", 2)
        clock.set(RENEWAL_DAY)

        counts = await renewal_engine.run()

        assert counts["renewed"] == 1
        assert str(gateway.charges[0]["amount"]) == "88.00"
        sub = await load_sub("acme")
        assert sub.plan == "team"
        assert sub.user_count == 2
        assert sub.scheduled_transition is None

        history = await service.list_plan_changes("acme")
        assert history["plan_changes"][0]["reason"] == "scheduled_downgrade"
        assert history["plan_changes"][0]["actor"] == "renewal_engine"

    @pytest.mark.asyncio
    async def test_downgrade_drops_unoffered_addons(self, renewal_engine, service, seed, load_sub, clock) -> None:
        await seed("acme", "team", 2, addons=["planning"])
        await service.schedule_downgrade("acme", "starter", 2)
        clock.set(RENEWAL_DAY)

        await renewal_engine.run()

        sub = await load_sub("acme")
        assert sub.plan == "starter"
        assert sub.active_addons == []


class TestRenewalFailure:
    @pytest.mark.asyncio
    async def test_no_payment_method_marks_past_due(self, renewal_engine, seed, load_sub, clock) -> None:
        await seed("acme", "team", 2, payment_method=None)
        await seed("globex", "team", 2)
        clock.set(RENEWAL_DAY)

        counts = await renewal_engine.run()

        assert counts["past_due"] == 1
        assert counts["renewed"] == 1
        assert counts["errors"] == 0
        assert (await load_sub("acme")).status == "past_due"
        assert (await load_sub("globex")).status == "active"

    @pytest.mark.asyncio
    async def test_failure_opens_grace_then_retry_recovers(
        self, renewal_engine, seed, load_sub, gateway, clock
    ) -> None:
        await seed("acme", "team", 2)
        clock.set(RENEWAL_DAY)
        gateway.queue_outcome(ChargeStatus.FAILED)

        counts = await renewal_engine.run()

        assert counts["failed"] == 1
        sub = await load_sub("acme")
        assert sub.status == "past_due"
        assert sub.failed_renewal_attempts == 1
        assert sub.grace_period_until == RENEWAL_DAY + timedelta(days=15)
        assert sub.billing_period_ends_at == PERIOD_END

        clock.advance(days=1)
        counts = await renewal_engine.run()

        assert counts["renewed"] == 1
        assert gateway.charges[1]["idempotency_key"].endswith("-retry1")
        sub = await load_sub("acme")
        assert sub.status == "active"
        assert sub.failed_renewal_attempts == 0
        assert sub.grace_period_until is None
        assert sub.billing_period_ends_at == datetime(2026, 8, 1, 9, 0, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_exhausted_attempts_wait_for_grace_expiry(
        self, renewal_engine, seed, load_sub, gateway, clock
    ) -> None:
        await seed("acme", "team", 2)
        clock.set(RENEWAL_DAY)
        for _ in range(3):
            gateway.queue_outcome(ChargeStatus.FAILED)
            assert (await renewal_engine.run())["failed"] == 1
            clock.advance(days=1)

        counts = await renewal_engine.run()
        assert counts["skipped"] == 1
        assert len(gateway.charges) == 3

        clock.set(RENEWAL_DAY + timedelta(days=15, minutes=1))
        counts = await renewal_engine.run()

        assert counts["canceled"] == 1
        sub = await load_sub("acme")
        assert sub.status == "canceled"
        assert sub.canceled_at is not None

    @pytest.mark.asyncio
    async def test_pending_charge_is_not_repeated(self, renewal_engine, seed, load_sub, gateway, clock) -> None:
        await seed("acme", "team", 2)
        clock.set(RENEWAL_DAY)
        gateway.queue_outcome(ChargeStatus.PENDING)

        assert (await renewal_engine.run())["pending"] == 1
        assert (await load_sub("acme")).billing_period_ends_at == PERIOD_END

        counts = await renewal_engine.run()

        assert counts["skipped"] == 1
        assert len(gateway.charges) == 1

    @pytest.mark.asyncio
    async def test_stale_pending_charge_settles_as_failed(
        self, renewal_engine, seed, load_sub, gateway, session_factory, clock
    ) -> None:
        await seed("acme", "team", 2)
        clock.set(RENEWAL_DAY)
        gateway.queue_outcome(ChargeStatus.PENDING)
        await renewal_engine.run()

        clock.advance(hours=71)
        assert (await renewal_engine.run())["skipped"] == 1

        clock.advance(hours=1)
        counts = await renewal_engine.run()

        assert counts["failed"] == 1
        assert len(gateway.charges) == 1
        sub = await load_sub("acme")
        assert sub.status == "past_due"
        assert sub.failed_renewal_attempts == 1
        assert sub.grace_period_until == clock.now + timedelta(days=15)
        assert sub.billing_period_ends_at == PERIOD_END
        payments = await _payments(session_factory, "acme")
        assert payments[0].status == "failed"
        assert payments[0].failure_reason == "pending_timeout"

    @pytest.mark.asyncio
    async def test_stale_pending_charge_confirmed_by_gateway(
        self, renewal_engine, seed, load_sub, gateway, clock
    ) -> None:
        await seed("acme", "team", 2)
        clock.set(RENEWAL_DAY)
        gateway.queue_outcome(ChargeStatus.PENDING)
        await renewal_engine.run()
        gateway.resolve_charge(gateway.charges[0]["reference"], ChargeStatus.COMPLETED)

        clock.advance(hours=73)
        counts = await renewal_engine.run()

        assert counts["renewed"] == 1
        sub = await load_sub("acme")
        assert sub.status == "active"
        assert sub.billing_period_ends_at == datetime(2026, 8, 1, 9, 0, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failed_attempt(
        self, renewal_engine, seed, load_sub, gateway, session_factory, clock
    ) -> None:
        await seed("acme", "team", 2)
        clock.set(RENEWAL_DAY)
        gateway.queue_outcome(GatewayError("Gateway timed out", code="timeout"))

        counts = await renewal_engine.run()

        assert counts["failed"] == 1
        payments = await _payments(session_factory, "acme")
        assert payments[0].status == "failed"
        assert payments[0].gateway_transaction_reference == gateway.charges[0]["idempotency_key"]

    @pytest.mark.asyncio
    async def test_unexpected_gateway_error_is_a_failed_attempt(
        self, renewal_engine, seed, load_sub, gateway, clock
    ) -> None:
        await seed("acme", "team", 2)
        await seed("broken", "team", 2)
        clock.set(RENEWAL_DAY)
        original = gateway.charge

        async def _flaky(**kwargs):  # type: ignore[no-untyped-def]
            if kwargs["tenant_id"] == "broken":
                raise RuntimeError("connection reset")
            return await original(**kwargs)

        with patch.object(gateway, "charge", AsyncMock(side_effect=_flaky)):
            counts = await renewal_engine.run()

        assert counts["failed"] == 1
        assert counts["renewed"] == 1
        assert counts["errors"] == 0
        broken = await load_sub("broken")
        assert broken.status == "past_due"
        assert broken.failed_renewal_attempts == 1
        assert broken.grace_period_until == RENEWAL_DAY + timedelta(days=15)
        assert broken.billing_period_ends_at == PERIOD_END
        assert (await load_sub("acme")).billing_period_ends_at == datetime(2026, 8, 1, 9, 0, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_one_tenant_error_does_not_stop_the_run(self, renewal_engine, seed, load_sub, clock) -> None:
        await seed("acme", "team", 2)
        await seed("broken", "team", 2)
        clock.set(RENEWAL_DAY)
        original = renewal_engine._renew_tenant

        async def _flaky(session, tenant_id):  # type: ignore[no-untyped-def]
            if tenant_id == "broken":
                raise RuntimeError("row could not be decoded")
            return await original(session, tenant_id)

        with patch.object(renewal_engine, "_renew_tenant", AsyncMock(side_effect=_flaky)):
            counts = await renewal_engine.run()

        assert counts["errors"] == 1
        assert counts["renewed"] == 1
        assert (await load_sub("broken")).billing_period_ends_at == PERIOD_END
        assert (await load_sub("acme")).billing_period_ends_at == datetime(2026, 8, 1, 9, 0, tzinfo=UTC)


class TestTrialExpiry:
    @pytest.mark.asyncio
    async def test_expired_trial_falls_back(self, renewal_engine, service, load_sub, clock) -> None:
        await service.get_summary("trialco")
        clock.advance(days=16)

        counts = await renewal_engine.run()

        assert counts["trials_expired"] == 1
        sub = await load_sub("trialco")
        assert sub.plan == "starter"
        assert sub.is_trial is False
        assert sub.status == "active"

    @pytest.mark.asyncio
    async def test_running_trial_is_left_alone(self, renewal_engine, service, load_sub, clock) -> None:
        await service.get_summary("trialco")
        clock.advance(days=3)

        counts = await renewal_engine.run()

        assert counts["trials_expired"] == 0
        assert (await load_sub("trialco")).is_trial is True


def test_idempotency_key_is_per_period_and_attempt() -> None:
    from billing_core.state.tables import SubscriptionTable

    sub = SubscriptionTable(id=4, billing_period_ends_at=PERIOD_END, failed_renewal_attempts=0)
    assert renewal_idempotency_key(sub) == f"renewal-4-{PERIOD_END.isoformat()}"
    sub.failed_renewal_attempts = 2
    assert renewal_idempotency_key(sub).endswith("-retry2")
