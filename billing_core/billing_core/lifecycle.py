"""Subscription state machine.

States and transitions::

    trialing --> active --> past_due --> active
        |          |            |
        +----------+------------+--> canceled   (terminal)

The functions here validate and apply transitions on a
:class:`~billing_core.state.tables.SubscriptionTable` row in memory.  They
perform no I/O: persistence, gateway calls and payment bookkeeping are the
caller's job.  Every operation that takes effect only after a payment
completes is split into a *quote* (validate + price, no mutation) and an
*apply* step run by payment settlement.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from billing_core.catalog import PlanCatalog, PlanDefinition
from billing_core.errors import PolicyError, ValidationError
from billing_core.periods import add_month, ensure_utc, hours_between
from billing_core.policy import BillingPolicy
from billing_core.pricing import PriceBreakdown, PriceCalculator
from billing_core.state.tables import ScheduledTransition, SubscriptionStatus, SubscriptionTable

logger = logging.getLogger(__name__)

_ZERO = Decimal("0.00")


@dataclass(frozen=True)
class PlanChange:
    """A plan or seat change to append to the audit trail."""

    from_plan: str | None
    to_plan: str
    from_user_count: int | None
    to_user_count: int
    reason: str


@dataclass(frozen=True)
class UpgradeQuote:
    """Validated upgrade target and the full price of the new plan."""

    target_plan: str
    target_user_count: int
    target_addons: tuple[str, ...]
    breakdown: PriceBreakdown
    from_trial: bool

    @property
    def amount(self) -> Decimal:
        return self.breakdown.total

    def snapshot(self) -> dict[str, Any]:
        """Target state recorded on the Payment and replayed at settlement."""
        return {
            "target_plan": self.target_plan,
            "target_user_count": self.target_user_count,
            "target_addons": list(self.target_addons),
            "breakdown": self.breakdown.to_dict(),
        }


@dataclass(frozen=True)
class AddonToggle:
    """Outcome of an add-on toggle request.

    ``action`` is ``activate`` (charge ``amount``, apply on settlement),
    ``deactivate`` (already applied, free) or ``included`` (no-op on a
    complete plan).
    """

    addon: str
    action: str
    amount: Decimal = _ZERO
    code: str | None = None
    active_addons: tuple[str, ...] = field(default=())


class SubscriptionLifecycle:
    """Validates and applies subscription transitions.

    Parameters
    ----------
    catalog:
        Plan catalog used for plan lookups and ranking.
    policy:
        Trial, grace and cancellation-window rules.
    """

    def __init__(self, catalog: PlanCatalog, policy: BillingPolicy | None = None) -> None:
        self._catalog = catalog
        self._policy = policy or BillingPolicy()
        self._calculator = PriceCalculator(catalog)

    @property
    def catalog(self) -> PlanCatalog:
        return self._catalog

    @property
    def policy(self) -> BillingPolicy:
        return self._policy

    @property
    def calculator(self) -> PriceCalculator:
        return self._calculator

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def start_trial(self, tenant_id: str, now: datetime, user_count: int = 1) -> SubscriptionTable:
        """Build a new trialing subscription on the trial plan."""
        plan = self._catalog.get_plan(self._policy.trial_plan)
        self._validate_seats(plan, user_count)
        trial_ends = now + self._policy.trial_length
        return SubscriptionTable(
            tenant_id=tenant_id,
            plan=plan.name,
            active_addons=[],
            user_count=user_count,
            status=SubscriptionStatus.TRIALING.value,
            is_trial=True,
            trial_ends_at=trial_ends,
            billing_period_started_at=now,
            billing_period_ends_at=trial_ends,
            failed_renewal_attempts=0,
        )

    def start_subscription(
        self, tenant_id: str, plan_name: str, user_count: int, now: datetime
    ) -> SubscriptionTable:
        """Build a new active, non-trial subscription."""
        plan = self._catalog.get_plan(plan_name)
        self._validate_seats(plan, user_count)
        return SubscriptionTable(
            tenant_id=tenant_id,
            plan=plan.name,
            active_addons=[],
            user_count=user_count,
            status=SubscriptionStatus.ACTIVE.value,
            is_trial=False,
            subscription_start_date=None if plan.is_free else now,
            billing_period_started_at=now,
            billing_period_ends_at=add_month(now),
            failed_renewal_attempts=0,
        )

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def ensure_open(self, sub: SubscriptionTable) -> None:
        """Reject any operation on a canceled subscription."""
        if sub.status == SubscriptionStatus.CANCELED.value:
            raise PolicyError("Subscription is canceled", code="subscription_canceled")

    def _validate_seats(self, plan: PlanDefinition, user_count: int) -> None:
        upper = plan.max_users
        if user_count < plan.min_users or (upper is not None and user_count > upper):
            bound = f"{plan.min_users}-{upper}" if upper is not None else f">= {plan.min_users}"
            raise ValidationError(
                f"User count {user_count} is outside the {plan.name} plan range ({bound})",
                code="user_count_out_of_range",
                min_users=plan.min_users,
                max_users=upper,
            )

    # ------------------------------------------------------------------
    # Upgrade
    # ------------------------------------------------------------------

    def quote_upgrade(self, sub: SubscriptionTable, new_plan: str, new_user_count: int) -> UpgradeQuote:
        """Validate an upgrade and price the full new plan.

        Trials may move to any plan.  Otherwise the target must rank higher
        than the current plan, or be the current plan with more seats.

        Raises
        ------
        ValidationError
            Unknown plan or seat count out of range.
        PolicyError
            ``subscription_canceled`` or ``not_an_upgrade``.
        """
        self.ensure_open(sub)
        target = self._catalog.get_plan(new_plan)
        self._validate_seats(target, new_user_count)

        if not sub.is_trial:
            current = self._catalog.get_plan(sub.plan)
            is_upgrade = target.rank > current.rank or (
                target.name == current.name and new_user_count > sub.user_count
            )
            if not is_upgrade:
                raise PolicyError(
                    f"Moving from {current.name} ({sub.user_count} users) to "
                    f"{target.name} ({new_user_count} users) is not an upgrade",
                    code="not_an_upgrade",
                )

        kept = tuple(sorted(a for a in sub.addon_set if target.offers_addon(a)))
        breakdown = self._calculator.calculate(target.name, kept, new_user_count)
        return UpgradeQuote(
            target_plan=target.name,
            target_user_count=new_user_count,
            target_addons=kept,
            breakdown=breakdown,
            from_trial=bool(sub.is_trial),
        )

    def apply_upgrade(
        self,
        sub: SubscriptionTable,
        *,
        target_plan: str,
        target_user_count: int,
        target_addons: tuple[str, ...] | list[str],
        now: datetime,
    ) -> PlanChange:
        """Switch the subscription to the paid-for plan and restart the period."""
        change = PlanChange(
            from_plan=sub.plan,
            to_plan=target_plan,
            from_user_count=sub.user_count,
            to_user_count=target_user_count,
            reason="upgrade" if not sub.is_trial else "trial_conversion",
        )
        target = self._catalog.get_plan(target_plan)
        sub.plan = target.name
        sub.user_count = target_user_count
        sub.active_addons = sorted(a for a in target_addons if target.offers_addon(a))
        sub.scheduled_transition = None
        sub.billing_period_started_at = now
        sub.billing_period_ends_at = add_month(now)
        sub.status = SubscriptionStatus.ACTIVE.value
        sub.failed_renewal_attempts = 0
        sub.grace_period_until = None
        if sub.is_trial:
            sub.is_trial = False
            sub.trial_ends_at = None
        if not target.is_free and sub.subscription_start_date is None:
            sub.subscription_start_date = now
        logger.info(
            "Applied upgrade tenant=%s %s/%s -> %s/%s",
            sub.tenant_id,
            change.from_plan,
            change.from_user_count,
            change.to_plan,
            change.to_user_count,
        )
        return change

    # ------------------------------------------------------------------
    # Deferred downgrade
    # ------------------------------------------------------------------

    def schedule_downgrade(
        self, sub: SubscriptionTable, new_plan: str, new_user_limit: int, now: datetime
    ) -> ScheduledTransition:
        """Record a downgrade that takes effect at the end of the current period.

        The current plan and seat count are left untouched.

        Raises
        ------
        PolicyError
            ``subscription_canceled``, ``trial_active``, ``no_future_renewal``,
            ``not_a_downgrade`` or ``downgrade_already_scheduled``.
        """
        self.ensure_open(sub)
        if sub.is_trial:
            raise PolicyError("Downgrades cannot be scheduled during a trial", code="trial_active")
        ends_at = sub.billing_period_ends_at
        if ends_at is None or ensure_utc(ends_at) <= ensure_utc(now):
            raise PolicyError("The subscription has no upcoming renewal", code="no_future_renewal")

        target = self._catalog.get_plan(new_plan)
        self._validate_seats(target, new_user_limit)
        current = self._catalog.get_plan(sub.plan)
        if target.rank >= current.rank:
            raise PolicyError(
                f"{target.name} does not rank below {current.name}",
                code="not_a_downgrade",
            )
        if sub.scheduled_transition is not None:
            raise PolicyError(
                "A downgrade is already scheduled for this subscription",
                code="downgrade_already_scheduled",
            )

        transition = ScheduledTransition(
            target_plan=target.name,
            target_user_limit=new_user_limit,
            effective_at=ends_at,
        )
        sub.scheduled_transition = transition
        logger.info(
            "Scheduled downgrade tenant=%s %s -> %s at %s",
            sub.tenant_id,
            current.name,
            target.name,
            ends_at.isoformat(),
        )
        return transition

    def hours_until_transition(self, sub: SubscriptionTable, now: datetime) -> float | None:
        transition = sub.scheduled_transition
        if transition is None:
            return None
        return hours_between(now, transition.effective_at)

    def can_cancel_downgrade(self, sub: SubscriptionTable, now: datetime) -> bool:
        remaining = self.hours_until_transition(sub, now)
        return remaining is not None and remaining >= self._policy.downgrade_cancel_window_hours

    def cancel_scheduled_downgrade(self, sub: SubscriptionTable, now: datetime) -> ScheduledTransition:
        """Drop a pending downgrade while enough time remains before it applies.

        Raises
        ------
        PolicyError
            ``no_pending_downgrade``, or ``too_close_to_renewal`` carrying
            ``hours_remaining`` when less than the cancellation window is left.
        """
        self.ensure_open(sub)
        transition = sub.scheduled_transition
        if transition is None:
            raise PolicyError("No downgrade is scheduled", code="no_pending_downgrade")
        remaining = hours_between(now, transition.effective_at)
        if remaining < self._policy.downgrade_cancel_window_hours:
            raise PolicyError(
                f"Downgrades cannot be canceled less than "
                f"{self._policy.downgrade_cancel_window_hours} hours before renewal",
                code="too_close_to_renewal",
                hours_remaining=round(max(remaining, 0.0), 2),
            )
        sub.scheduled_transition = None
        logger.info("Canceled scheduled downgrade tenant=%s to %s", sub.tenant_id, transition.target_plan)
        return transition

    def transition_due(self, sub: SubscriptionTable, now: datetime) -> bool:
        transition = sub.scheduled_transition
        return transition is not None and ensure_utc(transition.effective_at) <= ensure_utc(now)

    def apply_due_transition(self, sub: SubscriptionTable, now: datetime) -> PlanChange | None:
        """Apply the scheduled transition once its effective time has passed.

        Add-ons the new plan does not offer are dropped.  Returns ``None``
        when nothing was due.
        """
        if not self.transition_due(sub, now):
            return None
        transition = sub.scheduled_transition
        assert transition is not None
        target = self._catalog.get_plan(transition.target_plan)
        change = PlanChange(
            from_plan=sub.plan,
            to_plan=target.name,
            from_user_count=sub.user_count,
            to_user_count=transition.target_user_limit,
            reason="scheduled_downgrade",
        )
        sub.plan = target.name
        sub.user_count = transition.target_user_limit
        sub.active_addons = sorted(a for a in sub.addon_set if target.offers_addon(a))
        sub.scheduled_transition = None
        logger.info("Applied scheduled downgrade tenant=%s -> %s", sub.tenant_id, target.name)
        return change

    # ------------------------------------------------------------------
    # Add-ons
    # ------------------------------------------------------------------

    def toggle_addon(self, sub: SubscriptionTable, addon_name: str) -> AddonToggle:
        """Flip an add-on.

        Deactivation is applied immediately.  Activation only returns the
        incremental amount to charge; :meth:`activate_addon` applies it once
        the payment completes.

        Raises
        ------
        ValidationError
            Unknown add-on.
        PolicyError
            ``subscription_canceled``, ``addons_not_allowed`` or
            ``addon_not_offered``.
        """
        self.ensure_open(sub)
        addon = self._catalog.get_addon(addon_name)
        plan = self._catalog.get_plan(sub.plan)

        if not plan.addons_allowed:
            raise PolicyError(
                f"Add-ons are not available on the {plan.name} plan",
                code="addons_not_allowed",
                plan=plan.name,
            )
        if plan.is_complete:
            return AddonToggle(
                addon=addon.name,
                action="included",
                code="addons_included",
                active_addons=tuple(sorted(sub.addon_set)),
            )
        if addon.name not in plan.addons:
            raise PolicyError(
                f"The {addon.name} add-on is not offered on the {plan.name} plan",
                code="addon_not_offered",
            )

        if addon.name in sub.addon_set:
            sub.active_addons = sorted(sub.addon_set - {addon.name})
            logger.info("Deactivated add-on tenant=%s addon=%s", sub.tenant_id, addon.name)
            return AddonToggle(
                addon=addon.name,
                action="deactivate",
                active_addons=tuple(sub.active_addons),
            )

        amount = self._calculator.addon_amount(plan.name, addon.name, sub.user_count)
        return AddonToggle(
            addon=addon.name,
            action="activate",
            amount=amount,
            active_addons=tuple(sorted(sub.addon_set)),
        )

    def activate_addon(self, sub: SubscriptionTable, addon_name: str) -> bool:
        """Add *addon_name* if the current plan still offers it."""
        plan = self._catalog.get_plan(sub.plan)
        if sub.status == SubscriptionStatus.CANCELED.value or not plan.offers_addon(addon_name):
            logger.warning(
                "Skipping add-on activation tenant=%s addon=%s plan=%s",
                sub.tenant_id,
                addon_name,
                plan.name,
            )
            return False
        if addon_name in sub.addon_set:
            return False
        sub.active_addons = sorted(sub.addon_set | {addon_name})
        return True

    # ------------------------------------------------------------------
    # Trial, cancellation
    # ------------------------------------------------------------------

    def trial_expired(self, sub: SubscriptionTable, now: datetime) -> bool:
        return (
            bool(sub.is_trial)
            and sub.status == SubscriptionStatus.TRIALING.value
            and sub.trial_ends_at is not None
            and ensure_utc(sub.trial_ends_at) <= ensure_utc(now)
        )

    def end_trial(self, sub: SubscriptionTable, now: datetime) -> PlanChange:
        """Move an expired trial to the fallback plan."""
        fallback = self._catalog.get_plan(self._policy.trial_fallback_plan)
        users = min(
            max(sub.user_count, fallback.min_users),
            self._policy.trial_fallback_user_count,
        )
        change = PlanChange(
            from_plan=sub.plan,
            to_plan=fallback.name,
            from_user_count=sub.user_count,
            to_user_count=users,
            reason="trial_expired",
        )
        sub.plan = fallback.name
        sub.user_count = users
        sub.active_addons = []
        sub.is_trial = False
        sub.trial_ends_at = None
        sub.status = SubscriptionStatus.ACTIVE.value
        sub.scheduled_transition = None
        sub.billing_period_started_at = now
        sub.billing_period_ends_at = add_month(now)
        logger.info("Trial ended tenant=%s -> %s (%d users)", sub.tenant_id, fallback.name, users)
        return change

    def cancel(self, sub: SubscriptionTable, now: datetime) -> None:
        """Cancel the subscription; terminal."""
        self.ensure_open(sub)
        sub.status = SubscriptionStatus.CANCELED.value
        sub.canceled_at = now
        sub.scheduled_transition = None
        sub.grace_period_until = None
        logger.info("Subscription canceled tenant=%s", sub.tenant_id)

    # ------------------------------------------------------------------
    # Renewal outcomes
    # ------------------------------------------------------------------

    def renewal_due(self, sub: SubscriptionTable, now: datetime) -> bool:
        return (
            not sub.is_trial
            and sub.status in (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value)
            and sub.billing_period_ends_at is not None
            and ensure_utc(sub.billing_period_ends_at) <= ensure_utc(now)
        )

    def grace_expired(self, sub: SubscriptionTable, now: datetime) -> bool:
        return (
            sub.status == SubscriptionStatus.PAST_DUE.value
            and sub.grace_period_until is not None
            and ensure_utc(sub.grace_period_until) <= ensure_utc(now)
        )

    def attempts_exhausted(self, sub: SubscriptionTable) -> bool:
        return (sub.failed_renewal_attempts or 0) >= self._policy.renewal_max_attempts

    def apply_renewal_success(self, sub: SubscriptionTable, now: datetime) -> None:
        """Advance the period by one month from the previous end."""
        previous_end = sub.billing_period_ends_at or now
        sub.billing_period_started_at = previous_end
        sub.billing_period_ends_at = add_month(previous_end)
        sub.last_renewal_at = now
        sub.status = SubscriptionStatus.ACTIVE.value
        sub.failed_renewal_attempts = 0
        sub.grace_period_until = None

    def apply_renewal_failure(self, sub: SubscriptionTable, now: datetime) -> None:
        """Mark past due and open the grace period on the first failure."""
        sub.status = SubscriptionStatus.PAST_DUE.value
        sub.failed_renewal_attempts = (sub.failed_renewal_attempts or 0) + 1
        if sub.grace_period_until is None:
            sub.grace_period_until = now + self._policy.grace_period

    def mark_past_due(self, sub: SubscriptionTable) -> None:
        sub.status = SubscriptionStatus.PAST_DUE.value
