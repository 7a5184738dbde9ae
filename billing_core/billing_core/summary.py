"""Read-only billing summary for a tenant."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from billing_core.catalog import PlanCatalog
from billing_core.lifecycle import SubscriptionLifecycle
from billing_core.policy import BillingPolicy
from billing_core.state.tables import SubscriptionTable


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def build_summary(
    subscription: SubscriptionTable,
    catalog: PlanCatalog,
    policy: BillingPolicy,
    now: datetime,
) -> dict[str, Any]:
    """Assemble the plan, price and renewal state shown to a tenant.

    Amounts are strings so JSON clients keep cent precision.  The
    ``pending_downgrade`` key is present only when a transition is
    scheduled.
    """
    lifecycle = SubscriptionLifecycle(catalog, policy)
    breakdown = lifecycle.calculator.for_subscription(subscription)
    can_cancel = lifecycle.can_cancel_downgrade(subscription, now)

    summary: dict[str, Any] = {
        "tenant_id": subscription.tenant_id,
        "plan": subscription.plan,
        "is_trial": bool(subscription.is_trial),
        "user_count": subscription.user_count,
        "active_addons": sorted(subscription.addon_set),
        "base_subtotal": str(breakdown.base_subtotal),
        "addon_breakdown": {name: str(amount) for name, amount in breakdown.addon_amounts.items()},
        "included_addons": list(breakdown.included_addons),
        "total": str(breakdown.total),
        "currency": policy.currency,
        "status": subscription.status,
        "trial_ends_at": _iso(subscription.trial_ends_at),
        "billing_period_started_at": _iso(subscription.billing_period_started_at),
        "billing_period_ends_at": _iso(subscription.billing_period_ends_at),
        "grace_period_until": _iso(subscription.grace_period_until),
        "failed_renewal_attempts": subscription.failed_renewal_attempts or 0,
        "has_payment_method": subscription.gateway_default_payment_method_reference is not None,
        "can_cancel_downgrade": can_cancel,
    }

    transition = subscription.scheduled_transition
    if transition is not None:
        summary["pending_downgrade"] = {
            "target_plan": transition.target_plan,
            "target_user_limit": transition.target_user_limit,
            "effective_at": transition.effective_at.isoformat(),
            "hours_remaining": round(lifecycle.hours_until_transition(subscription, now) or 0.0, 2),
            "can_cancel": can_cancel,
        }
    return summary
