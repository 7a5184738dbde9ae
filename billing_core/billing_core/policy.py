"""Tunable billing rules, projected from settings."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta


@dataclass(frozen=True)
class BillingPolicy:
    """Rule values consulted by the lifecycle and the renewal engine."""

    currency: str = "EUR"
    trial_days: int = 15
    trial_plan: str = "enterprise"
    trial_fallback_plan: str = "starter"
    trial_fallback_user_count: int = 2
    grace_period_days: int = 15
    renewal_max_attempts: int = 3
    downgrade_cancel_window_hours: int = 24
    pending_payment_timeout_hours: int = 72

    @property
    def trial_length(self) -> timedelta:
        return timedelta(days=self.trial_days)

    @property
    def grace_period(self) -> timedelta:
        return timedelta(days=self.grace_period_days)

    @property
    def downgrade_cancel_window(self) -> timedelta:
        return timedelta(hours=self.downgrade_cancel_window_hours)

    @property
    def pending_payment_timeout(self) -> timedelta:
        """How long a charge may stay unconfirmed before it is resolved."""
        return timedelta(hours=self.pending_payment_timeout_hours)
