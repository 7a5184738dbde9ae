"""Tests for the tenant billing summary."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from billing_core.catalog import default_catalog
from billing_core.lifecycle import SubscriptionLifecycle
from billing_core.policy import BillingPolicy
from billing_core.summary import build_summary

NOW = datetime(2026, 6, 1, tzinfo=UTC)


def test_summary_amounts_and_state() -> None:
    catalog = default_catalog()
    sub = SubscriptionLifecycle(catalog).start_subscription("acme", "team", 2, NOW)
    sub.active_addons = ["ai", "planning"]

    summary = build_summary(sub, catalog, BillingPolicy(), NOW)

    assert summary["base_subtotal"] == "88.00"
    assert summary["addon_breakdown"] == {"ai": "15.84", "planning": "15.84"}
    assert summary["total"] == "119.68"
    assert summary["currency"] == "EUR"
    assert summary["status"] == "active"
    assert summary["has_payment_method"] is False
    assert "pending_downgrade" not in summary


def test_summary_pending_downgrade() -> None:
    catalog = default_catalog()
    lifecycle = SubscriptionLifecycle(catalog)
    sub = lifecycle.start_subscription("acme", "enterprise", 3, NOW - timedelta(days=16))
    lifecycle.schedule_downgrade(sub, "starter", 2, NOW)

    summary = build_summary(sub, catalog, BillingPolicy(), NOW)

    pending = summary["pending_downgrade"]
    assert pending["target_plan"] == "starter"
    assert pending["target_user_limit"] == 2
    assert pending["can_cancel"] is True
    assert summary["can_cancel_downgrade"] is True
    assert summary["plan"] == "enterprise"


def test_summary_trial() -> None:
    catalog = default_catalog()
    sub = SubscriptionLifecycle(catalog).start_trial("acme", NOW)
    summary = build_summary(sub, catalog, BillingPolicy(), NOW)
    assert summary["is_trial"] is True
    assert summary["trial_ends_at"] == (NOW + timedelta(days=15)).isoformat()
    assert summary["included_addons"] == []
