"""Tests for environment-driven settings."""

from __future__ import annotations

from datetime import timedelta

import pytest
from pydantic import ValidationError

from api.config import BillingSettings, PaymentsDriver, StripeMode


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.chdir(tmp_path)
    for key in ("BILLING_PAYMENTS_DRIVER", "BILLING_STRIPE_MODE", "BILLING_TRIAL_DAYS", "BILLING_CURRENCY"):
        monkeypatch.delenv(key, raising=False)


def test_defaults() -> None:
    settings = BillingSettings()
    assert settings.payments_driver is PaymentsDriver.FAKE
    assert settings.currency == "EUR"
    assert settings.renewal_cron == "0 2 * * *"


def test_env_prefix(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BILLING_TRIAL_DAYS", "30")
    monkeypatch.setenv("BILLING_PAYMENTS_DRIVER", "stripe")
    settings = BillingSettings()
    assert settings.trial_days == 30
    assert settings.payments_driver is PaymentsDriver.STRIPE


def test_wildcard_cors_with_credentials_rejected() -> None:
    with pytest.raises(ValidationError, match="wildcard"):
        BillingSettings(cors_origins=["*"], cors_allow_credentials=True)


def test_live_stripe_requires_keys() -> None:
    with pytest.raises(ValidationError, match="LIVE_SECRET_KEY"):
        BillingSettings(payments_driver=PaymentsDriver.STRIPE, stripe_mode=StripeMode.LIVE)


def test_webhook_secret_follows_driver_and_mode() -> None:
    fake = BillingSettings(fake_webhook_secret="whsec_fake")
    assert fake.webhook_secret.get_secret_value() == "whsec_fake"

    test_mode = BillingSettings(payments_driver=PaymentsDriver.STRIPE, stripe_test_webhook_secret="whsec_test")
    assert test_mode.webhook_secret.get_secret_value() == "whsec_test"

    live = BillingSettings(
        payments_driver=PaymentsDriver.STRIPE,
        stripe_mode=StripeMode.LIVE,
        stripe_live_secret_key="sk_live_x",
        stripe_live_webhook_secret="whsec_live",
    )
    assert live.webhook_secret.get_secret_value() == "whsec_live"
    assert live.stripe_secret_key.get_secret_value() == "sk_live_x"


def test_secrets_not_in_repr() -> None:
    settings = BillingSettings(stripe_test_secret_key="sk_test_very_secret")
    assert "sk_test_very_secret" not in repr(settings)


def test_billing_policy_projection() -> None:
    settings = BillingSettings(
        currency="usd",
        trial_days=7,
        grace_period_days=10,
        downgrade_cancel_window_hours=48,
        pending_payment_timeout_hours=24,
    )
    policy = settings.billing_policy()
    assert policy.currency == "USD"
    assert policy.trial_days == 7
    assert policy.grace_period_days == 10
    assert policy.downgrade_cancel_window_hours == 48
    assert policy.pending_payment_timeout == timedelta(hours=24)


def test_negative_values_rejected() -> None:
    with pytest.raises(ValidationError):
        BillingSettings(renewal_concurrency=0)
    with pytest.raises(ValidationError):
        BillingSettings(gateway_timeout_seconds=0)
