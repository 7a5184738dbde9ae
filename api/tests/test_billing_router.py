"""HTTP tests for the billing router, health probes and error mapping."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock, patch

import pytest
from billing_core.errors import GatewayError
from httpx import ASGITransport, AsyncClient
from sqlalchemy.exc import OperationalError

from api.services.gateway import ChargeStatus
from api.services.settlement import PaymentSettlement

# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_plans_are_public(app) -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as anonymous:
        resp = await anonymous.get("/api/v1/billing/plans")

    assert resp.status_code == 200
    data = resp.json()
    assert [p["name"] for p in data["plans"]] == ["starter", "team", "enterprise"]
    assert data["currency"] == "EUR"
    team = data["plans"][1]
    assert team["price_per_user"] == "44"
    assert team["addons"] == ["planning", "ai"]


@pytest.mark.asyncio
async def test_health_and_readiness(client) -> None:
    health = await client.get("/api/v1/health")
    assert health.status_code == 200
    assert health.json()["db"] == "ok"

    ready = await client.get("/ready")
    assert ready.status_code == 200
    assert ready.json()["status"] == "ready"


@pytest.mark.asyncio
async def test_correlation_id_echoed(client) -> None:
    resp = await client.get("/api/v1/health", headers={"X-Correlation-ID": "req-42"})
    assert resp.headers["X-Correlation-ID"] == "req-42"


# ---------------------------------------------------------------------------
# Tenant identity
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_missing_tenant_is_401(app) -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as anonymous:
        resp = await anonymous.get("/api/v1/billing/summary")
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_malformed_tenant_is_400(client) -> None:
    resp = await client.get("/api/v1/billing/summary", headers={"X-Tenant-ID": "acme; drop table"})
    assert resp.status_code == 400


# ---------------------------------------------------------------------------
# Subscription operations
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_summary_starts_trial(client) -> None:
    resp = await client.get("/api/v1/billing/summary")
    assert resp.status_code == 200
    body = resp.json()
    assert body["tenant_id"] == "acme"
    assert body["status"] == "trialing"


@pytest.mark.asyncio
async def test_upgrade(client, seed) -> None:
    await seed("acme", "starter", 1)

    resp = await client.post("/api/v1/billing/upgrade", json={"plan": "team", "user_count": 2})

    assert resp.status_code == 200
    body = resp.json()
    assert body["amount"] == "88.00"
    assert body["summary"]["plan"] == "team"

    payments = await client.get("/api/v1/billing/payments")
    assert payments.json()["total"] == 1
    assert payments.json()["payments"][0]["operation"] == "upgrade"


@pytest.mark.asyncio
async def test_upgrade_request_validation(client, seed) -> None:
    await seed("acme", "starter", 1)
    resp = await client.post("/api/v1/billing/upgrade", json={"plan": "team", "user_count": 0})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_unknown_plan_is_422(client, seed) -> None:
    await seed("acme", "starter", 1)
    resp = await client.post("/api/v1/billing/upgrade", json={"plan": "platinum", "user_count": 2})
    assert resp.status_code == 422
    assert resp.json()["code"] == "unknown_plan"


@pytest.mark.asyncio
async def test_policy_rejection_is_409(client, seed) -> None:
    await seed("acme", "team", 2)
    resp = await client.post("/api/v1/billing/upgrade", json={"plan": "starter", "user_count": 1})
    assert resp.status_code == 409
    assert resp.json()["code"] == "not_an_upgrade"


@pytest.mark.asyncio
async def test_declined_charge_is_402(client, seed, gateway) -> None:
    await seed("acme", "starter", 1)
    gateway.queue_outcome(GatewayError("declined", code="card_declined", transaction_reference="fake_pi_d"))

    resp = await client.post("/api/v1/billing/upgrade", json={"plan": "team", "user_count": 2})

    assert resp.status_code == 402
    assert resp.json()["code"] == "card_declined"


@pytest.mark.asyncio
async def test_pending_charge_conflict(client, seed, gateway) -> None:
    await seed("acme", "starter", 1)
    gateway.queue_outcome(ChargeStatus.PENDING)

    first = await client.post("/api/v1/billing/upgrade", json={"plan": "team", "user_count": 2})
    second = await client.post("/api/v1/billing/upgrade", json={"plan": "team", "user_count": 2})

    assert first.json()["charge_status"] == "pending"
    assert second.status_code == 409
    assert second.json()["code"] == "payment_pending"


@pytest.mark.asyncio
async def test_downgrade_schedule_and_cancel_window(client, seed, clock) -> None:
    await seed("acme", "enterprise", 2)

    scheduled = await client.post("/api/v1/billing/downgrade", json={"plan": "team", "user_limit": 2})
    assert scheduled.status_code == 200
    assert scheduled.json()["summary"]["pending_downgrade"]["target_plan"] == "team"

    clock.set(datetime(2026, 6, 30, 21, 0, tzinfo=UTC))
    canceled = await client.delete("/api/v1/billing/downgrade")

    assert canceled.status_code == 409
    assert canceled.json()["code"] == "too_close_to_renewal"
    assert canceled.json()["hours_remaining"] == 12.0


@pytest.mark.asyncio
async def test_addon_toggle_on_starter_rejected(client, seed) -> None:
    await seed("acme", "starter", 1)
    resp = await client.post("/api/v1/billing/addons/planning/toggle")
    assert resp.status_code == 409
    assert resp.json()["code"] == "addons_not_allowed"


@pytest.mark.asyncio
async def test_addon_toggle_on_enterprise_is_noop(client, seed) -> None:
    await seed("acme", "enterprise", 2)
    resp = await client.post("/api/v1/billing/addons/ai/toggle")
    assert resp.status_code == 200
    assert resp.json()["code"] == "addons_included"


@pytest.mark.asyncio
async def test_payment_method_and_features(client, seed) -> None:
    await seed("acme", "team", 2, payment_method=None)

    attached = await client.post("/api/v1/billing/payment-method", json={"payment_method_reference": "pm_card_visa"})
    assert attached.status_code == 200
    assert attached.json()["payment_method_reference"] == "pm_card_visa"

    features = await client.get("/api/v1/billing/features")
    assert features.json()["travels"] is True
    assert features.json()["ai"] is False


@pytest.mark.asyncio
async def test_cancel(client, seed) -> None:
    await seed("acme", "team", 2)
    resp = await client.post("/api/v1/billing/cancel")
    assert resp.status_code == 200
    assert resp.json()["summary"]["status"] == "canceled"

    features = await client.get("/api/v1/billing/features")
    assert not any(features.json().values())


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_webhook_missing_signature(client, make_event) -> None:
    resp = await client.post("/api/v1/billing/webhooks", content=make_event("payment_intent.succeeded", "pi_1"))
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Missing webhook signature"


@pytest.mark.asyncio
async def test_webhook_bad_signature(client, make_event, sign) -> None:
    payload = make_event("payment_intent.succeeded", "pi_1")
    resp = await client.post(
        "/api/v1/billing/webhooks",
        content=payload,
        headers={"stripe-signature": sign(payload, secret="whsec_other")},
    )
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_webhook_settles_pending_upgrade(client, seed, gateway, make_event, sign) -> None:
    await seed("acme", "starter", 1)
    gateway.queue_outcome(ChargeStatus.PENDING)
    upgrade = await client.post("/api/v1/billing/upgrade", json={"plan": "team", "user_count": 2})
    reference = upgrade.json()["payment"]["reference"]
    payload = make_event("payment_intent.succeeded", reference)

    resp = await client.post("/api/v1/billing/webhooks", content=payload, headers={"stripe-signature": sign(payload)})

    assert resp.status_code == 200
    assert resp.json() == {"status": "processed", "payment_status": "completed"}
    summary = await client.get("/api/v1/billing/summary")
    assert summary.json()["plan"] == "team"


@pytest.mark.asyncio
async def test_webhook_unknown_reference_acknowledged(client, make_event, sign) -> None:
    payload = make_event("payment_intent.succeeded", "pi_nobody")
    resp = await client.post("/api/v1/billing/webhooks", content=payload, headers={"stripe-signature": sign(payload)})
    assert resp.status_code == 200
    assert resp.json() == {"status": "ignored", "reason": "unknown_payment"}


@pytest.mark.asyncio
async def test_webhook_database_error_is_not_acknowledged(client, seed, gateway, make_event, sign) -> None:
    await seed("acme", "starter", 1)
    gateway.queue_outcome(ChargeStatus.PENDING)
    upgrade = await client.post("/api/v1/billing/upgrade", json={"plan": "team", "user_count": 2})
    payload = make_event("payment_intent.succeeded", upgrade.json()["payment"]["reference"])

    with patch.object(
        PaymentSettlement,
        "settle",
        AsyncMock(side_effect=OperationalError("UPDATE payments", {}, Exception("db down"))),
    ):
        resp = await client.post(
            "/api/v1/billing/webhooks", content=payload, headers={"stripe-signature": sign(payload)}
        )

    assert resp.status_code == 500
    payments = await client.get("/api/v1/billing/payments")
    assert payments.json()["payments"][0]["status"] == "pending"
