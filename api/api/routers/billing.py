"""Billing endpoints: catalog, subscription summary, plan changes, add-ons, webhooks."""

from __future__ import annotations

import logging
from typing import Any

from billing_core.errors import WebhookSignatureError
from fastapi import APIRouter, HTTPException, Query, Request

from api.dependencies import CatalogDep, SettingsDep, SubscriptionServiceDep, TenantDep, WebhookReconcilerDep
from api.schemas import (
    AddonResponse,
    DowngradeRequest,
    PaymentListResponse,
    PaymentMethodRequest,
    PlanChangeListResponse,
    PlanListResponse,
    PlanResponse,
    UpgradeRequest,
    WebhookAckResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


# ---------------------------------------------------------------------------
# Catalog (public)
# ---------------------------------------------------------------------------


@router.get("/plans", response_model=PlanListResponse)
async def list_plans(catalog: CatalogDep, settings: SettingsDep) -> PlanListResponse:
    """Return the plan catalog so clients never hardcode prices."""
    plans = [
        PlanResponse(
            name=plan.name,
            label=plan.label or plan.name.title(),
            price_per_user=str(plan.price_per_user),
            features=sorted(plan.features),
            addons_allowed=plan.addons_allowed,
            is_complete=plan.is_complete,
            addons=list(plan.addons),
            min_users=plan.min_users,
            max_users=plan.max_users,
        )
        for plan in catalog.ordered_plans()
    ]
    addons = [
        AddonResponse(
            name=addon.name,
            label=addon.label or addon.name.title(),
            percentage=str(addon.percentage),
            feature=addon.feature,
        )
        for addon in catalog.addons.values()
    ]
    return PlanListResponse(plans=plans, addons=addons, trial_plan=catalog.trial_plan, currency=settings.currency)


# ---------------------------------------------------------------------------
# Read endpoints
# ---------------------------------------------------------------------------


@router.get("/summary")
async def get_summary(tenant_id: TenantDep, service: SubscriptionServiceDep) -> dict[str, Any]:
    """Return the tenant's billing summary.

    The first request for a tenant with no subscription starts its trial.
    """
    return await service.get_summary(tenant_id)


@router.get("/features")
async def get_features(tenant_id: TenantDep, service: SubscriptionServiceDep) -> dict[str, bool]:
    """Return the feature flags the tenant's subscription grants."""
    return await service.get_features(tenant_id)


@router.get("/payments", response_model=PaymentListResponse)
async def list_payments(
    tenant_id: TenantDep,
    service: SubscriptionServiceDep,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> dict[str, Any]:
    return await service.list_payments(tenant_id, limit=limit, offset=offset)


@router.get("/plan-changes", response_model=PlanChangeListResponse)
async def list_plan_changes(
    tenant_id: TenantDep,
    service: SubscriptionServiceDep,
    limit: int = Query(default=50, ge=1, le=200),
) -> dict[str, Any]:
    return await service.list_plan_changes(tenant_id, limit=limit)


# ---------------------------------------------------------------------------
# Plan changes
# ---------------------------------------------------------------------------


@router.post("/upgrade")
async def upgrade(body: UpgradeRequest, tenant_id: TenantDep, service: SubscriptionServiceDep) -> dict[str, Any]:
    """Charge the full target-plan price and switch once the payment completes.

    ``charge_status`` is ``pending`` when the gateway confirms asynchronously;
    the plan then changes when the webhook arrives.
    """
    return await service.upgrade(tenant_id, body.plan, body.user_count)


@router.post("/downgrade")
async def schedule_downgrade(
    body: DowngradeRequest, tenant_id: TenantDep, service: SubscriptionServiceDep
) -> dict[str, Any]:
    """Schedule a downgrade for the next renewal (no charge)."""
    return await service.schedule_downgrade(tenant_id, body.plan, body.user_limit)


@router.delete("/downgrade")
async def cancel_downgrade(tenant_id: TenantDep, service: SubscriptionServiceDep) -> dict[str, Any]:
    """Cancel the scheduled downgrade while more than the cancel window remains."""
    return await service.cancel_downgrade(tenant_id)


@router.post("/addons/{addon}/toggle")
async def toggle_addon(addon: str, tenant_id: TenantDep, service: SubscriptionServiceDep) -> dict[str, Any]:
    """Activate (charged) or deactivate (immediate, free) an add-on."""
    return await service.toggle_addon(tenant_id, addon)


@router.post("/payment-method")
async def attach_payment_method(
    body: PaymentMethodRequest, tenant_id: TenantDep, service: SubscriptionServiceDep
) -> dict[str, Any]:
    return await service.attach_payment_method(tenant_id, body.payment_method_reference)


@router.post("/cancel")
async def cancel_subscription(tenant_id: TenantDep, service: SubscriptionServiceDep) -> dict[str, Any]:
    return await service.cancel(tenant_id)


# ---------------------------------------------------------------------------
# Webhooks (public, signature-authenticated)
# ---------------------------------------------------------------------------


@router.post("/webhooks", response_model=WebhookAckResponse, response_model_exclude_none=True)
async def payment_webhook(request: Request, reconciler: WebhookReconcilerDep) -> dict[str, Any]:
    """Handle incoming payment gateway webhook events.

    A missing or invalid signature yields 400.  Events that cannot be
    reconciled are acknowledged with ``ignored``; a processing failure
    surfaces as 5xx so the provider redelivers the event.
    """
    body = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    if not sig_header:
        raise HTTPException(status_code=400, detail="Missing webhook signature")

    try:
        return await reconciler.handle(body, sig_header)
    except WebhookSignatureError as exc:
        logger.warning("Webhook signature verification failed: %s", exc.message)
        raise HTTPException(status_code=400, detail="Signature verification failed") from exc
