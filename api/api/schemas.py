"""Shared Pydantic request and response models for the billing endpoints.

These schemas ensure that request bodies are validated and responses are
documented in the OpenAPI schema.  Routers import from here to
avoid duplication.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class UpgradeRequest(BaseModel):
    """Request body for ``POST /billing/upgrade``."""

    plan: str = Field(..., min_length=1, description="Target plan name.")
    user_count: int = Field(..., ge=1, description="Seat count for the target plan.")


class DowngradeRequest(BaseModel):
    """Request body for ``POST /billing/downgrade``."""

    plan: str = Field(..., min_length=1, description="Plan that takes effect at the next renewal.")
    user_limit: int = Field(..., ge=1, description="Seat count after the downgrade.")


class PaymentMethodRequest(BaseModel):
    """Request body for ``POST /billing/payment-method``."""

    payment_method_reference: str = Field(
        ...,
        min_length=1,
        max_length=255,
        description="Gateway identifier of the payment method to make default.",
    )


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class AddonResponse(BaseModel):
    """An add-on as listed in ``GET /billing/plans``."""

    name: str
    label: str
    percentage: str
    feature: str


class PlanResponse(BaseModel):
    """A plan as listed in ``GET /billing/plans``."""

    name: str
    label: str
    price_per_user: str
    features: list[str]
    addons_allowed: bool
    is_complete: bool
    addons: list[str] = Field(default_factory=list)
    min_users: int
    max_users: int | None = None


class PlanListResponse(BaseModel):
    """Response for ``GET /billing/plans``."""

    plans: list[PlanResponse]
    addons: list[AddonResponse]
    trial_plan: str
    currency: str


# ---------------------------------------------------------------------------
# Payments and history
# ---------------------------------------------------------------------------


class PaymentResponse(BaseModel):
    """A single Payment record."""

    id: int
    amount: str
    currency: str
    status: str
    operation: str
    reference: str
    period_ends_at: str | None = None
    failure_reason: str | None = None
    created_at: str | None = None
    settled_at: str | None = None


class PaymentListResponse(BaseModel):
    """Paginated list of payments."""

    payments: list[PaymentResponse]
    total: int


class PlanChangeResponse(BaseModel):
    """One entry of the plan-change audit trail."""

    from_plan: str
    to_plan: str
    from_user_count: int
    to_user_count: int
    actor: str
    reason: str
    created_at: str | None = None


class PlanChangeListResponse(BaseModel):
    plan_changes: list[PlanChangeResponse]


class WebhookAckResponse(BaseModel):
    """Acknowledgement returned to the payment provider."""

    status: str
    reason: str | None = None
    payment_status: str | None = None


class ErrorResponse(BaseModel):
    """Body of every billing error response.

    Error-specific fields (e.g. ``hours_remaining``) are added alongside.
    """

    model_config = ConfigDict(extra="allow")

    detail: str
    code: str
