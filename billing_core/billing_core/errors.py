"""Error taxonomy shared by the billing core and the API layer.

Every error carries a machine-readable ``code`` so that HTTP handlers and
the CLI can report failures without parsing messages.

* :class:`ValidationError` -- unknown plan/add-on or out-of-range input.
* :class:`PolicyError` -- a business rule forbids the transition.
* :class:`GatewayError` -- the payment provider declined or timed out.
* :class:`ReconciliationConflict` -- a webhook could not be matched or was
  a duplicate.  Never surfaced to the provider.
"""

from __future__ import annotations

from typing import Any


class BillingError(Exception):
    """Base class for billing failures."""

    default_code = "billing_error"

    def __init__(self, message: str, *, code: str | None = None, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details: dict[str, Any] = details

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-friendly representation for API responses."""
        payload: dict[str, Any] = {"code": self.code, "detail": self.message}
        payload.update(self.details)
        return payload


class ValidationError(BillingError):
    """Input references an unknown plan/add-on or violates plan bounds."""

    default_code = "validation_error"


class PolicyError(BillingError):
    """A lifecycle rule rejects the requested operation."""

    default_code = "policy_error"


class GatewayError(BillingError):
    """The payment gateway failed, declined, or timed out.

    ``transaction_reference`` is set when the provider created a charge
    object before failing (e.g. a card decline), so the attempt can still
    be recorded as a failed Payment.
    """

    default_code = "gateway_error"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        transaction_reference: str | None = None,
        **details: Any,
    ) -> None:
        super().__init__(message, code=code, **details)
        self.transaction_reference = transaction_reference


class WebhookSignatureError(GatewayError):
    """An inbound webhook payload failed signature verification."""

    default_code = "invalid_signature"


class ReconciliationConflict(BillingError):
    """A webhook event is a duplicate or cannot be matched to a Payment."""

    default_code = "reconciliation_conflict"
