"""Payment gateway adapters.

The billing core talks to the payment provider exclusively through
:class:`PaymentGatewayAdapter`.  Two implementations ship:

* :class:`StripeGatewayAdapter` -- PaymentIntents against the Stripe API,
  test or live keys chosen by ``BILLING_STRIPE_MODE``.
* :class:`FakeGatewayAdapter` -- in-memory driver for local development and
  tests.  Signs webhooks with the same ``t=<ts>,v1=<hex>`` HMAC-SHA256
  scheme Stripe uses, so the webhook path is exercised end to end.

Every gateway call is bounded by ``gateway_timeout_seconds``; a timeout
surfaces as ``GatewayError(code="timeout")``.
"""

from __future__ import annotations

import abc
import asyncio
import hashlib
import hmac
import json
import logging
import time
import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, TypeVar

from billing_core.errors import GatewayError, WebhookSignatureError
from billing_core.state.tables import SubscriptionTable

from api.config import BillingSettings, PaymentsDriver

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ChargeStatus(str, Enum):
    COMPLETED = "completed"
    PENDING = "pending"
    FAILED = "failed"


@dataclass(frozen=True)
class ChargeResult:
    """Outcome of a charge request as reported synchronously by the provider."""

    transaction_reference: str
    status: ChargeStatus
    failure_reason: str | None = None


def to_minor_units(amount: Decimal) -> int:
    """Convert a cent-quantized amount into integer minor units."""
    return int((amount * 100).to_integral_value())


class PaymentGatewayAdapter(abc.ABC):
    """Contract every payment provider integration implements.

    Parameters
    ----------
    timeout_seconds:
        Upper bound on each provider call.
    """

    name: str = "abstract"

    def __init__(self, timeout_seconds: float = 15.0) -> None:
        self._timeout = timeout_seconds

    async def _bounded(self, call: Callable[[], Awaitable[T]], operation: str) -> T:
        try:
            return await asyncio.wait_for(call(), timeout=self._timeout)
        except TimeoutError as exc:
            logger.warning("Gateway %s timed out after %.1fs (%s)", self.name, self._timeout, operation)
            raise GatewayError(
                f"Payment gateway did not respond within {self._timeout:g}s",
                code="timeout",
            ) from exc

    @abc.abstractmethod
    async def charge(
        self,
        *,
        tenant_id: str,
        subscription: SubscriptionTable,
        amount: Decimal,
        currency: str,
        metadata: dict[str, str],
        off_session: bool,
        idempotency_key: str | None = None,
    ) -> ChargeResult:
        """Charge the subscription's default payment method.

        Raises
        ------
        GatewayError
            On declines, provider errors and timeouts.  A decline that
            created a provider-side object carries its
            ``transaction_reference``.
        """

    @abc.abstractmethod
    async def retrieve_charge(self, transaction_reference: str) -> ChargeResult:
        """Ask the provider for the current status of an earlier charge.

        Raises
        ------
        GatewayError
            If the provider cannot be reached or does not know the reference.
        """

    @abc.abstractmethod
    def verify_webhook_signature(self, payload: bytes, signature: str, secret: str) -> dict[str, Any]:
        """Return the parsed event or raise ``WebhookSignatureError``."""

    @abc.abstractmethod
    async def ensure_customer(self, tenant_id: str, subscription: SubscriptionTable) -> str:
        """Return the provider customer reference, creating it on first use.

        The reference is cached on ``subscription.gateway_customer_reference``;
        the caller persists it.
        """

    @abc.abstractmethod
    async def attach_payment_method(
        self,
        tenant_id: str,
        subscription: SubscriptionTable,
        payment_method_reference: str,
    ) -> str:
        """Attach a payment method to the customer and make it the default."""


# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------

_STRIPE_STATUS_MAP: dict[str, ChargeStatus] = {
    "succeeded": ChargeStatus.COMPLETED,
    "processing": ChargeStatus.PENDING,
    "requires_action": ChargeStatus.PENDING,
    "requires_confirmation": ChargeStatus.PENDING,
    "requires_capture": ChargeStatus.PENDING,
    "requires_payment_method": ChargeStatus.FAILED,
    "canceled": ChargeStatus.FAILED,
}


def _intent_result(intent: Any) -> ChargeResult:
    status = _STRIPE_STATUS_MAP.get(intent["status"], ChargeStatus.PENDING)
    failure = None
    if status is ChargeStatus.FAILED:
        last_error = intent.get("last_payment_error") or {}
        failure = last_error.get("message") or intent["status"]
    return ChargeResult(transaction_reference=intent["id"], status=status, failure_reason=failure)


class StripeGatewayAdapter(PaymentGatewayAdapter):
    """Stripe PaymentIntents integration.

    The SDK is blocking, so each call runs in a worker thread under
    :meth:`_bounded`.

    Parameters
    ----------
    secret_key:
        Stripe API secret key for the active mode.
    timeout_seconds:
        Upper bound on each Stripe call.
    """

    name = "stripe"

    def __init__(self, secret_key: str, timeout_seconds: float = 15.0) -> None:
        super().__init__(timeout_seconds)
        self._secret_key = secret_key

    def _get_stripe(self) -> Any:
        """Lazily import and configure the Stripe library."""
        import stripe

        stripe.api_key = self._secret_key
        return stripe

    async def _call(self, operation: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        stripe = self._get_stripe()
        try:
            return await self._bounded(lambda: asyncio.to_thread(fn, *args, **kwargs), operation)
        except stripe.CardError as exc:
            error = getattr(exc, "error", None)
            intent = getattr(error, "payment_intent", None) if error is not None else None
            reference = intent.get("id") if isinstance(intent, dict) else getattr(intent, "id", None)
            raise GatewayError(
                exc.user_message or str(exc),
                code=getattr(exc, "code", None) or "card_declined",
                transaction_reference=reference,
            ) from exc
        except stripe.StripeError as exc:
            logger.error("Stripe %s failed: %s", operation, exc, exc_info=True)
            raise GatewayError(f"Stripe {operation} failed", code="gateway_error") from exc

    async def charge(
        self,
        *,
        tenant_id: str,
        subscription: SubscriptionTable,
        amount: Decimal,
        currency: str,
        metadata: dict[str, str],
        off_session: bool,
        idempotency_key: str | None = None,
    ) -> ChargeResult:
        stripe = self._get_stripe()
        customer = await self.ensure_customer(tenant_id, subscription)
        params: dict[str, Any] = {
            "amount": to_minor_units(amount),
            "currency": currency.lower(),
            "customer": customer,
            "payment_method": subscription.gateway_default_payment_method_reference,
            "confirm": True,
            "off_session": off_session,
            "metadata": {**metadata, "tenant_id": tenant_id},
        }
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        intent = await self._call("charge", stripe.PaymentIntent.create, **params)
        logger.info(
            "Stripe charge tenant=%s intent=%s status=%s",
            tenant_id,
            intent["id"],
            intent["status"],
        )
        return _intent_result(intent)

    async def retrieve_charge(self, transaction_reference: str) -> ChargeResult:
        stripe = self._get_stripe()
        intent = await self._call("retrieve_charge", stripe.PaymentIntent.retrieve, transaction_reference)
        return _intent_result(intent)

    def verify_webhook_signature(self, payload: bytes, signature: str, secret: str) -> dict[str, Any]:
        stripe = self._get_stripe()
        if not signature:
            raise WebhookSignatureError("Missing Stripe signature")
        try:
            event = stripe.Webhook.construct_event(payload=payload, sig_header=signature, secret=secret)
        except ValueError as exc:
            raise WebhookSignatureError("Invalid payload") from exc
        except stripe.SignatureVerificationError as exc:
            logger.warning("Stripe webhook signature verification failed: %s", exc)
            raise WebhookSignatureError("Signature verification failed") from exc
        return event.to_dict() if hasattr(event, "to_dict") else dict(event)

    async def ensure_customer(self, tenant_id: str, subscription: SubscriptionTable) -> str:
        if subscription.gateway_customer_reference:
            return subscription.gateway_customer_reference
        stripe = self._get_stripe()
        customer = await self._call(
            "create_customer",
            stripe.Customer.create,
            metadata={"tenant_id": tenant_id},
            idempotency_key=f"customer-{tenant_id}",
        )
        subscription.gateway_customer_reference = customer["id"]
        logger.info("Created Stripe customer %s for tenant=%s", customer["id"], tenant_id)
        return customer["id"]

    async def attach_payment_method(
        self,
        tenant_id: str,
        subscription: SubscriptionTable,
        payment_method_reference: str,
    ) -> str:
        stripe = self._get_stripe()
        customer = await self.ensure_customer(tenant_id, subscription)
        await self._call(
            "attach_payment_method",
            stripe.PaymentMethod.attach,
            payment_method_reference,
            customer=customer,
        )
        await self._call(
            "set_default_payment_method",
            stripe.Customer.modify,
            customer,
            invoice_settings={"default_payment_method": payment_method_reference},
        )
        subscription.gateway_default_payment_method_reference = payment_method_reference
        return payment_method_reference


# ---------------------------------------------------------------------------
# Fake (in-memory)
# ---------------------------------------------------------------------------


def sign_payload(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    """Build a ``t=<ts>,v1=<hex>`` signature header for *payload*."""
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.".encode() + payload
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


class FakeGatewayAdapter(PaymentGatewayAdapter):
    """In-memory gateway.

    Charges succeed by default.  Tests steer outcomes with
    :meth:`queue_outcome` (a :class:`ChargeStatus` or a
    :class:`GatewayError` to raise) and can simulate a slow provider with
    ``latency_seconds``.  Repeated idempotency keys replay the first result.
    """

    name = "fake"

    def __init__(
        self,
        timeout_seconds: float = 15.0,
        *,
        latency_seconds: float = 0.0,
        signature_tolerance_seconds: int = 300,
    ) -> None:
        super().__init__(timeout_seconds)
        self.latency_seconds = latency_seconds
        self._tolerance = signature_tolerance_seconds
        self._outcomes: deque[ChargeStatus | GatewayError] = deque()
        self._idempotent: dict[str, ChargeResult] = {}
        self.charges: list[dict[str, Any]] = []
        self.customers: dict[str, str] = {}
        self.statuses: dict[str, ChargeStatus] = {}

    def queue_outcome(self, outcome: ChargeStatus | GatewayError) -> None:
        self._outcomes.append(outcome)

    def resolve_charge(self, transaction_reference: str, status: ChargeStatus) -> None:
        """Move an earlier charge to *status* on the provider side."""
        self.statuses[transaction_reference] = status

    async def _simulate_latency(self) -> None:
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)

    async def charge(
        self,
        *,
        tenant_id: str,
        subscription: SubscriptionTable,
        amount: Decimal,
        currency: str,
        metadata: dict[str, str],
        off_session: bool,
        idempotency_key: str | None = None,
    ) -> ChargeResult:
        if idempotency_key and idempotency_key in self._idempotent:
            return self._idempotent[idempotency_key]

        async def _do() -> ChargeResult:
            await self._simulate_latency()
            reference = f"fake_pi_{uuid.uuid4().hex[:24]}"
            outcome = self._outcomes.popleft() if self._outcomes else ChargeStatus.COMPLETED
            self.charges.append(
                {
                    "reference": reference,
                    "tenant_id": tenant_id,
                    "amount": amount,
                    "currency": currency,
                    "metadata": dict(metadata),
                    "off_session": off_session,
                    "idempotency_key": idempotency_key,
                    "outcome": outcome if isinstance(outcome, ChargeStatus) else outcome.code,
                }
            )
            if isinstance(outcome, GatewayError):
                raise outcome
            self.statuses[reference] = outcome
            failure = "card_declined" if outcome is ChargeStatus.FAILED else None
            return ChargeResult(transaction_reference=reference, status=outcome, failure_reason=failure)

        result = await self._bounded(_do, "charge")
        if idempotency_key:
            self._idempotent[idempotency_key] = result
        return result

    async def retrieve_charge(self, transaction_reference: str) -> ChargeResult:
        async def _do() -> ChargeResult:
            await self._simulate_latency()
            status = self.statuses.get(transaction_reference)
            if status is None:
                raise GatewayError(f"No such charge: {transaction_reference}", code="not_found")
            failure = "card_declined" if status is ChargeStatus.FAILED else None
            return ChargeResult(transaction_reference=transaction_reference, status=status, failure_reason=failure)

        return await self._bounded(_do, "retrieve_charge")

    def verify_webhook_signature(self, payload: bytes, signature: str, secret: str) -> dict[str, Any]:
        if not signature:
            raise WebhookSignatureError("Missing signature")
        parts = dict(item.split("=", 1) for item in signature.split(",") if "=" in item)
        timestamp, provided = parts.get("t"), parts.get("v1")
        if not timestamp or not provided or not timestamp.isdigit():
            raise WebhookSignatureError("Malformed signature header")
        if self._tolerance and abs(time.time() - int(timestamp)) > self._tolerance:
            raise WebhookSignatureError("Signature timestamp outside tolerance")
        expected = sign_payload(payload, secret, int(timestamp)).split("v1=", 1)[1]
        if not hmac.compare_digest(expected, provided):
            raise WebhookSignatureError("Signature verification failed")
        try:
            return json.loads(payload)
        except ValueError as exc:
            raise WebhookSignatureError("Invalid payload") from exc

    async def ensure_customer(self, tenant_id: str, subscription: SubscriptionTable) -> str:
        if subscription.gateway_customer_reference:
            return subscription.gateway_customer_reference

        async def _do() -> str:
            await self._simulate_latency()
            return self.customers.setdefault(tenant_id, f"fake_cus_{uuid.uuid4().hex[:16]}")

        reference = await self._bounded(_do, "ensure_customer")
        subscription.gateway_customer_reference = reference
        return reference

    async def attach_payment_method(
        self,
        tenant_id: str,
        subscription: SubscriptionTable,
        payment_method_reference: str,
    ) -> str:
        await self.ensure_customer(tenant_id, subscription)
        subscription.gateway_default_payment_method_reference = payment_method_reference
        return payment_method_reference


def build_gateway(settings: BillingSettings) -> PaymentGatewayAdapter:
    """Instantiate the adapter selected by ``payments_driver``."""
    if settings.payments_driver is PaymentsDriver.STRIPE:
        logger.info("Using Stripe gateway (mode=%s)", settings.stripe_mode.value)
        return StripeGatewayAdapter(
            secret_key=settings.stripe_secret_key.get_secret_value(),
            timeout_seconds=settings.gateway_timeout_seconds,
        )
    logger.info("Using fake in-memory payment gateway")
    return FakeGatewayAdapter(timeout_seconds=settings.gateway_timeout_seconds)
