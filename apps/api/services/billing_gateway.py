"""Stripe adapter: customers, checkout sessions and verified webhook events."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

import stripe

from config import settings
from services.errors import (
    BillingProviderError,
    ConfigurationError,
    NotFoundError,
    WebhookSignatureError,
)

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
PAYMENT_FAILED = "payment_intent.payment_failed"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"


@dataclass
class CheckoutSession:
    id: str
    url: Optional[str]
    customer_id: Optional[str] = None
    payment_status: Optional[str] = None
    status: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


# Webhook events, one variant per handled kind.

@dataclass(frozen=True)
class ProjectPaymentCompleted:
    event_id: str
    project_id: str
    checkout_session_id: str
    payment_intent_id: Optional[str]


@dataclass(frozen=True)
class CreditPackPurchased:
    event_id: str
    customer_id: Optional[str]
    credits: int
    pack_id: Optional[str]
    checkout_session_id: str


@dataclass(frozen=True)
class PaymentFailed:
    event_id: str
    customer_id: Optional[str]
    payment_intent_id: Optional[str]


@dataclass(frozen=True)
class SubscriptionCancelled:
    event_id: str
    customer_id: Optional[str]
    subscription_id: Optional[str]


@dataclass(frozen=True)
class IgnoredEvent:
    event_id: str
    event_type: str


BillingEvent = Union[
    ProjectPaymentCompleted,
    CreditPackPurchased,
    PaymentFailed,
    SubscriptionCancelled,
    IgnoredEvent,
]


def _string_id(value: Any) -> Optional[str]:
    """Stripe expands some references into objects; accept either form."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict) and isinstance(value.get("id"), str):
        return value["id"]
    return None


def _parse_pack_size(raw: Optional[str]) -> int:
    try:
        return int(raw or 0)
    except (TypeError, ValueError):
        return 0


def event_from_payload(payload: Dict[str, Any]) -> BillingEvent:
    """Map a verified Stripe event body to a typed event.

    A completed checkout carrying both ``credits_pack_size`` and
    ``project_id`` metadata maps to ``CreditPackPurchased`` only; the
    project is not marked paid. Sessions created here never carry both.
    """
    event_id = str(payload.get("id", ""))
    event_type = str(payload.get("type", ""))
    obj = (payload.get("data") or {}).get("object") or {}

    if event_type == CHECKOUT_COMPLETED:
        metadata = obj.get("metadata") or {}
        session_id = str(obj.get("id", ""))
        pack_size = _parse_pack_size(metadata.get("credits_pack_size"))
        if pack_size > 0:
            return CreditPackPurchased(
                event_id=event_id,
                customer_id=_string_id(obj.get("customer")),
                credits=pack_size,
                pack_id=metadata.get("pack_id"),
                checkout_session_id=session_id,
            )
        if metadata.get("project_id"):
            return ProjectPaymentCompleted(
                event_id=event_id,
                project_id=str(metadata["project_id"]),
                checkout_session_id=session_id,
                payment_intent_id=_string_id(obj.get("payment_intent")),
            )
    elif event_type == PAYMENT_FAILED:
        return PaymentFailed(
            event_id=event_id,
            customer_id=_string_id(obj.get("customer")),
            payment_intent_id=_string_id(obj.get("id")),
        )
    elif event_type == SUBSCRIPTION_DELETED:
        return SubscriptionCancelled(
            event_id=event_id,
            customer_id=_string_id(obj.get("customer")),
            subscription_id=_string_id(obj.get("id")),
        )
    return IgnoredEvent(event_id=event_id, event_type=event_type)


def _plain_dict(value: Any) -> Dict[str, Any]:
    if not value:
        return {}
    for converter in ("to_dict", "to_dict_recursive"):
        if hasattr(value, converter):
            return getattr(value, converter)()
    return dict(value)


def _session_from_stripe(session: Any) -> CheckoutSession:
    metadata = _plain_dict(getattr(session, "metadata", None))
    customer = getattr(session, "customer", None)
    return CheckoutSession(
        id=session.id,
        url=getattr(session, "url", None),
        customer_id=_string_id(customer) or getattr(customer, "id", None),
        payment_status=getattr(session, "payment_status", None),
        status=getattr(session, "status", None),
        metadata={key: str(value) for key, value in metadata.items()},
    )


class BillingGateway:
    """Stripe calls are blocking; each one runs in a worker thread."""

    def __init__(self, secret_key: str, webhook_secret: str, *, currency: str = "eur"):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.currency = currency

    def _require_key(self) -> str:
        if not self.secret_key:
            raise ConfigurationError("Stripe is not configured.")
        return self.secret_key

    async def _call(self, func, *args, **kwargs):
        try:
            return await asyncio.to_thread(func, *args, api_key=self._require_key(), **kwargs)
        except stripe.InvalidRequestError as exc:
            if exc.http_status == 404:
                raise NotFoundError("Billing object not found") from exc
            logger.warning("Stripe rejected %s: %s", getattr(func, "__qualname__", func), exc)
            raise BillingProviderError(f"Payment provider error: {exc.user_message or exc}") from exc
        except stripe.StripeError as exc:
            logger.warning("Stripe call %s failed: %s", getattr(func, "__qualname__", func), exc)
            raise BillingProviderError(f"Payment provider error: {exc.user_message or exc}") from exc

    async def create_customer(self, email: str, user_id: str) -> str:
        customer = await self._call(
            stripe.Customer.create,
            email=email or None,
            metadata={"user_id": user_id},
        )
        return customer.id

    async def create_checkout_session(
        self,
        *,
        customer_id: Optional[str],
        amount_cents: int,
        product_name: str,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
    ) -> CheckoutSession:
        session = await self._call(
            stripe.checkout.Session.create,
            mode="payment",
            customer=customer_id,
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
            line_items=[
                {
                    "quantity": 1,
                    "price_data": {
                        "currency": self.currency,
                        "unit_amount": int(amount_cents),
                        "product_data": {"name": product_name},
                    },
                }
            ],
        )
        return _session_from_stripe(session)

    async def retrieve_session(self, session_id: str) -> CheckoutSession:
        session = await self._call(stripe.checkout.Session.retrieve, session_id)
        return _session_from_stripe(session)

    def parse_webhook_event(self, payload: bytes, signature: Optional[str]) -> BillingEvent:
        """Verify the ``stripe-signature`` header, then decode the event."""
        if not self.webhook_secret:
            raise ConfigurationError("Webhook is not configured.")
        if not signature:
            raise WebhookSignatureError("Missing Stripe signature.")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise WebhookSignatureError("Malformed webhook payload.") from exc
        try:
            stripe.WebhookSignature.verify_header(
                body, signature, self.webhook_secret, tolerance=stripe.Webhook.DEFAULT_TOLERANCE
            )
        except stripe.SignatureVerificationError as exc:
            logger.warning("Rejected webhook with invalid signature: %s", exc)
            raise WebhookSignatureError("Invalid signature.") from exc

        try:
            data = json.loads(body)
        except ValueError as exc:
            raise WebhookSignatureError("Malformed webhook payload.") from exc
        if not isinstance(data, dict):
            raise WebhookSignatureError("Malformed webhook payload.")
        return event_from_payload(data)


def create_billing_gateway() -> BillingGateway:
    return BillingGateway(
        settings.STRIPE_SECRET_KEY,
        settings.STRIPE_WEBHOOK_SECRET,
        currency=settings.BILLING_CURRENCY,
    )
