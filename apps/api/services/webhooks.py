"""Apply verified Stripe events to projects, credits and notifications."""

from __future__ import annotations

import logging
from typing import Any, Dict

from sqlalchemy.ext.asyncio import AsyncSession

from services import credits
from services.billing_gateway import (
    BillingEvent,
    CreditPackPurchased,
    IgnoredEvent,
    PaymentFailed,
    ProjectPaymentCompleted,
    SubscriptionCancelled,
)
from services.billing_profiles import resolve_user_for_customer
from services.notifications import Notifier
from services.projects import mark_project_paid

logger = logging.getLogger(__name__)

PAYMENT_FAILED_SUBJECT = "Payment failed - NanoBanana"
PAYMENT_FAILED_HTML = (
    "<p>Hello,</p><p>Your last payment could not be processed. "
    "Please check your payment method or try again.</p>"
)
SUBSCRIPTION_CANCELLED_SUBJECT = "Subscription cancelled - NanoBanana"
SUBSCRIPTION_CANCELLED_HTML = (
    "<p>Hello,</p><p>Your subscription has been cancelled. "
    "We hope to see you again soon!</p>"
)


async def handle_billing_event(
    event: BillingEvent,
    db: AsyncSession,
    notifier: Notifier,
) -> Dict[str, Any]:
    """Dispatch on the event variant. Returns a short summary for logging."""
    if isinstance(event, ProjectPaymentCompleted):
        updated = await mark_project_paid(
            event.project_id,
            event.checkout_session_id,
            event.payment_intent_id,
            db,
        )
        return {"handled": "project_payment", "project_id": event.project_id, "updated": updated}

    if isinstance(event, CreditPackPurchased):
        user = await resolve_user_for_customer(event.customer_id, db)
        if user is None:
            logger.warning(
                "Credit pack purchase %s for unknown customer %s",
                event.checkout_session_id,
                event.customer_id,
            )
            return {"handled": "credit_pack", "credited": False}
        result = await credits.add_credit_purchase(
            user.id,
            db,
            credits=event.credits,
            provider="stripe",
            billing_reference=event.checkout_session_id,
            reason=f"Credit pack {event.pack_id or event.credits}",
        )
        return {
            "handled": "credit_pack",
            "credited": not result["duplicate"],
            "balance_after": result["balance_after"],
        }

    if isinstance(event, (PaymentFailed, SubscriptionCancelled)):
        user = await resolve_user_for_customer(event.customer_id, db)
        if user is None or not user.email:
            return {"handled": "notification", "sent": False}
        if isinstance(event, PaymentFailed):
            subject, html = PAYMENT_FAILED_SUBJECT, PAYMENT_FAILED_HTML
        else:
            subject, html = SUBSCRIPTION_CANCELLED_SUBJECT, SUBSCRIPTION_CANCELLED_HTML
        try:
            sent = await notifier.send_email(user.email, subject, html=html)
        except Exception:
            logger.exception("Could not send '%s' email to user %s", subject, user.id)
            sent = False
        return {"handled": "notification", "sent": sent}

    if isinstance(event, IgnoredEvent):
        logger.debug("Ignoring Stripe event %s (%s)", event.event_id, event.event_type)
    return {"handled": None}
