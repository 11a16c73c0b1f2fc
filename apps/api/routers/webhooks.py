"""Stripe webhook receiver."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.dependencies import get_billing_gateway, get_notifier
from services.billing_gateway import BillingGateway
from services.notifications import Notifier
from services.webhooks import handle_billing_event

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="stripe-signature"),
    db: AsyncSession = Depends(get_db),
    gateway: BillingGateway = Depends(get_billing_gateway),
    notifier: Notifier = Depends(get_notifier),
):
    """Verify the signature over the raw body before touching any state."""
    payload = await request.body()
    event = gateway.parse_webhook_event(payload, stripe_signature)
    outcome = await handle_billing_event(event, db, notifier)
    logger.info("Processed Stripe event %s: %s", event.event_id, outcome)
    return {"received": True}
