"""Billing and credits router."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from models.user import User
from routers.auth_scope import get_current_user
from routers.dependencies import get_billing_gateway
from routers.rate_limit import rate_limit
from services.billing_gateway import BillingGateway
from services.billing_profiles import ensure_billing_profile, get_customer_id
from services.credits import ensure_account, get_credit_summary
from services.errors import NotFoundError, ValidationError
from services.pricing import CREDIT_PACKS, MODEL_PRICING, get_credit_pack

router = APIRouter()
logger = logging.getLogger(__name__)


class PackCheckoutRequest(BaseModel):
    pack_id: str


class CheckoutSessionResponse(BaseModel):
    id: str
    url: Optional[str] = None
    status: Optional[str] = None
    payment_status: Optional[str] = None
    metadata: dict = {}


@router.get("/credits")
async def credits_summary(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await get_credit_summary(user.id, db)


@router.get("/packs")
async def list_pricing():
    """Credit packs and per-model prices, in minor currency units."""
    return {
        "currency": settings.BILLING_CURRENCY,
        "packs": [
            {"id": pack.id, "name": pack.name, "credits": pack.credits, "amount_cents": pack.amount_cents}
            for pack in CREDIT_PACKS
        ],
        "models": [
            {"model_key": price.model_key, "label": price.label, "amount_cents": price.amount_cents}
            for price in MODEL_PRICING.values()
        ],
    }


@router.post("/packs/checkout", response_model=CheckoutSessionResponse)
async def create_pack_checkout(
    request: PackCheckoutRequest,
    _rate_limit: None = Depends(rate_limit("billing_checkout", limit=20, window_seconds=3600)),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    gateway: BillingGateway = Depends(get_billing_gateway),
):
    pack = get_credit_pack(request.pack_id)
    if pack is None:
        raise ValidationError("Unknown credit pack.")

    await ensure_account(user.id, db)
    customer_id = await ensure_billing_profile(user.id, user.email, db, gateway)
    base_url = settings.PUBLIC_APP_URL.rstrip("/")
    session = await gateway.create_checkout_session(
        customer_id=customer_id,
        amount_cents=pack.amount_cents,
        product_name=pack.name,
        success_url=f"{base_url}/billing?pack_session={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{base_url}/billing",
        metadata={"credits_pack_size": str(pack.credits), "pack_id": pack.id},
    )
    logger.info("Created credit pack checkout %s for user %s (%s)", session.id, user.id, pack.id)
    return CheckoutSessionResponse(
        id=session.id,
        url=session.url,
        status=session.status,
        payment_status=session.payment_status,
        metadata=session.metadata,
    )


@router.get("/checkout/{session_id}", response_model=CheckoutSessionResponse)
async def get_checkout_session(
    session_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    gateway: BillingGateway = Depends(get_billing_gateway),
):
    """Checkout status for the dashboard; only the paying customer may read it."""
    customer_id = await get_customer_id(user.id, db)
    if not customer_id:
        raise NotFoundError("Checkout session not found")

    session = await gateway.retrieve_session(session_id)
    if session.customer_id != customer_id:
        raise NotFoundError("Checkout session not found")

    return CheckoutSessionResponse(
        id=session.id,
        url=session.url,
        status=session.status,
        payment_status=session.payment_status,
        metadata=session.metadata,
    )
