"""Lazy, idempotent mapping of users to Stripe customers."""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.billing_profile import BillingProfile
from models.user import User
from services.billing_gateway import BillingGateway

logger = logging.getLogger(__name__)


async def get_customer_id(user_id: str, db: AsyncSession) -> Optional[str]:
    result = await db.execute(
        select(BillingProfile.stripe_customer_id).where(BillingProfile.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def ensure_billing_profile(
    user_id: str,
    email: str,
    db: AsyncSession,
    gateway: BillingGateway,
) -> str:
    """Return the user's Stripe customer id, creating the customer on first use."""
    existing = await get_customer_id(user_id, db)
    if existing:
        return existing

    customer_id = await gateway.create_customer(email, user_id)
    db.add(BillingProfile(user_id=user_id, stripe_customer_id=customer_id))
    try:
        await db.commit()
    except IntegrityError:
        # A concurrent request stored a profile first; keep that one.
        await db.rollback()
        winner = await get_customer_id(user_id, db)
        logger.warning(
            "Discarding duplicate Stripe customer %s for user %s (kept %s)",
            customer_id,
            user_id,
            winner,
        )
        if winner:
            return winner
        raise
    logger.info("Created billing profile for user %s", user_id)
    return customer_id


async def resolve_user_for_customer(customer_id: Optional[str], db: AsyncSession) -> Optional[User]:
    if not customer_id:
        return None
    result = await db.execute(
        select(User)
        .join(BillingProfile, BillingProfile.user_id == User.id)
        .where(BillingProfile.stripe_customer_id == customer_id)
    )
    return result.scalar_one_or_none()
