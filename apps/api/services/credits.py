"""Credit ledger: per-user balance with a floor of zero and an audit trail."""

from __future__ import annotations

from typing import Any, Dict, Optional
import logging
import uuid

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.credit_account import CreditAccount
from models.credit_ledger import CreditLedger
from services.errors import InsufficientCreditsError, ValidationError
from services.pricing import CREDIT_PACKS

logger = logging.getLogger(__name__)


async def get_balance(user_id: str, db: AsyncSession) -> int:
    result = await db.execute(
        select(CreditAccount.credits_remaining).where(CreditAccount.user_id == user_id)
    )
    return int(result.scalar_one_or_none() or 0)


async def ensure_account(user_id: str, db: AsyncSession) -> int:
    """Create a zero-balance account when absent. Safe to call repeatedly."""
    existing = await db.execute(
        select(CreditAccount.user_id).where(CreditAccount.user_id == user_id)
    )
    if existing.scalar_one_or_none() is None:
        db.add(CreditAccount(user_id=user_id, credits_remaining=0))
        try:
            await db.commit()
        except IntegrityError:
            # Lost the race against a concurrent request creating the same row.
            await db.rollback()
    return await get_balance(user_id, db)


async def adjust(
    user_id: str,
    delta: int,
    db: AsyncSession,
    *,
    entry_type: Optional[str] = None,
    reason: Optional[str] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    billing_provider: Optional[str] = None,
    billing_reference: Optional[str] = None,
) -> int:
    """Atomically add ``delta`` to the balance and return the new balance.

    The floor is enforced by the UPDATE's own WHERE clause, so concurrent
    callers cannot interleave a read and a write and lose an update.
    """
    delta = int(delta)
    await ensure_account(user_id, db)

    result = await db.execute(
        update(CreditAccount)
        .where(
            CreditAccount.user_id == user_id,
            CreditAccount.credits_remaining + delta >= 0,
        )
        .values(credits_remaining=CreditAccount.credits_remaining + delta)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await db.rollback()
        balance = await get_balance(user_id, db)
        raise InsufficientCreditsError(
            f"Insufficient credits. Required: {-delta}, available: {balance}. Top up credits to continue.",
            balance=balance,
        )

    balance_after = await get_balance(user_id, db)
    db.add(
        CreditLedger(
            id=str(uuid.uuid4()),
            user_id=user_id,
            entry_type=entry_type or ("debit" if delta < 0 else "grant"),
            delta_credits=delta,
            balance_after=balance_after,
            reason=reason,
            reference_type=reference_type,
            reference_id=reference_id,
            billing_provider=billing_provider,
            billing_reference=billing_reference,
        )
    )
    await db.commit()
    logger.info("Credits adjusted for user %s: delta=%s balance=%s", user_id, delta, balance_after)
    return balance_after


async def add_credit_purchase(
    user_id: str,
    db: AsyncSession,
    *,
    credits: int,
    provider: str,
    billing_reference: str,
    reason: str = "Credit pack purchase",
) -> Dict[str, Any]:
    """Credit a purchased pack once per billing reference.

    The ledger row and the balance update commit together. A concurrent
    delivery that loses the race hits the unique (entry_type,
    billing_reference) constraint and its whole transaction rolls back.
    """
    grant = int(credits)
    if grant <= 0:
        raise ValidationError("credits must be greater than 0")

    existing = await db.execute(
        select(CreditLedger.id).where(
            CreditLedger.entry_type == "purchase",
            CreditLedger.billing_reference == billing_reference,
        )
    )
    if existing.scalar_one_or_none():
        logger.info("Credit purchase %s already applied for user %s", billing_reference, user_id)
        return {"balance_after": await get_balance(user_id, db), "duplicate": True}

    try:
        balance_after = await adjust(
            user_id,
            grant,
            db,
            entry_type="purchase",
            reason=reason,
            billing_provider=provider,
            billing_reference=billing_reference,
        )
    except IntegrityError:
        await db.rollback()
        logger.info("Credit purchase %s applied concurrently for user %s", billing_reference, user_id)
        return {"balance_after": await get_balance(user_id, db), "duplicate": True}
    return {"balance_after": balance_after, "duplicate": False}


async def get_credit_summary(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    balance = await ensure_account(user_id, db)
    result = await db.execute(
        select(CreditLedger)
        .where(CreditLedger.user_id == user_id)
        .order_by(CreditLedger.created_at.desc())
        .limit(30)
    )
    entries = result.scalars().all()
    return {
        "balance": balance,
        "packs": [
            {
                "id": pack.id,
                "name": pack.name,
                "credits": pack.credits,
                "amount_cents": pack.amount_cents,
            }
            for pack in CREDIT_PACKS
        ],
        "recent_entries": [
            {
                "id": entry.id,
                "entry_type": entry.entry_type,
                "delta_credits": entry.delta_credits,
                "balance_after": entry.balance_after,
                "reason": entry.reason,
                "reference_id": entry.reference_id,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in entries
        ],
    }
