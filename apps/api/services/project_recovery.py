"""Startup recovery for generations interrupted mid-flight."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update

from database import async_session_maker
from models.project import Project
from services import credits

logger = logging.getLogger(__name__)

INTERRUPTED_PAID = "Generation was interrupted. Launch the project again."
INTERRUPTED_CREDIT = "Generation was interrupted. Your credit was refunded."


async def recover_stalled_projects(max_age_minutes: int = 30, session_maker=None) -> int:
    """Mark projects stuck in processing as failed after restarts.

    Credit-funded projects get their credit back; paid projects stay paid
    and can be launched again. Each row is claimed with a conditional
    UPDATE, so workers sweeping at the same time refund a project once.
    """
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=max(max_age_minutes, 1))
    maker = session_maker or async_session_maker
    recovered = 0
    async with maker() as db:
        result = await db.execute(
            select(Project.id, Project.user_id, Project.payment_status).where(
                Project.status == "processing",
                Project.created_at < cutoff,
            )
        )
        candidates = result.all()
        for project_id, user_id, payment_status in candidates:
            credit_funded = payment_status == "not_required"
            claimed = await db.execute(
                update(Project)
                .where(Project.id == project_id, Project.status == "processing")
                .values(
                    status="failed",
                    error_message=INTERRUPTED_CREDIT if credit_funded else INTERRUPTED_PAID,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            if claimed.rowcount != 1:
                continue
            recovered += 1
            if credit_funded:
                await credits.adjust(
                    user_id,
                    1,
                    db,
                    entry_type="refund",
                    reason="Generation interrupted",
                    reference_type="project",
                    reference_id=project_id,
                )
                logger.info("Refunded interrupted credit generation %s", project_id)
        return recovered
