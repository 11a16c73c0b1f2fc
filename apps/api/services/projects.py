"""Project workflow: paid checkout, credit-funded generation, deletion.

Only this module moves a project through its lifecycle:

    pending -> processing -> completed
    pending -> failed            (checkout could not be created)
    processing -> failed         (paid generation errored; may be relaunched)

Credit-funded generations never persist a failed project: any error after
the debit refunds the credit and deletes the row before propagating.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.project import Project
from models.user import User
from services import credits
from services.billing_gateway import BillingGateway, CheckoutSession
from services.billing_profiles import ensure_billing_profile
from services.errors import (
    GenerationInProgressError,
    NotFoundError,
    PayloadTooLargeError,
    PaymentRequiredError,
    StudioError,
    ValidationError,
)
from services.inference import ImageInput, InferenceClient
from services.pricing import ModelPrice, get_model_price
from services.storage import ObjectStore, build_object_path

logger = logging.getLogger(__name__)

RELAUNCHABLE_STATUSES = ("pending", "failed")


@dataclass
class UploadedImage:
    data: bytes
    content_type: str
    filename: Optional[str] = None


@dataclass
class GenerationContext:
    """Service handles and bucket names used by a generation request."""

    store: ObjectStore
    inference: InferenceClient
    input_bucket: str
    output_bucket: str


def validate_submission(
    image: Optional[UploadedImage],
    prompt: Optional[str],
    model_key: Optional[str],
    store: ObjectStore,
) -> Tuple[str, ModelPrice]:
    """Reject user-correctable input before any side effect happens."""
    price = get_model_price(model_key or "")
    if price is None:
        raise ValidationError("Unsupported model.")
    if image is None or not image.data:
        raise ValidationError("No image received.")
    if image.content_type not in store.allowed_content_types:
        raise ValidationError(
            "Unsupported image type. Upload a PNG, JPEG, WEBP or GIF image."
        )
    if len(image.data) > store.max_object_bytes:
        raise PayloadTooLargeError(
            f"Image too large. Max upload size is {store.max_object_bytes // (1024 * 1024)}MB."
        )
    cleaned_prompt = (prompt or "").strip()
    if not cleaned_prompt:
        raise ValidationError("A prompt is required.")
    return cleaned_prompt, price


async def get_project(project_id: str, user_id: str, db: AsyncSession) -> Project:
    result = await db.execute(
        select(Project).where(Project.id == project_id, Project.user_id == user_id)
    )
    project = result.scalar_one_or_none()
    if not project:
        raise NotFoundError("Project not found")
    return project


async def list_projects(user_id: str, db: AsyncSession, limit: int = 50) -> List[Project]:
    result = await db.execute(
        select(Project)
        .where(Project.user_id == user_id)
        .order_by(Project.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def _store_input(ctx: GenerationContext, image: UploadedImage) -> str:
    path = build_object_path("uploads", image.content_type)
    await ctx.store.put(ctx.input_bucket, path, image.data, image.content_type)
    return ctx.store.public_url(ctx.input_bucket, path)


def _output_content_type(reported: str, source_url: str) -> str:
    if reported.startswith("image/"):
        return reported
    guessed, _ = mimetypes.guess_type(source_url)
    return guessed or "image/png"


async def _generate_and_store(
    ctx: GenerationContext,
    prompt: str,
    model_key: str,
    *,
    image: Optional[UploadedImage],
    input_image_url: Optional[str],
) -> str:
    """Run inference, copy the result into the output bucket, return its URL."""
    image_input = ImageInput(image.data, image.content_type) if image else None
    result_url = await ctx.inference.submit(
        prompt,
        model_key,
        image=image_input,
        fallback_image_url=input_image_url,
    )
    data, reported_type = await ctx.inference.fetch_output(result_url)
    content_type = _output_content_type(reported_type, result_url)
    path = build_object_path("generated", content_type)
    await ctx.store.put(ctx.output_bucket, path, data, content_type)
    return ctx.store.public_url(ctx.output_bucket, path)


async def _mark_completed(project: Project, output_url: str, db: AsyncSession) -> Project:
    project.output_image_url = output_url
    project.status = "completed"
    project.error_message = None
    project.completed_at = datetime.now(timezone.utc)
    await db.commit()
    await db.refresh(project)
    return project


# Path A: paid checkout, generation deferred until payment is confirmed.

async def start_paid_checkout(
    user: User,
    image: Optional[UploadedImage],
    prompt: Optional[str],
    model_key: Optional[str],
    db: AsyncSession,
    ctx: GenerationContext,
    gateway: BillingGateway,
    *,
    success_url: str,
    cancel_url: str,
) -> Tuple[Project, CheckoutSession]:
    cleaned_prompt, price = validate_submission(image, prompt, model_key, ctx.store)

    input_url = await _store_input(ctx, image)
    try:
        await credits.ensure_account(user.id, db)
        customer_id = await ensure_billing_profile(user.id, user.email, db, gateway)

        project = Project(
            id=str(uuid.uuid4()),
            user_id=user.id,
            input_image_url=input_url,
            status="pending",
            payment_status="pending",
            payment_amount=price.amount_cents,
            currency=gateway.currency,
            prompt=cleaned_prompt,
            model_key=price.model_key,
        )
        db.add(project)
        await db.commit()
    except Exception:
        # No project row references the upload yet.
        await db.rollback()
        await ctx.store.delete_public_url(ctx.input_bucket, input_url)
        raise

    try:
        session = await gateway.create_checkout_session(
            customer_id=customer_id,
            amount_cents=price.amount_cents,
            product_name=f"AI generation - {price.model_key}",
            success_url=success_url,
            cancel_url=cancel_url,
            metadata={
                "project_id": project.id,
                "model_key": price.model_key,
                "price_cents": str(price.amount_cents),
            },
        )
    except Exception:
        logger.exception("Checkout session creation failed for project %s", project.id)
        project.status = "failed"
        project.error_message = "Checkout session could not be created."
        await db.commit()
        raise

    project.stripe_checkout_session_id = session.id
    await db.commit()
    await db.refresh(project)
    logger.info("Created checkout session %s for project %s", session.id, project.id)
    return project, session


async def mark_project_paid(
    project_id: str,
    checkout_session_id: str,
    payment_intent_id: Optional[str],
    db: AsyncSession,
) -> bool:
    """Record a confirmed payment. Called from the verified webhook only."""
    result = await db.execute(
        update(Project)
        .where(Project.id == project_id, Project.payment_status != "not_required")
        .values(
            payment_status="paid",
            stripe_checkout_session_id=checkout_session_id,
            stripe_payment_intent_id=payment_intent_id,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount == 0:
        logger.warning("Payment confirmation for unknown project %s", project_id)
        return False
    logger.info("Project %s marked paid (session %s)", project_id, checkout_session_id)
    return True


async def launch_paid_generation(
    project_id: str,
    user_id: str,
    db: AsyncSession,
    ctx: GenerationContext,
) -> Project:
    project = await get_project(project_id, user_id, db)
    if project.payment_status != "paid":
        raise PaymentRequiredError("Payment has not been confirmed for this project yet.")
    if project.status == "completed":
        return project

    claimed = await db.execute(
        update(Project)
        .where(
            Project.id == project_id,
            Project.user_id == user_id,
            Project.payment_status == "paid",
            Project.status.in_(RELAUNCHABLE_STATUSES),
        )
        .values(status="processing", error_message=None)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount == 0:
        await db.rollback()
        raise GenerationInProgressError("Generation is already running for this project.")
    await db.commit()
    await db.refresh(project)

    output_url: Optional[str] = None
    try:
        output_url = await _generate_and_store(
            ctx,
            project.prompt,
            project.model_key,
            image=None,
            input_image_url=project.input_image_url,
        )
        return await _mark_completed(project, output_url, db)
    except Exception as exc:
        logger.exception("Paid generation failed for project %s", project_id)
        await db.rollback()
        await ctx.store.delete_public_url(ctx.output_bucket, output_url)
        await db.execute(
            update(Project)
            .where(Project.id == project_id, Project.user_id == user_id)
            .values(
                status="failed",
                error_message=exc.detail if isinstance(exc, StudioError) else "Image generation failed.",
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        raise


# Path B: credit-funded, generated immediately.

async def generate_with_credit(
    user_id: str,
    image: Optional[UploadedImage],
    prompt: Optional[str],
    model_key: Optional[str],
    db: AsyncSession,
    ctx: GenerationContext,
) -> Tuple[Project, int]:
    """Spend one credit and generate. Returns the project and the new balance."""
    cleaned_prompt, price = validate_submission(image, prompt, model_key, ctx.store)

    project_id = str(uuid.uuid4())
    balance = await credits.adjust(
        user_id,
        -1,
        db,
        entry_type="debit",
        reason="Image generation",
        reference_type="project",
        reference_id=project_id,
    )

    input_url: Optional[str] = None
    output_url: Optional[str] = None
    try:
        input_url = await _store_input(ctx, image)
        project = Project(
            id=project_id,
            user_id=user_id,
            input_image_url=input_url,
            status="processing",
            payment_status="not_required",
            payment_amount=0,
            prompt=cleaned_prompt,
            model_key=price.model_key,
        )
        db.add(project)
        await db.commit()

        output_url = await _generate_and_store(
            ctx,
            cleaned_prompt,
            price.model_key,
            image=image,
            input_image_url=input_url,
        )
        project = await _mark_completed(project, output_url, db)
        return project, balance
    except Exception:
        logger.exception("Credit generation failed for user %s; rolling back", user_id)
        await _compensate_credit_generation(user_id, project_id, input_url, output_url, db, ctx)
        raise


async def _compensate_credit_generation(
    user_id: str,
    project_id: str,
    input_url: Optional[str],
    output_url: Optional[str],
    db: AsyncSession,
    ctx: GenerationContext,
) -> None:
    """Refund the credit, then drop the project row, then its assets."""
    await db.rollback()
    try:
        await credits.adjust(
            user_id,
            1,
            db,
            entry_type="refund",
            reason="Generation failed",
            reference_type="project",
            reference_id=project_id,
        )
    except Exception:
        logger.exception("Credit refund failed for user %s project %s", user_id, project_id)

    try:
        await db.execute(
            delete(Project).where(Project.id == project_id, Project.user_id == user_id)
        )
        await db.commit()
    except Exception:
        await db.rollback()
        logger.exception("Could not delete partial project %s", project_id)

    await asyncio.gather(
        ctx.store.delete_public_url(ctx.input_bucket, input_url),
        ctx.store.delete_public_url(ctx.output_bucket, output_url),
    )


async def delete_project(
    project_id: str,
    user_id: str,
    db: AsyncSession,
    ctx: GenerationContext,
) -> None:
    project = await get_project(project_id, user_id, db)

    # Asset removal is best-effort; delete_public_url logs its own failures.
    await asyncio.gather(
        ctx.store.delete_public_url(ctx.input_bucket, project.input_image_url),
        ctx.store.delete_public_url(ctx.output_bucket, project.output_image_url),
    )

    await db.execute(
        delete(Project).where(Project.id == project_id, Project.user_id == user_id)
    )
    await db.commit()
    logger.info("Deleted project %s for user %s", project_id, user_id)
