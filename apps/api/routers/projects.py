"""Project router: paid checkout, credit generation, launch, listing, deletion."""

from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from models.project import Project
from models.user import User
from routers.auth_scope import get_current_user
from routers.dependencies import get_billing_gateway, get_generation_context
from routers.rate_limit import rate_limit
from services.billing_gateway import BillingGateway
from services.errors import PayloadTooLargeError
from services.projects import (
    GenerationContext,
    UploadedImage,
    delete_project,
    generate_with_credit,
    get_project,
    launch_paid_generation,
    list_projects,
    start_paid_checkout,
)

router = APIRouter()
logger = logging.getLogger(__name__)

UPLOAD_CHUNK_BYTES = 1024 * 1024


class ProjectResponse(BaseModel):
    id: str
    status: str
    payment_status: str
    payment_amount: int
    currency: Optional[str] = None
    prompt: str
    model_key: str
    input_image_url: Optional[str] = None
    output_image_url: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    completed_at: Optional[str] = None


class CheckoutResponse(BaseModel):
    project: ProjectResponse
    checkout_session_id: str
    url: Optional[str] = None


class CreditGenerationResponse(BaseModel):
    project: ProjectResponse
    credits_remaining: int


def _serialize_project(project: Project) -> ProjectResponse:
    return ProjectResponse(
        id=project.id,
        status=project.status,
        payment_status=project.payment_status,
        payment_amount=int(project.payment_amount or 0),
        currency=project.currency,
        prompt=project.prompt,
        model_key=project.model_key,
        input_image_url=project.input_image_url,
        output_image_url=project.output_image_url,
        error_message=project.error_message,
        created_at=project.created_at.isoformat() if project.created_at else None,
        completed_at=project.completed_at.isoformat() if project.completed_at else None,
    )


async def _read_image(file: Optional[UploadFile]) -> Optional[UploadedImage]:
    """Read the multipart image, stopping as soon as it exceeds the size cap."""
    if file is None:
        return None
    max_bytes = int(settings.MAX_IMAGE_UPLOAD_BYTES)
    chunks: List[bytes] = []
    total_size = 0
    try:
        while True:
            chunk = await file.read(UPLOAD_CHUNK_BYTES)
            if not chunk:
                break
            total_size += len(chunk)
            if total_size > max_bytes:
                raise PayloadTooLargeError(
                    f"Image too large. Max upload size is {max_bytes // (1024 * 1024)}MB."
                )
            chunks.append(chunk)
    finally:
        await file.close()
    return UploadedImage(
        data=b"".join(chunks),
        content_type=(file.content_type or "application/octet-stream").lower(),
        filename=file.filename,
    )


@router.post("/checkout", response_model=CheckoutResponse)
async def create_project_checkout(
    image: Optional[UploadFile] = File(default=None),
    prompt: str = Form(default=""),
    model_key: str = Form(default=settings.DEFAULT_MODEL_KEY),
    _rate_limit: None = Depends(rate_limit("project_checkout", limit=30, window_seconds=3600)),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    ctx: GenerationContext = Depends(get_generation_context),
    gateway: BillingGateway = Depends(get_billing_gateway),
):
    """Create a pending project and a checkout session to pay for it."""
    base_url = settings.PUBLIC_APP_URL.rstrip("/")
    project, session = await start_paid_checkout(
        user,
        await _read_image(image),
        prompt,
        model_key,
        db,
        ctx,
        gateway,
        success_url=f"{base_url}/dashboard?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{base_url}/dashboard",
    )
    return CheckoutResponse(
        project=_serialize_project(project),
        checkout_session_id=session.id,
        url=session.url,
    )


@router.post("/credit", response_model=CreditGenerationResponse)
async def create_project_with_credit(
    image: Optional[UploadFile] = File(default=None),
    prompt: str = Form(default=""),
    model_key: str = Form(default=settings.DEFAULT_MODEL_KEY),
    _rate_limit: None = Depends(rate_limit("project_credit", limit=60, window_seconds=3600)),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    ctx: GenerationContext = Depends(get_generation_context),
):
    """Spend one credit and generate immediately."""
    project, balance = await generate_with_credit(
        user.id,
        await _read_image(image),
        prompt,
        model_key,
        db,
        ctx,
    )
    return CreditGenerationResponse(project=_serialize_project(project), credits_remaining=balance)


@router.post("/{project_id}/launch", response_model=ProjectResponse)
async def launch_project(
    project_id: str,
    _rate_limit: None = Depends(rate_limit("project_launch", limit=60, window_seconds=3600)),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    ctx: GenerationContext = Depends(get_generation_context),
):
    """Run generation for a project whose payment has been confirmed."""
    project = await launch_paid_generation(project_id, user.id, db, ctx)
    return _serialize_project(project)


@router.get("", response_model=List[ProjectResponse])
async def list_user_projects(
    limit: int = Query(default=50, ge=1, le=200),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    projects = await list_projects(user.id, db, limit=limit)
    return [_serialize_project(project) for project in projects]


@router.get("/{project_id}", response_model=ProjectResponse)
async def get_user_project(
    project_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return _serialize_project(await get_project(project_id, user.id, db))


@router.delete("/{project_id}")
async def delete_user_project(
    project_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    ctx: GenerationContext = Depends(get_generation_context),
):
    """Delete a project and, best-effort, its stored images."""
    await delete_project(project_id, user.id, db, ctx)
    return {"success": True}
