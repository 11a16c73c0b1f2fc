"""
NanoBanana Studio - FastAPI Backend
Main application entry point with health check and API routing.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    auth,
    projects,
    billing,
    webhooks,
)
from services.billing_gateway import create_billing_gateway
from services.errors import StudioError
from services.inference import create_inference_client
from services.notifications import create_notifier
from services.project_recovery import recover_stalled_projects
from services.storage import create_object_store

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting NanoBanana Studio API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")

    app.state.object_store = create_object_store()
    app.state.inference_client = create_inference_client()
    app.state.billing_gateway = create_billing_gateway()
    app.state.notifier = create_notifier()
    if not app.state.notifier.is_configured:
        print("✉️ SendGrid not configured; billing emails will be skipped.")

    if settings.PROVISION_BUCKETS_ON_STARTUP:
        try:
            await app.state.object_store.ensure_buckets([settings.INPUT_BUCKET, settings.OUTPUT_BUCKET])
            print("🪣 Storage buckets verified.")
        except Exception as exc:
            print(f"⚠️ Bucket provisioning skipped: {exc}")

    try:
        recovered = await recover_stalled_projects(settings.STALLED_PROJECT_MINUTES)
        if recovered:
            print(f"♻️ Recovered {recovered} stalled projects after startup.")
    except Exception as exc:
        print(f"⚠️ Stalled project recovery skipped: {exc}")
    yield
    # Shutdown
    await app.state.inference_client.aclose()
    print("👋 Shutting down API...")


app = FastAPI(
    title="NanoBanana Studio API",
    description="Upload an image, describe an edit, and pay per generation or with credits",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StudioError)
async def studio_error_handler(request: Request, exc: StudioError):
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s (%s)", request.method, request.url.path, exc.detail, exc.code)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "code": exc.code},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "code": "internal_error"},
    )


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(auth.router, prefix="/auth", tags=["Authentication"])
app.include_router(projects.router, prefix="/projects", tags=["Projects"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "NanoBanana Studio API",
        "version": "0.1.0",
        "status": "running"
    }
