"""Service handle dependencies.

Handles are built once in the application lifespan and stored on
``app.state``; tests replace them through ``app.dependency_overrides``.
"""

from fastapi import Depends, Request

from config import settings
from services.billing_gateway import BillingGateway
from services.errors import ConfigurationError
from services.inference import InferenceClient
from services.notifications import Notifier
from services.projects import GenerationContext
from services.storage import ObjectStore


def _state_handle(request: Request, name: str):
    handle = getattr(request.app.state, name, None)
    if handle is None:
        raise ConfigurationError(f"Service '{name}' is not initialised.")
    return handle


def get_object_store(request: Request) -> ObjectStore:
    return _state_handle(request, "object_store")


def get_inference_client(request: Request) -> InferenceClient:
    return _state_handle(request, "inference_client")


def get_billing_gateway(request: Request) -> BillingGateway:
    return _state_handle(request, "billing_gateway")


def get_notifier(request: Request) -> Notifier:
    return _state_handle(request, "notifier")


def get_generation_context(
    store: ObjectStore = Depends(get_object_store),
    inference: InferenceClient = Depends(get_inference_client),
) -> GenerationContext:
    return GenerationContext(
        store=store,
        inference=inference,
        input_bucket=settings.INPUT_BUCKET,
        output_bucket=settings.OUTPUT_BUCKET,
    )
