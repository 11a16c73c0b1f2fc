"""Domain errors raised by the generation workflow and its adapters."""

from __future__ import annotations

from typing import Optional


class StudioError(Exception):
    """Base error carrying the HTTP status and user-facing detail."""

    status_code = 500
    code = "internal_error"

    def __init__(self, detail: str, *, status_code: Optional[int] = None):
        super().__init__(detail)
        self.detail = detail
        if status_code is not None:
            self.status_code = status_code


class ValidationError(StudioError):
    status_code = 400
    code = "validation_error"


class PayloadTooLargeError(ValidationError):
    status_code = 413
    code = "payload_too_large"


class AuthError(StudioError):
    status_code = 401
    code = "auth_error"


class NotFoundError(StudioError):
    """Missing or not owned; the two cases are never distinguished."""

    status_code = 404
    code = "not_found"


class PaymentRequiredError(StudioError):
    status_code = 402
    code = "payment_required"


class InsufficientCreditsError(StudioError):
    status_code = 402
    code = "insufficient_credits"

    def __init__(self, detail: str = "Insufficient credits. Top up credits to continue.", *, balance: int = 0):
        super().__init__(detail)
        self.balance = balance


class GenerationInProgressError(StudioError):
    status_code = 409
    code = "generation_in_progress"


class GenerationError(StudioError):
    """Inference failure, classified by ``reason``."""

    CONTENT_FLAGGED = "content_flagged"
    TIMEOUT = "timeout"
    PROVIDER_FAILURE = "provider_failure"

    _STATUS_BY_REASON = {
        CONTENT_FLAGGED: 422,
        TIMEOUT: 504,
        PROVIDER_FAILURE: 502,
    }

    CONTENT_FLAGGED_MESSAGE = (
        "The model flagged the image or prompt as sensitive content. "
        "Try again with a different image or prompt."
    )

    def __init__(self, reason: str, detail: Optional[str] = None):
        if reason == self.CONTENT_FLAGGED and detail is None:
            detail = self.CONTENT_FLAGGED_MESSAGE
        super().__init__(
            detail or "Image generation failed.",
            status_code=self._STATUS_BY_REASON.get(reason, 502),
        )
        self.reason = reason
        self.code = reason


class StorageError(StudioError):
    status_code = 502
    code = "storage_error"


class WebhookSignatureError(StudioError):
    status_code = 400
    code = "invalid_webhook"


class ConfigurationError(StudioError):
    status_code = 503
    code = "not_configured"


class BillingProviderError(StudioError):
    status_code = 502
    code = "billing_provider_error"
