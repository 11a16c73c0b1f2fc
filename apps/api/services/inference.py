"""Replicate prediction client: create a job, poll it to a terminal state."""

from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Tuple

import httpx

from config import settings
from services.errors import GenerationError

logger = logging.getLogger(__name__)

SUCCEEDED = "succeeded"
FAILED_STATUSES = frozenset({"failed", "canceled"})


def _is_sensitive(message: Optional[str]) -> bool:
    return "sensitive" in (message or "").lower()


@dataclass
class PollPolicy:
    """Fixed-interval polling budget."""

    max_attempts: int = 30
    interval_seconds: float = 2.0
    terminal_statuses: FrozenSet[str] = frozenset({SUCCEEDED, *FAILED_STATUSES})
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    def is_terminal(self, status: Optional[str]) -> bool:
        return status in self.terminal_statuses


@dataclass
class ImageInput:
    data: bytes
    content_type: str = "image/png"

    def as_data_uri(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.content_type};base64,{encoded}"


def parse_output_url(output: Any) -> str:
    if isinstance(output, str) and output:
        return output
    if isinstance(output, list) and output and isinstance(output[0], str):
        return output[0]
    raise GenerationError(GenerationError.PROVIDER_FAILURE, "The provider response did not include an image URL.")


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text
    if isinstance(payload, dict):
        for key in ("error", "detail", "title"):
            if isinstance(payload.get(key), str):
                return payload[key]
    return response.text


class InferenceClient:
    """Async client for the Replicate predictions API."""

    def __init__(
        self,
        api_token: str,
        *,
        base_url: str = "https://api.replicate.com/v1",
        output_format: str = "jpg",
        poll_policy: Optional[PollPolicy] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = 30.0,
    ):
        self.api_token = api_token
        self.base_url = base_url.rstrip("/")
        self.output_format = output_format
        self.poll_policy = poll_policy or PollPolicy()
        self._http = http_client or httpx.AsyncClient(timeout=timeout_seconds)

    async def aclose(self) -> None:
        await self._http.aclose()

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
        }

    def _creation_request(self, model_id: str, model_input: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        if ":" in model_id:
            _, version = model_id.split(":", 1)
            return f"{self.base_url}/predictions", {"version": version, "input": model_input}
        return f"{self.base_url}/models/{model_id}/predictions", {"input": model_input}

    async def submit(
        self,
        prompt: str,
        model_id: str,
        *,
        image: Optional[ImageInput] = None,
        fallback_image_url: Optional[str] = None,
    ) -> str:
        """Run one generation to completion and return the output asset URL."""
        if not self.api_token:
            raise GenerationError(GenerationError.PROVIDER_FAILURE, "REPLICATE_API_TOKEN is not configured.")
        if not model_id:
            raise GenerationError(GenerationError.PROVIDER_FAILURE, "No model configured for generation.")
        if not (prompt or "").strip():
            raise GenerationError(GenerationError.PROVIDER_FAILURE, "A prompt is required for generation.")

        image_sources: List[str] = []
        if image is not None:
            image_sources.append(image.as_data_uri())
        if fallback_image_url:
            image_sources.append(fallback_image_url)
        if not image_sources:
            raise GenerationError(GenerationError.PROVIDER_FAILURE, "An input image is required for generation.")

        model_input: Dict[str, Any] = {
            "prompt": prompt,
            "output_format": self.output_format,
            "image_input": image_sources,
        }

        prediction_id = await self._create_prediction(model_id, model_input)
        prediction = await self._poll_prediction(prediction_id)
        return parse_output_url(prediction.get("output"))

    async def _create_prediction(self, model_id: str, model_input: Dict[str, Any]) -> str:
        url, body = self._creation_request(model_id, model_input)
        try:
            response = await self._http.post(url, json=body, headers=self._headers())
        except httpx.HTTPError as exc:
            raise GenerationError(GenerationError.PROVIDER_FAILURE, f"Could not reach the inference provider: {exc}") from exc

        if response.status_code >= 400:
            message = _error_message(response)
            if _is_sensitive(message):
                raise GenerationError(GenerationError.CONTENT_FLAGGED)
            raise GenerationError(GenerationError.PROVIDER_FAILURE, f"Prediction creation failed: {message}")

        prediction_id = response.json().get("id")
        if not prediction_id:
            raise GenerationError(GenerationError.PROVIDER_FAILURE, "Prediction creation returned no id.")
        logger.info("Created prediction %s for model %s", prediction_id, model_id)
        return prediction_id

    async def _poll_prediction(self, prediction_id: str) -> Dict[str, Any]:
        policy = self.poll_policy
        url = f"{self.base_url}/predictions/{prediction_id}"
        for attempt in range(policy.max_attempts):
            try:
                response = await self._http.get(url, headers=self._headers())
            except httpx.HTTPError as exc:
                raise GenerationError(GenerationError.PROVIDER_FAILURE, f"Prediction polling failed: {exc}") from exc
            if response.status_code >= 400:
                raise GenerationError(
                    GenerationError.PROVIDER_FAILURE,
                    f"Prediction polling failed: {_error_message(response)}",
                )

            prediction = response.json()
            status = prediction.get("status")
            if policy.is_terminal(status):
                if status == SUCCEEDED:
                    return prediction
                error = prediction.get("error")
                if _is_sensitive(error):
                    raise GenerationError(GenerationError.CONTENT_FLAGGED)
                raise GenerationError(GenerationError.PROVIDER_FAILURE, error or f"The prediction {status}.")

            logger.debug("Prediction %s is %s (attempt %s/%s)", prediction_id, status, attempt + 1, policy.max_attempts)
            await policy.sleep(policy.interval_seconds)

        raise GenerationError(GenerationError.TIMEOUT, "Image generation took too long. Try again later.")

    async def fetch_output(self, url: str) -> Tuple[bytes, str]:
        """Download a generated asset and return its bytes and content type."""
        try:
            response = await self._http.get(url, follow_redirects=True)
        except httpx.HTTPError as exc:
            raise GenerationError(GenerationError.PROVIDER_FAILURE, f"Could not download the generated image: {exc}") from exc
        if response.status_code >= 400:
            raise GenerationError(
                GenerationError.PROVIDER_FAILURE,
                f"Could not download the generated image: HTTP {response.status_code}",
            )
        content_type = response.headers.get("content-type", "image/png").split(";")[0].strip()
        return response.content, content_type


def create_inference_client() -> InferenceClient:
    return InferenceClient(
        settings.REPLICATE_API_TOKEN,
        base_url=settings.REPLICATE_API_BASE,
        output_format=settings.GENERATION_OUTPUT_FORMAT,
        poll_policy=PollPolicy(
            max_attempts=max(int(settings.GENERATION_POLL_MAX_ATTEMPTS), 1),
            interval_seconds=max(float(settings.GENERATION_POLL_INTERVAL_SECONDS), 0.0),
        ),
        timeout_seconds=float(settings.GENERATION_HTTP_TIMEOUT_SECONDS),
    )
