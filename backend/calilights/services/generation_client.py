# backend/calilights/services/generation_client.py
"""
Client for the external video generation service (Vertex AI Veo).

submit() starts a long-running prediction and returns its opaque operation
handle; poll() reports whether that operation is done and, if so, its output
or error. Both calls go through the retry executor with the slow preset.
Missing configuration and 4xx responses are permanent failures; connection
errors, timeouts, 429 and 5xx responses are retried and then surfaced as
TransientExternalError.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from ..config import settings
from ..exceptions import PermanentExternalError, TransientExternalError, ValidationFailedError
from ..utils.retry import RetryPolicy, RETRYABLE_CLIENT_STATUSES, run_with_retry

logger = logging.getLogger("calilights.generation")


@dataclass
class GenerationRequest:
    """Inputs for one chapter generation."""

    prompt: str
    input_media_urls: List[str]
    target_id: str
    mission_id: str
    target_type: str = "chapter"
    aspect_ratio: str = field(default_factory=lambda: settings.generation_aspect_ratio)
    length_seconds: int = field(default_factory=lambda: settings.generation_length_seconds)


@dataclass
class GenerationStatus:
    """Poll result. ``done`` with ``error`` set means the job failed."""

    done: bool
    video_url: Optional[str] = None
    duration_seconds: Optional[float] = None
    watermark: Optional[bool] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.done and not self.error and bool(self.video_url)


def _extract_operation_id(payload: Dict[str, Any]) -> Optional[str]:
    output = payload.get("output") or []
    first = output[0] if isinstance(output, list) and output else {}
    return (
        payload.get("predictionId")
        or payload.get("name")
        or payload.get("operationId")
        or (first.get("id") if isinstance(first, dict) else None)
    )


def _parse_status(payload: Dict[str, Any]) -> GenerationStatus:
    if not payload.get("done"):
        return GenerationStatus(done=False)

    error = payload.get("error")
    if error:
        message = error.get("message") if isinstance(error, dict) else str(error)
        return GenerationStatus(done=True, error=message or "generation failed")

    outputs = (payload.get("response") or {}).get("output") or []
    first = outputs[0] if outputs else {}
    video_url = first.get("mediaUri") or first.get("uri")
    if not video_url:
        return GenerationStatus(done=True, error="operation finished without output")

    return GenerationStatus(
        done=True,
        video_url=video_url,
        duration_seconds=first.get("durationSeconds"),
        watermark=first.get("watermark"),
    )


class GenerationClient:
    """
    Thin HTTP client for the generation provider.

    Configuration (settings):
        veo_project_id, veo_api_key: required
        veo_location, veo_model: model routing
        veo_api_base: override for the regional endpoint
        generation_timeout: per-request timeout
    """

    def _base_url(self) -> str:
        if settings.veo_api_base:
            return settings.veo_api_base.rstrip("/")
        return f"https://{settings.veo_location}-aiplatform.googleapis.com"

    def _require_config(self) -> None:
        missing = [
            name for name, value in (
                ("VEO_PROJECT_ID", settings.veo_project_id),
                ("VEO_API_KEY", settings.veo_api_key),
            ) if not value
        ]
        if missing:
            raise PermanentExternalError(
                f"Generation service is not configured (missing {', '.join(missing)})",
                service="generation",
            )

    def _model_path(self) -> str:
        model = settings.veo_model
        return model if model.startswith("publishers/") else f"publishers/google/models/{model}"

    def _operation_url(self, operation_id: str) -> str:
        if operation_id.startswith("projects/"):
            path = operation_id
        else:
            path = (
                f"projects/{settings.veo_project_id}/locations/{settings.veo_location}"
                f"/operations/{operation_id}"
            )
        return f"{self._base_url()}/v1/{path}"

    async def _request_json(self, method: str, url: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {settings.veo_api_key}"}
        try:
            async with httpx.AsyncClient(timeout=settings.generation_timeout) as client:
                response = await client.request(method, url, json=body, headers=headers)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as e:
            code = e.response.status_code
            detail = e.response.text[:500]
            if 400 <= code < 500 and code not in RETRYABLE_CLIENT_STATUSES:
                raise PermanentExternalError(
                    f"Generation service rejected request (HTTP {code}): {detail}", service="generation"
                ) from e
            raise TransientExternalError(
                f"Generation service error (HTTP {code})", service="generation"
            ) from e
        except httpx.TransportError as e:
            raise TransientExternalError(
                f"Generation service unreachable: {e.__class__.__name__}: {e}", service="generation"
            ) from e
        except ValueError as e:
            raise TransientExternalError(
                f"Generation service returned invalid JSON: {e}", service="generation"
            ) from e

    @staticmethod
    def _on_retry(action: str):
        def _log(attempt: int, error: BaseException) -> None:
            logger.warning(f"Generation {action} retry attempt {attempt}: {error}")
        return _log

    async def submit(self, request: GenerationRequest) -> str:
        """
        Start a generation and return its operation handle.

        Raises:
            ValidationFailedError: Empty prompt or no source media
            PermanentExternalError: Missing configuration, rejected request or no handle returned
            TransientExternalError: Service unavailable after retries
        """
        if not request.prompt or not request.prompt.strip():
            raise ValidationFailedError("Generation prompt must not be empty")
        if not request.input_media_urls:
            raise ValidationFailedError("Generation requires at least one source media reference")
        self._require_config()

        url = (
            f"{self._base_url()}/v1/projects/{settings.veo_project_id}"
            f"/locations/{settings.veo_location}/{self._model_path()}:predict"
        )
        body = {
            "instances": [
                {
                    "prompt": request.prompt,
                    "imageUris": request.input_media_urls,
                    "aspect_ratio": request.aspect_ratio,
                    "output_video_length_seconds": request.length_seconds,
                }
            ]
        }

        payload = await run_with_retry(
            self._request_json, "POST", url, body,
            policy=RetryPolicy.slow(),
            on_retry=self._on_retry("submit"),
        )
        operation_id = _extract_operation_id(payload)
        if not operation_id:
            raise PermanentExternalError(
                "Unable to extract operation id from generation response", service="generation"
            )

        logger.info(f"Generation started: {operation_id} (target {request.target_type} {request.target_id})")
        return operation_id

    async def poll(self, operation_id: str) -> GenerationStatus:
        """
        Query the status of a generation operation.

        Raises:
            PermanentExternalError: Missing configuration or rejected request
            TransientExternalError: Service unavailable after retries
        """
        self._require_config()
        payload = await run_with_retry(
            self._request_json, "GET", self._operation_url(operation_id),
            policy=RetryPolicy.slow(),
            on_retry=self._on_retry("poll"),
        )
        return _parse_status(payload)


# Global singleton instance
generation_client = GenerationClient()
