"""Replicate predictions adapter.

Creates predictions through the Replicate HTTP API and tracks them by
polling ``/predictions/{id}`` or by webhook. A catalog endpoint containing
``:`` is treated as a version id; otherwise it is an ``owner/model`` name
and the model's latest version is used.

Prediction states map to JobState:

    starting   -> QUEUED
    processing -> RUNNING
    succeeded  -> SUCCEEDED
    failed     -> FAILED (provider_rejected)
    canceled   -> FAILED (cancelled)
"""

from typing import TYPE_CHECKING, Any

import httpx
import structlog

from omnigen.providers.adapters.http_errors import (
    check_response,
    classify_transport_error,
)
from omnigen.providers.base import (
    AsyncJobAdapter,
    GenerationRequest,
    GenerationResult,
    JobHandle,
    JobState,
    JobStatus,
)
from omnigen.providers.errors import (
    REASON_CANCELLED,
    REASON_PROVIDER_REJECTED,
    ProviderError,
    ProviderRejected,
)

if TYPE_CHECKING:
    from omnigen.providers.config import ProviderConfig

logger = structlog.get_logger()

REPLICATE_API_URL = "https://api.replicate.com/v1"


def build_replicate_input(request: GenerationRequest) -> dict[str, Any]:
    """Build the prediction ``input`` object."""
    payload: dict[str, Any] = {"prompt": request.prompt, **request.options}
    if request.generation_type == "image" and request.quantity > 1:
        payload["num_outputs"] = request.quantity
    if request.input_images:
        payload["image"] = request.input_images[0]
    return payload


def prediction_to_status(prediction: Any) -> JobStatus | None:
    """Translate a prediction object into a JobStatus (None if unrecognizable)."""
    if not isinstance(prediction, dict):
        return None
    state = prediction.get("status")

    if state == "starting":
        return JobStatus(state=JobState.QUEUED)
    if state == "processing":
        return JobStatus(state=JobState.RUNNING)
    if state == "canceled":
        return JobStatus(
            state=JobState.FAILED,
            error="prediction canceled",
            error_reason=REASON_CANCELLED,
        )
    if state == "failed":
        return JobStatus(
            state=JobState.FAILED,
            error=str(prediction.get("error") or "prediction failed"),
            error_reason=REASON_PROVIDER_REJECTED,
        )
    if state == "succeeded":
        output = prediction.get("output")
        raw_urls = output if isinstance(output, list) else [output]
        urls = [u for u in raw_urls if isinstance(u, str) and u]
        if not urls:
            return JobStatus(
                state=JobState.FAILED,
                error="prediction succeeded without output",
                error_reason=REASON_PROVIDER_REJECTED,
            )
        metrics = prediction.get("metrics")
        return JobStatus(
            state=JobState.SUCCEEDED,
            result=GenerationResult(
                urls=urls,
                metadata={"metrics": metrics} if isinstance(metrics, dict) else {},
            ),
        )
    return None


class ReplicateAdapter(AsyncJobAdapter):
    """Asynchronous adapter for Replicate predictions."""

    @property
    def provider_name(self) -> str:
        return "replicate"

    def __init__(
        self,
        config: "ProviderConfig",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize Replicate adapter.

        Args:
            config: Provider configuration with the Replicate API token.
            client: Optional preconfigured HTTP client (tests).
        """
        super().__init__(config)
        self.client = client or httpx.AsyncClient(
            base_url=REPLICATE_API_URL,
            timeout=config.http_timeout_seconds,
            headers={"Authorization": f"Token {config.replicate_api_token}"},
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self.client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.warning(
                "provider_request_failed",
                provider="replicate",
                path=path,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise classify_transport_error(e) from e

    async def submit(self, request: GenerationRequest) -> JobHandle:
        """Create a prediction and return its handle."""
        body: dict[str, Any] = {"input": build_replicate_input(request)}
        webhook_url = self.config.webhook_url("replicate")
        if webhook_url:
            body["webhook"] = webhook_url
            body["webhook_events_filter"] = ["completed"]

        if ":" in request.endpoint:
            body["version"] = request.endpoint.split(":", 1)[1]
            path = "/predictions"
        else:
            path = f"/models/{request.endpoint}/predictions"

        logger.info(
            "provider_request_start",
            provider="replicate",
            model=request.model_id,
            endpoint=request.endpoint,
            webhook=bool(webhook_url),
        )
        response = await self._request("POST", path, json=body)
        check_response(response)

        data = response.json()
        prediction_id = data.get("id") if isinstance(data, dict) else None
        if not prediction_id:
            raise ProviderRejected("Replicate response had no prediction id")

        logger.info(
            "provider_job_submitted",
            provider="replicate",
            model=request.model_id,
            prediction_id=prediction_id,
        )
        return JobHandle(
            provider="replicate",
            handle_id=str(prediction_id),
            endpoint=request.endpoint,
        )

    async def status(self, handle: JobHandle) -> JobStatus:
        response = await self._request("GET", f"/predictions/{handle.handle_id}")
        check_response(response)
        status = prediction_to_status(response.json())
        if status is None:
            logger.warning(
                "provider_unknown_status",
                provider="replicate",
                prediction_id=handle.handle_id,
            )
            return JobStatus(state=JobState.RUNNING)
        return status

    def parse_webhook(self, payload: Any) -> tuple[str, JobStatus] | None:
        """Replicate posts the full prediction object as the webhook body."""
        if not isinstance(payload, dict):
            return None
        prediction_id = payload.get("id")
        if not isinstance(prediction_id, str) or not prediction_id:
            return None
        status = prediction_to_status(payload)
        if status is None:
            return None
        return prediction_id, status

    async def cancel(self, handle: JobHandle) -> None:
        """Request cancellation. Failures are logged, not raised."""
        try:
            response = await self._request(
                "POST", f"/predictions/{handle.handle_id}/cancel"
            )
            check_response(response)
        except ProviderError as e:
            logger.warning(
                "provider_cancel_failed",
                provider="replicate",
                prediction_id=handle.handle_id,
                error=str(e),
            )
            return
        logger.info(
            "provider_cancel_requested",
            provider="replicate",
            prediction_id=handle.handle_id,
        )

    async def aclose(self) -> None:
        await self.client.aclose()
