"""fal.ai queue adapter for long-running (video) models.

Submits to ``https://queue.fal.run/{endpoint}`` and reports progress through
the request's status URL. When a webhook base URL is configured, fal also
calls back with the final result.

fal queue states map to JobState as follows:

    IN_QUEUE    -> QUEUED (with queue_position)
    IN_PROGRESS -> RUNNING
    COMPLETED   -> SUCCEEDED (or FAILED when the result carries an error)
    FAILED      -> FAILED
"""

import time
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from omnigen.providers.adapters.fal_image import build_fal_payload, parse_fal_output
from omnigen.providers.adapters.http_errors import (
    check_response,
    classify_http_error,
    classify_transport_error,
)
from omnigen.providers.base import (
    AsyncJobAdapter,
    GenerationRequest,
    JobHandle,
    JobState,
    JobStatus,
)
from omnigen.providers.errors import (
    REASON_PROVIDER_REJECTED,
    ProviderError,
    ProviderRejected,
)

if TYPE_CHECKING:
    from omnigen.providers.config import ProviderConfig

logger = structlog.get_logger()

FAL_QUEUE_URL = "https://queue.fal.run"

_STATE_MAP: dict[str, JobState] = {
    "IN_QUEUE": JobState.QUEUED,
    "IN_PROGRESS": JobState.RUNNING,
    "COMPLETED": JobState.SUCCEEDED,
    "FAILED": JobState.FAILED,
}


def _app_id(endpoint: str) -> str:
    """fal app id (owner/app) for an endpoint such as fal-ai/kling-video/v2/pro."""
    return "/".join(endpoint.split("/")[:2])


def _failed(error: str) -> JobStatus:
    return JobStatus(
        state=JobState.FAILED,
        error=error,
        error_reason=REASON_PROVIDER_REJECTED,
    )


class FalQueueAdapter(AsyncJobAdapter):
    """Asynchronous fal.ai adapter using the request queue."""

    @property
    def provider_name(self) -> str:
        return "fal"

    def __init__(
        self,
        config: "ProviderConfig",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize fal queue adapter.

        Args:
            config: Provider configuration with the fal API key.
            client: Optional preconfigured HTTP client (tests).
        """
        super().__init__(config)
        self.client = client or httpx.AsyncClient(
            timeout=config.http_timeout_seconds,
            headers={"Authorization": f"Key {config.fal_api_key}"},
        )

    def _urls(self, handle: JobHandle) -> tuple[str, str, str]:
        base = f"{FAL_QUEUE_URL}/{_app_id(handle.endpoint)}/requests/{handle.handle_id}"
        return (
            handle.status_url or f"{base}/status",
            handle.response_url or base,
            handle.cancel_url or f"{base}/cancel",
        )

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.warning(
                "provider_request_failed",
                provider="fal",
                url=url,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise classify_transport_error(e) from e

    async def submit(self, request: GenerationRequest) -> JobHandle:
        """Enqueue a job and return its handle."""
        params: dict[str, str] = {}
        webhook_url = self.config.webhook_url("fal")
        if webhook_url:
            params["fal_webhook"] = webhook_url

        logger.info(
            "provider_request_start",
            provider="fal",
            model=request.model_id,
            endpoint=request.endpoint,
            webhook=bool(webhook_url),
        )

        response = await self._request(
            "POST",
            f"{FAL_QUEUE_URL}/{request.endpoint}",
            json=build_fal_payload(request),
            params=params or None,
        )
        check_response(response)

        data = response.json()
        request_id = data.get("request_id") if isinstance(data, dict) else None
        if not request_id:
            raise ProviderRejected("fal queue response had no request_id")

        logger.info(
            "provider_job_submitted",
            provider="fal",
            model=request.model_id,
            request_id=request_id,
        )
        return JobHandle(
            provider="fal",
            handle_id=str(request_id),
            endpoint=request.endpoint,
            status_url=data.get("status_url"),
            response_url=data.get("response_url"),
            cancel_url=data.get("cancel_url"),
        )

    async def status(self, handle: JobHandle) -> JobStatus:
        """Poll the status URL; fetch outputs once the job completes."""
        status_url, response_url, _ = self._urls(handle)

        response = await self._request("GET", status_url)
        if response.status_code == 404:
            # Freshly submitted requests can 404 briefly before fal registers them.
            return JobStatus(state=JobState.QUEUED)
        check_response(response)

        data = response.json()
        raw_state = str(data.get("status", "")).upper()
        state = _STATE_MAP.get(raw_state)
        if state is None:
            logger.warning("provider_unknown_status", provider="fal", status=raw_state)
            return JobStatus(state=JobState.RUNNING)

        if state is JobState.QUEUED:
            position = data.get("queue_position")
            return JobStatus(
                state=state,
                queue_position=position if isinstance(position, int) else None,
            )
        if state is JobState.RUNNING:
            return JobStatus(state=state)
        if state is JobState.FAILED or data.get("error"):
            return _failed(str(data.get("error") or "fal job failed"))

        result_response = await self._request("GET", response_url)
        if not result_response.is_success:
            error = classify_http_error(result_response)
            if error.reason == REASON_PROVIDER_REJECTED:
                return _failed(str(error))
            raise error
        try:
            result = parse_fal_output(result_response.json())
        except ProviderError as e:
            return _failed(str(e))
        return JobStatus(state=JobState.SUCCEEDED, result=result)

    def parse_webhook(self, payload: Any) -> tuple[str, JobStatus] | None:
        """Interpret a fal webhook body.

        fal sends ``{"request_id", "status": "OK" | "ERROR", "payload", "error"}``.
        """
        if not isinstance(payload, dict):
            return None
        request_id = payload.get("request_id")
        status = payload.get("status")
        if not isinstance(request_id, str) or not request_id:
            return None

        if status == "OK":
            try:
                result = parse_fal_output(payload.get("payload"))
            except ProviderError as e:
                return request_id, _failed(str(e))
            return request_id, JobStatus(state=JobState.SUCCEEDED, result=result)
        if status == "ERROR":
            return request_id, _failed(str(payload.get("error") or "fal job failed"))
        return None

    async def cancel(self, handle: JobHandle) -> None:
        """Request cancellation. Failures are logged, not raised."""
        _, _, cancel_url = self._urls(handle)
        start_time = time.monotonic()
        try:
            response = await self._request("PUT", cancel_url)
        except ProviderError as e:
            logger.warning(
                "provider_cancel_failed",
                provider="fal",
                request_id=handle.handle_id,
                error=str(e),
            )
            return
        logger.info(
            "provider_cancel_requested",
            provider="fal",
            request_id=handle.handle_id,
            status_code=response.status_code,
            latency_ms=(time.monotonic() - start_time) * 1000,
        )

    async def aclose(self) -> None:
        await self.client.aclose()
