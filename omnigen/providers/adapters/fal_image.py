"""fal.ai synchronous image adapter.

Posts to ``https://fal.run/{endpoint}`` and waits for the images in the
same response. Used by fast image models such as flux-schnell.
"""

import time
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from omnigen.providers.adapters.http_errors import (
    check_response,
    classify_transport_error,
)
from omnigen.providers.base import GenerationRequest, GenerationResult, SyncAdapter
from omnigen.providers.errors import ProviderRejected

if TYPE_CHECKING:
    from omnigen.providers.config import ProviderConfig

logger = structlog.get_logger()

FAL_SYNC_URL = "https://fal.run"


def build_fal_payload(request: GenerationRequest) -> dict[str, Any]:
    """Build the fal input payload.

    Selected options are passed through unchanged. Input images go to
    ``image_url`` (one) or ``image_urls`` (several).
    """
    payload: dict[str, Any] = {"prompt": request.prompt, **request.options}
    if request.generation_type == "image":
        payload["num_images"] = request.quantity
        payload.setdefault("enable_safety_checker", True)
    if len(request.input_images) == 1:
        payload["image_url"] = request.input_images[0]
    elif request.input_images:
        payload["image_urls"] = list(request.input_images)
    return payload


def parse_fal_output(data: Any) -> GenerationResult:
    """Normalize a fal result body (images or video) into a GenerationResult.

    Raises:
        ProviderRejected: If the body contains no output asset.
    """
    if not isinstance(data, dict):
        raise ProviderRejected("fal returned a non-object result")

    urls: list[str] = []
    metadata: dict[str, Any] = {}
    images = data.get("images")
    if isinstance(images, list) and images:
        urls = [img["url"] for img in images if isinstance(img, dict) and img.get("url")]
        first = images[0] if isinstance(images[0], dict) else {}
        metadata = {
            "width": first.get("width"),
            "height": first.get("height"),
            "content_type": first.get("content_type"),
        }
    elif isinstance(data.get("image"), dict) and data["image"].get("url"):
        urls = [data["image"]["url"]]
        metadata = {
            "width": data["image"].get("width"),
            "height": data["image"].get("height"),
        }
    elif isinstance(data.get("video"), dict) and data["video"].get("url"):
        video = data["video"]
        urls = [video["url"]]
        metadata = {
            key: video.get(key)
            for key in ("width", "height", "duration", "fps", "thumbnail_url")
        }

    if not urls:
        raise ProviderRejected("fal result contained no output")

    seed = data.get("seed")
    return GenerationResult(
        urls=urls,
        seed=seed if isinstance(seed, int) else None,
        metadata={k: v for k, v in metadata.items() if v is not None},
    )


class FalImageAdapter(SyncAdapter):
    """Synchronous fal.ai adapter for image models."""

    @property
    def provider_name(self) -> str:
        return "fal"

    def __init__(
        self,
        config: "ProviderConfig",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize fal image adapter.

        Args:
            config: Provider configuration with the fal API key.
            client: Optional preconfigured HTTP client (tests).
        """
        super().__init__(config)
        self.client = client or httpx.AsyncClient(
            timeout=config.http_timeout_seconds,
            headers={"Authorization": f"Key {config.fal_api_key}"},
        )

    async def submit(self, request: GenerationRequest) -> GenerationResult:
        """Generate images and return their URLs."""
        url = f"{FAL_SYNC_URL}/{request.endpoint}"
        payload = build_fal_payload(request)

        logger.info(
            "provider_request_start",
            provider="fal",
            model=request.model_id,
            endpoint=request.endpoint,
            quantity=request.quantity,
        )
        start_time = time.monotonic()

        try:
            response = await self.client.post(url, json=payload)
        except httpx.HTTPError as e:
            logger.error(
                "provider_request_failed",
                provider="fal",
                model=request.model_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise classify_transport_error(e) from e

        if not response.is_success:
            logger.error(
                "provider_request_failed",
                provider="fal",
                model=request.model_id,
                status_code=response.status_code,
            )
        check_response(response)

        result = parse_fal_output(response.json())
        logger.info(
            "provider_request_complete",
            provider="fal",
            model=request.model_id,
            outputs=len(result.urls),
            latency_ms=(time.monotonic() - start_time) * 1000,
        )
        return result

    async def aclose(self) -> None:
        await self.client.aclose()
