"""Tests for the fal.ai adapters.

Both adapters talk HTTP through an injected ``httpx.AsyncClient`` backed by
``httpx.MockTransport``, so requests and responses are real httpx objects.
"""

import json
from collections.abc import Callable

import httpx
import pytest

from omnigen.providers.adapters.fal_image import (
    FalImageAdapter,
    build_fal_payload,
    parse_fal_output,
)
from omnigen.providers.adapters.fal_queue import FalQueueAdapter
from omnigen.providers.base import GenerationRequest, JobHandle, JobState
from omnigen.providers.config import ProviderConfig
from omnigen.providers.errors import (
    REASON_PROVIDER_REJECTED,
    ProviderRejected,
    ProviderUnavailable,
    RateLimitError,
)

Handler = Callable[[httpx.Request], httpx.Response]


def _client(handler: Handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def config():
    return ProviderConfig(fal_api_key="test-fal-key")


@pytest.fixture
def image_request():
    return GenerationRequest(
        model_id="flux-schnell",
        endpoint="fal-ai/flux/schnell",
        generation_type="image",
        prompt="a lighthouse at dusk",
        options={"image_size": "square_hd"},
        quantity=2,
    )


@pytest.fixture
def video_request():
    return GenerationRequest(
        model_id="kling-video",
        endpoint="fal-ai/kling-video/v2/master",
        generation_type="video",
        prompt="waves crashing",
        input_images=["https://cdn.example.com/start.png"],
    )


_IMAGES_BODY = {
    "images": [
        {"url": "https://fal.media/a.png", "width": 1024, "height": 1024, "content_type": "image/png"},
        {"url": "https://fal.media/b.png", "width": 1024, "height": 1024, "content_type": "image/png"},
    ],
    "seed": 1234,
}

_VIDEO_BODY = {
    "video": {"url": "https://fal.media/v.mp4", "duration": 5, "fps": 24},
}


class TestFalPayload:
    """Tests for payload building and output parsing."""

    def test_payload_passes_options_and_quantity(self, image_request):
        payload = build_fal_payload(image_request)

        assert payload == {
            "prompt": "a lighthouse at dusk",
            "image_size": "square_hd",
            "num_images": 2,
            "enable_safety_checker": True,
        }

    def test_single_input_image_uses_image_url(self, video_request):
        payload = build_fal_payload(video_request)

        assert payload["image_url"] == "https://cdn.example.com/start.png"
        assert "num_images" not in payload

    def test_several_input_images_use_image_urls(self, image_request):
        image_request.input_images = ["https://a/1.png", "https://a/2.png"]

        assert build_fal_payload(image_request)["image_urls"] == [
            "https://a/1.png",
            "https://a/2.png",
        ]

    def test_parse_images(self):
        result = parse_fal_output(_IMAGES_BODY)

        assert result.urls == ["https://fal.media/a.png", "https://fal.media/b.png"]
        assert result.seed == 1234
        assert result.metadata == {
            "width": 1024,
            "height": 1024,
            "content_type": "image/png",
        }

    def test_parse_single_image(self):
        result = parse_fal_output({"image": {"url": "https://fal.media/x.png", "width": 512}})

        assert result.urls == ["https://fal.media/x.png"]
        assert result.metadata == {"width": 512}

    def test_parse_video(self):
        result = parse_fal_output(_VIDEO_BODY)

        assert result.urls == ["https://fal.media/v.mp4"]
        assert result.metadata == {"duration": 5, "fps": 24}

    @pytest.mark.parametrize("body", [{}, {"images": []}, ["not", "an", "object"]])
    def test_parse_without_output_is_rejected(self, body):
        with pytest.raises(ProviderRejected):
            parse_fal_output(body)


class TestFalImageAdapter:
    """Tests for the synchronous fal image adapter."""

    async def test_submit_posts_to_endpoint_and_returns_urls(self, config, image_request):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=_IMAGES_BODY)

        adapter = FalImageAdapter(config, client=_client(handler))
        result = await adapter.submit(image_request)

        assert len(result.urls) == 2
        assert str(seen[0].url) == "https://fal.run/fal-ai/flux/schnell"
        assert json.loads(seen[0].content)["num_images"] == 2
        await adapter.aclose()

    def test_default_client_sends_key_header(self, config):
        adapter = FalImageAdapter(config)

        assert adapter.client.headers["Authorization"] == "Key test-fal-key"

    async def test_server_error_is_unavailable(self, config, image_request):
        adapter = FalImageAdapter(
            config, client=_client(lambda _r: httpx.Response(503, text="overloaded"))
        )

        with pytest.raises(ProviderUnavailable):
            await adapter.submit(image_request)

    async def test_rate_limit_carries_retry_after(self, config, image_request):
        adapter = FalImageAdapter(
            config,
            client=_client(
                lambda _r: httpx.Response(429, headers={"retry-after": "3"})
            ),
        )

        with pytest.raises(RateLimitError) as exc_info:
            await adapter.submit(image_request)

        assert exc_info.value.retry_after_seconds == 3.0

    async def test_validation_error_is_rejected(self, config, image_request):
        adapter = FalImageAdapter(
            config,
            client=_client(lambda _r: httpx.Response(422, json={"detail": "bad size"})),
        )

        with pytest.raises(ProviderRejected, match="422"):
            await adapter.submit(image_request)

    async def test_transport_error_is_unavailable(self, config, image_request):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        adapter = FalImageAdapter(config, client=_client(handler))

        with pytest.raises(ProviderUnavailable, match="ConnectError"):
            await adapter.submit(image_request)


class TestFalQueueAdapter:
    """Tests for the fal queue adapter (video)."""

    async def test_submit_returns_handle_with_provider_urls(self, config, video_request):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "POST"
            assert str(request.url) == "https://queue.fal.run/fal-ai/kling-video/v2/master"
            return httpx.Response(
                200,
                json={
                    "request_id": "req-1",
                    "status_url": "https://queue.fal.run/fal-ai/kling-video/requests/req-1/status",
                    "response_url": "https://queue.fal.run/fal-ai/kling-video/requests/req-1",
                    "cancel_url": "https://queue.fal.run/fal-ai/kling-video/requests/req-1/cancel",
                },
            )

        adapter = FalQueueAdapter(config, client=_client(handler))
        handle = await adapter.submit(video_request)

        assert handle.provider == "fal"
        assert handle.handle_id == "req-1"
        assert handle.status_url is not None

    async def test_submit_registers_webhook_when_configured(self, video_request):
        config = ProviderConfig(
            webhook_base_url="https://api.example.com/",
            webhook_secret="hook-secret",
        )
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"request_id": "req-2"})

        adapter = FalQueueAdapter(config, client=_client(handler))
        await adapter.submit(video_request)

        assert seen[0].url.params["fal_webhook"] == (
            "https://api.example.com/api/v1/webhooks/fal?token=hook-secret"
        )

    async def test_submit_without_request_id_is_rejected(self, config, video_request):
        adapter = FalQueueAdapter(
            config, client=_client(lambda _r: httpx.Response(200, json={}))
        )

        with pytest.raises(ProviderRejected):
            await adapter.submit(video_request)

    async def test_status_queued_reports_position(self, config):
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(200, json={"status": "IN_QUEUE", "queue_position": 3})

        adapter = FalQueueAdapter(config, client=_client(handler))
        handle = JobHandle(provider="fal", handle_id="req-1", endpoint="fal-ai/kling-video/v2/master")

        status = await adapter.status(handle)

        assert status.state is JobState.QUEUED
        assert status.queue_position == 3
        # URLs are rebuilt from the app id when the handle has none
        assert seen == ["https://queue.fal.run/fal-ai/kling-video/requests/req-1/status"]

    async def test_status_unknown_request_is_still_queued(self, config):
        adapter = FalQueueAdapter(
            config, client=_client(lambda _r: httpx.Response(404))
        )
        handle = JobHandle(provider="fal", handle_id="req-1", endpoint="fal-ai/kling-video")

        assert (await adapter.status(handle)).state is JobState.QUEUED

    async def test_status_in_progress_is_running(self, config):
        adapter = FalQueueAdapter(
            config,
            client=_client(lambda _r: httpx.Response(200, json={"status": "IN_PROGRESS"})),
        )
        handle = JobHandle(provider="fal", handle_id="req-1", endpoint="fal-ai/kling-video")

        assert (await adapter.status(handle)).state is JobState.RUNNING

    async def test_status_completed_fetches_result(self, config):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/status"):
                return httpx.Response(200, json={"status": "COMPLETED"})
            return httpx.Response(200, json=_VIDEO_BODY)

        adapter = FalQueueAdapter(config, client=_client(handler))
        handle = JobHandle(provider="fal", handle_id="req-1", endpoint="fal-ai/kling-video")

        status = await adapter.status(handle)

        assert status.state is JobState.SUCCEEDED
        assert status.result is not None
        assert status.result.urls == ["https://fal.media/v.mp4"]

    async def test_status_completed_with_rejected_result_fails(self, config):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/status"):
                return httpx.Response(200, json={"status": "COMPLETED"})
            return httpx.Response(422, json={"detail": "content policy"})

        adapter = FalQueueAdapter(config, client=_client(handler))
        handle = JobHandle(provider="fal", handle_id="req-1", endpoint="fal-ai/kling-video")

        status = await adapter.status(handle)

        assert status.state is JobState.FAILED
        assert status.error_reason == REASON_PROVIDER_REJECTED

    async def test_status_completed_with_unavailable_result_raises(self, config):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/status"):
                return httpx.Response(200, json={"status": "COMPLETED"})
            return httpx.Response(502)

        adapter = FalQueueAdapter(config, client=_client(handler))
        handle = JobHandle(provider="fal", handle_id="req-1", endpoint="fal-ai/kling-video")

        with pytest.raises(ProviderUnavailable):
            await adapter.status(handle)

    def test_parse_webhook_ok(self, config):
        adapter = FalQueueAdapter(config)

        parsed = adapter.parse_webhook(
            {"request_id": "req-1", "status": "OK", "payload": _VIDEO_BODY}
        )

        assert parsed is not None
        handle_id, status = parsed
        assert handle_id == "req-1"
        assert status.state is JobState.SUCCEEDED

    def test_parse_webhook_error(self, config):
        adapter = FalQueueAdapter(config)

        parsed = adapter.parse_webhook(
            {"request_id": "req-1", "status": "ERROR", "error": "GPU fault"}
        )

        assert parsed is not None
        assert parsed[1].state is JobState.FAILED
        assert parsed[1].error == "GPU fault"

    def test_parse_webhook_ok_without_output_fails(self, config):
        adapter = FalQueueAdapter(config)

        parsed = adapter.parse_webhook({"request_id": "req-1", "status": "OK", "payload": {}})

        assert parsed is not None
        assert parsed[1].state is JobState.FAILED

    @pytest.mark.parametrize(
        "payload",
        [None, "text", {}, {"status": "OK"}, {"request_id": "req-1", "status": "WAITING"}],
    )
    def test_parse_webhook_ignores_malformed(self, config, payload):
        assert FalQueueAdapter(config).parse_webhook(payload) is None

    async def test_cancel_puts_cancel_url(self, config):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(202)

        adapter = FalQueueAdapter(config, client=_client(handler))
        await adapter.cancel(
            JobHandle(provider="fal", handle_id="req-9", endpoint="fal-ai/kling-video/v2")
        )

        assert seen[0].method == "PUT"
        assert seen[0].url.path == "/fal-ai/kling-video/requests/req-9/cancel"

    async def test_cancel_swallows_transport_errors(self, config):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        adapter = FalQueueAdapter(config, client=_client(handler))

        await adapter.cancel(
            JobHandle(provider="fal", handle_id="req-9", endpoint="fal-ai/kling-video")
        )
