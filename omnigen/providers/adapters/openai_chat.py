"""OpenAI chat streaming adapter.

Streams chat completions with ``stream_options={"include_usage": True}`` so
the final chunk carries prompt and completion token counts.
"""

import contextlib
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING

import openai
import structlog
from openai import AsyncOpenAI

from omnigen.providers.base import GenerationRequest, StreamEvent, StreamingAdapter
from omnigen.providers.errors import (
    ProviderError,
    ProviderRejected,
    ProviderUnavailable,
    RateLimitError,
)

if TYPE_CHECKING:
    from omnigen.providers.config import ProviderConfig

logger = structlog.get_logger()


def _classify_openai_error(error: Exception) -> ProviderError:
    """Map OpenAI SDK exceptions to internal error taxonomy.

    Returns a ProviderError subclass instance (does not raise).
    The caller is responsible for raising via ``raise _classify_openai_error(e) from e``.
    """
    if isinstance(error, openai.RateLimitError):
        retry_after = None
        if getattr(error, "response", None) is not None:
            retry_header = error.response.headers.get("retry-after")
            if retry_header is not None:
                with contextlib.suppress(ValueError):
                    retry_after = float(retry_header)
        return RateLimitError(str(error), retry_after_seconds=retry_after)

    # APITimeoutError is a subclass of APIConnectionError
    if isinstance(error, openai.APIConnectionError):
        return ProviderUnavailable(str(error))

    if isinstance(error, openai.APIStatusError) and error.status_code >= 500:
        return ProviderUnavailable(str(error))

    return ProviderRejected(str(error))


class OpenAIChatAdapter(StreamingAdapter):
    """Streaming chat adapter using the OpenAI SDK."""

    @property
    def provider_name(self) -> str:
        return "openai"

    def __init__(self, config: "ProviderConfig") -> None:
        """Initialize OpenAI chat adapter.

        Args:
            config: Provider configuration with the OpenAI API key.
        """
        super().__init__(config)
        self.client = AsyncOpenAI(
            api_key=config.openai_api_key,
            timeout=config.http_timeout_seconds,
            max_retries=0,
        )

    async def open(self, request: GenerationRequest) -> AsyncIterator[StreamEvent]:
        """Stream a chat completion.

        Yields:
            Token events, then a final event with the reported usage.
        """
        api_messages = [
            {"role": msg.role, "content": msg.content} for msg in request.messages
        ]
        logger.info(
            "provider_request_start",
            provider="openai",
            model=request.endpoint,
            message_count=len(api_messages),
        )

        input_tokens: int | None = None
        output_tokens: int | None = None
        try:
            stream = await self.client.chat.completions.create(
                model=request.endpoint,
                messages=api_messages,  # type: ignore[arg-type]
                max_tokens=request.max_output_tokens
                or self.config.default_max_output_tokens,
                stream=True,
                stream_options={"include_usage": True},
            )
            try:
                async for chunk in stream:
                    if chunk.choices and chunk.choices[0].delta.content:
                        yield StreamEvent(text=chunk.choices[0].delta.content)
                    if chunk.usage is not None:
                        input_tokens = chunk.usage.prompt_tokens
                        output_tokens = chunk.usage.completion_tokens
            finally:
                await stream.close()
        except openai.APIError as e:
            logger.error(
                "provider_request_failed",
                provider="openai",
                model=request.endpoint,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise _classify_openai_error(e) from e

        logger.info(
            "provider_request_complete",
            provider="openai",
            model=request.endpoint,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )
        yield StreamEvent(
            done=True,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )

    async def aclose(self) -> None:
        await self.client.close()
