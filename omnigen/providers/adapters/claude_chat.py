"""Claude/Anthropic chat streaming adapter.

Uses ``client.messages.stream``; usage comes from the final message once
the stream has ended.
"""

import contextlib
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING

import anthropic
import structlog
from anthropic import AsyncAnthropic

from omnigen.providers.base import (
    ChatMessage,
    GenerationRequest,
    StreamEvent,
    StreamingAdapter,
)
from omnigen.providers.errors import (
    ProviderError,
    ProviderRejected,
    ProviderUnavailable,
    RateLimitError,
)

if TYPE_CHECKING:
    from omnigen.providers.config import ProviderConfig

logger = structlog.get_logger()


def _classify_claude_error(error: Exception) -> ProviderError:
    """Map Claude/Anthropic exceptions to internal error taxonomy.

    Returns a ProviderError subclass instance (does not raise).
    The caller is responsible for raising via ``raise _classify_claude_error(e) from e``.
    """
    if isinstance(error, anthropic.RateLimitError):
        retry_after = None
        if getattr(error, "response", None) is not None:
            retry_header = error.response.headers.get("retry-after")
            if retry_header is not None:
                with contextlib.suppress(ValueError):
                    retry_after = float(retry_header)
        return RateLimitError(str(error), retry_after_seconds=retry_after)

    if isinstance(error, anthropic.APIConnectionError):
        return ProviderUnavailable(str(error))

    # 529 overloaded and other server-side failures
    if isinstance(error, anthropic.APIStatusError) and error.status_code >= 500:
        return ProviderUnavailable(str(error))

    return ProviderRejected(str(error))


def _split_system(messages: list[ChatMessage]) -> tuple[str | None, list[dict]]:
    """Extract the system prompt; Anthropic takes it outside the message list."""
    system_parts: list[str] = []
    api_messages: list[dict] = []
    for msg in messages:
        if msg.role == "system":
            system_parts.append(msg.content)
        else:
            api_messages.append({"role": msg.role, "content": msg.content})
    return ("\n\n".join(system_parts) or None), api_messages


class ClaudeChatAdapter(StreamingAdapter):
    """Streaming chat adapter using the Anthropic SDK."""

    @property
    def provider_name(self) -> str:
        return "claude"

    def __init__(self, config: "ProviderConfig") -> None:
        """Initialize Claude chat adapter.

        Args:
            config: Provider configuration with the Anthropic API key.
        """
        super().__init__(config)
        self.client = AsyncAnthropic(
            api_key=config.anthropic_api_key,
            timeout=config.http_timeout_seconds,
            max_retries=0,
        )

    async def open(self, request: GenerationRequest) -> AsyncIterator[StreamEvent]:
        """Stream a chat completion.

        Yields:
            Token events, then a final event with the reported usage.
        """
        system_msg, api_messages = _split_system(request.messages)
        kwargs: dict = {
            "model": request.endpoint,
            "max_tokens": request.max_output_tokens
            or self.config.default_max_output_tokens,
            "messages": api_messages,
        }
        if system_msg:
            kwargs["system"] = system_msg

        logger.info(
            "provider_request_start",
            provider="claude",
            model=request.endpoint,
            message_count=len(api_messages),
        )

        try:
            async with self.client.messages.stream(**kwargs) as stream:
                async for text in stream.text_stream:
                    yield StreamEvent(text=text)
                final = await stream.get_final_message()
        except anthropic.APIError as e:
            logger.error(
                "provider_request_failed",
                provider="claude",
                model=request.endpoint,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise _classify_claude_error(e) from e

        logger.info(
            "provider_request_complete",
            provider="claude",
            model=request.endpoint,
            input_tokens=final.usage.input_tokens,
            output_tokens=final.usage.output_tokens,
        )
        yield StreamEvent(
            done=True,
            input_tokens=final.usage.input_tokens,
            output_tokens=final.usage.output_tokens,
        )

    async def aclose(self) -> None:
        await self.client.close()
