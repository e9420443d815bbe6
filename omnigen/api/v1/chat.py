"""Chat completions API router.

POST /completions streams Server-Sent Events:
- chat_token: Streaming output token-by-token
- chat_done: Completion finished (credits charged, updated balance)
- chat_error: Completion failed; credits were refunded

Validation, credit resolution, and the reservation happen before the
stream starts, so those failures are ordinary JSON error responses.
"""

from collections.abc import AsyncIterator

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

from omnigen.api.deps import CurrentUserId, Orchestrator
from omnigen.core.config import settings
from omnigen.core.rate_limiting import limiter
from omnigen.schemas.chat import ChatCompletionRequest, SSEEvent

router = APIRouter()


async def _sse(events: AsyncIterator[SSEEvent]) -> AsyncIterator[str]:
    async for event in events:
        yield event.to_sse()


@router.post("/completions")
@limiter.limit(settings.rate_limit_generation)
async def create_chat_completion(
    request: Request,  # noqa: ARG001
    body: ChatCompletionRequest,
    user_id: CurrentUserId,
    orchestrator: Orchestrator,
) -> StreamingResponse:
    """Stream a chat completion.

    The ``X-Generation-Id`` header carries the unit id, which the client
    can pass to POST /generations/{id}/cancel.
    """
    chat = await orchestrator.open_chat(user_id, body)
    return StreamingResponse(
        _sse(chat.events),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Generation-Id": str(chat.generation_id),
        },
    )
