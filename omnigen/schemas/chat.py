"""Chat completion request and SSE event schemas.

Event Types:
- chat_token: Streaming output token-by-token
- chat_done: Completion finished; carries the credits charged and the balance
- chat_error: Completion failed; credits were refunded
"""

import uuid
from typing import Literal

from pydantic import BaseModel, Field, field_validator

# =============================================================================
# Request Schemas
# =============================================================================

_MAX_MESSAGES = 200
_MAX_MESSAGE_CHARS = 100_000


class ChatMessageIn(BaseModel):
    """A single conversation message.

    Attributes:
        role: system, user, or assistant.
        content: Message text.
    """

    role: Literal["system", "user", "assistant"]
    content: str = Field(..., max_length=_MAX_MESSAGE_CHARS)


class ChatCompletionRequest(BaseModel):
    """Request body for POST /chat/completions.

    Attributes:
        model: Catalog id of a chat model.
        messages: Conversation so far; must end with a user message.
        workspace_id: Workspace to bill (None = personal balance).
        max_output_tokens: Optional lower output cap than the model's.
    """

    model: str = Field(..., min_length=1, max_length=100)
    messages: list[ChatMessageIn] = Field(..., min_length=1, max_length=_MAX_MESSAGES)
    workspace_id: uuid.UUID | None = None
    max_output_tokens: int | None = Field(default=None, ge=1)

    @field_validator("messages")
    @classmethod
    def last_message_from_user(cls, v: list[ChatMessageIn]) -> list[ChatMessageIn]:
        """Validate the conversation ends with a non-empty user message."""
        if v[-1].role != "user" or not v[-1].content.strip():
            msg = "The last message must be a non-empty user message"
            raise ValueError(msg)
        return v


# =============================================================================
# SSE Event Schemas
# =============================================================================


class SSEEvent(BaseModel):
    """Base class for all SSE events.

    All events have a type field and can serialize to SSE format.
    """

    type: str

    def to_sse(self) -> str:
        """Serialize event to SSE wire format.

        Returns:
            String in format: "data: {json}\n\n"
        """
        return f"data: {self.model_dump_json()}\n\n"


class ChatTokenEvent(SSEEvent):
    """Streaming token event.

    Attributes:
        type: Always "chat_token".
        text: The token text to append.
    """

    type: Literal["chat_token"] = "chat_token"
    text: str = Field(..., description="Token text to append to message")


class ChatDoneEvent(SSEEvent):
    """Completion finished.

    Sent after normal completion and after a cancellation that produced
    output (the partial transcript is kept and billed).

    Attributes:
        type: Always "chat_done".
        generation_id: The chat unit.
        credits: Credits charged.
        balance: Balance of the billed source after settlement.
        input_tokens: Prompt tokens billed.
        output_tokens: Completion tokens billed.
        cancelled: True if the stream was stopped early.
    """

    type: Literal["chat_done"] = "chat_done"
    generation_id: str
    credits: str
    balance: str
    input_tokens: int
    output_tokens: int
    cancelled: bool = False


class ChatErrorEvent(SSEEvent):
    """Completion failed; the reservation was refunded.

    Attributes:
        type: Always "chat_error".
        generation_id: The chat unit.
        reason: Failure reason category.
        message: Human-readable message.
    """

    type: Literal["chat_error"] = "chat_error"
    generation_id: str
    reason: str
    message: str
