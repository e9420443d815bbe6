"""Generation request and response schemas."""

import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from omnigen.models.generation import Generation

_DECIMAL_FMT = "{:.8f}"


class GenerationCreate(BaseModel):
    """Request body for POST /generations.

    Attributes:
        models: Catalog ids to run the prompt against (fan-out).
        type: image or video. Chat goes through /chat/completions.
        prompt: Prompt text.
        options: Selected options keyed by model id.
        quantity: Outputs per model.
        input_images: Optional input image URLs.
        workspace_id: Workspace to bill (None = personal balance).
    """

    models: list[str] = Field(..., min_length=1)
    type: Literal["image", "video"]
    prompt: str = Field(..., min_length=1, max_length=10_000)
    options: dict[str, dict[str, Any]] = Field(default_factory=dict)
    quantity: int = Field(default=1, ge=1, le=8)
    input_images: list[str] = Field(default_factory=list, max_length=8)
    workspace_id: uuid.UUID | None = None

    @field_validator("prompt", mode="before")
    @classmethod
    def strip_prompt(cls, v: str) -> str:
        """Strip whitespace from prompt."""
        if isinstance(v, str):
            return v.strip()
        return v


class UnitSummary(BaseModel):
    """Unit id and status returned on submit."""

    id: uuid.UUID
    model_id: str
    status: str


class GenerationSubmitted(BaseModel):
    """Response body for POST /generations."""

    correlation_id: uuid.UUID
    units: list[UnitSummary]


class GenerationRead(BaseModel):
    """A generation unit as returned by the API.

    ``result`` and the final ``credits`` are present once the unit
    completes. Failed units carry ``error`` and ``error_type``.
    """

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    correlation_id: uuid.UUID
    model_id: str
    type: str
    status: str
    progress: int | None = None
    prompt: str
    options: dict[str, Any]
    quantity: int
    result: dict[str, Any] | None = None
    credits: str
    credit_source: str | None = None
    provider: str | None = None
    error: str | None = None
    error_type: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_model(cls, generation: Generation) -> "GenerationRead":
        return cls(
            id=generation.id,
            correlation_id=generation.correlation_id,
            model_id=generation.model_id,
            type=generation.type,
            status=generation.status,
            progress=generation.progress,
            prompt=generation.prompt,
            options=generation.options or {},
            quantity=generation.quantity,
            result=generation.result,
            credits=_DECIMAL_FMT.format(generation.credits),
            credit_source=generation.credit_source,
            provider=generation.provider,
            error=generation.error,
            error_type=generation.error_type,
            input_tokens=generation.input_tokens,
            output_tokens=generation.output_tokens,
            created_at=generation.created_at,
            started_at=generation.started_at,
            completed_at=generation.completed_at,
        )
