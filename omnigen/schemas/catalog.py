"""Model catalog response schema."""

from typing import Any

from pydantic import BaseModel, ConfigDict

from omnigen.models.catalog import AIModel


class ModelResponse(BaseModel):
    """An enabled catalog model.

    ``base_cost`` is the provider cost per output (per 1K tokens for chat),
    as a string with 8 decimal places.
    """

    model_config = ConfigDict(extra="forbid")

    id: str
    name: str
    type: str
    provider: str
    base_cost: str
    options: dict[str, Any]
    max_output_tokens: int | None = None
    fallback_providers: list[str] = []

    @classmethod
    def from_model(cls, model: AIModel) -> "ModelResponse":
        return cls(
            id=model.id,
            name=model.name,
            type=model.type,
            provider=model.provider,
            base_cost=f"{model.base_cost:.8f}",
            options=model.options or {},
            max_output_tokens=model.max_output_tokens,
            fallback_providers=list(model.fallback_providers or []),
        )
