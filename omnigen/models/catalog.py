"""Model catalog ORM model.

One row per generation model the platform exposes. Curation happens in the
admin tooling; the generation core only reads these rows.
"""

from decimal import Decimal
from typing import Any

from sqlalchemy import JSON, Boolean, CheckConstraint, Float, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from omnigen.models.base import CREDIT_NUMERIC, Base

GENERATION_TYPES = ("image", "video", "chat")


class AIModel(Base):
    """A generation model and its pricing inputs.

    Attributes:
        id: Catalog slug (e.g. "flux-schnell").
        name: Display name.
        type: 'image', 'video', or 'chat'.
        provider: Provider identifier ("fal", "replicate", "openai", "claude").
        endpoint: Provider-side model path or identifier.
        base_cost: Provider cost in USD per output unit, or per 1K tokens for chat.
        enabled: Disabled models are rejected at submit time.
        options: Selectable parameters. Shape:
            ``{"image_size": {"choices": [{"value": "square_hd", "priceMultiplier": 1}]}}``
        max_output_tokens: Chat only. Upper bound used for the reservation estimate.
        max_wait_seconds: Video only. Wall-clock limit for the provider job.
        fallback_providers: Providers tried, in order, when ``provider`` is
            unavailable or out of rotation. Image and video only.
    """

    __tablename__ = "ai_models"
    __table_args__ = (
        CheckConstraint("type IN ('image', 'video', 'chat')", name="ck_ai_models_type"),
        CheckConstraint("base_cost >= 0", name="ck_ai_models_base_cost_nonneg"),
    )

    id: Mapped[str] = mapped_column(
        String(100),
        primary_key=True,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )
    provider: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )
    endpoint: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    base_cost: Mapped[Decimal] = mapped_column(
        CREDIT_NUMERIC,
        nullable=False,
    )
    enabled: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
    )
    options: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
    )
    max_output_tokens: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )
    max_wait_seconds: Mapped[float | None] = mapped_column(
        Float,
        nullable=True,
    )
    fallback_providers: Mapped[list[str]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
    )
