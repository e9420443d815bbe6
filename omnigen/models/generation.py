"""Generation unit model.

One row per (request, model) pair. Units created by the same submit call
share a ``correlation_id``. Status only moves forward:

    pending -> reserving -> dispatched | queued <-> running -> completed | failed

Every status change goes through ``GenerationRepository.transition`` so a
late poll and a late webhook cannot both resolve the same unit.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from omnigen.models.base import (
    CREDIT_NUMERIC,
    Base,
    CreatedAtMixin,
    UUIDPrimaryKeyMixin,
)


class GenerationStatus(str, Enum):
    """Lifecycle states of a generation unit.

    DISPATCHED covers synchronous and streaming calls in flight. Provider
    jobs report QUEUED and RUNNING instead.
    """

    PENDING = "pending"
    RESERVING = "reserving"
    DISPATCHED = "dispatched"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({GenerationStatus.COMPLETED, GenerationStatus.FAILED})
IN_FLIGHT_STATUSES = frozenset(
    {
        GenerationStatus.DISPATCHED,
        GenerationStatus.QUEUED,
        GenerationStatus.RUNNING,
    }
)
UNRESOLVED_STATUSES = frozenset(
    {GenerationStatus.PENDING, GenerationStatus.RESERVING} | IN_FLIGHT_STATUSES
)


class Generation(Base, UUIDPrimaryKeyMixin, CreatedAtMixin):
    """A single generation unit.

    Attributes:
        correlation_id: Shared by all units of one fan-out request.
        user_id: Requesting user.
        workspace_id: Workspace the request was made in (None = personal).
        model_id: Catalog model slug.
        type: 'image', 'video', or 'chat'.
        prompt: Prompt text (chat: the serialized last user message).
        input_images: Optional input image URLs.
        options: Options selected for this model.
        quantity: Requested number of outputs.
        status: GenerationStatus value.
        progress: Provider queue position while queued.
        result: Output payload (urls, text, seed, metadata).
        credits: Credits charged at settlement (estimate while held).
        credit_source: 'personal', 'workspace', or 'allocated'.
        reservation_id: Held reservation for this unit.
        job_handle: Provider job identifier for asynchronous providers.
        provider: Catalog provider that accepted the unit (differs from the
            model's provider after a failover).
        error: User-facing failure message.
        error_type: Failure reason category.
        input_tokens: Chat prompt tokens.
        output_tokens: Chat completion tokens.
        started_at: When the provider was first contacted.
        completed_at: When the unit reached a terminal state.
    """

    __tablename__ = "generations"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'reserving', 'dispatched', 'queued', "
            "'running', 'completed', 'failed')",
            name="ck_generations_status",
        ),
        CheckConstraint("quantity >= 1", name="ck_generations_quantity_positive"),
    )

    correlation_id: Mapped[uuid.UUID] = mapped_column(
        nullable=False,
        index=True,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id"),
        nullable=False,
        index=True,
    )
    workspace_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("workspaces.id"),
        nullable=True,
    )
    model_id: Mapped[str] = mapped_column(
        ForeignKey("ai_models.id"),
        nullable=False,
    )
    type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )
    prompt: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    input_images: Mapped[list[str]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
    )
    options: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
    )
    quantity: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=GenerationStatus.PENDING.value,
        index=True,
    )
    progress: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )
    result: Mapped[dict[str, Any] | None] = mapped_column(
        JSON,
        nullable=True,
    )
    credits: Mapped[Decimal] = mapped_column(
        CREDIT_NUMERIC,
        nullable=False,
        default=Decimal("0"),
    )
    credit_source: Mapped[str | None] = mapped_column(
        String(20),
        nullable=True,
    )
    reservation_id: Mapped[uuid.UUID | None] = mapped_column(
        nullable=True,
    )
    job_handle: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )
    provider: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
    )
    error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    error_type: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
    )
    input_tokens: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )
    output_tokens: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )
    started_at: Mapped[datetime | None] = mapped_column(
        nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
