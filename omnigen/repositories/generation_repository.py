"""Repository for generation units.

``transition`` is the only way a unit's status changes. It is a single
conditional UPDATE, so when a poll loop and a webhook race to resolve the
same unit exactly one of them sees ``True``.
"""

import uuid
from collections.abc import Iterable
from typing import Any, cast

from sqlalchemy import func, select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.ext.asyncio import AsyncSession

from omnigen.models.generation import (
    UNRESOLVED_STATUSES,
    Generation,
    GenerationStatus,
)

# Fields transition() may write alongside the status.
# Security: user_id, workspace_id, model_id, and correlation_id are fixed at creation.
_TRANSITION_FIELDS: frozenset[str] = frozenset(
    {
        "progress",
        "result",
        "credits",
        "credit_source",
        "reservation_id",
        "job_handle",
        "provider",
        "error",
        "error_type",
        "input_tokens",
        "output_tokens",
        "started_at",
        "completed_at",
    }
)


class GenerationRepository:
    """Stateless repository for Generation table operations.

    All methods are static; there is no instance state. Pass an AsyncSession
    for every call so the caller controls transaction boundaries.
    """

    @staticmethod
    async def create(
        db: AsyncSession,
        *,
        correlation_id: uuid.UUID,
        user_id: uuid.UUID,
        workspace_id: uuid.UUID | None,
        model_id: str,
        generation_type: str,
        prompt: str,
        options: dict[str, Any] | None = None,
        input_images: list[str] | None = None,
        quantity: int = 1,
    ) -> Generation:
        """Create a unit in the pending state.

        Args:
            db: Async database session.
            correlation_id: Shared id of the fan-out request.
            user_id: Requesting user.
            workspace_id: Workspace the request was made in.
            model_id: Catalog slug.
            generation_type: image, video, or chat.
            prompt: Prompt text.
            options: Options selected for this model.
            input_images: Optional input image URLs.
            quantity: Number of outputs requested.

        Returns:
            Created Generation.
        """
        generation = Generation(
            correlation_id=correlation_id,
            user_id=user_id,
            workspace_id=workspace_id,
            model_id=model_id,
            type=generation_type,
            prompt=prompt,
            options=options or {},
            input_images=input_images or [],
            quantity=quantity,
            status=GenerationStatus.PENDING.value,
        )
        db.add(generation)
        await db.flush()
        await db.refresh(generation)
        return generation

    @staticmethod
    async def get_by_id(
        db: AsyncSession, generation_id: uuid.UUID
    ) -> Generation | None:
        return await db.get(Generation, generation_id, populate_existing=True)

    @staticmethod
    async def get_for_user(
        db: AsyncSession,
        *,
        generation_id: uuid.UUID,
        user_id: uuid.UUID,
    ) -> Generation | None:
        """Fetch a unit owned by the given user.

        Returns None both for missing units and for units of other users.
        """
        stmt = (
            select(Generation)
            .where(Generation.id == generation_id, Generation.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_by_job_handle(
        db: AsyncSession, job_handle: str
    ) -> Generation | None:
        stmt = (
            select(Generation)
            .where(Generation.job_handle == job_handle)
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        return result.scalars().first()

    @staticmethod
    async def list_for_user(
        db: AsyncSession,
        user_id: uuid.UUID,
        *,
        correlation_id: uuid.UUID | None = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[Generation], int]:
        """List a user's units, newest first.

        Args:
            db: Async database session.
            user_id: Owner of the units.
            correlation_id: Optional filter to one fan-out request.
            offset: Number of records to skip.
            limit: Maximum records to return.

        Returns:
            Tuple of (units list, total count).
        """
        conditions = [Generation.user_id == user_id]
        if correlation_id is not None:
            conditions.append(Generation.correlation_id == correlation_id)

        count_stmt = select(func.count()).select_from(Generation).where(*conditions)
        total = (await db.execute(count_stmt)).scalar_one()

        data_stmt = (
            select(Generation)
            .where(*conditions)
            .order_by(Generation.created_at.desc(), Generation.model_id)
            .offset(offset)
            .limit(limit)
        )
        result = await db.execute(data_stmt)
        return list(result.scalars().all()), total

    @staticmethod
    async def list_unresolved(db: AsyncSession) -> list[Generation]:
        """List every unit that has not reached a terminal state."""
        stmt = select(Generation).where(
            Generation.status.in_([status.value for status in UNRESOLVED_STATUSES])
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def transition(
        db: AsyncSession,
        generation_id: uuid.UUID,
        from_statuses: Iterable[GenerationStatus],
        to_status: GenerationStatus,
        **fields: Any,
    ) -> bool:
        """Move a unit to ``to_status`` if it is currently in ``from_statuses``.

        Args:
            db: Async database session.
            generation_id: Unit to update.
            from_statuses: Statuses the unit must be in for the update to apply.
            to_status: New status.
            **fields: Extra columns to write in the same statement.

        Returns:
            True if this call moved the unit, False if another writer got
            there first or the unit was in an unexpected state.

        Raises:
            ValueError: If a field is not writable through a transition.
        """
        invalid = set(fields) - _TRANSITION_FIELDS
        if invalid:
            raise ValueError(f"Fields not writable on transition: {sorted(invalid)}")

        stmt = (
            update(Generation)
            .where(
                Generation.id == generation_id,
                Generation.status.in_([status.value for status in from_statuses]),
            )
            .values(status=to_status.value, **fields)
            .execution_options(synchronize_session=False)
        )
        result = cast(CursorResult[Any], await db.execute(stmt))
        row_count: int = result.rowcount
        return row_count > 0
