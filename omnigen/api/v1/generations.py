"""Generations API router.

- POST /: Submit an image or video request to one or more models
- GET /: List the user's generation units
- GET /{generation_id}: Unit status, progress, result, and credits
- POST /{generation_id}/cancel: Stop a streaming (chat) unit
"""

import uuid
from typing import Annotated

from fastapi import APIRouter, Query, Request, status

from omnigen.api.deps import CurrentUserId, Orchestrator
from omnigen.core.config import settings
from omnigen.core.pagination import Pagination
from omnigen.core.rate_limiting import limiter
from omnigen.core.responses import DataResponse, ListResponse
from omnigen.schemas.generation import (
    GenerationCreate,
    GenerationRead,
    GenerationSubmitted,
    UnitSummary,
)

router = APIRouter()


@router.post("", status_code=status.HTTP_202_ACCEPTED)
@limiter.limit(settings.rate_limit_generation)
async def create_generation(
    request: Request,  # noqa: ARG001
    body: GenerationCreate,
    user_id: CurrentUserId,
    orchestrator: Orchestrator,
) -> DataResponse[GenerationSubmitted]:
    """Start a generation on every requested model.

    Returns immediately with one unit per model; poll GET /{id} for each.
    Security: Rate limited per user.
    """
    submitted = await orchestrator.submit(user_id, body)
    return DataResponse(
        data=GenerationSubmitted(
            correlation_id=submitted.correlation_id,
            units=[
                UnitSummary(id=unit.id, model_id=unit.model_id, status=unit.status)
                for unit in submitted.units
            ],
        )
    )


@router.get("")
async def list_generations(
    user_id: CurrentUserId,
    orchestrator: Orchestrator,
    pagination: Pagination,
    correlation_id: Annotated[
        uuid.UUID | None,
        Query(description="Only units of this submission"),
    ] = None,
) -> ListResponse[GenerationRead]:
    """List the user's units, newest first."""
    units, total = await orchestrator.list_units(
        user_id,
        correlation_id=correlation_id,
        offset=pagination.offset,
        limit=pagination.limit,
    )
    return ListResponse(
        data=[GenerationRead.from_model(unit) for unit in units],
        meta=pagination.meta(total),
    )


@router.get("/{generation_id}")
async def get_generation(
    generation_id: uuid.UUID,
    user_id: CurrentUserId,
    orchestrator: Orchestrator,
) -> DataResponse[GenerationRead]:
    """Return one unit."""
    unit = await orchestrator.get_unit(user_id, generation_id)
    return DataResponse(data=GenerationRead.from_model(unit))


@router.post("/{generation_id}/cancel", status_code=status.HTTP_202_ACCEPTED)
async def cancel_generation(
    generation_id: uuid.UUID,
    user_id: CurrentUserId,
    orchestrator: Orchestrator,
) -> DataResponse[GenerationRead]:
    """Stop a streaming unit.

    The stream ends with its final event; output produced so far is kept
    and billed. Image and video units cannot be cancelled (422).
    """
    unit = await orchestrator.cancel(user_id, generation_id)
    return DataResponse(data=GenerationRead.from_model(unit))
