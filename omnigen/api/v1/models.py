"""Model catalog API router (read-only)."""

from typing import Annotated, Literal

from fastapi import APIRouter, Query

from omnigen.api.deps import CurrentUserId, DbSession
from omnigen.core.responses import DataResponse
from omnigen.repositories.catalog_repository import CatalogRepository
from omnigen.schemas.catalog import ModelResponse

router = APIRouter()


@router.get("")
async def list_models(
    _user_id: CurrentUserId,
    db: DbSession,
    type: Annotated[  # noqa: A002
        Literal["image", "video", "chat"] | None,
        Query(description="Filter: image, video, chat"),
    ] = None,
) -> DataResponse[list[ModelResponse]]:
    """Return enabled catalog models, ordered by name."""
    models = await CatalogRepository.list_enabled(db, generation_type=type)
    return DataResponse(data=[ModelResponse.from_model(model) for model in models])
