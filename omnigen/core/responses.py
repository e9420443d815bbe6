"""Response envelope models.

Every endpoint answers with ``{"data": ...}`` on success, lists add a
``meta`` block, and errors use ``{"error": {...}}``.
"""

from typing import Generic, TypeVar

from pydantic import BaseModel, computed_field

T = TypeVar("T")


class PaginationMeta(BaseModel):
    """Pagination metadata for collections.

    Attributes:
        total: Total number of items across all pages.
        page: Current page number (1-indexed).
        per_page: Number of items per page.
    """

    total: int
    page: int
    per_page: int

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_pages(self) -> int:
        """Number of pages needed to display all items (0 when empty)."""
        if self.total == 0:
            return 0
        return (self.total + self.per_page - 1) // self.per_page


class DataResponse(BaseModel, Generic[T]):
    """Envelope for a single resource.

    Usage:
        @router.get("/generations/{generation_id}")
        async def get_generation(...) -> DataResponse[GenerationUnitResponse]:
            return DataResponse(data=unit)
    """

    data: T


class ListResponse(BaseModel, Generic[T]):
    """Envelope for a page of resources plus pagination meta."""

    data: list[T]
    meta: PaginationMeta


class ErrorDetail(BaseModel):
    """Error body.

    Attributes:
        code: Machine-readable error code (e.g., "INSUFFICIENT_CREDITS").
        message: Human-readable error message.
        details: Optional list of field-level errors or billing context.
    """

    code: str
    message: str
    details: list[dict] | None = None


class ErrorResponse(BaseModel):
    """Error envelope used by every exception handler."""

    error: ErrorDetail
