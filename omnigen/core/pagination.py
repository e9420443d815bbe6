"""Page/per_page query parameters for the unit and ledger listings."""

from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Query

from omnigen.core.responses import PaginationMeta

DEFAULT_PER_PAGE = 20
MAX_PER_PAGE = 100


@dataclass(frozen=True)
class PaginationParams:
    page: int
    per_page: int

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.per_page

    @property
    def limit(self) -> int:
        return self.per_page

    def meta(self, total: int) -> PaginationMeta:
        """Meta block for a page of a collection of ``total`` items."""
        return PaginationMeta(total=total, page=self.page, per_page=self.per_page)


def pagination_params(
    page: Annotated[int, Query(ge=1, description="Page number (1-indexed)")] = 1,
    per_page: Annotated[
        int, Query(ge=1, le=MAX_PER_PAGE, description="Items per page")
    ] = DEFAULT_PER_PAGE,
) -> PaginationParams:
    return PaginationParams(page=page, per_page=per_page)


Pagination = Annotated[PaginationParams, Depends(pagination_params)]
