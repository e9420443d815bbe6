"""Credits API router.

- GET /balance: Balance of the source the user is billed against
- GET /ledger: Ledger entries of that source, newest first

Both take an optional ``workspace_id``; without it the personal balance
is used.
"""

import uuid
from typing import Annotated

from fastapi import APIRouter, Query

from omnigen.api.deps import CurrentUserId, DbSession, Ledger
from omnigen.core.pagination import Pagination
from omnigen.core.responses import DataResponse, ListResponse
from omnigen.schemas.credits import BalanceResponse, LedgerEntryResponse
from omnigen.services.credit_source import resolve_credit_source

router = APIRouter()

_DECIMAL_FMT = "{:.8f}"
WorkspaceFilter = Annotated[
    uuid.UUID | None,
    Query(description="Workspace to resolve the credit source in"),
]


@router.get("/balance")
async def get_balance(
    user_id: CurrentUserId,
    db: DbSession,
    ledger: Ledger,
    workspace_id: WorkspaceFilter = None,
) -> DataResponse[BalanceResponse]:
    """Return the balance of the resolved credit source."""
    source = await resolve_credit_source(db, user_id, workspace_id)
    balance = await ledger.get_balance(db, source)
    return DataResponse(
        data=BalanceResponse(
            source=source.kind,
            workspace_id=source.workspace_id,
            balance=_DECIMAL_FMT.format(balance),
        )
    )


@router.get("/ledger")
async def list_ledger_entries(
    user_id: CurrentUserId,
    db: DbSession,
    ledger: Ledger,
    pagination: Pagination,
    workspace_id: WorkspaceFilter = None,
) -> ListResponse[LedgerEntryResponse]:
    """Return the resolved source's ledger entries, newest first."""
    source = await resolve_credit_source(db, user_id, workspace_id)
    entries, total = await ledger.list_entries(
        db, source, offset=pagination.offset, limit=pagination.limit
    )
    return ListResponse(
        data=[LedgerEntryResponse.from_model(entry) for entry in entries],
        meta=pagination.meta(total),
    )
