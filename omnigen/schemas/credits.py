"""Credit balance and ledger response schemas.

Credit amounts are strings with 8 decimal places.
"""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict

from omnigen.models.ledger import LedgerEntry

_DECIMAL_FMT = "{:.8f}"


class BalanceResponse(BaseModel):
    """Response for GET /api/v1/credits/balance.

    Attributes:
        source: personal, workspace, or allocated.
        workspace_id: Billed workspace (None for personal).
        balance: Current balance.
    """

    model_config = ConfigDict(extra="forbid")

    source: str
    workspace_id: uuid.UUID | None = None
    balance: str


class LedgerEntryResponse(BaseModel):
    """One ledger entry."""

    model_config = ConfigDict(extra="forbid")

    id: uuid.UUID
    operation: str
    amount: str
    balance_delta: str
    balance_after: str
    generation_id: uuid.UUID | None = None
    reservation_id: uuid.UUID | None = None
    description: str | None = None
    created_at: datetime

    @classmethod
    def from_model(cls, entry: LedgerEntry) -> "LedgerEntryResponse":
        return cls(
            id=entry.id,
            operation=entry.operation,
            amount=_DECIMAL_FMT.format(entry.amount),
            balance_delta=_DECIMAL_FMT.format(entry.balance_delta),
            balance_after=_DECIMAL_FMT.format(entry.balance_after),
            generation_id=entry.generation_id,
            reservation_id=entry.reservation_id,
            description=entry.description,
            created_at=entry.created_at,
        )
