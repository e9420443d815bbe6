"""Credit reservation and ledger entry models.

A CreditReservation is the hold placed on a credit source before a provider
is contacted. It resolves exactly once, to settled or refunded.

LedgerEntry is append-only: rows are never updated or deleted. Replaying
``balance_delta`` for a source from its opening balance reproduces the
cached balance on the owning row.
"""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from omnigen.models.base import (
    CREDIT_NUMERIC,
    Base,
    CreatedAtMixin,
    UUIDPrimaryKeyMixin,
)

RESERVATION_HELD = "held"
RESERVATION_SETTLED = "settled"
RESERVATION_REFUNDED = "refunded"


class CreditReservation(Base, UUIDPrimaryKeyMixin, CreatedAtMixin):
    """Credits held against a source for one generation unit.

    Attributes:
        generation_id: Unit the hold was placed for.
        source_kind: 'personal', 'workspace', or 'allocated'.
        user_id: Billed user (always set).
        workspace_id: Billed workspace (workspace and allocated sources).
        amount: Credits held.
        status: held, settled, or refunded.
        settled_amount: Credits finally charged (settled only).
        resolved_at: When the reservation left the held state.
    """

    __tablename__ = "credit_reservations"
    __table_args__ = (
        CheckConstraint(
            "status IN ('held', 'settled', 'refunded')",
            name="ck_credit_reservations_status",
        ),
        CheckConstraint(
            "source_kind IN ('personal', 'workspace', 'allocated')",
            name="ck_credit_reservations_source_kind",
        ),
        CheckConstraint("amount >= 0", name="ck_credit_reservations_amount_nonneg"),
    )

    generation_id: Mapped[uuid.UUID | None] = mapped_column(
        nullable=True,
        index=True,
    )
    source_kind: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id"),
        nullable=False,
    )
    workspace_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("workspaces.id"),
        nullable=True,
    )
    amount: Mapped[Decimal] = mapped_column(
        CREDIT_NUMERIC,
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=RESERVATION_HELD,
        index=True,
    )
    settled_amount: Mapped[Decimal | None] = mapped_column(
        CREDIT_NUMERIC,
        nullable=True,
    )
    resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )


class LedgerEntry(Base, UUIDPrimaryKeyMixin, CreatedAtMixin):
    """Append-only record of one balance change.

    ``amount`` is the operation's magnitude (reserved, settled, refunded, or
    granted). ``balance_delta`` is the signed change applied to the source:
    negative for reserve, zero or positive for settle (the unused remainder
    returned), positive for refund and grant.
    """

    __tablename__ = "ledger_entries"
    __table_args__ = (
        CheckConstraint(
            "operation IN ('reserve', 'settle', 'refund', 'grant')",
            name="ck_ledger_entries_operation",
        ),
        CheckConstraint(
            "source_kind IN ('personal', 'workspace', 'allocated')",
            name="ck_ledger_entries_source_kind",
        ),
    )

    reservation_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("credit_reservations.id"),
        nullable=True,
        index=True,
    )
    generation_id: Mapped[uuid.UUID | None] = mapped_column(
        nullable=True,
    )
    operation: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )
    source_kind: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id"),
        nullable=False,
        index=True,
    )
    workspace_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("workspaces.id"),
        nullable=True,
        index=True,
    )
    amount: Mapped[Decimal] = mapped_column(
        CREDIT_NUMERIC,
        nullable=False,
    )
    balance_delta: Mapped[Decimal] = mapped_column(
        CREDIT_NUMERIC,
        nullable=False,
    )
    balance_after: Mapped[Decimal] = mapped_column(
        CREDIT_NUMERIC,
        nullable=False,
    )
    description: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
