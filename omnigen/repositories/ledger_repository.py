"""Repository for credit reservations, ledger entries, and balance updates.

Provides database access for credit_reservations and ledger_entries plus
atomic balance operations on the row that owns each credit source:

    personal   -> users.credits
    workspace  -> workspaces.credits
    allocated  -> workspace_members.allocated_credits

Only CreditLedger calls the balance methods.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, cast

from sqlalchemy import ColumnElement, func, select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import InstrumentedAttribute

from omnigen.models.ledger import (
    RESERVATION_HELD,
    CreditReservation,
    LedgerEntry,
)
from omnigen.models.user import User
from omnigen.models.workspace import Workspace, WorkspaceMember

SOURCE_PERSONAL = "personal"
SOURCE_WORKSPACE = "workspace"
SOURCE_ALLOCATED = "allocated"


def _balance_target(
    source_kind: str,
    user_id: uuid.UUID,
    workspace_id: uuid.UUID | None,
) -> tuple[type, InstrumentedAttribute[Decimal], list[ColumnElement[bool]]]:
    """Resolve a source to (model, balance column, row filter)."""
    if source_kind == SOURCE_PERSONAL:
        return User, User.credits, [User.id == user_id]
    if workspace_id is None:
        raise ValueError(f"{source_kind} credit source requires a workspace id")
    if source_kind == SOURCE_WORKSPACE:
        return Workspace, Workspace.credits, [Workspace.id == workspace_id]
    if source_kind == SOURCE_ALLOCATED:
        return (
            WorkspaceMember,
            WorkspaceMember.allocated_credits,
            [
                WorkspaceMember.workspace_id == workspace_id,
                WorkspaceMember.user_id == user_id,
            ],
        )
    raise ValueError(f"Unknown credit source kind: {source_kind}")


def _entry_conditions(
    source_kind: str,
    user_id: uuid.UUID,
    workspace_id: uuid.UUID | None,
) -> list[ColumnElement[bool]]:
    conditions: list[ColumnElement[bool]] = [LedgerEntry.source_kind == source_kind]
    if source_kind == SOURCE_PERSONAL:
        conditions.append(LedgerEntry.user_id == user_id)
    elif source_kind == SOURCE_WORKSPACE:
        conditions.append(LedgerEntry.workspace_id == workspace_id)
    else:
        conditions.append(LedgerEntry.workspace_id == workspace_id)
        conditions.append(LedgerEntry.user_id == user_id)
    return conditions


class LedgerRepository:
    """Stateless repository for reservations, entries, and balances.

    All methods are static; there is no instance state. Pass an AsyncSession
    for every call so the caller controls transaction boundaries.
    """

    # -------------------------------------------------------------------
    # Balances
    # -------------------------------------------------------------------

    @staticmethod
    async def get_balance(
        db: AsyncSession,
        *,
        source_kind: str,
        user_id: uuid.UUID,
        workspace_id: uuid.UUID | None = None,
    ) -> Decimal | None:
        """Read the cached balance of a source.

        Returns:
            Current balance, or None if the owning row does not exist.
        """
        _, column, conditions = _balance_target(source_kind, user_id, workspace_id)
        result = await db.execute(select(column).where(*conditions))
        return result.scalar_one_or_none()

    @staticmethod
    async def atomic_debit(
        db: AsyncSession,
        *,
        source_kind: str,
        user_id: uuid.UUID,
        workspace_id: uuid.UUID | None,
        amount: Decimal,
    ) -> Decimal | None:
        """Atomically debit a source if it can cover the amount.

        Uses ``WHERE balance >= amount`` so concurrent debits can never take
        a balance below zero.

        Args:
            db: Async database session.
            source_kind: personal, workspace, or allocated.
            user_id: Billed user.
            workspace_id: Billed workspace (workspace and allocated sources).
            amount: Amount to debit (zero or positive).

        Returns:
            New balance if the debit applied, None if the balance was short.

        Raises:
            ValueError: If amount is negative.
        """
        if amount < Decimal("0"):
            raise ValueError("atomic_debit amount must not be negative")
        model, column, conditions = _balance_target(source_kind, user_id, workspace_id)
        stmt = (
            update(model)
            .where(*conditions, column >= amount)
            .values({column: column - amount})
            .returning(column)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def atomic_credit(
        db: AsyncSession,
        *,
        source_kind: str,
        user_id: uuid.UUID,
        workspace_id: uuid.UUID | None,
        amount: Decimal,
    ) -> Decimal:
        """Atomically credit a source.

        Returns:
            New balance after crediting.

        Raises:
            ValueError: If amount is negative.
            sqlalchemy.exc.NoResultFound: If the owning row does not exist.
        """
        if amount < Decimal("0"):
            raise ValueError("atomic_credit amount must not be negative")
        model, column, conditions = _balance_target(source_kind, user_id, workspace_id)
        stmt = (
            update(model)
            .where(*conditions)
            .values({column: column + amount})
            .returning(column)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        new_balance: Decimal = result.scalar_one()
        return new_balance

    # -------------------------------------------------------------------
    # Reservations
    # -------------------------------------------------------------------

    @staticmethod
    async def create_reservation(
        db: AsyncSession,
        *,
        generation_id: uuid.UUID | None,
        source_kind: str,
        user_id: uuid.UUID,
        workspace_id: uuid.UUID | None,
        amount: Decimal,
    ) -> CreditReservation:
        reservation = CreditReservation(
            generation_id=generation_id,
            source_kind=source_kind,
            user_id=user_id,
            workspace_id=workspace_id,
            amount=amount,
            status=RESERVATION_HELD,
        )
        db.add(reservation)
        await db.flush()
        await db.refresh(reservation)
        return reservation

    @staticmethod
    async def get_reservation(
        db: AsyncSession, reservation_id: uuid.UUID
    ) -> CreditReservation | None:
        return await db.get(CreditReservation, reservation_id, populate_existing=True)

    @staticmethod
    async def claim_reservation(
        db: AsyncSession,
        reservation_id: uuid.UUID,
        *,
        to_status: str,
        resolved_at: datetime,
        settled_amount: Decimal | None = None,
    ) -> bool:
        """Move a held reservation to settled or refunded.

        Returns:
            True if this call resolved the reservation, False if it was
            already resolved.
        """
        stmt = (
            update(CreditReservation)
            .where(
                CreditReservation.id == reservation_id,
                CreditReservation.status == RESERVATION_HELD,
            )
            .values(
                status=to_status,
                settled_amount=settled_amount,
                resolved_at=resolved_at,
            )
            .execution_options(synchronize_session=False)
        )
        result = cast(CursorResult[Any], await db.execute(stmt))
        row_count: int = result.rowcount
        return row_count > 0

    @staticmethod
    async def list_held(
        db: AsyncSession, *, generation_id: uuid.UUID | None = None
    ) -> list[CreditReservation]:
        """Held reservations, optionally only those of one generation unit."""
        stmt = select(CreditReservation).where(
            CreditReservation.status == RESERVATION_HELD
        )
        if generation_id is not None:
            stmt = stmt.where(CreditReservation.generation_id == generation_id)
        result = await db.execute(stmt)
        return list(result.scalars().all())

    # -------------------------------------------------------------------
    # Ledger entries
    # -------------------------------------------------------------------

    @staticmethod
    async def add_entry(
        db: AsyncSession,
        *,
        operation: str,
        source_kind: str,
        user_id: uuid.UUID,
        workspace_id: uuid.UUID | None,
        amount: Decimal,
        balance_delta: Decimal,
        balance_after: Decimal,
        reservation_id: uuid.UUID | None = None,
        generation_id: uuid.UUID | None = None,
        description: str | None = None,
    ) -> LedgerEntry:
        """Append a ledger entry.

        Args:
            db: Async database session.
            operation: reserve, settle, refund, or grant.
            source_kind: personal, workspace, or allocated.
            user_id: Billed user.
            workspace_id: Billed workspace, if any.
            amount: Magnitude of the operation.
            balance_delta: Signed change applied to the source balance.
            balance_after: Source balance after the change.
            reservation_id: Reservation the entry belongs to.
            generation_id: Unit the entry belongs to.
            description: Human-readable description.

        Returns:
            Created LedgerEntry.
        """
        entry = LedgerEntry(
            operation=operation,
            source_kind=source_kind,
            user_id=user_id,
            workspace_id=workspace_id,
            amount=amount,
            balance_delta=balance_delta,
            balance_after=balance_after,
            reservation_id=reservation_id,
            generation_id=generation_id,
            description=description,
        )
        db.add(entry)
        await db.flush()
        return entry

    @staticmethod
    async def list_entries(
        db: AsyncSession,
        *,
        source_kind: str,
        user_id: uuid.UUID,
        workspace_id: uuid.UUID | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> tuple[list[LedgerEntry], int]:
        """List a source's ledger entries, newest first.

        Returns:
            Tuple of (entries list, total count).
        """
        conditions = _entry_conditions(source_kind, user_id, workspace_id)

        count_stmt = select(func.count()).select_from(LedgerEntry).where(*conditions)
        total = (await db.execute(count_stmt)).scalar_one()

        data_stmt = (
            select(LedgerEntry)
            .where(*conditions)
            .order_by(LedgerEntry.created_at.desc())
            .offset(offset)
            .limit(limit)
        )
        result = await db.execute(data_stmt)
        return list(result.scalars().all()), total

    @staticmethod
    async def sum_deltas(
        db: AsyncSession,
        *,
        source_kind: str,
        user_id: uuid.UUID,
        workspace_id: uuid.UUID | None = None,
    ) -> Decimal:
        """Sum of every balance_delta recorded for a source."""
        conditions = _entry_conditions(source_kind, user_id, workspace_id)
        stmt = select(func.coalesce(func.sum(LedgerEntry.balance_delta), 0)).where(
            *conditions
        )
        total = (await db.execute(stmt)).scalar_one()
        return Decimal(str(total))
