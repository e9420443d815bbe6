"""Credit ledger: the only writer of credit balances.

Operations:
- reserve: hold credits on a source before a provider is contacted.
- settle: convert a hold into the final charge, returning any remainder.
- refund: release a hold in full.
- grant: add credits (signup grant, administrative top-up).

Every balance change appends a LedgerEntry in the same transaction as the
balance update, so replaying a source's entries from its opening balance
always reproduces the cached balance. settle and refund re-check
that after writing their entry and log any drift.

Concurrency: reserve serializes per source with an in-process asyncio.Lock
and additionally relies on a conditional ``UPDATE ... WHERE balance >=
amount``, so two processes can never overdraw a source either. settle and
refund claim the reservation with a conditional ``held -> settled/refunded``
update; only the caller that wins the claim touches the balance.
"""

import asyncio
import logging
import uuid
import weakref
from collections.abc import Callable
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from omnigen.core.errors import NotFoundError
from omnigen.models.base import utcnow
from omnigen.models.ledger import (
    RESERVATION_HELD,
    RESERVATION_REFUNDED,
    RESERVATION_SETTLED,
    CreditReservation,
    LedgerEntry,
)
from omnigen.repositories.ledger_repository import LedgerRepository
from omnigen.services.credit_source import CreditSource

logger = logging.getLogger(__name__)

_ZERO = Decimal("0")
_CREDIT_QUANTUM = Decimal("0.00000001")


class InsufficientCredits(Exception):
    """The source cannot cover the requested reservation.

    Attributes:
        available: Balance at the time of the attempt.
        requested: Amount that was requested.
    """

    def __init__(self, available: Decimal, requested: Decimal) -> None:
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient credits: available {available}, requested {requested}"
        )


class ReservationNotFound(Exception):
    """No reservation exists with the given id."""

    def __init__(self, reservation_id: uuid.UUID) -> None:
        self.reservation_id = reservation_id
        super().__init__(f"Reservation {reservation_id} not found")


class InternalInvariantViolation(Exception):
    """A ledger invariant was broken (over-settlement, cache/ledger drift).

    Reported to the operational log; never shown to end users.
    """


def _quantize(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(_CREDIT_QUANTUM, rounding=ROUND_HALF_UP)


def _source_kwargs(source: CreditSource) -> dict:
    return {
        "source_kind": source.kind,
        "user_id": source.user_id,
        "workspace_id": source.workspace_id,
    }


def _reservation_source(reservation: CreditReservation) -> CreditSource:
    return CreditSource(
        kind=reservation.source_kind,
        user_id=reservation.user_id,
        workspace_id=reservation.workspace_id,
    )


class CreditLedger:
    """Reserve, settle, refund, and grant credits.

    Args:
        session_factory: Callable returning a new AsyncSession context.
            ``reserve`` commits in its own session; the other operations run
            in the caller's session and transaction.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        self._session_factory = session_factory
        self._locks: weakref.WeakValueDictionary[tuple, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, source: CreditSource) -> asyncio.Lock:
        lock = self._locks.get(source.lock_key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[source.lock_key] = lock
        return lock

    async def reserve(
        self,
        source: CreditSource,
        amount: Decimal,
        generation_id: uuid.UUID | None = None,
    ) -> CreditReservation:
        """Hold ``amount`` credits on ``source``.

        Debits the source, records a held reservation, and appends a
        ``reserve`` entry, then commits.

        Args:
            source: Balance to debit.
            amount: Credits to hold (zero or positive).
            generation_id: Unit the hold is for.

        Returns:
            The held CreditReservation.

        Raises:
            InsufficientCredits: If the source balance is below ``amount``.
            NotFoundError: If the source's owning row does not exist.
            ValueError: If amount is negative.
        """
        amount = _quantize(amount)
        if amount < _ZERO:
            raise ValueError("reserve amount must not be negative")

        async with self._lock_for(source), self._session_factory() as db:
            new_balance = await LedgerRepository.atomic_debit(
                db, amount=amount, **_source_kwargs(source)
            )
            if new_balance is None:
                available = await LedgerRepository.get_balance(
                    db, **_source_kwargs(source)
                )
                await db.rollback()
                if available is None:
                    raise NotFoundError("Credit source")
                logger.info(
                    "Reservation refused for %s source (user=%s workspace=%s): "
                    "available=%s requested=%s",
                    source.kind,
                    source.user_id,
                    source.workspace_id,
                    available,
                    amount,
                )
                raise InsufficientCredits(available=available, requested=amount)

            reservation = await LedgerRepository.create_reservation(
                db,
                generation_id=generation_id,
                amount=amount,
                **_source_kwargs(source),
            )
            await LedgerRepository.add_entry(
                db,
                operation="reserve",
                amount=amount,
                balance_delta=-amount,
                balance_after=new_balance,
                reservation_id=reservation.id,
                generation_id=generation_id,
                description="Credits reserved",
                **_source_kwargs(source),
            )
            await db.commit()

        logger.debug(
            "Reserved %s credits (reservation=%s, generation=%s)",
            amount,
            reservation.id,
            generation_id,
        )
        return reservation

    async def settle(
        self,
        db: AsyncSession,
        reservation_id: uuid.UUID,
        actual_amount: Decimal,
    ) -> bool:
        """Charge ``actual_amount`` against a held reservation.

        The difference between the held amount and ``actual_amount`` is
        returned to the source. A negative actual amount is treated as zero.
        An actual amount above the held amount is an invariant violation:
        it is logged and the charge is capped at the held amount.

        Runs in the caller's transaction; the caller commits.

        Returns:
            True if this call settled the reservation, False if it was
            already settled or refunded (no ledger change).

        Raises:
            ReservationNotFound: If the reservation does not exist.
        """
        reservation = await LedgerRepository.get_reservation(db, reservation_id)
        if reservation is None:
            raise ReservationNotFound(reservation_id)
        if reservation.status != RESERVATION_HELD:
            return False

        held = _quantize(reservation.amount)
        actual = max(_quantize(actual_amount), _ZERO)
        if actual > held:
            violation = InternalInvariantViolation(
                f"Settle amount {actual} exceeds reservation {reservation_id} "
                f"of {held}; capping at reserved amount"
            )
            logger.error("%s", violation)
            actual = held

        claimed = await LedgerRepository.claim_reservation(
            db,
            reservation_id,
            to_status=RESERVATION_SETTLED,
            settled_amount=actual,
            resolved_at=utcnow(),
        )
        if not claimed:
            return False

        source = _reservation_source(reservation)
        returned = held - actual
        new_balance = await LedgerRepository.atomic_credit(
            db, amount=returned, **_source_kwargs(source)
        )
        await LedgerRepository.add_entry(
            db,
            operation="settle",
            amount=actual,
            balance_delta=returned,
            balance_after=new_balance,
            reservation_id=reservation_id,
            generation_id=reservation.generation_id,
            description="Generation charged",
            **_source_kwargs(source),
        )
        await self._check_replay(db, source, new_balance)
        logger.debug(
            "Settled reservation %s: charged=%s returned=%s", reservation_id, actual, returned
        )
        return True

    async def refund(self, db: AsyncSession, reservation_id: uuid.UUID) -> bool:
        """Release a held reservation in full.

        Runs in the caller's transaction; the caller commits.

        Returns:
            True if this call refunded the reservation, False if it was
            already settled or refunded (no ledger change).

        Raises:
            ReservationNotFound: If the reservation does not exist.
        """
        reservation = await LedgerRepository.get_reservation(db, reservation_id)
        if reservation is None:
            raise ReservationNotFound(reservation_id)
        if reservation.status != RESERVATION_HELD:
            return False

        claimed = await LedgerRepository.claim_reservation(
            db,
            reservation_id,
            to_status=RESERVATION_REFUNDED,
            resolved_at=utcnow(),
        )
        if not claimed:
            return False

        source = _reservation_source(reservation)
        amount = _quantize(reservation.amount)
        new_balance = await LedgerRepository.atomic_credit(
            db, amount=amount, **_source_kwargs(source)
        )
        await LedgerRepository.add_entry(
            db,
            operation="refund",
            amount=amount,
            balance_delta=amount,
            balance_after=new_balance,
            reservation_id=reservation_id,
            generation_id=reservation.generation_id,
            description="Credits refunded",
            **_source_kwargs(source),
        )
        await self._check_replay(db, source, new_balance)
        logger.debug("Refunded reservation %s: %s credits", reservation_id, amount)
        return True

    async def _check_replay(
        self, db: AsyncSession, source: CreditSource, balance_after: Decimal
    ) -> None:
        """Log an InternalInvariantViolation if the ledger no longer replays
        to ``balance_after``. Sources open at zero and are funded only by
        grants, so the replay needs no opening balance.
        """
        replayed = await self.replay_balance(db, source)
        if replayed != _quantize(balance_after):
            violation = InternalInvariantViolation(
                f"Balance drift on {source.kind} source "
                f"(user={source.user_id} workspace={source.workspace_id}): "
                f"cached={_quantize(balance_after)} replayed={replayed}"
            )
            logger.error("%s", violation)

    async def grant(
        self,
        db: AsyncSession,
        source: CreditSource,
        amount: Decimal,
        description: str,
    ) -> Decimal:
        """Add credits to a source (signup grant, top-up).

        Runs in the caller's transaction; the caller commits.

        Returns:
            New balance.

        Raises:
            ValueError: If amount is not positive.
        """
        amount = _quantize(amount)
        if amount <= _ZERO:
            raise ValueError("grant amount must be positive")
        new_balance = await LedgerRepository.atomic_credit(
            db, amount=amount, **_source_kwargs(source)
        )
        await LedgerRepository.add_entry(
            db,
            operation="grant",
            amount=amount,
            balance_delta=amount,
            balance_after=new_balance,
            description=description,
            **_source_kwargs(source),
        )
        return new_balance

    @staticmethod
    async def get_balance(db: AsyncSession, source: CreditSource) -> Decimal:
        """Cached balance of a source.

        Raises:
            NotFoundError: If the source's owning row does not exist.
        """
        balance = await LedgerRepository.get_balance(db, **_source_kwargs(source))
        if balance is None:
            raise NotFoundError("Credit source")
        return _quantize(balance)

    @staticmethod
    async def list_entries(
        db: AsyncSession,
        source: CreditSource,
        *,
        offset: int = 0,
        limit: int = 50,
    ) -> tuple[list[LedgerEntry], int]:
        """Ledger entries of a source, newest first, with total count."""
        return await LedgerRepository.list_entries(
            db, offset=offset, limit=limit, **_source_kwargs(source)
        )

    @staticmethod
    async def replay_balance(
        db: AsyncSession,
        source: CreditSource,
        opening_balance: Decimal = _ZERO,
    ) -> Decimal:
        """Balance reconstructed from the opening balance and every entry."""
        deltas = await LedgerRepository.sum_deltas(db, **_source_kwargs(source))
        return _quantize(Decimal(opening_balance) + deltas)

    async def verify_balance(
        self,
        db: AsyncSession,
        source: CreditSource,
        opening_balance: Decimal = _ZERO,
    ) -> Decimal:
        """Check that the cached balance equals the ledger replay.

        Returns:
            The (agreeing) balance.

        Raises:
            InternalInvariantViolation: If cache and ledger disagree.
        """
        cached = await self.get_balance(db, source)
        replayed = await self.replay_balance(db, source, opening_balance)
        if cached != replayed:
            violation = InternalInvariantViolation(
                f"Balance drift on {source.kind} source "
                f"(user={source.user_id} workspace={source.workspace_id}): "
                f"cached={cached} replayed={replayed}"
            )
            logger.error("%s", violation)
            raise violation
        return cached
