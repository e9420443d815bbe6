"""User model - personal credit balance holder.

The ``credits`` column is the cached personal balance. It is written only
by the credit ledger, which appends a LedgerEntry for every change.
"""

from decimal import Decimal

from sqlalchemy import CheckConstraint, String
from sqlalchemy.orm import Mapped, mapped_column

from omnigen.models.base import (
    CREDIT_NUMERIC,
    Base,
    CreatedAtMixin,
    UUIDPrimaryKeyMixin,
)


class User(Base, UUIDPrimaryKeyMixin, CreatedAtMixin):
    """User account as seen by the generation core.

    Attributes:
        id: UUID primary key (issued by the identity service).
        email: Unique email address.
        name: Display name.
        credits: Cached personal balance. Never negative.
        created_at: Account creation timestamp.
    """

    __tablename__ = "users"
    __table_args__ = (CheckConstraint("credits >= 0", name="ck_users_credits_nonneg"),)

    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
    )
    name: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    credits: Mapped[Decimal] = mapped_column(
        CREDIT_NUMERIC,
        nullable=False,
        default=Decimal("0"),
    )
