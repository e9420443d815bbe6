"""SQLAlchemy base classes and common column helpers.

Column types are kept portable (``Uuid``, ``Numeric``, ``JSON``) so the same
models run against PostgreSQL in production and SQLite in tests. Defaults
are generated in Python rather than by server-side functions for the same
reason.
"""

import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import DateTime, Numeric, Uuid
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Credits and USD costs: 18 digits, 8 after the decimal point.
CREDIT_NUMERIC = Numeric(18, 8)


def utcnow() -> datetime:
    """Timezone-aware current time, used as the default for timestamps."""
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    type_annotation_map = {
        datetime: DateTime(timezone=True),
        uuid.UUID: Uuid(),
        Decimal: CREDIT_NUMERIC,
    }


class UUIDPrimaryKeyMixin:
    """Mixin that adds a client-generated UUID primary key."""

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        primary_key=True,
        default=uuid.uuid4,
    )


class CreatedAtMixin:
    """Mixin that adds an immutable created_at column."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
