"""Workspace and membership models.

Every user owns exactly one default workspace, created together with the
user. A default workspace always bills the owner's personal balance and
ignores ``credit_mode``. Other workspaces bill either the shared pool
(``credits``) or the member's ``allocated_credits``.
"""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from omnigen.models.base import (
    CREDIT_NUMERIC,
    Base,
    CreatedAtMixin,
    UUIDPrimaryKeyMixin,
    utcnow,
)

CREDIT_MODE_SHARED = "shared"
CREDIT_MODE_INDIVIDUAL = "individual"

ROLE_OWNER = "owner"
ROLE_MEMBER = "member"


class Workspace(Base, UUIDPrimaryKeyMixin, CreatedAtMixin):
    """A billing and sharing scope.

    Attributes:
        id: UUID primary key.
        name: Display name.
        owner_id: FK to the owning user.
        is_default: True for the user's personal workspace.
        credit_mode: 'shared' (one pool) or 'individual' (per-member allocation).
        credits: Shared pool balance (used in shared mode only).
        created_at: Creation timestamp.
    """

    __tablename__ = "workspaces"
    __table_args__ = (
        CheckConstraint(
            "credit_mode IN ('shared', 'individual')",
            name="ck_workspaces_credit_mode",
        ),
        CheckConstraint("credits >= 0", name="ck_workspaces_credits_nonneg"),
    )

    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    owner_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id"),
        nullable=False,
        index=True,
    )
    is_default: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )
    credit_mode: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=CREDIT_MODE_SHARED,
    )
    credits: Mapped[Decimal] = mapped_column(
        CREDIT_NUMERIC,
        nullable=False,
        default=Decimal("0"),
    )


class WorkspaceMember(Base, UUIDPrimaryKeyMixin):
    """Membership of a user in a workspace.

    ``allocated_credits`` is the member's own balance inside an
    individual-mode workspace. Keeping allocations within the shared pool
    is the workspace-management service's job, not the ledger's.
    """

    __tablename__ = "workspace_members"
    __table_args__ = (
        UniqueConstraint("workspace_id", "user_id", name="uq_workspace_members_pair"),
        CheckConstraint("role IN ('owner', 'member')", name="ck_workspace_members_role"),
        CheckConstraint(
            "allocated_credits >= 0",
            name="ck_workspace_members_allocated_nonneg",
        ),
    )

    workspace_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id"),
        nullable=False,
        index=True,
    )
    role: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=ROLE_MEMBER,
    )
    allocated_credits: Mapped[Decimal] = mapped_column(
        CREDIT_NUMERIC,
        nullable=False,
        default=Decimal("0"),
    )
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
