"""Create generation and credit ledger tables.

Revision ID: 001_generation_ledger
Revises:
Create Date: 2026-10-16

Creates users, workspaces, workspace_members, ai_models, pricing_settings,
generations, credit_reservations, and ledger_entries. Balances are cached
on users.credits, workspaces.credits, and workspace_members.allocated_credits;
ledger_entries is the append-only history of every change to them.
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

revision: str = "001_generation_ledger"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

# Shared column types
_PG_UUID = sa.dialects.postgresql.UUID(as_uuid=True)
_UUID_DEFAULT = sa.text("gen_random_uuid()")
_CREDITS = sa.Numeric(precision=18, scale=8)
_TIMESTAMP = sa.DateTime(timezone=True)


def _id_column() -> sa.Column:
    return sa.Column("id", _PG_UUID, server_default=_UUID_DEFAULT, primary_key=True)


def _created_at_column() -> sa.Column:
    return sa.Column(
        "created_at", _TIMESTAMP, server_default=sa.func.now(), nullable=False
    )


def upgrade() -> None:
    """Create all generation and ledger tables."""
    # 1. Balance holders
    op.create_table(
        "users",
        _id_column(),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("credits", _CREDITS, server_default="0", nullable=False),
        _created_at_column(),
        sa.CheckConstraint("credits >= 0", name="ck_users_credits_nonneg"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "workspaces",
        _id_column(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("owner_id", _PG_UUID, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("is_default", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("credit_mode", sa.String(20), server_default="shared", nullable=False),
        sa.Column("credits", _CREDITS, server_default="0", nullable=False),
        _created_at_column(),
        sa.CheckConstraint(
            "credit_mode IN ('shared', 'individual')",
            name="ck_workspaces_credit_mode",
        ),
        sa.CheckConstraint("credits >= 0", name="ck_workspaces_credits_nonneg"),
    )
    op.create_index("ix_workspaces_owner_id", "workspaces", ["owner_id"])
    # One default workspace per user
    op.create_index(
        "uq_workspaces_default_owner",
        "workspaces",
        ["owner_id"],
        unique=True,
        postgresql_where=sa.text("is_default"),
    )

    op.create_table(
        "workspace_members",
        _id_column(),
        sa.Column(
            "workspace_id",
            _PG_UUID,
            sa.ForeignKey("workspaces.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_id", _PG_UUID, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("role", sa.String(20), server_default="member", nullable=False),
        sa.Column("allocated_credits", _CREDITS, server_default="0", nullable=False),
        sa.Column("joined_at", _TIMESTAMP, server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("workspace_id", "user_id", name="uq_workspace_members_pair"),
        sa.CheckConstraint("role IN ('owner', 'member')", name="ck_workspace_members_role"),
        sa.CheckConstraint(
            "allocated_credits >= 0",
            name="ck_workspace_members_allocated_nonneg",
        ),
    )
    op.create_index(
        "ix_workspace_members_workspace_id", "workspace_members", ["workspace_id"]
    )
    op.create_index("ix_workspace_members_user_id", "workspace_members", ["user_id"])

    # 2. Catalog and pricing settings
    op.create_table(
        "ai_models",
        sa.Column("id", sa.String(100), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("provider", sa.String(50), nullable=False),
        sa.Column("endpoint", sa.String(255), nullable=False),
        sa.Column("base_cost", _CREDITS, nullable=False),
        sa.Column("enabled", sa.Boolean(), server_default="true", nullable=False),
        sa.Column("options", sa.JSON(), server_default="{}", nullable=False),
        sa.Column("max_output_tokens", sa.Integer(), nullable=True),
        sa.Column("max_wait_seconds", sa.Float(), nullable=True),
        sa.CheckConstraint("type IN ('image', 'video', 'chat')", name="ck_ai_models_type"),
        sa.CheckConstraint("base_cost >= 0", name="ck_ai_models_base_cost_nonneg"),
    )

    op.create_table(
        "pricing_settings",
        sa.Column("key", sa.String(100), primary_key=True),
        sa.Column("value", sa.String(255), nullable=False),
        sa.Column("updated_at", _TIMESTAMP, server_default=sa.func.now(), nullable=False),
    )
    op.execute(
        """
        INSERT INTO pricing_settings (key, value) VALUES
            ('profitMargin', '0'),
            ('profitMarginImage', '0'),
            ('profitMarginVideo', '0'),
            ('profitMarginChat', '0'),
            ('creditPrice', '1.00'),
            ('freeCredits', '10')
        """
    )

    # 3. Generation units
    op.create_table(
        "generations",
        _id_column(),
        sa.Column("correlation_id", _PG_UUID, nullable=False),
        sa.Column("user_id", _PG_UUID, sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "workspace_id", _PG_UUID, sa.ForeignKey("workspaces.id"), nullable=True
        ),
        sa.Column(
            "model_id", sa.String(100), sa.ForeignKey("ai_models.id"), nullable=False
        ),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("input_images", sa.JSON(), server_default="[]", nullable=False),
        sa.Column("options", sa.JSON(), server_default="{}", nullable=False),
        sa.Column("quantity", sa.Integer(), server_default="1", nullable=False),
        sa.Column("status", sa.String(20), server_default="pending", nullable=False),
        sa.Column("progress", sa.Integer(), nullable=True),
        sa.Column("result", sa.JSON(), nullable=True),
        sa.Column("credits", _CREDITS, server_default="0", nullable=False),
        sa.Column("credit_source", sa.String(20), nullable=True),
        sa.Column("reservation_id", _PG_UUID, nullable=True),
        sa.Column("job_handle", sa.String(255), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("error_type", sa.String(50), nullable=True),
        sa.Column("input_tokens", sa.Integer(), nullable=True),
        sa.Column("output_tokens", sa.Integer(), nullable=True),
        sa.Column("started_at", _TIMESTAMP, nullable=True),
        sa.Column("completed_at", _TIMESTAMP, nullable=True),
        _created_at_column(),
        sa.CheckConstraint(
            "status IN ('pending', 'reserving', 'dispatched', 'queued', "
            "'running', 'completed', 'failed')",
            name="ck_generations_status",
        ),
        sa.CheckConstraint("quantity >= 1", name="ck_generations_quantity_positive"),
    )
    op.create_index("ix_generations_correlation_id", "generations", ["correlation_id"])
    op.create_index(
        "ix_generations_user_created",
        "generations",
        ["user_id", sa.text("created_at DESC")],
    )
    op.create_index("ix_generations_status", "generations", ["status"])
    op.create_index("ix_generations_job_handle", "generations", ["job_handle"])

    # 4. Reservations and the ledger
    op.create_table(
        "credit_reservations",
        _id_column(),
        sa.Column("generation_id", _PG_UUID, nullable=True),
        sa.Column("source_kind", sa.String(20), nullable=False),
        sa.Column("user_id", _PG_UUID, sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "workspace_id", _PG_UUID, sa.ForeignKey("workspaces.id"), nullable=True
        ),
        sa.Column("amount", _CREDITS, nullable=False),
        sa.Column("status", sa.String(20), server_default="held", nullable=False),
        sa.Column("settled_amount", _CREDITS, nullable=True),
        sa.Column("resolved_at", _TIMESTAMP, nullable=True),
        _created_at_column(),
        sa.CheckConstraint(
            "status IN ('held', 'settled', 'refunded')",
            name="ck_credit_reservations_status",
        ),
        sa.CheckConstraint(
            "source_kind IN ('personal', 'workspace', 'allocated')",
            name="ck_credit_reservations_source_kind",
        ),
        sa.CheckConstraint("amount >= 0", name="ck_credit_reservations_amount_nonneg"),
    )
    op.create_index(
        "ix_credit_reservations_generation_id", "credit_reservations", ["generation_id"]
    )
    op.create_index("ix_credit_reservations_status", "credit_reservations", ["status"])

    op.create_table(
        "ledger_entries",
        _id_column(),
        sa.Column(
            "reservation_id",
            _PG_UUID,
            sa.ForeignKey("credit_reservations.id"),
            nullable=True,
        ),
        sa.Column("generation_id", _PG_UUID, nullable=True),
        sa.Column("operation", sa.String(20), nullable=False),
        sa.Column("source_kind", sa.String(20), nullable=False),
        sa.Column("user_id", _PG_UUID, sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "workspace_id", _PG_UUID, sa.ForeignKey("workspaces.id"), nullable=True
        ),
        sa.Column("amount", _CREDITS, nullable=False),
        sa.Column("balance_delta", _CREDITS, nullable=False),
        sa.Column("balance_after", _CREDITS, nullable=False),
        sa.Column("description", sa.String(255), nullable=True),
        _created_at_column(),
        sa.CheckConstraint(
            "operation IN ('reserve', 'settle', 'refund', 'grant')",
            name="ck_ledger_entries_operation",
        ),
        sa.CheckConstraint(
            "source_kind IN ('personal', 'workspace', 'allocated')",
            name="ck_ledger_entries_source_kind",
        ),
    )
    op.create_index(
        "ix_ledger_entries_reservation_id", "ledger_entries", ["reservation_id"]
    )
    op.create_index(
        "ix_ledger_entries_user_created",
        "ledger_entries",
        ["user_id", sa.text("created_at DESC")],
    )
    op.create_index("ix_ledger_entries_workspace_id", "ledger_entries", ["workspace_id"])


def downgrade() -> None:
    """Drop all generation and ledger tables."""
    op.drop_table("ledger_entries")
    op.drop_table("credit_reservations")
    op.drop_table("generations")
    op.drop_table("pricing_settings")
    op.drop_table("ai_models")
    op.drop_table("workspace_members")
    op.drop_table("workspaces")
    op.drop_table("users")
