"""Add provider failover columns.

Revision ID: 002_provider_failover
Revises: 001_generation_ledger
Create Date: 2026-10-16

ai_models.fallback_providers lists the providers tried, in order, when a
model's primary provider is unavailable. generations.provider records the
provider that accepted each unit, so a job resumed after a restart is
polled through the adapter that created it.
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

revision: str = "002_provider_failover"
down_revision: str | None = "001_generation_ledger"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.add_column(
        "ai_models",
        sa.Column("fallback_providers", sa.JSON(), server_default="[]", nullable=False),
    )
    op.add_column(
        "generations",
        sa.Column("provider", sa.String(50), nullable=True),
    )


def downgrade() -> None:
    op.drop_column("generations", "provider")
    op.drop_column("ai_models", "fallback_providers")
