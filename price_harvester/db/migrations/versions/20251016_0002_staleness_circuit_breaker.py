"""Add staleness circuit breaker state.

Revision ID: 0002
Revises: 0001
Create Date: 2025-10-16

This migration adds:
- source_product_presence.last_seen_success_at: set only when a run passes
  the circuit breaker
- feed_runs breaker metrics and the expiry_blocked flag and reason
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0002"
down_revision: Union[str, None] = "0001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    with op.batch_alter_table("source_product_presence") as batch_op:
        batch_op.add_column(sa.Column("last_seen_success_at", sa.DateTime(), nullable=True))

    # Existing presence counts as promoted so the first run has a baseline
    op.execute(
        "UPDATE source_product_presence SET last_seen_success_at = last_seen_at "
        "WHERE last_seen_success_at IS NULL"
    )

    with op.batch_alter_table("feed_runs") as batch_op:
        batch_op.add_column(sa.Column("active_count_before", sa.Integer(), nullable=True))
        batch_op.add_column(sa.Column("seen_success_count", sa.Integer(), nullable=True))
        batch_op.add_column(sa.Column("would_expire_count", sa.Integer(), nullable=True))
        batch_op.add_column(sa.Column("url_hash_fallback_count", sa.Integer(), nullable=True))
        batch_op.add_column(
            sa.Column("expiry_blocked", sa.Boolean(), nullable=False, server_default=sa.false())
        )
        batch_op.add_column(sa.Column("expiry_blocked_reason", sa.String(40), nullable=True))


def downgrade() -> None:
    with op.batch_alter_table("feed_runs") as batch_op:
        batch_op.drop_column("expiry_blocked_reason")
        batch_op.drop_column("expiry_blocked")
        batch_op.drop_column("url_hash_fallback_count")
        batch_op.drop_column("would_expire_count")
        batch_op.drop_column("seen_success_count")
        batch_op.drop_column("active_count_before")

    with op.batch_alter_table("source_product_presence") as batch_op:
        batch_op.drop_column("last_seen_success_at")
