"""Bridge transactions, sync checkpoint and flow time series.

Revision ID: 001_bridge_flow
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_bridge_flow"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Canonical bridge transactions, keyed by tx hash
    op.create_table(
        "transactions",
        sa.Column("id", sa.String(66), nullable=False),
        sa.Column("hash", sa.String(66), nullable=False),
        sa.Column("from_address", sa.String(42), nullable=False),
        sa.Column("to_address", sa.String(42), nullable=False),
        sa.Column("value", sa.String(78), nullable=False),
        sa.Column("timestamp", sa.BigInteger(), nullable=False),
        sa.Column("type", sa.String(8), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_transactions_timestamp", "transactions", ["timestamp"])
    op.create_index("idx_transactions_from_ts", "transactions", ["from_address", "timestamp"])
    op.create_index("idx_transactions_to_ts", "transactions", ["to_address", "timestamp"])
    op.create_index("idx_transactions_block", "transactions", ["block_number"])

    # Sync checkpoint
    op.create_table(
        "sync_status",
        sa.Column("id", sa.String(32), nullable=False),
        sa.Column("last_synced_block", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    # Pre-aggregated inflow/outflow buckets
    op.create_table(
        "flow_time_series_realtime",
        sa.Column("period_type", sa.String(10), nullable=False),
        sa.Column("period_id", sa.BigInteger(), autoincrement=False, nullable=False),
        sa.Column("first_timestamp", sa.BigInteger(), nullable=False),
        sa.Column("inflow_amount", sa.String(80), nullable=False),
        sa.Column("outflow_amount", sa.String(80), nullable=False),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("period_type", "period_id"),
    )
    op.create_index(
        "idx_flow_time_series_type_ts",
        "flow_time_series_realtime",
        ["period_type", "first_timestamp"],
    )


def downgrade() -> None:
    op.drop_index("idx_flow_time_series_type_ts", table_name="flow_time_series_realtime")
    op.drop_table("flow_time_series_realtime")
    op.drop_table("sync_status")
    op.drop_index("idx_transactions_block", table_name="transactions")
    op.drop_index("idx_transactions_to_ts", table_name="transactions")
    op.drop_index("idx_transactions_from_ts", table_name="transactions")
    op.drop_index("idx_transactions_timestamp", table_name="transactions")
    op.drop_table("transactions")
