"""Full position snapshots for snapshot-to-snapshot flow.

Revision ID: 002_position_snapshots
Revises: 001_positioning
Create Date: 2026-10-17 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002_position_snapshots"
down_revision: Union[str, None] = "001_positioning"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "position_snapshots",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("coin", sa.String(20), nullable=False),
        sa.Column("snapshot_id", sa.String(64), nullable=False),
        sa.Column("address", sa.String(66), nullable=False),
        sa.Column("size", sa.Numeric(30, 10), nullable=False),
        sa.Column("notional", sa.Numeric(30, 6), nullable=False),
        sa.Column("entry_price", sa.Numeric(30, 10), nullable=True),
        sa.Column("leverage", sa.Numeric(10, 2), nullable=True),
        sa.Column("leverage_type", sa.String(10), nullable=False, server_default="cross"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_position_snapshots_coin_snapshot", "position_snapshots", ["coin", "snapshot_id"]
    )
    op.create_index(
        "idx_position_snapshots_coin_created", "position_snapshots", ["coin", "created_at"]
    )


def downgrade() -> None:
    op.drop_index("idx_position_snapshots_coin_created", table_name="position_snapshots")
    op.drop_index("idx_position_snapshots_coin_snapshot", table_name="position_snapshots")
    op.drop_table("position_snapshots")
