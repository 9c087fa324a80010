"""Positioning schema: fills, position states, minute buckets, alerts, snapshots.

Revision ID: 001_positioning
Revises:
Create Date: 2026-10-17 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_positioning"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _zero() -> sa.TextClause:
    return sa.text("0")


def upgrade() -> None:
    op.create_table(
        "fills",
        sa.Column("fill_id", sa.String(160), nullable=False),
        sa.Column("address", sa.String(66), nullable=False),
        sa.Column("coin", sa.String(20), nullable=False),
        sa.Column("price", sa.Numeric(30, 10), nullable=False),
        sa.Column("size", sa.Numeric(30, 10), nullable=False),
        sa.Column("side", sa.String(1), nullable=False),
        sa.Column("direction", sa.String(40), nullable=False, server_default=""),
        sa.Column("start_position", sa.Numeric(30, 10), nullable=True),
        sa.Column("closed_pnl", sa.Numeric(30, 10), nullable=False, server_default=_zero()),
        sa.Column("fee", sa.Numeric(30, 10), nullable=False, server_default=_zero()),
        sa.Column("fee_token", sa.String(20), nullable=False, server_default="USDC"),
        sa.Column("tx_hash", sa.String(80), nullable=True),
        sa.Column("is_liquidation", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("fill_id"),
    )
    op.create_index("idx_fills_coin_ts", "fills", ["coin", "timestamp"])
    op.create_index("idx_fills_address_ts", "fills", ["address", "timestamp"])

    op.create_table(
        "position_states",
        sa.Column("address", sa.String(66), nullable=False),
        sa.Column("coin", sa.String(20), nullable=False),
        sa.Column("current_size", sa.Numeric(30, 10), nullable=False, server_default=_zero()),
        sa.Column("current_notional", sa.Numeric(30, 6), nullable=False, server_default=_zero()),
        sa.Column("avg_entry_price", sa.Numeric(30, 10), nullable=True),
        sa.Column("realized_pnl", sa.Numeric(30, 6), nullable=False, server_default=_zero()),
        sa.Column("total_volume", sa.Numeric(30, 6), nullable=False, server_default=_zero()),
        sa.Column("first_entry_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("address", "coin"),
    )
    op.create_index("idx_position_states_coin_notional", "position_states", ["coin", "current_notional"])

    counters = [
        "new_longs",
        "new_shorts",
        "increased_longs",
        "increased_shorts",
        "decreased_longs",
        "decreased_shorts",
        "closed_longs",
        "closed_shorts",
        "liquidations",
        "price_count",
    ]
    volumes = [
        ("long_volume_in", sa.Numeric(30, 6)),
        ("short_volume_in", sa.Numeric(30, 6)),
        ("long_volume_out", sa.Numeric(30, 6)),
        ("short_volume_out", sa.Numeric(30, 6)),
        ("buy_volume", sa.Numeric(30, 6)),
        ("sell_volume", sa.Numeric(30, 6)),
        ("total_volume", sa.Numeric(30, 6)),
        ("total_size", sa.Numeric(30, 10)),
        ("price_sum", sa.Numeric(30, 10)),
    ]
    op.create_table(
        "minute_aggregates",
        sa.Column("coin", sa.String(20), nullable=False),
        sa.Column("minute_timestamp", sa.DateTime(timezone=True), nullable=False),
        *[sa.Column(name, sa.Integer(), nullable=False, server_default=_zero()) for name in counters],
        *[sa.Column(name, type_, nullable=False, server_default=_zero()) for name, type_ in volumes],
        sa.Column("price_low", sa.Numeric(30, 10), nullable=True),
        sa.Column("price_high", sa.Numeric(30, 10), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("coin", "minute_timestamp"),
    )

    op.create_table(
        "minute_wallets",
        sa.Column("coin", sa.String(20), nullable=False),
        sa.Column("minute_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("address", sa.String(66), nullable=False),
        sa.Column("is_new", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_whale", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.PrimaryKeyConstraint("coin", "minute_timestamp", "address"),
    )

    op.create_table(
        "whale_alerts",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("coin", sa.String(20), nullable=False),
        sa.Column("address", sa.String(66), nullable=False),
        sa.Column("alert_type", sa.String(20), nullable=False),
        sa.Column("direction", sa.String(10), nullable=False, server_default=""),
        sa.Column("notional", sa.Numeric(30, 6), nullable=False),
        sa.Column("previous_size", sa.Numeric(30, 10), nullable=False),
        sa.Column("new_size", sa.Numeric(30, 10), nullable=False),
        sa.Column("notional_delta", sa.Numeric(30, 6), nullable=False),
        sa.Column("price", sa.Numeric(30, 10), nullable=False),
        sa.Column("fill_id", sa.String(160), nullable=False, server_default=""),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_whale_alerts_coin_ts", "whale_alerts", ["coin", "timestamp"])
    op.create_index("idx_whale_alerts_key", "whale_alerts", ["coin", "address", "timestamp"])

    op.create_table(
        "trader_snapshots",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("coin", sa.String(20), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("long_count", sa.Integer(), nullable=False, server_default=_zero()),
        sa.Column("short_count", sa.Integer(), nullable=False, server_default=_zero()),
        sa.Column("long_notional", sa.Numeric(30, 6), nullable=False, server_default=_zero()),
        sa.Column("short_notional", sa.Numeric(30, 6), nullable=False, server_default=_zero()),
        sa.Column("total_traders", sa.Integer(), nullable=False, server_default=_zero()),
        sa.Column("long_short_ratio", sa.Numeric(20, 8), nullable=False, server_default=_zero()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_trader_snapshots_coin_ts", "trader_snapshots", ["coin", "timestamp"])


def downgrade() -> None:
    op.drop_index("idx_trader_snapshots_coin_ts", table_name="trader_snapshots")
    op.drop_table("trader_snapshots")
    op.drop_index("idx_whale_alerts_key", table_name="whale_alerts")
    op.drop_index("idx_whale_alerts_coin_ts", table_name="whale_alerts")
    op.drop_table("whale_alerts")
    op.drop_table("minute_wallets")
    op.drop_table("minute_aggregates")
    op.drop_index("idx_position_states_coin_notional", table_name="position_states")
    op.drop_table("position_states")
    op.drop_index("idx_fills_address_ts", table_name="fills")
    op.drop_index("idx_fills_coin_ts", table_name="fills")
    op.drop_table("fills")
