"""SQLAlchemy models for persistent storage.

This module defines the database schema for fills, position states,
minute aggregates, whale alerts, positioning snapshots and full position
snapshots.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class FillModel(Base):
    """Canonical fills, unique by fill id (idempotent ingestion)."""

    __tablename__ = "fills"

    fill_id: Mapped[str] = mapped_column(String(160), primary_key=True)
    address: Mapped[str] = mapped_column(String(66), nullable=False)
    coin: Mapped[str] = mapped_column(String(20), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(30, 10), nullable=False)
    size: Mapped[Decimal] = mapped_column(Numeric(30, 10), nullable=False)
    side: Mapped[str] = mapped_column(String(1), nullable=False)
    direction: Mapped[str] = mapped_column(String(40), nullable=False, default="")
    start_position: Mapped[Decimal | None] = mapped_column(Numeric(30, 10), nullable=True)
    closed_pnl: Mapped[Decimal] = mapped_column(Numeric(30, 10), nullable=False, default=Decimal(0))
    fee: Mapped[Decimal] = mapped_column(Numeric(30, 10), nullable=False, default=Decimal(0))
    fee_token: Mapped[str] = mapped_column(String(20), nullable=False, default="USDC")
    tx_hash: Mapped[str | None] = mapped_column(String(80), nullable=True)
    is_liquidation: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        Index("idx_fills_coin_ts", "coin", "timestamp"),
        Index("idx_fills_address_ts", "address", "timestamp"),
    )


class PositionStateModel(Base):
    """Current net position, one row per (address, coin); zeroed, never deleted."""

    __tablename__ = "position_states"

    address: Mapped[str] = mapped_column(String(66), primary_key=True)
    coin: Mapped[str] = mapped_column(String(20), primary_key=True)
    current_size: Mapped[Decimal] = mapped_column(Numeric(30, 10), nullable=False, default=Decimal(0))
    current_notional: Mapped[Decimal] = mapped_column(Numeric(30, 6), nullable=False, default=Decimal(0))
    avg_entry_price: Mapped[Decimal | None] = mapped_column(Numeric(30, 10), nullable=True)
    realized_pnl: Mapped[Decimal] = mapped_column(Numeric(30, 6), nullable=False, default=Decimal(0))
    total_volume: Mapped[Decimal] = mapped_column(Numeric(30, 6), nullable=False, default=Decimal(0))
    first_entry_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_updated: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("idx_position_states_coin_notional", "coin", "current_notional"),)


class MinuteAggregateModel(Base):
    """Additive per-(coin, minute) counters; merged with col = col + excluded.col."""

    __tablename__ = "minute_aggregates"

    coin: Mapped[str] = mapped_column(String(20), primary_key=True)
    minute_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), primary_key=True)

    new_longs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    new_shorts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    increased_longs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    increased_shorts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    decreased_longs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    decreased_shorts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    closed_longs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    closed_shorts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    liquidations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    price_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    long_volume_in: Mapped[Decimal] = mapped_column(Numeric(30, 6), nullable=False, default=Decimal(0))
    short_volume_in: Mapped[Decimal] = mapped_column(Numeric(30, 6), nullable=False, default=Decimal(0))
    long_volume_out: Mapped[Decimal] = mapped_column(Numeric(30, 6), nullable=False, default=Decimal(0))
    short_volume_out: Mapped[Decimal] = mapped_column(Numeric(30, 6), nullable=False, default=Decimal(0))
    buy_volume: Mapped[Decimal] = mapped_column(Numeric(30, 6), nullable=False, default=Decimal(0))
    sell_volume: Mapped[Decimal] = mapped_column(Numeric(30, 6), nullable=False, default=Decimal(0))
    total_volume: Mapped[Decimal] = mapped_column(Numeric(30, 6), nullable=False, default=Decimal(0))
    total_size: Mapped[Decimal] = mapped_column(Numeric(30, 10), nullable=False, default=Decimal(0))
    price_sum: Mapped[Decimal] = mapped_column(Numeric(30, 10), nullable=False, default=Decimal(0))
    price_low: Mapped[Decimal | None] = mapped_column(Numeric(30, 10), nullable=True)
    price_high: Mapped[Decimal | None] = mapped_column(Numeric(30, 10), nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class MinuteWalletModel(Base):
    """Distinct wallets per minute bucket; insert-or-merge gives set-union semantics."""

    __tablename__ = "minute_wallets"

    coin: Mapped[str] = mapped_column(String(20), primary_key=True)
    minute_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), primary_key=True)
    address: Mapped[str] = mapped_column(String(66), primary_key=True)
    is_new: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_whale: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class WhaleAlertModel(Base):
    """Insert-only whale alerts."""

    __tablename__ = "whale_alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    coin: Mapped[str] = mapped_column(String(20), nullable=False)
    address: Mapped[str] = mapped_column(String(66), nullable=False)
    alert_type: Mapped[str] = mapped_column(String(20), nullable=False)
    direction: Mapped[str] = mapped_column(String(10), nullable=False, default="")
    notional: Mapped[Decimal] = mapped_column(Numeric(30, 6), nullable=False)
    previous_size: Mapped[Decimal] = mapped_column(Numeric(30, 10), nullable=False)
    new_size: Mapped[Decimal] = mapped_column(Numeric(30, 10), nullable=False)
    notional_delta: Mapped[Decimal] = mapped_column(Numeric(30, 6), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(30, 10), nullable=False)
    fill_id: Mapped[str] = mapped_column(String(160), nullable=False, default="")
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        Index("idx_whale_alerts_coin_ts", "coin", "timestamp"),
        Index("idx_whale_alerts_key", "coin", "address", "timestamp"),
    )


class TraderSnapshotModel(Base):
    """Append-only positioning snapshot log written by the periodic sampler."""

    __tablename__ = "trader_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    coin: Mapped[str] = mapped_column(String(20), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    long_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    short_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    long_notional: Mapped[Decimal] = mapped_column(Numeric(30, 6), nullable=False, default=Decimal(0))
    short_notional: Mapped[Decimal] = mapped_column(Numeric(30, 6), nullable=False, default=Decimal(0))
    total_traders: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    long_short_ratio: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False, default=Decimal(0))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (Index("idx_trader_snapshots_coin_ts", "coin", "timestamp"),)


class PositionSnapshotModel(Base):
    """Full-market position snapshots; one row per open position per capture."""

    __tablename__ = "position_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    coin: Mapped[str] = mapped_column(String(20), nullable=False)
    snapshot_id: Mapped[str] = mapped_column(String(64), nullable=False)
    address: Mapped[str] = mapped_column(String(66), nullable=False)
    size: Mapped[Decimal] = mapped_column(Numeric(30, 10), nullable=False)
    notional: Mapped[Decimal] = mapped_column(Numeric(30, 6), nullable=False)
    entry_price: Mapped[Decimal | None] = mapped_column(Numeric(30, 10), nullable=True)
    leverage: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    leverage_type: Mapped[str] = mapped_column(String(10), nullable=False, default="cross")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_position_snapshots_coin_snapshot", "coin", "snapshot_id"),
        Index("idx_position_snapshots_coin_created", "coin", "created_at"),
    )
