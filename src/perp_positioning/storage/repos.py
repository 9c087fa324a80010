"""Repository pattern implementations for data access.

This module provides data access for fills, position states, minute
aggregates, whale alerts, trader snapshots and full position snapshots.
Repositories take an AsyncSession and flush but never commit; the session
owner commits.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from perp_positioning.aggregator.models import COUNTER_FIELDS, VOLUME_FIELDS, MinuteAggregate, floor_minute
from perp_positioning.detector.models import WhaleAlert, WhaleAlertType
from perp_positioning.ingestor.models import Fill, FillSide
from perp_positioning.snapshots.models import PositionSnapshot, SnapshotRef, TraderSnapshot
from perp_positioning.storage.models import (
    FillModel,
    MinuteAggregateModel,
    MinuteWalletModel,
    PositionSnapshotModel,
    PositionStateModel,
    TraderSnapshotModel,
    WhaleAlertModel,
)
from perp_positioning.tracker.models import PositionState

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

_ADDITIVE_COLUMNS = COUNTER_FIELDS + VOLUME_FIELDS


def _as_utc(ts: datetime) -> datetime:
    """SQLite hands back naive datetimes; every stored timestamp is UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC)


def _insert(session: AsyncSession, model: type[Any]) -> Any:
    """Dialect-specific INSERT supporting ON CONFLICT clauses."""
    if _is_postgres(session):
        return pg_insert(model)
    return sqlite_insert(model)


def _as_utc_or_none(ts: datetime | None) -> datetime | None:
    return _as_utc(ts) if ts is not None else None


def _is_postgres(session: AsyncSession) -> bool:
    return session.get_bind().dialect.name == "postgresql"


class FillRepository:
    """Repository for canonical fills."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert(self, fill: Fill) -> None:
        """Insert a fill; a fill id seen before is ignored (idempotent ingestion)."""
        await self.upsert_many([fill])

    async def upsert_many(self, fills: Iterable[Fill]) -> int:
        rows = [
            {
                "fill_id": f.fill_id,
                "address": f.trader,
                "coin": f.coin,
                "price": f.price,
                "size": f.size,
                "side": f.side.value,
                "direction": f.direction,
                "start_position": f.start_position,
                "closed_pnl": f.realized_pnl,
                "fee": f.fee,
                "fee_token": f.fee_token,
                "tx_hash": f.tx_hash,
                "is_liquidation": f.is_liquidation,
                "timestamp": f.timestamp,
                "created_at": datetime.now(UTC),
            }
            for f in fills
        ]
        if not rows:
            return 0
        stmt = _insert(self.session, FillModel).values(rows)
        stmt = stmt.on_conflict_do_nothing(index_elements=["fill_id"])
        await self.session.execute(stmt)
        await self.session.flush()
        return len(rows)

    async def list_recent(
        self,
        *,
        coin: str | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[Fill]:
        """Most recent fills first."""
        query = select(FillModel).order_by(FillModel.timestamp.desc()).limit(limit)
        if coin is not None:
            query = query.where(FillModel.coin == coin)
        if since is not None:
            query = query.where(FillModel.timestamp >= since)
        result = await self.session.execute(query)
        return [self._to_fill(m) for m in result.scalars().all()]

    @staticmethod
    def _to_fill(model: FillModel) -> Fill:
        return Fill(
            fill_id=model.fill_id,
            trader=model.address,
            coin=model.coin,
            price=model.price,
            size=model.size,
            side=FillSide(model.side),
            timestamp=_as_utc(model.timestamp),
            fee=model.fee,
            realized_pnl=model.closed_pnl,
            direction=model.direction,
            tx_hash=model.tx_hash,
            is_liquidation=model.is_liquidation,
            start_position=model.start_position,
            fee_token=model.fee_token,
        )


class PositionStateRepository:
    """Repository for per-(trader, coin) position state."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert(self, state: PositionState) -> None:
        """Write the tracker's current view of a position (last write wins)."""
        values = {
            "address": state.trader,
            "coin": state.coin,
            "current_size": state.current_size,
            "current_notional": state.current_notional,
            "avg_entry_price": state.avg_entry_price,
            "realized_pnl": state.realized_pnl,
            "total_volume": state.total_volume,
            "first_entry_time": state.first_entry_time,
            "last_updated": state.last_updated,
        }
        stmt = _insert(self.session, PositionStateModel).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["address", "coin"],
            set_={name: stmt.excluded[name] for name in values if name not in ("address", "coin")},
        )
        await self.session.execute(stmt)
        await self.session.flush()

    async def get(self, trader: str, coin: str) -> PositionState | None:
        result = await self.session.execute(
            select(PositionStateModel).where(
                (PositionStateModel.address == trader) & (PositionStateModel.coin == coin)
            )
        )
        model = result.scalar_one_or_none()
        return self._to_state(model) if model else None

    async def list_active(self, *, coin: str | None = None, limit: int | None = None) -> list[PositionState]:
        """Non-flat positions, largest notional first."""
        query = (
            select(PositionStateModel)
            .where(PositionStateModel.current_size != 0)
            .order_by(PositionStateModel.current_notional.desc())
        )
        if coin is not None:
            query = query.where(PositionStateModel.coin == coin)
        if limit is not None:
            query = query.limit(limit)
        result = await self.session.execute(query)
        return [self._to_state(m) for m in result.scalars().all()]

    async def list_all(self, *, coins: Iterable[str] | None = None) -> list[PositionState]:
        """Every stored state, flat ones included, for seeding a tracker."""
        query = select(PositionStateModel)
        if coins is not None:
            query = query.where(PositionStateModel.coin.in_(list(coins)))
        result = await self.session.execute(query)
        return [self._to_state(m) for m in result.scalars().all()]

    @staticmethod
    def _to_state(model: PositionStateModel) -> PositionState:
        return PositionState(
            trader=model.address,
            coin=model.coin,
            current_size=model.current_size,
            current_notional=model.current_notional,
            last_updated=_as_utc_or_none(model.last_updated),
            avg_entry_price=model.avg_entry_price,
            realized_pnl=model.realized_pnl,
            total_volume=model.total_volume,
            first_entry_time=_as_utc_or_none(model.first_entry_time),
        )


class MinuteAggregateRepository:
    """Repository for minute buckets.

    ``merge`` never reads the stored row: counters and volumes are added in
    SQL, the price range is widened with least/greatest, and wallets are
    inserted into ``minute_wallets`` keyed by (coin, minute, address). Two
    writers flushing the same bucket therefore commute.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def merge(self, update: MinuteAggregate) -> None:
        """Additively merge one bucket contribution.

        Raises:
            AggregationConflictError: If the update holds invalid values.
        """
        update.validate()
        minute = floor_minute(update.minute)
        values: dict[str, Any] = {"coin": update.coin, "minute_timestamp": minute, **update.counters()}
        values["price_low"] = update.price_low
        values["price_high"] = update.price_high
        values["updated_at"] = datetime.now(UTC)

        table = MinuteAggregateModel.__table__
        stmt = _insert(self.session, MinuteAggregateModel).values(**values)
        set_: dict[str, Any] = {name: table.c[name] + stmt.excluded[name] for name in _ADDITIVE_COLUMNS}
        if _is_postgres(self.session):
            set_["price_low"] = sa.func.least(table.c.price_low, stmt.excluded.price_low)
            set_["price_high"] = sa.func.greatest(table.c.price_high, stmt.excluded.price_high)
        else:
            set_["price_low"] = sa.func.min(
                sa.func.coalesce(table.c.price_low, stmt.excluded.price_low),
                sa.func.coalesce(stmt.excluded.price_low, table.c.price_low),
            )
            set_["price_high"] = sa.func.max(
                sa.func.coalesce(table.c.price_high, stmt.excluded.price_high),
                sa.func.coalesce(stmt.excluded.price_high, table.c.price_high),
            )
        set_["updated_at"] = stmt.excluded.updated_at
        stmt = stmt.on_conflict_do_update(index_elements=["coin", "minute_timestamp"], set_=set_)
        await self.session.execute(stmt)

        wallet_rows = [
            {
                "coin": update.coin,
                "minute_timestamp": minute,
                "address": address,
                "is_new": address in update.new_wallets,
                "is_whale": address in update.whale_wallets,
            }
            for address in sorted(update.wallets | update.new_wallets | update.whale_wallets)
        ]
        if wallet_rows:
            wallet_table = MinuteWalletModel.__table__
            wstmt = _insert(self.session, MinuteWalletModel).values(wallet_rows)
            wstmt = wstmt.on_conflict_do_update(
                index_elements=["coin", "minute_timestamp", "address"],
                set_={
                    "is_new": sa.or_(wallet_table.c.is_new, wstmt.excluded.is_new),
                    "is_whale": sa.or_(wallet_table.c.is_whale, wstmt.excluded.is_whale),
                },
            )
            await self.session.execute(wstmt)
        await self.session.flush()

    async def get(self, coin: str, minute: datetime) -> MinuteAggregate | None:
        buckets = await self._load(coin, since=floor_minute(minute), until=floor_minute(minute))
        return buckets[0] if buckets else None

    async def list_recent(
        self,
        coin: str,
        *,
        minutes: int = 60,
        now: datetime | None = None,
    ) -> list[MinuteAggregate]:
        """Buckets of the last ``minutes`` minutes, oldest first."""
        end = floor_minute(now or datetime.now(UTC))
        return await self._load(coin, since=end - timedelta(minutes=minutes))

    async def _load(
        self,
        coin: str,
        *,
        since: datetime,
        until: datetime | None = None,
    ) -> list[MinuteAggregate]:
        agg_query = select(MinuteAggregateModel).where(
            (MinuteAggregateModel.coin == coin) & (MinuteAggregateModel.minute_timestamp >= since)
        )
        wallet_query = select(MinuteWalletModel).where(
            (MinuteWalletModel.coin == coin) & (MinuteWalletModel.minute_timestamp >= since)
        )
        if until is not None:
            agg_query = agg_query.where(MinuteAggregateModel.minute_timestamp <= until)
            wallet_query = wallet_query.where(MinuteWalletModel.minute_timestamp <= until)

        agg_rows = (await self.session.execute(agg_query.order_by(MinuteAggregateModel.minute_timestamp))).scalars()
        wallet_rows = (await self.session.execute(wallet_query)).scalars()

        wallets: dict[datetime, dict[str, set[str]]] = defaultdict(
            lambda: {"wallets": set(), "new_wallets": set(), "whale_wallets": set()}
        )
        for w in wallet_rows:
            sets = wallets[_as_utc(w.minute_timestamp)]
            sets["wallets"].add(w.address)
            if w.is_new:
                sets["new_wallets"].add(w.address)
            if w.is_whale:
                sets["whale_wallets"].add(w.address)

        buckets: list[MinuteAggregate] = []
        for row in agg_rows:
            minute = _as_utc(row.minute_timestamp)
            sets = wallets.get(minute, {})
            buckets.append(
                MinuteAggregate(
                    coin=row.coin,
                    minute=minute,
                    price_low=row.price_low,
                    price_high=row.price_high,
                    wallets=frozenset(sets.get("wallets", ())),
                    new_wallets=frozenset(sets.get("new_wallets", ())),
                    whale_wallets=frozenset(sets.get("whale_wallets", ())),
                    **{name: self._column_value(row, name) for name in _ADDITIVE_COLUMNS},
                )
            )
        return buckets

    @staticmethod
    def _column_value(row: MinuteAggregateModel, name: str) -> int | Decimal:
        value = getattr(row, name)
        if name in COUNTER_FIELDS:
            return int(value)
        return Decimal(value)


class WhaleAlertRepository:
    """Repository for insert-only whale alerts."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, alert: WhaleAlert) -> None:
        self.session.add(
            WhaleAlertModel(
                coin=alert.coin,
                address=alert.trader,
                alert_type=alert.alert_type.value,
                direction=alert.direction,
                notional=alert.notional,
                previous_size=alert.previous_size,
                new_size=alert.new_size,
                notional_delta=alert.notional_delta,
                price=alert.price,
                fill_id=alert.fill_id,
                timestamp=alert.timestamp,
            )
        )
        await self.session.flush()

    async def list_since(
        self,
        *,
        since: datetime,
        coin: str | None = None,
        limit: int = 100,
    ) -> list[WhaleAlert]:
        """Alerts at or after ``since``, newest first."""
        query = (
            select(WhaleAlertModel)
            .where(WhaleAlertModel.timestamp >= since)
            .order_by(WhaleAlertModel.timestamp.desc(), WhaleAlertModel.id.desc())
            .limit(limit)
        )
        if coin is not None:
            query = query.where(WhaleAlertModel.coin == coin)
        result = await self.session.execute(query)
        return [
            WhaleAlert(
                coin=m.coin,
                trader=m.address,
                timestamp=_as_utc(m.timestamp),
                alert_type=WhaleAlertType(m.alert_type),
                notional=m.notional,
                direction=m.direction,
                previous_size=m.previous_size,
                new_size=m.new_size,
                price=m.price,
                notional_delta=m.notional_delta,
                fill_id=m.fill_id,
            )
            for m in result.scalars().all()
        ]


class TraderSnapshotRepository:
    """Repository for the append-only positioning snapshot log."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, snapshot: TraderSnapshot) -> None:
        self.session.add(
            TraderSnapshotModel(
                coin=snapshot.coin,
                timestamp=snapshot.timestamp,
                long_count=snapshot.long_count,
                short_count=snapshot.short_count,
                long_notional=snapshot.long_notional,
                short_notional=snapshot.short_notional,
                total_traders=snapshot.total_traders,
                long_short_ratio=snapshot.long_short_ratio,
            )
        )
        await self.session.flush()

    async def list_recent_desc(self, coin: str, *, limit: int) -> list[TraderSnapshot]:
        """Newest rows first; rows with equal timestamps newest-ingested first."""
        result = await self.session.execute(
            select(TraderSnapshotModel)
            .where(TraderSnapshotModel.coin == coin)
            .order_by(TraderSnapshotModel.timestamp.desc(), TraderSnapshotModel.id.desc())
            .limit(limit)
        )
        return [
            TraderSnapshot(
                coin=m.coin,
                timestamp=_as_utc(m.timestamp),
                long_count=m.long_count,
                short_count=m.short_count,
                long_notional=m.long_notional,
                short_notional=m.short_notional,
                total_traders=m.total_traders,
                long_short_ratio=m.long_short_ratio,
            )
            for m in result.scalars().all()
        ]


class PositionSnapshotRepository:
    """Repository for full-market position snapshots."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_many(self, positions: Iterable[PositionSnapshot]) -> int:
        models = [
            PositionSnapshotModel(
                coin=p.coin,
                snapshot_id=p.snapshot_id,
                address=p.address,
                size=p.size,
                notional=p.notional,
                entry_price=p.entry_price,
                leverage=p.leverage,
                leverage_type=p.leverage_type,
                created_at=p.created_at,
            )
            for p in positions
        ]
        self.session.add_all(models)
        await self.session.flush()
        return len(models)

    async def latest(self, coin: str) -> SnapshotRef | None:
        """Most recently captured snapshot for a coin."""
        result = await self.session.execute(
            select(PositionSnapshotModel.snapshot_id, PositionSnapshotModel.created_at)
            .where(PositionSnapshotModel.coin == coin)
            .order_by(PositionSnapshotModel.created_at.desc(), PositionSnapshotModel.id.desc())
            .limit(1)
        )
        row = result.first()
        return SnapshotRef(row.snapshot_id, _as_utc(row.created_at)) if row is not None else None

    async def find_previous(self, coin: str, current_id: str, *, before: datetime) -> SnapshotRef | None:
        """Newest other snapshot captured at or before ``before``.

        Falls back to the newest other snapshot at all when history does
        not reach back that far.
        """
        query = (
            select(PositionSnapshotModel.snapshot_id, PositionSnapshotModel.created_at)
            .where(
                PositionSnapshotModel.coin == coin,
                PositionSnapshotModel.snapshot_id != current_id,
            )
            .order_by(PositionSnapshotModel.created_at.desc(), PositionSnapshotModel.id.desc())
            .limit(1)
        )
        row = (await self.session.execute(query.where(PositionSnapshotModel.created_at <= before))).first()
        if row is None:
            row = (await self.session.execute(query)).first()
        return SnapshotRef(row.snapshot_id, _as_utc(row.created_at)) if row is not None else None

    async def list_positions(self, coin: str, snapshot_id: str) -> list[PositionSnapshot]:
        result = await self.session.execute(
            select(PositionSnapshotModel).where(
                PositionSnapshotModel.coin == coin,
                PositionSnapshotModel.snapshot_id == snapshot_id,
            )
        )
        return [
            PositionSnapshot(
                coin=m.coin,
                snapshot_id=m.snapshot_id,
                address=m.address,
                size=m.size,
                notional=m.notional,
                created_at=_as_utc(m.created_at),
                entry_price=m.entry_price,
                leverage=m.leverage,
                leverage_type=m.leverage_type,
            )
            for m in result.scalars().all()
        ]
