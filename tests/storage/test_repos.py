"""Tests for storage repositories."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from perp_positioning.aggregator.models import AggregationConflictError, MinuteAggregate
from perp_positioning.detector.models import WhaleAlert, WhaleAlertType
from perp_positioning.ingestor.models import Fill, FillSide
from perp_positioning.snapshots.models import PositionSnapshot, SnapshotRef, TraderSnapshot
from perp_positioning.storage.database import create_async_session_factory
from perp_positioning.storage.repos import (
    FillRepository,
    MinuteAggregateRepository,
    PositionSnapshotRepository,
    PositionStateRepository,
    TraderSnapshotRepository,
    WhaleAlertRepository,
)
from perp_positioning.tracker.models import PositionState

TRADER = "0x1234567890abcdef1234567890abcdef12345678"
OTHER = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
MINUTE = datetime(2024, 3, 1, 10, 5, tzinfo=UTC)

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def sample_fill() -> Fill:
    """Create a sample fill."""
    return Fill(
        fill_id="0xfeed-42",
        trader=TRADER,
        coin="BTC",
        price=Decimal("62000.5"),
        size=Decimal("0.25"),
        side=FillSide.BUY,
        timestamp=MINUTE,
        fee=Decimal("1.25"),
        direction="Open Long",
        tx_hash="0xfeed",
    )


def make_update(
    *,
    trader: str = TRADER,
    price: str = "100",
    new_longs: int = 1,
    volume: str = "200",
    is_new: bool = False,
    is_whale: bool = False,
) -> MinuteAggregate:
    return MinuteAggregate(
        coin="BTC",
        minute=MINUTE,
        new_longs=new_longs,
        long_volume_in=Decimal(volume),
        buy_volume=Decimal(volume),
        total_volume=Decimal(volume),
        price_sum=Decimal(price),
        price_count=1,
        price_low=Decimal(price),
        price_high=Decimal(price),
        wallets=frozenset({trader}),
        new_wallets=frozenset({trader}) if is_new else frozenset(),
        whale_wallets=frozenset({trader}) if is_whale else frozenset(),
    )


# ============================================================================
# FillRepository Tests
# ============================================================================


class TestFillRepository:
    """Tests for FillRepository."""

    @pytest.mark.asyncio
    async def test_upsert_is_idempotent(self, async_session: AsyncSession, sample_fill: Fill) -> None:
        repo = FillRepository(async_session)
        await repo.upsert(sample_fill)
        await repo.upsert(sample_fill)
        await async_session.commit()

        fills = await repo.list_recent(coin="BTC")
        assert len(fills) == 1
        stored = fills[0]
        assert stored.fill_id == sample_fill.fill_id
        assert stored.price == sample_fill.price
        assert stored.side == FillSide.BUY
        assert stored.timestamp == MINUTE
        assert stored.direction == "Open Long"

    @pytest.mark.asyncio
    async def test_list_recent_filters_and_orders(self, async_session: AsyncSession, sample_fill: Fill) -> None:
        repo = FillRepository(async_session)
        older = Fill(
            fill_id="old",
            trader=TRADER,
            coin="BTC",
            price=Decimal("1"),
            size=Decimal("1"),
            side=FillSide.SELL,
            timestamp=MINUTE - timedelta(hours=2),
        )
        eth = Fill(
            fill_id="eth",
            trader=TRADER,
            coin="ETH",
            price=Decimal("1"),
            size=Decimal("1"),
            side=FillSide.SELL,
            timestamp=MINUTE,
        )
        inserted = await repo.upsert_many([older, sample_fill, eth])
        await async_session.commit()

        assert inserted == 3
        assert [f.fill_id for f in await repo.list_recent(coin="BTC")] == ["0xfeed-42", "old"]
        recent = await repo.list_recent(coin="BTC", since=MINUTE - timedelta(minutes=30))
        assert [f.fill_id for f in recent] == ["0xfeed-42"]

    @pytest.mark.asyncio
    async def test_upsert_many_empty(self, async_session: AsyncSession) -> None:
        assert await FillRepository(async_session).upsert_many([]) == 0


# ============================================================================
# PositionStateRepository Tests
# ============================================================================


class TestPositionStateRepository:
    """Tests for PositionStateRepository."""

    @pytest.mark.asyncio
    async def test_upsert_and_get(self, async_session: AsyncSession) -> None:
        repo = PositionStateRepository(async_session)
        state = PositionState(
            trader=TRADER,
            coin="BTC",
            current_size=Decimal("2"),
            current_notional=Decimal("200"),
            last_updated=MINUTE,
            avg_entry_price=Decimal("100"),
            first_entry_time=MINUTE,
        )
        await repo.upsert(state)
        state.current_size = Decimal("-1")
        state.current_notional = Decimal("110")
        await repo.upsert(state)
        await async_session.commit()

        stored = await repo.get(TRADER, "BTC")
        assert stored is not None
        assert stored.current_size == Decimal("-1")
        assert stored.current_notional == Decimal("110")
        assert stored.last_updated == MINUTE
        assert stored.side == "short"

    @pytest.mark.asyncio
    async def test_get_not_found(self, async_session: AsyncSession) -> None:
        assert await PositionStateRepository(async_session).get("0xnone", "BTC") is None

    @pytest.mark.asyncio
    async def test_list_active_skips_flat_positions(self, async_session: AsyncSession) -> None:
        repo = PositionStateRepository(async_session)
        for trader, size, notional in [(TRADER, "1", "100"), (OTHER, "-4", "400"), ("0xflat", "0", "0")]:
            await repo.upsert(
                PositionState(
                    trader=trader,
                    coin="BTC",
                    current_size=Decimal(size),
                    current_notional=Decimal(notional),
                )
            )
        await async_session.commit()

        active = await repo.list_active(coin="BTC")
        assert [s.trader for s in active] == [OTHER, TRADER]
        assert len(await repo.list_all(coins=["BTC"])) == 3
        assert await repo.list_all(coins=["ETH"]) == []


# ============================================================================
# MinuteAggregateRepository Tests
# ============================================================================


class TestMinuteAggregateRepository:
    """Tests for MinuteAggregateRepository."""

    @pytest.mark.asyncio
    async def test_merge_creates_bucket(self, async_session: AsyncSession) -> None:
        repo = MinuteAggregateRepository(async_session)
        await repo.merge(make_update(is_new=True))
        await async_session.commit()

        bucket = await repo.get("BTC", MINUTE)
        assert bucket is not None
        assert bucket.minute == MINUTE
        assert bucket.new_longs == 1
        assert bucket.long_volume_in == Decimal("200")
        assert bucket.wallets == frozenset({TRADER})
        assert bucket.new_wallets == frozenset({TRADER})

    @pytest.mark.asyncio
    async def test_merge_is_additive(self, async_session: AsyncSession) -> None:
        repo = MinuteAggregateRepository(async_session)
        first = make_update(price="100", volume="200", is_new=True)
        second = make_update(trader=OTHER, price="95", volume="50", new_longs=2)
        third = make_update(price="120", volume="10", new_longs=0, is_whale=True)
        for update in (first, second, third):
            await repo.merge(update)
        await async_session.commit()

        bucket = await repo.get("BTC", MINUTE)
        expected = first + second + third
        assert bucket is not None
        assert bucket.new_longs == expected.new_longs == 3
        assert bucket.long_volume_in == expected.long_volume_in == Decimal("260")
        assert bucket.price_count == 3
        assert bucket.price_low == Decimal("95")
        assert bucket.price_high == Decimal("120")
        assert bucket.wallets == frozenset({TRADER, OTHER})
        assert bucket.new_wallets == frozenset({TRADER})
        assert bucket.whale_wallets == frozenset({TRADER})
        assert bucket.unique_wallets == 2

    @pytest.mark.asyncio
    async def test_merge_order_does_not_matter(self, async_engine: AsyncEngine) -> None:
        updates = [make_update(price="100"), make_update(trader=OTHER, price="90", volume="75")]
        results = []
        for ordering in (updates, list(reversed(updates))):
            session_factory = create_async_session_factory(async_engine)
            async with session_factory() as session:
                repo = MinuteAggregateRepository(session)
                for update in ordering:
                    await repo.merge(update)
                results.append(await repo.get("BTC", MINUTE))
                await session.rollback()

        assert results[0] == results[1]

    @pytest.mark.asyncio
    async def test_merge_rejects_invalid_update(self, async_session: AsyncSession) -> None:
        repo = MinuteAggregateRepository(async_session)
        with pytest.raises(AggregationConflictError):
            await repo.merge(MinuteAggregate(coin="BTC", minute=MINUTE, new_longs=-3))
        assert await repo.get("BTC", MINUTE) is None

    @pytest.mark.asyncio
    async def test_list_recent_window(self, async_session: AsyncSession) -> None:
        repo = MinuteAggregateRepository(async_session)
        await repo.merge(make_update())
        await repo.merge(MinuteAggregate(coin="BTC", minute=MINUTE - timedelta(hours=3), new_shorts=1))
        await repo.merge(MinuteAggregate(coin="ETH", minute=MINUTE, new_shorts=1))
        await async_session.commit()

        buckets = await repo.list_recent("BTC", minutes=60, now=MINUTE + timedelta(minutes=1))
        assert [b.minute for b in buckets] == [MINUTE]


# ============================================================================
# WhaleAlertRepository / TraderSnapshotRepository Tests
# ============================================================================


class TestWhaleAlertRepository:
    """Tests for WhaleAlertRepository."""

    @pytest.mark.asyncio
    async def test_insert_and_list_since(self, async_session: AsyncSession) -> None:
        repo = WhaleAlertRepository(async_session)
        alert = WhaleAlert(
            coin="BTC",
            trader=TRADER,
            timestamp=MINUTE,
            alert_type=WhaleAlertType.WHALE_ADD,
            notional=Decimal("120000"),
            direction="long",
            previous_size=Decimal("8"),
            new_size=Decimal("12"),
            price=Decimal("10000"),
            notional_delta=Decimal("40000"),
            fill_id="0xfeed-42",
        )
        await repo.insert(alert)
        await async_session.commit()

        alerts = await repo.list_since(since=MINUTE - timedelta(hours=1), coin="BTC")
        assert alerts == [alert]
        assert await repo.list_since(since=MINUTE + timedelta(seconds=1)) == []


class TestTraderSnapshotRepository:
    """Tests for TraderSnapshotRepository."""

    @pytest.mark.asyncio
    async def test_list_recent_desc(self, async_session: AsyncSession) -> None:
        repo = TraderSnapshotRepository(async_session)
        for minute, count in [(1, 1), (7, 2), (7, 3), (4, 4)]:
            await repo.insert(
                TraderSnapshot(
                    coin="ETH",
                    timestamp=datetime(2024, 3, 1, 10, minute, tzinfo=UTC),
                    long_count=count,
                )
            )
        await repo.insert(TraderSnapshot(coin="BTC", timestamp=MINUTE, long_count=99))
        await async_session.commit()

        rows = await repo.list_recent_desc("ETH", limit=3)
        assert [r.long_count for r in rows] == [3, 2, 4]
        assert rows[0].timestamp == datetime(2024, 3, 1, 10, 7, tzinfo=UTC)


class TestPositionSnapshotRepository:
    """Tests for PositionSnapshotRepository."""

    @staticmethod
    def make_rows(snapshot_id: str, captured: datetime, sizes: dict[str, str]) -> list[PositionSnapshot]:
        return [
            PositionSnapshot(
                coin="BTC",
                snapshot_id=snapshot_id,
                address=address,
                size=Decimal(size),
                notional=abs(Decimal(size)) * 100,
                created_at=captured,
            )
            for address, size in sizes.items()
        ]

    @pytest.mark.asyncio
    async def test_latest_and_list_positions(self, async_session: AsyncSession) -> None:
        repo = PositionSnapshotRepository(async_session)
        await repo.insert_many(self.make_rows("s1", MINUTE - timedelta(hours=5), {TRADER: "1"}))
        inserted = await repo.insert_many(self.make_rows("s2", MINUTE, {TRADER: "2", OTHER: "-3"}))
        await async_session.commit()

        assert inserted == 2
        latest = await repo.latest("BTC")
        assert latest == SnapshotRef("s2", MINUTE)
        rows = await repo.list_positions("BTC", "s2")
        assert {r.address: r.size for r in rows} == {TRADER: Decimal("2"), OTHER: Decimal("-3")}
        assert await repo.latest("ETH") is None

    @pytest.mark.asyncio
    async def test_find_previous(self, async_session: AsyncSession) -> None:
        repo = PositionSnapshotRepository(async_session)
        for snapshot_id, hours_ago in [("s1", 6), ("s2", 3), ("s3", 0)]:
            await repo.insert_many(
                self.make_rows(snapshot_id, MINUTE - timedelta(hours=hours_ago), {TRADER: "1"})
            )
        await async_session.commit()

        within = await repo.find_previous("BTC", "s3", before=MINUTE - timedelta(hours=4))
        fallback = await repo.find_previous("BTC", "s3", before=MINUTE - timedelta(hours=24))
        assert within is not None and within.snapshot_id == "s1"
        assert fallback is not None and fallback.snapshot_id == "s2"
        assert await repo.find_previous("ETH", "s3", before=MINUTE) is None
