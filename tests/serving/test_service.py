"""Tests for the read-path query service."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from perp_positioning.aggregator.models import MinuteAggregate
from perp_positioning.config import SnapshotSettings
from perp_positioning.detector.models import WhaleAlert, WhaleAlertType
from perp_positioning.ingestor.models import Fill, FillSide
from perp_positioning.serving.service import PositioningQueryService
from perp_positioning.snapshots.models import PositionSnapshot, TraderSnapshot
from perp_positioning.storage.database import DatabaseManager
from perp_positioning.storage.repos import (
    FillRepository,
    MinuteAggregateRepository,
    PositionSnapshotRepository,
    PositionStateRepository,
    TraderSnapshotRepository,
    WhaleAlertRepository,
)
from perp_positioning.tracker.models import PositionState

NOW = datetime(2024, 3, 1, 10, 30, tzinfo=UTC)
TRADER = "0x1234567890abcdef1234567890abcdef12345678"
OTHER = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"


def make_service(db: DatabaseManager, settings: SnapshotSettings | None = None) -> PositioningQueryService:
    return PositioningQueryService(db, settings or SnapshotSettings(), clock=lambda: NOW)


async def insert_snapshots(db: DatabaseManager, rows: list[tuple[str, datetime, str]]) -> None:
    async with db.get_async_session() as session:
        repo = TraderSnapshotRepository(session)
        for coin, ts, ratio in rows:
            await repo.insert(
                TraderSnapshot(
                    coin=coin,
                    timestamp=ts,
                    long_count=int(Decimal(ratio) * 10),
                    short_count=10,
                    long_short_ratio=Decimal(ratio),
                )
            )


class TestIndicator:
    @pytest.mark.asyncio
    async def test_invalid_metric_is_rejected_before_storage(self) -> None:
        service = make_service(DatabaseManager(None))

        response = await service.indicator("BTC", metric="volume")

        assert response.status_code == 400
        assert "Invalid metric" in str(response.body["error"])

    @pytest.mark.asyncio
    async def test_unconfigured_storage_is_unavailable(self) -> None:
        response = await make_service(DatabaseManager(None)).indicator("BTC")

        assert response.status_code == 503
        assert response.body["error"] == "Storage unavailable"

    @pytest.mark.asyncio
    async def test_empty_history(self, db_manager: DatabaseManager) -> None:
        response = await make_service(db_manager).indicator("BTC", metric="longShortRatio")

        assert response.ok
        assert response.body == {
            "coin": "BTC",
            "metric": "longShortRatio",
            "latest": None,
            "latestTimestamp": None,
            "dataPoints": 0,
            "timeseries": [],
        }

    @pytest.mark.asyncio
    async def test_deduplicates_rows_within_bucket(self, db_manager: DatabaseManager) -> None:
        base = datetime(2024, 3, 1, 10, 0, tzinfo=UTC)
        await insert_snapshots(
            db_manager,
            [
                ("ETH", base + timedelta(minutes=1), "1"),
                ("ETH", base + timedelta(minutes=4), "2"),
                ("ETH", base + timedelta(minutes=7), "3"),
                ("BTC", base + timedelta(minutes=8), "9"),
            ],
        )

        response = await make_service(db_manager).indicator("eth", metric="longShortRatio")

        assert response.ok
        assert response.body["coin"] == "ETH"
        assert response.body["dataPoints"] == 1
        assert response.body["latest"] == 3.0
        assert response.body["latestTimestamp"] == int((base + timedelta(minutes=7)).timestamp() * 1000)

    @pytest.mark.asyncio
    async def test_limit_is_capped(self, db_manager: DatabaseManager) -> None:
        base = datetime(2024, 3, 1, 6, 0, tzinfo=UTC)
        await insert_snapshots(
            db_manager,
            [("BTC", base + timedelta(minutes=10 * i), str(i + 1)) for i in range(5)],
        )
        settings = SnapshotSettings(SNAPSHOT_MAX_LIMIT=2)

        response = await make_service(db_manager, settings).indicator("BTC", limit=100)

        assert response.body["dataPoints"] == 2
        assert [p["value"] for p in response.body["timeseries"]] == [4.0, 5.0]  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_json_format(self, db_manager: DatabaseManager) -> None:
        await insert_snapshots(db_manager, [("BTC", datetime(2024, 3, 1, 10, 0, tzinfo=UTC), "1.5")])

        response = await make_service(db_manager).indicator("BTC", output_format="json")

        assert response.ok
        row = response.body["timeseries"][0]  # type: ignore[index]
        assert row["longShortRatio"] == 1.5
        assert row["longCount"] == 15

    @pytest.mark.asyncio
    async def test_unreachable_storage_is_unavailable(
        self, db_manager: DatabaseManager, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        async def fail(self: TraderSnapshotRepository, coin: str, *, limit: int) -> list[TraderSnapshot]:
            raise OperationalError("SELECT", {}, Exception("connection refused"))

        monkeypatch.setattr(TraderSnapshotRepository, "list_recent_desc", fail)

        response = await make_service(db_manager).indicator("BTC")

        assert response.status_code == 503

    @pytest.mark.asyncio
    async def test_unexpected_error_is_internal(
        self, db_manager: DatabaseManager, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        async def fail(self: TraderSnapshotRepository, coin: str, *, limit: int) -> list[TraderSnapshot]:
            raise RuntimeError("boom")

        monkeypatch.setattr(TraderSnapshotRepository, "list_recent_desc", fail)

        response = await make_service(db_manager).indicator("BTC", metric="longCount")

        assert response.status_code == 500
        assert response.body == {"error": "Internal server error", "coin": "BTC", "metric": "longCount"}


class TestRealtimeViews:
    @pytest.mark.asyncio
    async def test_minute_aggregates(self, db_manager: DatabaseManager) -> None:
        async with db_manager.get_async_session() as session:
            repo = MinuteAggregateRepository(session)
            await repo.merge(
                MinuteAggregate(
                    coin="BTC",
                    minute=datetime(2024, 3, 1, 10, 5, tzinfo=UTC),
                    new_longs=2,
                    long_volume_in=Decimal("500"),
                    wallets=frozenset({TRADER, OTHER}),
                )
            )
            await repo.merge(
                MinuteAggregate(
                    coin="BTC",
                    minute=datetime(2024, 3, 1, 10, 20, tzinfo=UTC),
                    new_shorts=1,
                    short_volume_in=Decimal("200"),
                    wallets=frozenset({TRADER}),
                )
            )
            await repo.merge(
                MinuteAggregate(coin="BTC", minute=datetime(2024, 3, 1, 8, 0, tzinfo=UTC), new_longs=7)
            )

        response = await make_service(db_manager).minute_aggregates("BTC", timeframe="1h")

        assert response.ok
        assert response.body["count"] == 2
        assert response.body["timeframe"] == "1H"
        assert response.body["latest_timestamp"] == "2024-03-01T10:20:00+00:00"
        assert response.body["summary"] == {
            "total_new_longs": 2,
            "total_new_shorts": 1,
            "net_flow_total": 300.0,
            "avg_unique_wallets": 2,
        }

    @pytest.mark.asyncio
    async def test_active_positions(self, db_manager: DatabaseManager) -> None:
        async with db_manager.get_async_session() as session:
            repo = PositionStateRepository(session)
            for trader, size, notional in [
                (TRADER, "3", "180000"),
                (OTHER, "-1", "60000"),
                ("0xflat", "0", "0"),
            ]:
                await repo.upsert(
                    PositionState(
                        trader=trader,
                        coin="BTC",
                        current_size=Decimal(size),
                        current_notional=Decimal(notional),
                        last_updated=NOW,
                    )
                )

        response = await make_service(db_manager).active_positions("btc")

        assert response.ok
        assert [p["address"] for p in response.body["data"]] == [TRADER, OTHER]  # type: ignore[union-attr]
        assert response.body["summary"] == {
            "total_positions": 2,
            "long_positions": 1,
            "short_positions": 1,
            "total_notional": 240000.0,
            "whale_positions": 1,
        }

    @pytest.mark.asyncio
    async def test_whale_alerts(self, db_manager: DatabaseManager) -> None:
        async with db_manager.get_async_session() as session:
            repo = WhaleAlertRepository(session)
            for minutes_ago, alert_type in [
                (5, WhaleAlertType.NEW_WHALE),
                (10, WhaleAlertType.WHALE_ADD),
                (60 * 30, WhaleAlertType.WHALE_CLOSE),
            ]:
                await repo.insert(
                    WhaleAlert(
                        coin="BTC",
                        trader=TRADER,
                        timestamp=NOW - timedelta(minutes=minutes_ago),
                        alert_type=alert_type,
                        notional=Decimal("150000"),
                        direction="long",
                    )
                )

        response = await make_service(db_manager).whale_alerts("BTC", hours=24)

        assert response.ok
        assert response.body["count"] == 2
        assert response.body["data"][0]["alert_type"] == "NEW_WHALE"  # type: ignore[index]
        assert response.body["summary"] == {
            "total_alerts": 2,
            "new_whale_alerts": 1,
            "whale_add_alerts": 1,
            "whale_close_alerts": 0,
        }

    @pytest.mark.asyncio
    async def test_recent_fills(self, db_manager: DatabaseManager) -> None:
        async with db_manager.get_async_session() as session:
            await FillRepository(session).upsert_many(
                [
                    Fill(
                        fill_id=f"fill-{i}",
                        trader=TRADER,
                        coin="BTC",
                        price=Decimal("60000"),
                        size=Decimal(size),
                        side=side,
                        timestamp=NOW - timedelta(minutes=i),
                    )
                    for i, (size, side) in enumerate(
                        [("0.5", FillSide.BUY), ("0.01", FillSide.SELL), ("0.1", FillSide.BUY)]
                    )
                ]
            )

        response = await make_service(db_manager).recent_fills("BTC", minutes=60)

        assert response.ok
        assert [f["id"] for f in response.body["data"]] == ["fill-0", "fill-1", "fill-2"]  # type: ignore[union-attr]
        assert response.body["summary"] == {
            "total_fills": 3,
            "buy_fills": 2,
            "sell_fills": 1,
            "total_volume": 36600.0,
            "large_fills": 1,
        }

    @pytest.mark.asyncio
    async def test_realtime_views_report_missing_storage(self) -> None:
        service = make_service(DatabaseManager(None))

        for response in [
            await service.minute_aggregates("BTC"),
            await service.active_positions("BTC"),
            await service.whale_alerts("BTC"),
            await service.recent_fills("BTC"),
        ]:
            assert response.status_code == 503


async def insert_position_snapshot(
    db: DatabaseManager, snapshot_id: str, captured: datetime, sizes: dict[str, str]
) -> None:
    async with db.get_async_session() as session:
        await PositionSnapshotRepository(session).insert_many(
            PositionSnapshot(
                coin="BTC",
                snapshot_id=snapshot_id,
                address=address,
                size=Decimal(size),
                notional=abs(Decimal(size)) * 1000,
                created_at=captured,
            )
            for address, size in sizes.items()
        )


class TestPositionFlow:
    @pytest.mark.asyncio
    async def test_no_snapshots_is_not_found(self, db_manager: DatabaseManager) -> None:
        response = await make_service(db_manager).position_flow("BTC")

        assert response.status_code == 404
        assert response.body["coin"] == "BTC"

    @pytest.mark.asyncio
    async def test_single_snapshot_has_empty_flow(self, db_manager: DatabaseManager) -> None:
        await insert_position_snapshot(db_manager, "s1", NOW, {TRADER: "1"})

        response = await make_service(db_manager).position_flow("btc", timeframe="1h")

        assert response.ok
        assert response.body["timeframe"] == "1 Hour"
        assert response.body["previous_snapshot_id"] is None
        assert response.body["summary"]["net_direction"] == "NEUTRAL"  # type: ignore[index]
        assert "message" in response.body

    @pytest.mark.asyncio
    async def test_flow_against_older_snapshot(self, db_manager: DatabaseManager) -> None:
        await insert_position_snapshot(db_manager, "s1", NOW - timedelta(hours=5), {TRADER: "1"})
        await insert_position_snapshot(db_manager, "s2", NOW - timedelta(hours=1), {TRADER: "2"})
        await insert_position_snapshot(db_manager, "s3", NOW, {TRADER: "3", OTHER: "-1"})

        response = await make_service(db_manager).position_flow("BTC", timeframe="bogus")

        assert response.ok
        assert response.body["timeframe"] == "4 Hours"
        assert response.body["current_snapshot_id"] == "s3"
        assert response.body["previous_snapshot_id"] == "s1"
        assert response.body["longs"]["adding"]["notional"] == 2000.0  # type: ignore[index]
        assert response.body["shorts"]["new"]["addresses"] == [OTHER]  # type: ignore[index]
        assert response.body["summary"]["fresh_capital"] == 3000.0  # type: ignore[index]


class TestPositionChanges:
    @pytest.mark.asyncio
    async def test_missing_snapshot_ids_are_rejected(self) -> None:
        response = await make_service(DatabaseManager(None)).position_changes("BTC", "s2", None)
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_invalid_side_is_rejected(self) -> None:
        response = await make_service(DatabaseManager(None)).position_changes("BTC", "s2", "s1", side="up")
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_change_list_and_summary(self, db_manager: DatabaseManager) -> None:
        await insert_position_snapshot(db_manager, "s1", NOW - timedelta(hours=1), {TRADER: "1", OTHER: "2"})
        await insert_position_snapshot(db_manager, "s2", NOW, {TRADER: "-4", "0xnew": "1"})

        response = await make_service(db_manager).position_changes("btc", "s2", "s1")

        assert response.ok
        assert [c["change_type"] for c in response.body["data"]] == [  # type: ignore[union-attr]
            "FLIPPED",
            "CLOSED",
            "NEW",
        ]
        assert response.body["summary"] == {
            "total_changes": 3,
            "new": 1,
            "increased": 0,
            "decreased": 0,
            "closed": 1,
            "flipped": 1,
            "net_trader_change": 0,
        }
