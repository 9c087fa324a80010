"""Tests for minute aggregation."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from perp_positioning.aggregator.minute import MinuteAggregator, aggregate_delta
from perp_positioning.aggregator.models import AggregationConflictError, MinuteAggregate, floor_minute
from perp_positioning.tracker.models import PositionDelta
from perp_positioning.tracker.position_tracker import classify

TRADER_A = "0x1111111111111111111111111111111111111111"
TRADER_B = "0x2222222222222222222222222222222222222222"
TRADER_C = "0x3333333333333333333333333333333333333333"
MINUTE = datetime(2024, 3, 1, 10, 5, tzinfo=UTC)


def make_delta(
    previous: str,
    new: str,
    price: str = "100",
    *,
    trader: str = TRADER_A,
    coin: str = "BTC",
    seconds: int = 0,
    liquidation: bool = False,
) -> PositionDelta:
    previous_size = Decimal(previous)
    new_size = Decimal(new)
    px = Decimal(price)
    fill_size = new_size - previous_size
    return PositionDelta(
        trader=trader,
        coin=coin,
        timestamp=MINUTE + timedelta(seconds=seconds),
        price=px,
        fill_size=fill_size,
        fill_notional=abs(fill_size * px),
        previous_size=previous_size,
        previous_notional=abs(previous_size * px),
        new_size=new_size,
        new_notional=abs(new_size * px),
        kind=classify(previous_size, new_size, liquidation=liquidation),
        fill_id=f"{trader}-{seconds}",
        is_buy=fill_size > 0,
    )


class TestAggregateDelta:
    def test_new_long(self) -> None:
        update = aggregate_delta(make_delta("0", "2", seconds=12), is_new_wallet=True)

        assert update.minute == MINUTE
        assert update.new_longs == 1
        assert update.long_volume_in == Decimal("200")
        assert update.buy_volume == Decimal("200")
        assert update.sell_volume == 0
        assert update.wallets == frozenset({TRADER_A})
        assert update.new_wallets == frozenset({TRADER_A})
        assert update.whale_wallets == frozenset()
        assert update.price_low == update.price_high == Decimal("100")

    def test_decrease_counts_outflow(self) -> None:
        update = aggregate_delta(make_delta("-5", "-2"))

        assert update.decreased_shorts == 1
        assert update.short_volume_out == Decimal("300")
        assert update.buy_volume == Decimal("300")

    def test_flip_counts_close_and_open(self) -> None:
        update = aggregate_delta(make_delta("2", "-3"))

        assert update.closed_longs == 1
        assert update.new_shorts == 1
        assert update.long_volume_out == Decimal("200")
        assert update.short_volume_in == Decimal("300")
        assert update.sell_volume == Decimal("500")
        assert update.total_volume == Decimal("500")

    def test_liquidation_counts_underlying_transition(self) -> None:
        update = aggregate_delta(make_delta("5", "0", "90", liquidation=True))

        assert update.liquidations == 1
        assert update.closed_longs == 1
        assert update.long_volume_out == Decimal("450")

    def test_whale_wallet_uses_larger_side(self) -> None:
        update = aggregate_delta(make_delta("20", "0"), whale_threshold=Decimal("1000"))
        assert update.whale_wallets == frozenset({TRADER_A})

    def test_net_flows(self) -> None:
        update = aggregate_delta(make_delta("0", "4")).merge(aggregate_delta(make_delta("0", "-1", trader=TRADER_B)))

        assert update.net_long_flow == Decimal("400")
        assert update.net_short_flow == Decimal("100")
        assert update.net_total_flow == Decimal("300")
        assert update.to_dict()["net_total_flow"] == 300.0


class TestMinuteAggregateMerge:
    def _updates(self) -> tuple[MinuteAggregate, MinuteAggregate, MinuteAggregate]:
        a = aggregate_delta(make_delta("0", "2", "100", trader=TRADER_A), is_new_wallet=True)
        b = aggregate_delta(make_delta("3", "-1", "105", trader=TRADER_B, seconds=20))
        c = aggregate_delta(
            make_delta("2000", "2500", "98", trader=TRADER_C, seconds=40),
            whale_threshold=Decimal("100000"),
        )
        return a, b, c

    def test_merge_is_commutative(self) -> None:
        a, b, _ = self._updates()
        assert a.merge(b) == b.merge(a)

    def test_merge_is_associative(self) -> None:
        a, b, c = self._updates()
        assert (a + b) + c == a + (b + c)
        assert (a + b) + c == (c + a) + b

    def test_empty_is_identity(self) -> None:
        a, _, _ = self._updates()
        assert a.merge(MinuteAggregate.empty("BTC", MINUTE)) == a

    def test_merged_values(self) -> None:
        a, b, c = self._updates()
        total = a + b + c

        assert total.new_longs == 1
        assert total.closed_longs == 1
        assert total.new_shorts == 1
        assert total.increased_longs == 1
        assert total.unique_wallets == 3
        assert total.new_wallet_count == 1
        assert total.whale_wallet_count == 1
        assert total.price_low == Decimal("98")
        assert total.price_high == Decimal("105")
        assert total.price_count == 3
        assert total.avg_price == Decimal("101")

    def test_merge_rejects_other_bucket(self) -> None:
        a = aggregate_delta(make_delta("0", "2"))
        later = aggregate_delta(make_delta("0", "2", seconds=60))

        with pytest.raises(AggregationConflictError):
            a.merge(later)

    def test_merge_rejects_negative_counter(self) -> None:
        bad = MinuteAggregate(coin="BTC", minute=MINUTE, new_longs=-1)
        with pytest.raises(AggregationConflictError):
            MinuteAggregate.empty("BTC", MINUTE).merge(bad)

    def test_merge_rejects_non_decimal_volume(self) -> None:
        bad = MinuteAggregate(coin="BTC", minute=MINUTE, total_volume=1.5)  # type: ignore[arg-type]
        with pytest.raises(AggregationConflictError):
            MinuteAggregate.empty("BTC", MINUTE).merge(bad)

    def test_floor_minute_requires_timezone(self) -> None:
        with pytest.raises(ValueError):
            floor_minute(datetime(2024, 3, 1, 10, 5, 30))
        assert floor_minute(MINUTE + timedelta(seconds=59)) == MINUTE


class TestMinuteAggregator:
    def test_fold_accumulates_same_minute(self) -> None:
        aggregator = MinuteAggregator()
        aggregator.fold(make_delta("0", "2", seconds=1), is_new_wallet=True)
        aggregator.fold(make_delta("2", "5", seconds=30))

        bucket = aggregator.bucket("BTC", MINUTE)
        assert bucket is not None
        assert bucket.new_longs == 1
        assert bucket.increased_longs == 1
        assert bucket.unique_wallets == 1
        assert bucket.new_wallet_count == 1

    def test_fold_order_does_not_matter(self) -> None:
        deltas = [
            make_delta("0", "2", trader=TRADER_A, seconds=1),
            make_delta("1", "-4", trader=TRADER_B, seconds=2),
            make_delta("-3", "0", trader=TRADER_C, seconds=3),
        ]
        forward = MinuteAggregator()
        backward = MinuteAggregator()
        for delta in deltas:
            forward.fold(delta)
        for delta in reversed(deltas):
            backward.fold(delta)

        assert forward.buckets() == backward.buckets()

    def test_separate_minutes_and_coins(self) -> None:
        aggregator = MinuteAggregator()
        aggregator.fold(make_delta("0", "2", seconds=0))
        aggregator.fold(make_delta("0", "2", seconds=60))
        aggregator.fold(make_delta("0", "2", coin="ETH"))

        assert len(aggregator.buckets()) == 3
        assert [b.minute for b in aggregator.buckets("BTC")] == [MINUTE, MINUTE + timedelta(minutes=1)]

    def test_drain_returns_only_unflushed_contributions(self) -> None:
        aggregator = MinuteAggregator()
        aggregator.fold(make_delta("0", "2"))
        first = aggregator.drain()
        aggregator.fold(make_delta("0", "-1", trader=TRADER_B, seconds=10))
        second = aggregator.drain()

        assert [u.new_longs for u in first] == [1]
        assert [(u.new_longs, u.new_shorts) for u in second] == [(0, 1)]
        assert aggregator.drain() == []
        bucket = aggregator.bucket("BTC", MINUTE)
        assert bucket is not None
        assert (bucket.new_longs, bucket.new_shorts) == (1, 1)

    def test_requeue_restores_pending_without_double_counting(self) -> None:
        aggregator = MinuteAggregator()
        aggregator.fold(make_delta("0", "2"))
        drained = aggregator.drain()
        aggregator.fold(make_delta("0", "-1", trader=TRADER_B, seconds=10))

        aggregator.requeue(drained)

        pending = aggregator.drain()
        assert [(u.new_longs, u.new_shorts) for u in pending] == [(1, 1)]
        bucket = aggregator.bucket("BTC", MINUTE)
        assert bucket is not None
        assert (bucket.new_longs, bucket.new_shorts) == (1, 1)

    def test_rejected_update_leaves_bucket_untouched(self) -> None:
        aggregator = MinuteAggregator()
        aggregator.fold(make_delta("0", "2"))
        before = aggregator.bucket("BTC", MINUTE)

        with pytest.raises(AggregationConflictError):
            aggregator.merge(MinuteAggregate(coin="BTC", minute=MINUTE, closed_longs=-2))

        assert aggregator.bucket("BTC", MINUTE) == before

    def test_fold_rejects_foreign_trader(self) -> None:
        with pytest.raises(ValueError):
            MinuteAggregator().fold(make_delta("0", "2"), TRADER_B)

    def test_prune_before(self) -> None:
        aggregator = MinuteAggregator()
        aggregator.fold(make_delta("0", "2", seconds=0))
        aggregator.fold(make_delta("0", "2", seconds=180))

        removed = aggregator.prune_before(MINUTE + timedelta(minutes=2))

        assert removed == 1
        assert [b.minute for b in aggregator.buckets()] == [MINUTE + timedelta(minutes=3)]
