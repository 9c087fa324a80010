"""Tests for snapshot-to-snapshot position flow."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

import pytest

from perp_positioning.snapshots.flow import (
    ChangeType,
    FlowCategory,
    PositionFlow,
    compute_flow,
    diff_positions,
)
from perp_positioning.snapshots.models import PositionSnapshot

CAPTURED = datetime(2024, 3, 1, 10, 0, tzinfo=UTC)


def make_position(address: str, size: str, notional: str, snapshot_id: str = "snap-2") -> PositionSnapshot:
    return PositionSnapshot(
        coin="BTC",
        snapshot_id=snapshot_id,
        address=address,
        size=Decimal(size),
        notional=Decimal(notional),
        created_at=CAPTURED,
    )


@pytest.fixture
def previous() -> list[PositionSnapshot]:
    return [
        make_position("0xadd", "2", "200", "snap-1"),
        make_position("0xred", "-3", "300", "snap-1"),
        make_position("0xgone", "1", "100", "snap-1"),
        make_position("0xheld", "5", "500", "snap-1"),
        make_position("0xflip", "1", "100", "snap-1"),
    ]


@pytest.fixture
def current() -> list[PositionSnapshot]:
    return [
        make_position("0xadd", "4", "400"),
        make_position("0xred", "-1", "100"),
        make_position("0xheld", "5", "520"),
        make_position("0xflip", "-2", "200"),
        make_position("0xnew", "1", "50"),
    ]


class TestDiffPositions:
    def test_classifies_each_wallet(
        self, previous: list[PositionSnapshot], current: list[PositionSnapshot]
    ) -> None:
        changes = diff_positions(previous, current)

        assert {c.address: c.change_type for c in changes} == {
            "0xadd": ChangeType.INCREASED,
            "0xred": ChangeType.DECREASED,
            "0xgone": ChangeType.CLOSED,
            "0xflip": ChangeType.FLIPPED,
            "0xnew": ChangeType.NEW,
        }

    def test_price_move_alone_is_not_a_change(self) -> None:
        changes = diff_positions(
            [make_position("0xheld", "5", "500", "snap-1")],
            [make_position("0xheld", "5", "650")],
        )
        assert changes == []

    def test_sorted_by_notional_delta(self) -> None:
        changes = diff_positions(
            [make_position("0xa", "1", "100", "snap-1"), make_position("0xb", "1", "100", "snap-1")],
            [make_position("0xa", "2", "200"), make_position("0xc", "-9", "900")],
        )
        assert [c.address for c in changes] == ["0xc", "0xa", "0xb"]

    def test_closed_change_keeps_previous_side(self, previous, current) -> None:
        closed = next(c for c in diff_positions(previous, current) if c.address == "0xgone")

        assert closed.side == "long"
        assert closed.size == 0
        assert closed.notional_delta == Decimal("-100")
        assert closed.to_dict()["previous_size"] == 1.0

    def test_min_notional_treats_small_rows_as_flat(self) -> None:
        changes = diff_positions(
            [make_position("0xa", "1", "500", "snap-1")],
            [make_position("0xa", "3", "1500")],
            min_notional=Decimal("1000"),
        )
        assert [c.change_type for c in changes] == [ChangeType.NEW]
        assert changes[0].to_dict()["previous_size"] is None

    @pytest.mark.parametrize(("side", "expected"), [("long", ChangeType.CLOSED), ("short", ChangeType.NEW)])
    def test_side_filter_splits_flips(self, side: str, expected: ChangeType) -> None:
        changes = diff_positions(
            [make_position("0xflip", "1", "100", "snap-1")],
            [make_position("0xflip", "-2", "200")],
            side=side,
        )
        assert [c.change_type for c in changes] == [expected]

    def test_rejects_unknown_side(self) -> None:
        with pytest.raises(ValueError):
            diff_positions([], [], side="both")


class TestComputeFlow:
    def test_side_flows_and_summary(self, previous, current) -> None:
        flow = compute_flow(diff_positions(previous, current))

        assert flow.longs.new.notional == Decimal("50")
        # 2 more coins valued at the current mark of 100.
        assert flow.longs.adding.notional == Decimal("200")
        assert flow.longs.closed.count == 2
        assert flow.longs.closed.notional == Decimal("200")
        assert flow.shorts.new.notional == Decimal("200")
        assert flow.shorts.reducing.notional == Decimal("200")
        assert flow.longs.net_flow == Decimal("50")
        assert flow.shorts.net_flow == Decimal("0")
        assert flow.fresh_capital == Decimal("450")
        assert flow.exits == Decimal("400")
        assert flow.net_direction == "LONG"
        assert flow.conviction_score == 100
        assert flow.total_new_traders == 2
        assert flow.total_closed_traders == 2

    def test_short_leaning_flow(self) -> None:
        flow = compute_flow(
            diff_positions(
                [make_position("0xa", "2", "200", "snap-1")],
                [make_position("0xa", "1", "100"), make_position("0xb", "-3", "300")],
            )
        )

        assert flow.net_flow == Decimal("-400")
        assert flow.net_direction == "SHORT"
        assert flow.conviction_score == -100

    def test_empty_flow_is_neutral(self) -> None:
        data = PositionFlow().to_dict()

        assert data["summary"] == {
            "fresh_capital": 0.0,
            "exits": 0.0,
            "net_flow": 0.0,
            "net_direction": "NEUTRAL",
            "conviction_score": 0,
            "total_new_traders": 0,
            "total_closed_traders": 0,
        }
        assert data["longs"]["new"] == {  # type: ignore[index]
            "count": 0,
            "notional": 0.0,
            "avg_notional": 0.0,
            "addresses": [],
        }

    def test_category_ranks_and_limits_addresses(self) -> None:
        category = FlowCategory()
        for address, notional in [("0xs", "10"), ("0xl", "300"), ("0xm", "50")]:
            category.add(address, Decimal(notional))

        assert category.addresses() == ["0xl", "0xm", "0xs"]
        assert category.to_dict(address_limit=2)["addresses"] == ["0xl", "0xm"]
        assert category.avg_notional == Decimal("120")


class TestPositionSnapshot:
    def test_from_dict(self) -> None:
        snapshot = PositionSnapshot.from_dict(
            {
                "market": "eth",
                "snapshot_id": "abc",
                "address": "0xABC",
                "size": -1.5,
                "notional": "4500",
                "entry_price": 3000,
                "leverage": 10,
                "leverage_type": 1,
                "created_at": "2024-03-01T10:00:00Z",
            }
        )

        assert snapshot.coin == "ETH"
        assert snapshot.address == "0xabc"
        assert snapshot.side == "short"
        assert snapshot.leverage_type == "isolated"
        assert snapshot.created_at == CAPTURED
