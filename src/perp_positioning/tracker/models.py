"""Data models for the position tracker."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Literal

PositionSide = Literal["long", "short"]


class DeltaKind(str, Enum):
    """How a single fill changed a trader's position."""

    NEW_LONG = "new-long"
    NEW_SHORT = "new-short"
    INCREASE_LONG = "increase-long"
    INCREASE_SHORT = "increase-short"
    DECREASE_LONG = "decrease-long"
    DECREASE_SHORT = "decrease-short"
    CLOSE_LONG = "close-long"
    CLOSE_SHORT = "close-short"
    FLIP_LONG_TO_SHORT = "flip-long-to-short"
    FLIP_SHORT_TO_LONG = "flip-short-to-long"
    LIQUIDATED = "liquidated"

    @property
    def is_new(self) -> bool:
        return self in (DeltaKind.NEW_LONG, DeltaKind.NEW_SHORT)

    @property
    def is_increase(self) -> bool:
        return self in (DeltaKind.INCREASE_LONG, DeltaKind.INCREASE_SHORT)

    @property
    def is_decrease(self) -> bool:
        return self in (DeltaKind.DECREASE_LONG, DeltaKind.DECREASE_SHORT)

    @property
    def is_close(self) -> bool:
        return self in (DeltaKind.CLOSE_LONG, DeltaKind.CLOSE_SHORT)

    @property
    def is_flip(self) -> bool:
        return self in (DeltaKind.FLIP_LONG_TO_SHORT, DeltaKind.FLIP_SHORT_TO_LONG)


def side_of(size: Decimal) -> PositionSide | None:
    """Return the side of a signed size, or None when flat."""
    if size > 0:
        return "long"
    if size < 0:
        return "short"
    return None


@dataclass
class PositionState:
    """Current net position of one trader in one coin.

    ``current_size`` is the running signed sum of fill sizes (buys positive,
    sells negative). A flat position is zeroed, never removed.
    """

    trader: str
    coin: str
    current_size: Decimal = Decimal(0)
    current_notional: Decimal = Decimal(0)
    last_updated: datetime | None = None
    avg_entry_price: Decimal | None = None
    realized_pnl: Decimal = Decimal(0)
    total_volume: Decimal = Decimal(0)
    first_entry_time: datetime | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.trader, self.coin)

    @property
    def side(self) -> PositionSide | None:
        return side_of(self.current_size)

    @property
    def is_flat(self) -> bool:
        return self.current_size == 0

    def to_dict(self) -> dict[str, object]:
        """Serialize for the active-positions view."""
        return {
            "address": self.trader,
            "coin": self.coin,
            "side": self.side,
            "current_size": float(self.current_size),
            "current_notional": float(self.current_notional),
            "avg_entry_price": float(self.avg_entry_price) if self.avg_entry_price is not None else None,
            "realized_pnl": float(self.realized_pnl),
            "total_volume": float(self.total_volume),
            "first_entry_time": self.first_entry_time.isoformat() if self.first_entry_time else None,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
        }


@dataclass(frozen=True)
class PositionDelta:
    """The effect of a single fill on a PositionState.

    Notionals on both sides of the delta are marked at the fill price so
    that threshold comparisons are made against the same price.

    Attributes:
        trader: Trader address.
        coin: Coin symbol.
        timestamp: Fill time.
        price: Fill price.
        fill_size: Signed fill size.
        fill_notional: |price * fill size|.
        previous_size: Signed size before the fill.
        previous_notional: |previous_size * price|.
        new_size: Signed size after the fill.
        new_notional: |new_size * price|.
        kind: Classification of the transition.
        fill_id: Identifier of the originating fill.
        is_buy: True if the originating fill was a buy.
    """

    trader: str
    coin: str
    timestamp: datetime
    price: Decimal
    fill_size: Decimal
    fill_notional: Decimal
    previous_size: Decimal
    previous_notional: Decimal
    new_size: Decimal
    new_notional: Decimal
    kind: DeltaKind
    fill_id: str = ""
    is_buy: bool = True

    @property
    def size_delta(self) -> Decimal:
        return self.new_size - self.previous_size

    @property
    def notional_delta(self) -> Decimal:
        return self.new_notional - self.previous_notional

    @property
    def previous_side(self) -> PositionSide | None:
        return side_of(self.previous_size)

    @property
    def new_side(self) -> PositionSide | None:
        return side_of(self.new_size)

    def to_dict(self) -> dict[str, object]:
        return {
            "trader": self.trader,
            "coin": self.coin,
            "timestamp": self.timestamp.isoformat(),
            "price": str(self.price),
            "previous_size": str(self.previous_size),
            "previous_notional": str(self.previous_notional),
            "new_size": str(self.new_size),
            "new_notional": str(self.new_notional),
            "kind": self.kind.value,
            "fill_id": self.fill_id,
        }
