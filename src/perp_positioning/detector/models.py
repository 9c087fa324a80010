"""Data models for the whale alert detector."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum


class WhaleAlertType(str, Enum):
    """Kinds of whale position events."""

    NEW_WHALE = "NEW_WHALE"
    WHALE_ADD = "WHALE_ADD"
    WHALE_CLOSE = "WHALE_CLOSE"


@dataclass(frozen=True)
class WhaleAlert:
    """Alert emitted when a position change crosses or sits above the whale threshold.

    Alerts are keyed by (coin, trader, timestamp) and never mutated.

    Attributes:
        coin: Coin symbol.
        trader: Trader address.
        timestamp: Time of the triggering fill.
        alert_type: NEW_WHALE, WHALE_ADD or WHALE_CLOSE.
        notional: Position notional at trigger. For closes this is the
            notional that was given up.
        direction: Position side the alert refers to ("long" or "short").
        previous_size: Signed size before the fill.
        new_size: Signed size after the fill.
        price: Fill price.
        notional_delta: Change in position notional.
        fill_id: Identifier of the triggering fill.
    """

    coin: str
    trader: str
    timestamp: datetime
    alert_type: WhaleAlertType
    notional: Decimal
    direction: str
    previous_size: Decimal = Decimal(0)
    new_size: Decimal = Decimal(0)
    price: Decimal = Decimal(0)
    notional_delta: Decimal = Decimal(0)
    fill_id: str = ""

    @property
    def key(self) -> tuple[str, str, datetime]:
        return (self.coin, self.trader, self.timestamp)

    @property
    def size_delta(self) -> Decimal:
        return self.new_size - self.previous_size

    def to_dict(self) -> dict[str, object]:
        """Serialize for API responses."""
        return {
            "coin": self.coin,
            "address": self.trader,
            "alert_type": self.alert_type.value,
            "direction": self.direction,
            "notional": float(self.notional),
            "previous_size": float(self.previous_size),
            "new_size": float(self.new_size),
            "size_delta": float(self.size_delta),
            "notional_delta": float(self.notional_delta),
            "price": float(self.price),
            "timestamp": self.timestamp.isoformat(),
            "fill_id": self.fill_id,
        }
