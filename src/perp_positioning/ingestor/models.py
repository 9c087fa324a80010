"""Data models for the ingestor module."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum


class MalformedFillError(ValueError):
    """Raised when a raw fill record cannot be turned into a Fill."""

    def __init__(self, reason: str, *, record: object = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.record = record


class FillSide(str, Enum):
    """Aggressor side of a fill, using the venue's side codes."""

    BUY = "B"
    SELL = "A"


@dataclass(frozen=True)
class Fill:
    """One executed trade leg for one trader on one coin.

    Produced by the FillNormalizer from a raw feed record. ``size`` is the
    unsigned magnitude; the direction of the trade is carried by ``side``.

    Attributes:
        fill_id: Unique identifier (tx hash + trade id where available).
        trader: Lowercased trader address.
        coin: Uppercased coin symbol (e.g. "BTC").
        price: Execution price.
        size: Executed size, always positive.
        side: BUY (B) or SELL (A).
        timestamp: Execution time (timezone-aware UTC).
        fee: Fee paid for this fill.
        realized_pnl: Closed PnL reported for this fill.
        direction: Free-text venue label ("Open Long", "Close Short", ...).
        tx_hash: Transaction hash, if the venue reported one.
        is_liquidation: True when the fill is part of a liquidation.
        start_position: Venue-reported position before this fill, if any.
        fee_token: Token in which the fee was charged.
    """

    fill_id: str
    trader: str
    coin: str
    price: Decimal
    size: Decimal
    side: FillSide
    timestamp: datetime
    fee: Decimal = Decimal(0)
    realized_pnl: Decimal = Decimal(0)
    direction: str = ""
    tx_hash: str | None = None
    is_liquidation: bool = False
    start_position: Decimal | None = None
    fee_token: str = "USDC"

    @property
    def is_buy(self) -> bool:
        """Return True if this is a buy fill."""
        return self.side == FillSide.BUY

    @property
    def signed_size(self) -> Decimal:
        """Return the size signed by side (buys positive, sells negative)."""
        return self.size if self.is_buy else -self.size

    @property
    def notional(self) -> Decimal:
        """Return the absolute notional value (|price * size|)."""
        return abs(self.price * self.size)

    @property
    def timestamp_ms(self) -> int:
        """Return the execution time as a millisecond epoch."""
        return int(self.timestamp.timestamp() * 1000)

    def to_dict(self) -> dict[str, object]:
        """Serialize for the raw-fill views of the serving layer."""
        return {
            "id": self.fill_id,
            "address": self.trader,
            "coin": self.coin,
            "price": str(self.price),
            "size": str(self.size),
            "side": self.side.value,
            "time": self.timestamp_ms,
            "value": str(self.notional),
            "isLong": "long" in self.direction.lower(),
            "fee": str(self.fee),
            "pnl": str(self.realized_pnl),
            "dir": self.direction,
            "hash": self.tx_hash,
            "liquidation": self.is_liquidation,
        }
