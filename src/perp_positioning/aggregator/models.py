"""Data models for the minute aggregator.

MinuteAggregate is a commutative monoid per (coin, minute) key: ``merge``
adds counters and volumes, takes min/max of the price range and unions the
wallet sets. ``MinuteAggregate.empty`` is the identity element.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

ZERO = Decimal(0)

COUNTER_FIELDS = (
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
)

VOLUME_FIELDS = (
    "long_volume_in",
    "short_volume_in",
    "long_volume_out",
    "short_volume_out",
    "buy_volume",
    "sell_volume",
    "total_volume",
    "total_size",
    "price_sum",
)

WALLET_FIELDS = ("wallets", "new_wallets", "whale_wallets")


class AggregationConflictError(Exception):
    """Raised when two aggregates cannot be merged or a bucket is corrupt."""


def floor_minute(ts: datetime) -> datetime:
    """Truncate a timezone-aware timestamp to its UTC minute."""
    if ts.tzinfo is None:
        raise ValueError("timestamp must be timezone-aware")
    return ts.astimezone(UTC).replace(second=0, microsecond=0)


def _min_price(a: Decimal | None, b: Decimal | None) -> Decimal | None:
    if a is None:
        return b
    if b is None:
        return a
    return min(a, b)


def _max_price(a: Decimal | None, b: Decimal | None) -> Decimal | None:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


@dataclass(frozen=True)
class MinuteAggregate:
    """Position-change rollup for one coin in one UTC minute.

    Attributes:
        coin: Coin symbol.
        minute: Minute-aligned UTC timestamp.
        new_longs .. closed_shorts: Position transition counters.
        liquidations: Liquidation fills folded into the bucket.
        long_volume_in / short_volume_in: Notional opened or added.
        long_volume_out / short_volume_out: Notional reduced or closed.
        buy_volume / sell_volume: Notional by aggressor side.
        total_volume: Total fill notional.
        total_size: Total absolute fill size (VWAP denominator).
        price_sum / price_count: Running-mean inputs for avg_price.
        price_low / price_high: Fill price range.
        wallets: Distinct traders seen in the bucket.
        new_wallets: Traders seen for the first time on this coin.
        whale_wallets: Traders whose position notional reached the whale threshold.
    """

    coin: str
    minute: datetime
    new_longs: int = 0
    new_shorts: int = 0
    increased_longs: int = 0
    increased_shorts: int = 0
    decreased_longs: int = 0
    decreased_shorts: int = 0
    closed_longs: int = 0
    closed_shorts: int = 0
    liquidations: int = 0
    long_volume_in: Decimal = ZERO
    short_volume_in: Decimal = ZERO
    long_volume_out: Decimal = ZERO
    short_volume_out: Decimal = ZERO
    buy_volume: Decimal = ZERO
    sell_volume: Decimal = ZERO
    total_volume: Decimal = ZERO
    total_size: Decimal = ZERO
    price_sum: Decimal = ZERO
    price_count: int = 0
    price_low: Decimal | None = None
    price_high: Decimal | None = None
    wallets: frozenset[str] = field(default_factory=frozenset)
    new_wallets: frozenset[str] = field(default_factory=frozenset)
    whale_wallets: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def empty(cls, coin: str, minute: datetime) -> MinuteAggregate:
        """Identity element for the (coin, minute) bucket."""
        return cls(coin=coin, minute=floor_minute(minute))

    @property
    def key(self) -> tuple[str, datetime]:
        return (self.coin, self.minute)

    def merge(self, other: MinuteAggregate) -> MinuteAggregate:
        """Combine two aggregates for the same bucket.

        Raises:
            AggregationConflictError: If the buckets differ or either side
                holds invalid values.
        """
        if self.key != other.key:
            raise AggregationConflictError(
                f"cannot merge bucket {other.coin}@{other.minute.isoformat()} "
                f"into {self.coin}@{self.minute.isoformat()}"
            )
        self.validate()
        other.validate()
        values: dict[str, Any] = {"coin": self.coin, "minute": self.minute}
        for name in COUNTER_FIELDS + VOLUME_FIELDS:
            values[name] = getattr(self, name) + getattr(other, name)
        for name in WALLET_FIELDS:
            values[name] = getattr(self, name) | getattr(other, name)
        values["price_low"] = _min_price(self.price_low, other.price_low)
        values["price_high"] = _max_price(self.price_high, other.price_high)
        return MinuteAggregate(**values)

    __add__ = merge

    def validate(self) -> None:
        """Check types and signs of every counter and volume."""
        for name in COUNTER_FIELDS:
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise AggregationConflictError(f"{self.coin}@{self.minute.isoformat()}: bad {name}={value!r}")
        for name in VOLUME_FIELDS:
            value = getattr(self, name)
            if not isinstance(value, Decimal) or not value.is_finite() or value < 0:
                raise AggregationConflictError(f"{self.coin}@{self.minute.isoformat()}: bad {name}={value!r}")
        for name in WALLET_FIELDS:
            if not isinstance(getattr(self, name), frozenset):
                raise AggregationConflictError(f"{self.coin}@{self.minute.isoformat()}: bad {name}")

    @property
    def unique_wallets(self) -> int:
        return len(self.wallets)

    @property
    def new_wallet_count(self) -> int:
        return len(self.new_wallets)

    @property
    def whale_wallet_count(self) -> int:
        return len(self.whale_wallets)

    @property
    def avg_price(self) -> Decimal | None:
        """Running mean of fill prices folded into the bucket."""
        if self.price_count == 0:
            return None
        return self.price_sum / self.price_count

    @property
    def volume_weighted_price(self) -> Decimal | None:
        if self.total_size == 0:
            return None
        return self.total_volume / self.total_size

    @property
    def net_long_flow(self) -> Decimal:
        return self.long_volume_in - self.long_volume_out

    @property
    def net_short_flow(self) -> Decimal:
        return self.short_volume_in - self.short_volume_out

    @property
    def net_total_flow(self) -> Decimal:
        return self.net_long_flow - self.net_short_flow

    def counters(self) -> dict[str, int | Decimal]:
        """Additive columns only, as stored in the minute_aggregates table."""
        return {f.name: getattr(self, f.name) for f in fields(self) if f.name in COUNTER_FIELDS + VOLUME_FIELDS}

    def to_dict(self) -> dict[str, object]:
        """Serialize for API responses."""
        avg_price = self.avg_price
        vwap = self.volume_weighted_price
        return {
            "coin": self.coin,
            "minute_timestamp": self.minute.isoformat(),
            "new_longs": self.new_longs,
            "new_shorts": self.new_shorts,
            "increased_longs": self.increased_longs,
            "increased_shorts": self.increased_shorts,
            "decreased_longs": self.decreased_longs,
            "decreased_shorts": self.decreased_shorts,
            "closed_longs": self.closed_longs,
            "closed_shorts": self.closed_shorts,
            "liquidations": self.liquidations,
            "long_volume_in": float(self.long_volume_in),
            "short_volume_in": float(self.short_volume_in),
            "long_volume_out": float(self.long_volume_out),
            "short_volume_out": float(self.short_volume_out),
            "net_long_flow": float(self.net_long_flow),
            "net_short_flow": float(self.net_short_flow),
            "net_total_flow": float(self.net_total_flow),
            "unique_wallets": self.unique_wallets,
            "new_wallets": self.new_wallet_count,
            "whale_wallets": self.whale_wallet_count,
            "avg_price": float(avg_price) if avg_price is not None else None,
            "volume_weighted_price": float(vwap) if vwap is not None else None,
            "price_range_low": float(self.price_low) if self.price_low is not None else None,
            "price_range_high": float(self.price_high) if self.price_high is not None else None,
            "total_volume": float(self.total_volume),
        }
