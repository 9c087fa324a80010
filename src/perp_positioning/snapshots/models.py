"""Data models for positioning snapshots."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, int | float):
        ts = datetime.fromtimestamp(value / 1000, tz=UTC)
    else:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC)


@dataclass(frozen=True)
class TraderSnapshot:
    """Periodic point-in-time positioning summary for one coin.

    Written by an external sampler roughly every 10 minutes. The history is
    an append-only log that may contain jittered timestamps and several
    rows per nominal interval.

    Attributes:
        coin: Coin symbol.
        timestamp: Sample time (UTC).
        long_count: Number of traders net long.
        short_count: Number of traders net short.
        long_notional: Total notional of long positions.
        short_notional: Total notional of short positions.
        total_traders: Number of traders with an open position.
        long_short_ratio: long_count / short_count as reported by the sampler.
    """

    coin: str
    timestamp: datetime
    long_count: int = 0
    short_count: int = 0
    long_notional: Decimal = Decimal(0)
    short_notional: Decimal = Decimal(0)
    total_traders: int = 0
    long_short_ratio: Decimal = Decimal(0)

    @property
    def timestamp_ms(self) -> int:
        return int(self.timestamp.timestamp() * 1000)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TraderSnapshot:
        """Create from a stored row using snake_case column names."""
        return cls(
            coin=str(data["coin"]).upper(),
            timestamp=_parse_timestamp(data["timestamp"]),
            long_count=int(data.get("long_count") or 0),
            short_count=int(data.get("short_count") or 0),
            long_notional=Decimal(str(data.get("long_notional") or 0)),
            short_notional=Decimal(str(data.get("short_notional") or 0)),
            total_traders=int(data.get("total_traders") or 0),
            long_short_ratio=Decimal(str(data.get("long_short_ratio") or 0)),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "coin": self.coin,
            "timestamp": self.timestamp.isoformat(),
            "long_count": self.long_count,
            "short_count": self.short_count,
            "long_notional": str(self.long_notional),
            "short_notional": str(self.short_notional),
            "total_traders": self.total_traders,
            "long_short_ratio": str(self.long_short_ratio),
        }


@dataclass(frozen=True)
class SnapshotRef:
    """Identity and capture time of one full position snapshot."""

    snapshot_id: str
    created_at: datetime


@dataclass(frozen=True)
class PositionSnapshot:
    """One trader's open position inside a full-market position snapshot.

    A snapshot is every row sharing ``snapshot_id``. A trader missing from
    a snapshot is flat at that time.
    """

    coin: str
    snapshot_id: str
    address: str
    size: Decimal  # signed; negative is short
    notional: Decimal
    created_at: datetime
    entry_price: Decimal | None = None
    leverage: Decimal | None = None
    leverage_type: str = "cross"

    @property
    def side(self) -> str:
        return "long" if self.size > 0 else "short"

    @property
    def abs_notional(self) -> Decimal:
        return abs(self.notional)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PositionSnapshot:
        """Create from a sampler row; ``leverage_type`` 0 means cross margin."""
        leverage_type = data.get("leverage_type", "cross")
        if isinstance(leverage_type, int):
            leverage_type = "cross" if leverage_type == 0 else "isolated"
        entry_price = data.get("entry_price")
        leverage = data.get("leverage")
        return cls(
            coin=str(data.get("coin") or data["market"]).upper(),
            snapshot_id=str(data["snapshot_id"]),
            address=str(data["address"]).lower(),
            size=Decimal(str(data["size"])),
            notional=Decimal(str(data["notional"])),
            created_at=_parse_timestamp(data["created_at"]),
            entry_price=Decimal(str(entry_price)) if entry_price is not None else None,
            leverage=Decimal(str(leverage)) if leverage is not None else None,
            leverage_type=str(leverage_type),
        )
