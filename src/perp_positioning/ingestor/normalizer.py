"""Fill normalization.

This module provides the FillNormalizer class that turns loosely-typed
fill and liquidation records from the upstream feed into canonical
Fill entities. Records that cannot be validated are dropped and counted,
never passed downstream.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from perp_positioning.ingestor.models import Fill, FillSide, MalformedFillError

logger = logging.getLogger(__name__)

_BUY_CODES = frozenset({"B", "BUY", "BID", "LONG"})
_SELL_CODES = frozenset({"A", "S", "SELL", "ASK", "SHORT"})
_TRUE_FLAGS = frozenset({"TRUE", "1", "YES", "Y"})

# Epoch values above this are already in milliseconds.
_MS_EPOCH_FLOOR = 1e11


@dataclass
class NormalizerStats:
    """Counters for normalized and dropped records."""

    accepted: int = 0
    dropped: int = 0
    skipped_untracked: int = 0
    drop_reasons: Counter[str] = field(default_factory=Counter)


def _first(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return None


def _parse_decimal(value: Any, name: str, *, required: bool = True) -> Decimal | None:
    if value is None:
        if required:
            raise MalformedFillError(f"missing {name}")
        return None
    if isinstance(value, bool):
        raise MalformedFillError(f"non-numeric {name}: {value!r}")
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as e:
        raise MalformedFillError(f"non-numeric {name}: {value!r}") from e
    if not parsed.is_finite():
        raise MalformedFillError(f"non-finite {name}: {value!r}")
    return parsed


def _parse_timestamp(value: Any) -> datetime:
    if value is None:
        raise MalformedFillError("missing timestamp")
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    try:
        epoch = _parse_decimal(value, "timestamp")
    except MalformedFillError:
        if not isinstance(value, str):
            raise
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            raise MalformedFillError(f"non-numeric timestamp: {value!r}") from e
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed.astimezone(UTC)
    if epoch is None or epoch <= 0:
        raise MalformedFillError(f"invalid timestamp: {value!r}")
    seconds = float(epoch) / 1000.0 if epoch > _MS_EPOCH_FLOOR else float(epoch)
    return datetime.fromtimestamp(seconds, tz=UTC)


def _infer_side(raw_side: Any, raw_size: Decimal, direction: str) -> FillSide:
    if raw_side is not None:
        code = str(raw_side).strip().upper()
        if code in _BUY_CODES:
            return FillSide.BUY
        if code in _SELL_CODES:
            return FillSide.SELL
        raise MalformedFillError(f"unknown side code: {raw_side!r}")
    if raw_size < 0:
        return FillSide.SELL
    hint = direction.lower()
    if "open long" in hint or "close short" in hint:
        return FillSide.BUY
    if "open short" in hint or "close long" in hint:
        return FillSide.SELL
    raise MalformedFillError("missing side")


def _parse_flag(value: Any) -> bool:
    """Interpret an explicit liquidation marker from the feed."""
    if isinstance(value, bool):
        return value
    if isinstance(value, Mapping):
        return bool(value)
    if isinstance(value, (int, float, Decimal)):
        return value != 0
    if isinstance(value, str):
        return value.strip().upper() in _TRUE_FLAGS
    return False


def _is_liquidation(details: Mapping[str, Any], direction: str) -> bool:
    if _parse_flag(_first(details, "liquidation", "isLiquidation", "is_liquidation")):
        return True
    return "liquidat" in direction.lower()


class FillNormalizer:
    """Converts raw venue fill/liquidation records into canonical Fills.

    Accepts either the upstream ``[address, details]`` pair or a flat
    mapping carrying the trader address itself. Field aliases cover both
    the venue's short names (``px``, ``sz``, ``time``, ``dir``) and
    long-form names (``price``, ``size``, ``timestamp``, ``direction``).

    Example:
        ```python
        normalizer = FillNormalizer(tracked_coins={"BTC", "ETH"})
        fills = normalizer.normalize_many(message["fills"])
        print(normalizer.stats.dropped)
        ```
    """

    def __init__(self, *, tracked_coins: Iterable[str] | None = None) -> None:
        """Initialize the normalizer.

        Args:
            tracked_coins: Coins to keep. None or empty keeps every coin.
        """
        coins = {c.upper() for c in tracked_coins or ()}
        self._tracked_coins: frozenset[str] | None = frozenset(coins) if coins else None
        self._stats = NormalizerStats()

    @property
    def stats(self) -> NormalizerStats:
        """Current normalization counters."""
        return self._stats

    def is_tracked(self, coin: str) -> bool:
        """Return True if fills for this coin should be kept."""
        return self._tracked_coins is None or coin.upper() in self._tracked_coins

    def normalize(self, record: Any) -> Fill:
        """Validate one raw record into a Fill.

        Args:
            record: ``[address, details]`` pair or a flat mapping.

        Returns:
            The canonical Fill.

        Raises:
            MalformedFillError: If trader, coin, price, size, side or
                timestamp is missing or unusable.
        """
        address, details = self._unpack(record)

        coin = str(_first(details, "coin", "symbol", "market") or "").strip().upper()
        if not coin:
            raise MalformedFillError("missing coin", record=record)
        if not address:
            raise MalformedFillError("missing trader address", record=record)

        try:
            price = _parse_decimal(_first(details, "px", "price"), "price")
            raw_size = _parse_decimal(_first(details, "sz", "size"), "size")
            timestamp = _parse_timestamp(_first(details, "time", "timestamp", "ts"))
            if price is None or raw_size is None:
                raise MalformedFillError("missing price or size")
            if price <= 0:
                raise MalformedFillError(f"non-positive price: {price}")
            if raw_size == 0:
                raise MalformedFillError("zero size")

            direction = str(_first(details, "dir", "direction") or "").strip()
            side = _infer_side(_first(details, "side"), raw_size, direction)
            fee = _parse_decimal(_first(details, "fee"), "fee", required=False) or Decimal(0)
            pnl = _parse_decimal(
                _first(details, "closedPnl", "closed_pnl", "realized_pnl"), "closedPnl", required=False
            ) or Decimal(0)
            start_position = _parse_decimal(
                _first(details, "startPosition", "start_position"), "startPosition", required=False
            )
        except MalformedFillError as e:
            raise MalformedFillError(e.reason, record=record) from e

        tx_hash = _first(details, "hash", "tx_hash", "transactionHash")
        return Fill(
            fill_id=self._fill_id(details, address, coin, timestamp, tx_hash),
            trader=address,
            coin=coin,
            price=price,
            size=abs(raw_size),
            side=side,
            timestamp=timestamp,
            fee=fee,
            realized_pnl=pnl,
            direction=direction,
            tx_hash=str(tx_hash) if tx_hash is not None else None,
            is_liquidation=_is_liquidation(details, direction),
            start_position=start_position,
            fee_token=str(_first(details, "feeToken", "fee_token") or "USDC"),
        )

    def normalize_many(self, records: Iterable[Any]) -> list[Fill]:
        """Normalize a batch, dropping and counting malformed records.

        Fills for coins outside the tracked set are skipped silently.
        """
        fills: list[Fill] = []
        for record in records:
            try:
                fill = self.normalize(record)
            except MalformedFillError as e:
                self._stats.dropped += 1
                self._stats.drop_reasons[e.reason.split(":")[0]] += 1
                logger.warning("Dropping malformed fill: %s", e.reason)
                continue
            if not self.is_tracked(fill.coin):
                self._stats.skipped_untracked += 1
                continue
            self._stats.accepted += 1
            fills.append(fill)
        return fills

    @staticmethod
    def _unpack(record: Any) -> tuple[str, Mapping[str, Any]]:
        if isinstance(record, (list, tuple)):
            if len(record) < 2 or not isinstance(record[1], Mapping):
                raise MalformedFillError("expected [address, details] pair", record=record)
            address = str(record[0] or "").strip().lower()
            return address, record[1]
        if isinstance(record, Mapping):
            address = str(_first(record, "address", "user", "trader", "wallet") or "").strip().lower()
            return address, record
        raise MalformedFillError(f"unsupported record type: {type(record).__name__}", record=record)

    @staticmethod
    def _fill_id(
        details: Mapping[str, Any],
        address: str,
        coin: str,
        timestamp: datetime,
        tx_hash: Any,
    ) -> str:
        explicit = _first(details, "id", "fill_id")
        if explicit is not None:
            return str(explicit)
        tid = details.get("tid")
        oid = details.get("oid")
        if tx_hash is not None and tid is not None:
            return f"{tx_hash}-{tid}"
        if oid is not None and tid is not None:
            return f"{oid}-{tid}"
        ms = int(timestamp.timestamp() * 1000)
        suffix = f"-{tx_hash}" if tx_hash is not None else ""
        return f"{address}-{coin}-{ms}{suffix}"
