"""Minute-bucketed position flow aggregation."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal
from typing import Any

from perp_positioning.aggregator.models import AggregationConflictError, MinuteAggregate, floor_minute
from perp_positioning.tracker.models import DeltaKind, PositionDelta
from perp_positioning.tracker.position_tracker import classify

logger = logging.getLogger(__name__)

DEFAULT_WHALE_THRESHOLD = Decimal("100000")

_COUNTER_BY_KIND = {
    DeltaKind.NEW_LONG: "new_longs",
    DeltaKind.NEW_SHORT: "new_shorts",
    DeltaKind.INCREASE_LONG: "increased_longs",
    DeltaKind.INCREASE_SHORT: "increased_shorts",
    DeltaKind.DECREASE_LONG: "decreased_longs",
    DeltaKind.DECREASE_SHORT: "decreased_shorts",
    DeltaKind.CLOSE_LONG: "closed_longs",
    DeltaKind.CLOSE_SHORT: "closed_shorts",
}


def _flow_entries(delta: PositionDelta, kind: DeltaKind) -> list[tuple[str, str, Decimal]]:
    """Return (counter, volume field, notional) entries for a transition."""
    if kind == DeltaKind.FLIP_LONG_TO_SHORT:
        return [
            ("closed_longs", "long_volume_out", delta.previous_notional),
            ("new_shorts", "short_volume_in", delta.new_notional),
        ]
    if kind == DeltaKind.FLIP_SHORT_TO_LONG:
        return [
            ("closed_shorts", "short_volume_out", delta.previous_notional),
            ("new_longs", "long_volume_in", delta.new_notional),
        ]
    counter = _COUNTER_BY_KIND[kind]
    side = "long" if counter.endswith("longs") else "short"
    direction = "in" if kind.is_new or kind.is_increase else "out"
    return [(counter, f"{side}_volume_{direction}", delta.fill_notional)]


def aggregate_delta(
    delta: PositionDelta,
    *,
    whale_threshold: Decimal = DEFAULT_WHALE_THRESHOLD,
    is_new_wallet: bool = False,
) -> MinuteAggregate:
    """Build the single-delta contribution to its (coin, minute) bucket.

    A liquidation is counted in ``liquidations`` and also by the underlying
    sign transition, so a liquidated long still shows up as a closed or
    decreased long. A flip counts as a close on the old side plus a new
    position on the other side.

    Args:
        delta: Position change to fold.
        whale_threshold: Notional at or above which the trader counts as a
            whale wallet for this bucket.
        is_new_wallet: True if the trader was never seen before on this coin.

    Returns:
        MinuteAggregate holding only this delta's contribution.
    """
    kind = delta.kind
    values: dict[str, Any] = {}
    if kind == DeltaKind.LIQUIDATED:
        values["liquidations"] = 1
        kind = classify(delta.previous_size, delta.new_size)

    for counter, volume_field, notional in _flow_entries(delta, kind):
        values[counter] = values.get(counter, 0) + 1
        values[volume_field] = notional

    notional = delta.fill_notional
    trader = delta.trader
    is_whale = max(delta.previous_notional, delta.new_notional) >= whale_threshold
    return MinuteAggregate(
        coin=delta.coin,
        minute=floor_minute(delta.timestamp),
        buy_volume=notional if delta.is_buy else Decimal(0),
        sell_volume=Decimal(0) if delta.is_buy else notional,
        total_volume=notional,
        total_size=abs(delta.fill_size),
        price_sum=delta.price,
        price_count=1,
        price_low=delta.price,
        price_high=delta.price,
        wallets=frozenset({trader}),
        new_wallets=frozenset({trader}) if is_new_wallet else frozenset(),
        whale_wallets=frozenset({trader}) if is_whale else frozenset(),
        **values,
    )


class MinuteAggregator:
    """Folds PositionDeltas into per-(coin, minute) MinuteAggregates.

    Buckets are combined with ``MinuteAggregate.merge``, so deltas may
    arrive late or out of order within a minute and from concurrent
    partitions; the result does not depend on arrival order. Buckets folded
    since the last ``drain()`` are tracked as pending so the caller can
    persist just the contributions it has not flushed yet.

    Example:
        ```python
        aggregator = MinuteAggregator(whale_threshold=Decimal("100000"))
        aggregator.fold(delta, is_new_wallet=True)
        for update in aggregator.drain():
            await repo.merge(update)
        ```
    """

    def __init__(self, *, whale_threshold: Decimal = DEFAULT_WHALE_THRESHOLD) -> None:
        self._whale_threshold = whale_threshold
        self._buckets: dict[tuple[str, datetime], MinuteAggregate] = {}
        self._pending: dict[tuple[str, datetime], MinuteAggregate] = {}

    @property
    def whale_threshold(self) -> Decimal:
        return self._whale_threshold

    def fold(
        self,
        delta: PositionDelta,
        trader: str | None = None,
        *,
        is_new_wallet: bool = False,
    ) -> MinuteAggregate:
        """Fold one delta into its bucket.

        Args:
            delta: Position change from the tracker.
            trader: Trader the delta belongs to; defaults to ``delta.trader``.
            is_new_wallet: True if the trader is a first-time wallet.

        Returns:
            The single-delta update that was merged into the bucket.

        Raises:
            AggregationConflictError: If the stored bucket cannot absorb
                the update. The bucket is left untouched.
        """
        if trader is not None and trader != delta.trader:
            raise ValueError(f"delta belongs to {delta.trader}, not {trader}")
        update = aggregate_delta(
            delta,
            whale_threshold=self._whale_threshold,
            is_new_wallet=is_new_wallet,
        )
        self.merge(update)
        logger.debug(
            "Folded %s for %s into %s@%s",
            delta.kind.value,
            delta.trader,
            update.coin,
            update.minute.isoformat(),
        )
        return update

    def merge(self, update: MinuteAggregate) -> MinuteAggregate:
        """Additively merge a pre-built update into its bucket."""
        key = update.key
        current = self._buckets.get(key, MinuteAggregate.empty(update.coin, update.minute))
        pending = self._pending.get(key, MinuteAggregate.empty(update.coin, update.minute))
        try:
            merged = current.merge(update)
            merged_pending = pending.merge(update)
        except AggregationConflictError:
            logger.error("Rejected update for bucket %s@%s", update.coin, update.minute.isoformat())
            raise
        self._buckets[key] = merged
        self._pending[key] = merged_pending
        return merged

    def bucket(self, coin: str, minute: datetime) -> MinuteAggregate | None:
        return self._buckets.get((coin, minute))

    def buckets(self, coin: str | None = None) -> list[MinuteAggregate]:
        """All buckets in chronological order, optionally for one coin."""
        selected = [b for b in self._buckets.values() if coin is None or b.coin == coin]
        return sorted(selected, key=lambda b: (b.minute, b.coin))

    def drain(self) -> list[MinuteAggregate]:
        """Return and clear the contributions folded since the last drain."""
        pending = sorted(self._pending.values(), key=lambda b: (b.minute, b.coin))
        self._pending = {}
        return pending

    def requeue(self, updates: Iterable[MinuteAggregate]) -> None:
        """Put drained contributions back as pending after a failed write.

        The in-memory buckets already hold these contributions, so only the
        pending set is touched.
        """
        for update in updates:
            key = update.key
            pending = self._pending.get(key, MinuteAggregate.empty(update.coin, update.minute))
            self._pending[key] = pending.merge(update)

    def prune_before(self, minute: datetime) -> int:
        """Forget closed buckets older than ``minute``; returns removed count."""
        stale = [key for key, b in self._buckets.items() if b.minute < minute]
        for key in stale:
            del self._buckets[key]
        return len(stale)
