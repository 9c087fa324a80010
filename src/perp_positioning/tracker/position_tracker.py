"""Per-trader position state tracking.

This module provides the PositionTracker class that folds canonical fills
into PositionState rows and reports each change as a PositionDelta.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from decimal import Decimal

from perp_positioning.ingestor.models import Fill
from perp_positioning.tracker.models import DeltaKind, PositionDelta, PositionState

logger = logging.getLogger(__name__)


def classify(previous_size: Decimal, new_size: Decimal, *, liquidation: bool = False) -> DeltaKind:
    """Classify a position transition by the signs of the old and new size.

    Args:
        previous_size: Signed size before the fill.
        new_size: Signed size after the fill.
        liquidation: Explicit liquidation flag; overrides the sign rules.

    Returns:
        The DeltaKind for the transition.

    Raises:
        ValueError: If both sizes are zero (a fill must move the position).
    """
    if liquidation:
        return DeltaKind.LIQUIDATED
    if previous_size == 0 and new_size == 0:
        raise ValueError("fill did not change the position")
    if previous_size == 0:
        return DeltaKind.NEW_LONG if new_size > 0 else DeltaKind.NEW_SHORT
    if new_size == 0:
        return DeltaKind.CLOSE_LONG if previous_size > 0 else DeltaKind.CLOSE_SHORT
    if (previous_size > 0) != (new_size > 0):
        return DeltaKind.FLIP_LONG_TO_SHORT if previous_size > 0 else DeltaKind.FLIP_SHORT_TO_LONG
    long_side = new_size > 0
    if abs(new_size) > abs(previous_size):
        return DeltaKind.INCREASE_LONG if long_side else DeltaKind.INCREASE_SHORT
    return DeltaKind.DECREASE_LONG if long_side else DeltaKind.DECREASE_SHORT


class PositionTracker:
    """Maintains one PositionState per (trader, coin).

    Fills should arrive in non-decreasing time order per partition. An
    out-of-order fill still updates the running size correctly (it is a
    plain sum), but its classification is made against whatever state the
    tracker holds at that moment.

    The tracker itself holds no locks; callers that fold concurrently must
    serialize calls per (trader, coin) partition.

    Example:
        ```python
        tracker = PositionTracker()
        delta = tracker.apply(fill)
        print(delta.kind, tracker.get(fill.trader, fill.coin).current_size)
        ```
    """

    def __init__(self, states: Iterable[PositionState] | None = None) -> None:
        self._states: dict[tuple[str, str], PositionState] = {}
        self._out_of_order = 0
        if states is not None:
            self.load(states)

    @property
    def out_of_order_fills(self) -> int:
        """Number of fills received older than their partition's last update."""
        return self._out_of_order

    def load(self, states: Iterable[PositionState]) -> None:
        """Seed the tracker with previously persisted states."""
        for state in states:
            self._states[state.key] = state

    def get(self, trader: str, coin: str) -> PositionState | None:
        return self._states.get((trader, coin))

    def states(self) -> list[PositionState]:
        return list(self._states.values())

    def apply(self, fill: Fill) -> PositionDelta:
        """Fold one fill into its partition's PositionState.

        Args:
            fill: Canonical fill.

        Returns:
            PositionDelta describing the transition.
        """
        state = self._states.get((fill.trader, fill.coin))
        if state is None:
            state = PositionState(trader=fill.trader, coin=fill.coin)
            self._states[state.key] = state

        if state.last_updated is not None and fill.timestamp < state.last_updated:
            self._out_of_order += 1
            logger.debug(
                "Out-of-order fill %s for %s/%s (%s < %s)",
                fill.fill_id,
                fill.trader,
                fill.coin,
                fill.timestamp.isoformat(),
                state.last_updated.isoformat(),
            )

        previous_size = state.current_size
        new_size = previous_size + fill.signed_size
        kind = classify(previous_size, new_size, liquidation=fill.is_liquidation)

        self._update_entry(state, fill, previous_size, new_size)
        state.current_size = new_size
        state.current_notional = abs(new_size * fill.price)
        state.realized_pnl += fill.realized_pnl
        state.total_volume += fill.notional
        if state.last_updated is None or fill.timestamp > state.last_updated:
            state.last_updated = fill.timestamp

        return PositionDelta(
            trader=fill.trader,
            coin=fill.coin,
            timestamp=fill.timestamp,
            price=fill.price,
            fill_size=fill.signed_size,
            fill_notional=fill.notional,
            previous_size=previous_size,
            previous_notional=abs(previous_size * fill.price),
            new_size=new_size,
            new_notional=abs(new_size * fill.price),
            kind=kind,
            fill_id=fill.fill_id,
            is_buy=fill.is_buy,
        )

    @staticmethod
    def _update_entry(state: PositionState, fill: Fill, previous_size: Decimal, new_size: Decimal) -> None:
        if new_size == 0:
            state.avg_entry_price = None
            state.first_entry_time = None
            return
        opens_lifecycle = previous_size == 0 or (previous_size > 0) != (new_size > 0)
        if opens_lifecycle:
            state.avg_entry_price = fill.price
            state.first_entry_time = fill.timestamp
            return
        if abs(new_size) > abs(previous_size):
            prior_cost = abs(previous_size) * (state.avg_entry_price or fill.price)
            state.avg_entry_price = (prior_cost + fill.size * fill.price) / abs(new_size)
