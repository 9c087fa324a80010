"""Whale position alert detection.

This module provides the WhaleAlertDetector class that turns PositionDeltas
into NEW_WHALE, WHALE_ADD and WHALE_CLOSE alerts.
"""

import logging
from decimal import Decimal

from perp_positioning.detector.models import WhaleAlert, WhaleAlertType
from perp_positioning.tracker.models import DeltaKind, PositionDelta
from perp_positioning.tracker.position_tracker import classify

logger = logging.getLogger(__name__)

DEFAULT_NOTIONAL_THRESHOLD = Decimal("100000")  # $100k position notional


class WhaleAlertDetector:
    """Detector for whale-sized position changes.

    Rules, evaluated against the delta's notionals (both marked at the fill
    price):
    - NEW_WHALE: the position just opened and new notional >= threshold.
    - WHALE_ADD: the position increased and new notional >= threshold.
      This includes an increase that crosses the threshold.
    - WHALE_CLOSE: previous notional >= threshold and the position was
      closed or flipped.

    A liquidation is judged by its underlying sign transition, so a
    liquidation fill that grows a position is an add, not a close.

    Decreases never alert, nor do positions that stay below the threshold.

    Example:
        ```python
        detector = WhaleAlertDetector(threshold=Decimal("250000"))
        alert = detector.inspect(delta)
        if alert is not None:
            await repo.insert(alert)
        ```
    """

    def __init__(self, *, threshold: Decimal = DEFAULT_NOTIONAL_THRESHOLD) -> None:
        """Initialize the detector.

        Args:
            threshold: Notional at or above which a position is a whale.
        """
        if threshold <= 0:
            raise ValueError("threshold must be positive")
        self._threshold = threshold

    @property
    def threshold(self) -> Decimal:
        return self._threshold

    def inspect(
        self,
        delta: PositionDelta,
        trader: str | None = None,
        threshold: Decimal | None = None,
    ) -> WhaleAlert | None:
        """Inspect one PositionDelta.

        Args:
            delta: Position change from the tracker.
            trader: Trader the delta belongs to; defaults to ``delta.trader``.
            threshold: Per-call override of the configured threshold.

        Returns:
            WhaleAlert if the delta qualifies, None otherwise.
        """
        if trader is not None and trader != delta.trader:
            raise ValueError(f"delta belongs to {delta.trader}, not {trader}")
        limit = self._threshold if threshold is None else threshold

        kind = delta.kind
        if kind == DeltaKind.LIQUIDATED:
            kind = classify(delta.previous_size, delta.new_size)
        alert_type: WhaleAlertType | None = None
        notional = delta.new_notional
        direction = delta.new_side or ""

        if kind.is_new and delta.new_notional >= limit:
            alert_type = WhaleAlertType.NEW_WHALE
        elif kind.is_increase and delta.new_notional >= limit:
            alert_type = WhaleAlertType.WHALE_ADD
        elif delta.previous_notional >= limit and (kind.is_close or kind.is_flip):
            alert_type = WhaleAlertType.WHALE_CLOSE
            notional = delta.previous_notional
            direction = delta.previous_side or ""

        if alert_type is None:
            return None

        alert = WhaleAlert(
            coin=delta.coin,
            trader=delta.trader,
            timestamp=delta.timestamp,
            alert_type=alert_type,
            notional=notional,
            direction=direction,
            previous_size=delta.previous_size,
            new_size=delta.new_size,
            price=delta.price,
            notional_delta=delta.notional_delta,
            fill_id=delta.fill_id,
        )
        logger.info(
            "%s %s %s $%s (%s)",
            alert_type.value,
            delta.coin,
            direction,
            notional.quantize(Decimal("1")),
            delta.trader,
        )
        return alert
