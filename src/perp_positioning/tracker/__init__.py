"""Position tracking layer - per-trader position state."""

from perp_positioning.tracker.models import DeltaKind, PositionDelta, PositionState
from perp_positioning.tracker.position_tracker import PositionTracker, classify

__all__ = [
    "DeltaKind",
    "PositionDelta",
    "PositionState",
    "PositionTracker",
    "classify",
]
