"""Snapshot module - deduplicated positioning history and snapshot position flow."""

from perp_positioning.snapshots.flow import ChangeType, PositionChange, PositionFlow, compute_flow, diff_positions
from perp_positioning.snapshots.models import PositionSnapshot, SnapshotRef, TraderSnapshot
from perp_positioning.snapshots.resampler import SnapshotResampler, bucket_key

__all__ = [
    "ChangeType",
    "PositionChange",
    "PositionFlow",
    "PositionSnapshot",
    "SnapshotRef",
    "SnapshotResampler",
    "TraderSnapshot",
    "bucket_key",
    "compute_flow",
    "diff_positions",
]
