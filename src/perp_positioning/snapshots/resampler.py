"""Snapshot deduplication and resampling.

Raw snapshot history is fetched newest-first and may hold several rows per
nominal sampling interval. SnapshotResampler collapses it to at most one row
per (coin, bucket) and returns the most recent buckets in chronological
order. Gaps are left as gaps.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import UTC, datetime

from perp_positioning.snapshots.models import TraderSnapshot

logger = logging.getLogger(__name__)

DEFAULT_BUCKET_WIDTH_MINUTES = 10
DEFAULT_LIMIT = 1000

BucketKey = tuple[str, datetime]


def bucket_key(snapshot: TraderSnapshot, bucket_width_minutes: int = DEFAULT_BUCKET_WIDTH_MINUTES) -> BucketKey:
    """Return (coin, bucket start) for a snapshot.

    The bucket start is the UTC timestamp with the minute truncated down to
    a multiple of ``bucket_width_minutes`` within its hour, so buckets are
    aligned to :00, :10, :20 ... for the default width. With a width that
    does not divide 60 the last bucket of each hour is shorter.
    """
    _check_width(bucket_width_minutes)
    ts = snapshot.timestamp.astimezone(UTC)
    minute = (ts.minute // bucket_width_minutes) * bucket_width_minutes
    return (snapshot.coin, ts.replace(minute=minute, second=0, microsecond=0))


def _check_width(bucket_width_minutes: int) -> None:
    if not 1 <= bucket_width_minutes <= 60:
        raise ValueError(f"bucket_width_minutes must be in 1..60, got {bucket_width_minutes}")


class SnapshotResampler:
    """Deduplicates snapshot history into one row per time bucket.

    The resampler owns the bucket mapping for a single call; it keeps no
    state between calls, so one instance can serve concurrent queries.

    Example:
        ```python
        resampler = SnapshotResampler(bucket_width_minutes=10)
        rows = await repo.list_recent_desc("ETH", limit=2 * 500)
        series = resampler.resample(rows, limit=500)
        ```
    """

    def __init__(self, *, bucket_width_minutes: int = DEFAULT_BUCKET_WIDTH_MINUTES) -> None:
        _check_width(bucket_width_minutes)
        self._bucket_width_minutes = bucket_width_minutes

    @property
    def bucket_width_minutes(self) -> int:
        return self._bucket_width_minutes

    def bucket_key(self, snapshot: TraderSnapshot) -> BucketKey:
        return bucket_key(snapshot, self._bucket_width_minutes)

    def resample(
        self,
        history: Iterable[TraderSnapshot],
        bucket_width_minutes: int | None = None,
        limit: int = DEFAULT_LIMIT,
    ) -> list[TraderSnapshot]:
        """Deduplicate and trim a snapshot history.

        Rows are visited newest-first and the first row seen for a bucket
        wins, so within a bucket the most recent sample is kept. Rows with
        equal timestamps keep their input order. The survivors are sorted
        ascending and the last ``limit`` are returned.

        Args:
            history: Snapshot rows in any order.
            bucket_width_minutes: Per-call override of the bucket width.
            limit: Maximum number of buckets to return.

        Returns:
            Chronological list with at most one snapshot per (coin, bucket).
        """
        width = self._bucket_width_minutes if bucket_width_minutes is None else bucket_width_minutes
        _check_width(width)
        if limit < 0:
            raise ValueError(f"limit must be non-negative, got {limit}")

        rows = list(history)
        newest_first = sorted(rows, key=lambda s: s.timestamp, reverse=True)
        buckets: dict[BucketKey, TraderSnapshot] = {}
        for snapshot in newest_first:
            key = bucket_key(snapshot, width)
            if key not in buckets:
                buckets[key] = snapshot

        series = sorted(buckets.values(), key=lambda s: s.timestamp)
        if limit == 0:
            series = []
        else:
            series = series[-limit:]
        logger.debug(
            "Resampled %d rows into %d buckets (width=%dm, limit=%d)",
            len(rows),
            len(series),
            width,
            limit,
        )
        return series
