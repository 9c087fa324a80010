"""Serving layer - indicator series and positioning summaries."""

from perp_positioning.serving.formatter import (
    VALID_METRICS,
    InvalidMetricError,
    TimeSeriesFormatter,
    TimeSeriesPoint,
    validate_metric,
)
from perp_positioning.serving.service import (
    InvalidRequestError,
    PositioningQueryService,
    ServiceResponse,
    SnapshotNotFoundError,
)

__all__ = [
    "VALID_METRICS",
    "InvalidMetricError",
    "InvalidRequestError",
    "PositioningQueryService",
    "ServiceResponse",
    "SnapshotNotFoundError",
    "TimeSeriesFormatter",
    "TimeSeriesPoint",
    "validate_metric",
]
