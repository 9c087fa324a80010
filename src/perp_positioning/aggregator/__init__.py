"""Aggregation layer - minute-bucketed position flow."""

from perp_positioning.aggregator.minute import (
    DEFAULT_WHALE_THRESHOLD,
    MinuteAggregator,
    aggregate_delta,
)
from perp_positioning.aggregator.models import (
    AggregationConflictError,
    MinuteAggregate,
    floor_minute,
)

__all__ = [
    "DEFAULT_WHALE_THRESHOLD",
    "AggregationConflictError",
    "MinuteAggregate",
    "MinuteAggregator",
    "aggregate_delta",
    "floor_minute",
]
