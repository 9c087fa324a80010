"""Time-series formatter for positioning snapshots.

This module projects resampled TraderSnapshot series into the response
shapes served to dashboards: a compact single-metric ``{timestamp, value}``
series or a full multi-metric JSON array.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Literal

from perp_positioning.snapshots.models import TraderSnapshot

OutputFormat = Literal["timeseries", "json"]

DEFAULT_METRIC = "longShortRatio"

_METRIC_GETTERS: dict[str, Callable[[TraderSnapshot], float | int]] = {
    "longShortRatio": lambda s: float(s.long_short_ratio),
    "longCount": lambda s: s.long_count,
    "shortCount": lambda s: s.short_count,
    "totalTraders": lambda s: s.total_traders,
    "longNotional": lambda s: float(s.long_notional),
    "shortNotional": lambda s: float(s.short_notional),
}

VALID_METRICS: tuple[str, ...] = tuple(_METRIC_GETTERS)
VALID_FORMATS: tuple[str, ...] = ("timeseries", "json")


class InvalidMetricError(ValueError):
    """Raised when a caller asks for a metric outside VALID_METRICS."""

    def __init__(self, metric: str) -> None:
        super().__init__(f"Invalid metric. Must be one of: {', '.join(VALID_METRICS)}")
        self.metric = metric


def validate_metric(metric: str) -> str:
    """Return ``metric`` unchanged or raise InvalidMetricError."""
    if metric not in _METRIC_GETTERS:
        raise InvalidMetricError(metric)
    return metric


@dataclass(frozen=True)
class TimeSeriesPoint:
    """One ``{timestamp, value}`` point; timestamp in epoch milliseconds."""

    timestamp: int
    value: float | int

    def to_dict(self) -> dict[str, float | int]:
        return {"timestamp": self.timestamp, "value": self.value}


class TimeSeriesFormatter:
    """Renders snapshot series for the indicator endpoint.

    Example:
        ```python
        formatter = TimeSeriesFormatter()
        body = formatter.render_timeseries("ETH", "longCount", series)
        print(body["latest"], body["dataPoints"])
        ```
    """

    def project(self, series: Sequence[TraderSnapshot], metric: str) -> list[TimeSeriesPoint]:
        """Project a chronological series onto a single metric.

        Raises:
            InvalidMetricError: If ``metric`` is not supported.
        """
        getter = _METRIC_GETTERS[validate_metric(metric)]
        return [TimeSeriesPoint(timestamp=s.timestamp_ms, value=getter(s)) for s in series]

    def render_timeseries(self, coin: str, metric: str, series: Sequence[TraderSnapshot]) -> dict[str, object]:
        """Single-metric response with ``latest``/``latestTimestamp`` echoes.

        Both echoes are None only when the series is empty; a latest value
        of zero is reported as zero.
        """
        points = self.project(series, metric)
        latest = points[-1] if points else None
        return {
            "coin": coin,
            "metric": metric,
            "latest": latest.value if latest is not None else None,
            "latestTimestamp": latest.timestamp if latest is not None else None,
            "dataPoints": len(points),
            "timeseries": [p.to_dict() for p in points],
        }

    def render_json(self, coin: str, metric: str, series: Sequence[TraderSnapshot]) -> dict[str, object]:
        """Multi-metric response carrying every metric per point."""
        validate_metric(metric)
        return {
            "coin": coin,
            "metric": metric,
            "dataPoints": len(series),
            "timeseries": [
                {"timestamp": s.timestamp.isoformat(), **{name: get(s) for name, get in _METRIC_GETTERS.items()}}
                for s in series
            ],
        }

    def render(
        self,
        coin: str,
        metric: str,
        series: Sequence[TraderSnapshot],
        output_format: OutputFormat = "timeseries",
    ) -> dict[str, object]:
        if output_format == "json":
            return self.render_json(coin, metric, series)
        return self.render_timeseries(coin, metric, series)
