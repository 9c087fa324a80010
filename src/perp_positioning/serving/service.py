"""Read-path query service.

PositioningQueryService answers dashboard queries against persisted
history and turns every outcome into a ServiceResponse with an HTTP-style
status code. An empty result is a 200 with an empty series; a failure is
never reported as a partial success.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal

from perp_positioning.config import SnapshotSettings
from perp_positioning.detector.models import WhaleAlertType
from perp_positioning.detector.whale import DEFAULT_NOTIONAL_THRESHOLD
from perp_positioning.serving.formatter import (
    DEFAULT_METRIC,
    InvalidMetricError,
    TimeSeriesFormatter,
    validate_metric,
)
from perp_positioning.snapshots.flow import ChangeType, PositionFlow, compute_flow, diff_positions
from perp_positioning.snapshots.resampler import SnapshotResampler
from perp_positioning.storage.database import DatabaseManager, StorageUnavailableError
from perp_positioning.storage.repos import (
    FillRepository,
    MinuteAggregateRepository,
    PositionSnapshotRepository,
    PositionStateRepository,
    TraderSnapshotRepository,
    WhaleAlertRepository,
)

logger = logging.getLogger(__name__)

DEFAULT_COIN = "BTC"

# Dashboard timeframes for the minute-aggregate view.
TIMEFRAME_MINUTES = {"1H": 60, "4H": 240, "24H": 1440}

LARGE_FILL_NOTIONAL = Decimal("10000")

# How far back the comparison snapshot of a position-flow query lies.
FLOW_TIMEFRAMES = {"1H": (1, "1 Hour"), "4H": (4, "4 Hours"), "24H": (24, "24 Hours")}
DEFAULT_FLOW_TIMEFRAME = "4H"


class InvalidRequestError(ValueError):
    """Raised for malformed query parameters."""


class SnapshotNotFoundError(LookupError):
    """Raised when a coin has no position snapshots yet."""


@dataclass(frozen=True)
class ServiceResponse:
    """Status code plus JSON-ready body."""

    status_code: int
    body: dict[str, object]

    @property
    def ok(self) -> bool:
        return self.status_code == 200


class PositioningQueryService:
    """Serves indicator series and realtime positioning summaries.

    Error mapping:
    - InvalidMetricError, InvalidRequestError -> 400, checked before
      storage is touched.
    - SnapshotNotFoundError -> 404.
    - StorageUnavailableError -> 503 (no DATABASE_URL, or unreachable).
    - anything else -> 500 with a generic message.

    Example:
        ```python
        service = PositioningQueryService(db, settings.snapshot)
        response = await service.indicator("ETH", metric="longCount", limit=500)
        print(response.status_code, response.body["dataPoints"])
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        settings: SnapshotSettings | None = None,
        *,
        whale_threshold: Decimal = DEFAULT_NOTIONAL_THRESHOLD,
        formatter: TimeSeriesFormatter | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._db = db
        self._settings = settings or SnapshotSettings()
        self._whale_threshold = whale_threshold
        self._resampler = SnapshotResampler(bucket_width_minutes=self._settings.bucket_width_minutes)
        self._formatter = formatter or TimeSeriesFormatter()
        self._clock = clock or (lambda: datetime.now(UTC))

    def _clamp_limit(self, limit: int | None) -> int:
        if limit is None:
            limit = self._settings.default_limit
        return max(1, min(limit, self._settings.max_limit))

    def _require_storage(self) -> None:
        if not self._db.configured:
            raise StorageUnavailableError("DATABASE_URL is not configured")

    async def _respond(
        self,
        operation: str,
        context: dict[str, object],
        handler: Callable[[], Awaitable[dict[str, object]]],
    ) -> ServiceResponse:
        try:
            body = await handler()
        except (InvalidMetricError, InvalidRequestError) as e:
            return ServiceResponse(400, {"error": str(e)})
        except SnapshotNotFoundError as e:
            return ServiceResponse(404, {"error": str(e), **context})
        except StorageUnavailableError as e:
            logger.warning("%s: storage unavailable: %s", operation, e)
            return ServiceResponse(503, {"error": "Storage unavailable", "message": str(e)})
        except Exception:
            logger.exception("%s failed (%s)", operation, context)
            return ServiceResponse(500, {"error": "Internal server error", **context})
        return ServiceResponse(200, body)

    async def indicator(
        self,
        coin: str | None = DEFAULT_COIN,
        metric: str | None = DEFAULT_METRIC,
        limit: int | None = None,
        output_format: str = "timeseries",
    ) -> ServiceResponse:
        """Deduplicated snapshot series for one coin and metric.

        Fetches ``limit * fetch_multiplier`` raw rows newest-first, resamples
        them into buckets and renders either the single-metric series
        (``output_format="timeseries"``) or every metric (``"json"``).
        """
        symbol = (coin or DEFAULT_COIN).upper()
        name = metric or DEFAULT_METRIC
        size = self._clamp_limit(limit)

        async def handler() -> dict[str, object]:
            validate_metric(name)
            self._require_storage()
            async with self._db.get_async_session() as session:
                history = await TraderSnapshotRepository(session).list_recent_desc(
                    symbol, limit=size * self._settings.fetch_multiplier
                )
            series = self._resampler.resample(history, limit=size)
            if output_format == "json":
                return self._formatter.render_json(symbol, name, series)
            return self._formatter.render_timeseries(symbol, name, series)

        return await self._respond("indicator", {"coin": symbol, "metric": name}, handler)

    async def minute_aggregates(
        self,
        coin: str | None = DEFAULT_COIN,
        *,
        minutes: int | None = None,
        timeframe: str = "1H",
    ) -> ServiceResponse:
        """Chronological minute buckets plus a flow summary."""
        symbol = (coin or DEFAULT_COIN).upper()
        window = minutes if minutes is not None else TIMEFRAME_MINUTES.get(timeframe.upper(), 60)

        async def handler() -> dict[str, object]:
            self._require_storage()
            async with self._db.get_async_session() as session:
                buckets = await MinuteAggregateRepository(session).list_recent(
                    symbol, minutes=window, now=self._clock()
                )
            count = len(buckets)
            return {
                "coin": symbol,
                "timeframe": timeframe.upper() if minutes is None else f"{window}m",
                "type": "minute_aggregates",
                "data": [b.to_dict() for b in buckets],
                "count": count,
                "latest_timestamp": buckets[-1].minute.isoformat() if buckets else None,
                "summary": {
                    "total_new_longs": sum(b.new_longs for b in buckets),
                    "total_new_shorts": sum(b.new_shorts for b in buckets),
                    "net_flow_total": float(sum((b.net_total_flow for b in buckets), Decimal(0))),
                    "avg_unique_wallets": round(sum(b.unique_wallets for b in buckets) / count) if count else 0,
                },
            }

        return await self._respond("minute_aggregates", {"coin": symbol, "type": "aggregates"}, handler)

    async def active_positions(self, coin: str | None = DEFAULT_COIN, *, limit: int = 100) -> ServiceResponse:
        """Non-flat positions by notional, largest first."""
        symbol = (coin or DEFAULT_COIN).upper()

        async def handler() -> dict[str, object]:
            self._require_storage()
            async with self._db.get_async_session() as session:
                positions = await PositionStateRepository(session).list_active(coin=symbol, limit=limit)
            return {
                "coin": symbol,
                "type": "current_positions",
                "data": [p.to_dict() for p in positions],
                "count": len(positions),
                "summary": {
                    "total_positions": len(positions),
                    "long_positions": sum(1 for p in positions if p.current_size > 0),
                    "short_positions": sum(1 for p in positions if p.current_size < 0),
                    "total_notional": float(sum((abs(p.current_notional) for p in positions), Decimal(0))),
                    "whale_positions": sum(
                        1 for p in positions if abs(p.current_notional) >= self._whale_threshold
                    ),
                },
            }

        return await self._respond("active_positions", {"coin": symbol, "type": "positions"}, handler)

    async def whale_alerts(
        self,
        coin: str | None = DEFAULT_COIN,
        *,
        hours: int = 24,
        limit: int = 50,
    ) -> ServiceResponse:
        """Whale alerts of the last ``hours`` hours, newest first."""
        symbol = (coin or DEFAULT_COIN).upper()

        async def handler() -> dict[str, object]:
            self._require_storage()
            since = self._clock() - timedelta(hours=hours)
            async with self._db.get_async_session() as session:
                alerts = await WhaleAlertRepository(session).list_since(since=since, coin=symbol, limit=limit)
            return {
                "coin": symbol,
                "type": "whale_alerts",
                "data": [a.to_dict() for a in alerts],
                "count": len(alerts),
                "summary": {
                    "total_alerts": len(alerts),
                    "new_whale_alerts": sum(1 for a in alerts if a.alert_type == WhaleAlertType.NEW_WHALE),
                    "whale_add_alerts": sum(1 for a in alerts if a.alert_type == WhaleAlertType.WHALE_ADD),
                    "whale_close_alerts": sum(1 for a in alerts if a.alert_type == WhaleAlertType.WHALE_CLOSE),
                },
            }

        return await self._respond("whale_alerts", {"coin": symbol, "type": "whale_alerts"}, handler)

    async def recent_fills(
        self,
        coin: str | None = DEFAULT_COIN,
        *,
        minutes: int = 60,
        limit: int = 100,
    ) -> ServiceResponse:
        """Raw fills of the last ``minutes`` minutes, newest first."""
        symbol = (coin or DEFAULT_COIN).upper()

        async def handler() -> dict[str, object]:
            self._require_storage()
            since = self._clock() - timedelta(minutes=minutes)
            async with self._db.get_async_session() as session:
                fills = await FillRepository(session).list_recent(coin=symbol, since=since, limit=limit)
            return {
                "coin": symbol,
                "type": "recent_fills",
                "data": [f.to_dict() for f in fills],
                "count": len(fills),
                "summary": {
                    "total_fills": len(fills),
                    "buy_fills": sum(1 for f in fills if f.is_buy),
                    "sell_fills": sum(1 for f in fills if not f.is_buy),
                    "total_volume": float(sum((f.notional for f in fills), Decimal(0))),
                    "large_fills": sum(1 for f in fills if f.notional > LARGE_FILL_NOTIONAL),
                },
            }

        return await self._respond("recent_fills", {"coin": symbol, "type": "fills"}, handler)

    async def position_flow(
        self,
        coin: str | None = DEFAULT_COIN,
        *,
        timeframe: str = DEFAULT_FLOW_TIMEFRAME,
        min_notional: Decimal = Decimal(0),
    ) -> ServiceResponse:
        """Capital flow between the latest position snapshot and an older one.

        The comparison snapshot is the newest one captured at least
        ``timeframe`` before the latest, or the newest other snapshot when
        history is shorter. Unknown timeframes fall back to 4H.
        """
        symbol = (coin or DEFAULT_COIN).upper()
        key = timeframe.upper() if timeframe.upper() in FLOW_TIMEFRAMES else DEFAULT_FLOW_TIMEFRAME
        hours, label = FLOW_TIMEFRAMES[key]

        async def handler() -> dict[str, object]:
            self._require_storage()
            async with self._db.get_async_session() as session:
                repo = PositionSnapshotRepository(session)
                current = await repo.latest(symbol)
                if current is None:
                    raise SnapshotNotFoundError(f"No snapshots found for {symbol}")
                previous = await repo.find_previous(
                    symbol, current.snapshot_id, before=current.created_at - timedelta(hours=hours)
                )
                current_rows = await repo.list_positions(symbol, current.snapshot_id)
                previous_rows = await repo.list_positions(symbol, previous.snapshot_id) if previous else []

            body: dict[str, object] = {
                "coin": symbol,
                "timeframe": label,
                "current_snapshot_id": current.snapshot_id,
                "previous_snapshot_id": previous.snapshot_id if previous else None,
                "current_time": current.created_at.isoformat(),
                "previous_time": previous.created_at.isoformat() if previous else None,
            }
            if previous is None:
                body.update(PositionFlow().to_dict())
                body["message"] = "Only one snapshot available; need more data for comparison"
                return body
            changes = diff_positions(previous_rows, current_rows, min_notional=min_notional)
            body.update(compute_flow(changes).to_dict())
            return body

        return await self._respond("position_flow", {"coin": symbol, "timeframe": key}, handler)

    async def position_changes(
        self,
        coin: str | None,
        snapshot_id: str | None,
        previous_snapshot_id: str | None,
        *,
        side: str | None = None,
        limit: int = 100,
    ) -> ServiceResponse:
        """Per-wallet changes between two named snapshots, largest first."""
        symbol = (coin or "").upper()

        async def handler() -> dict[str, object]:
            if not symbol or not snapshot_id or not previous_snapshot_id:
                raise InvalidRequestError("coin, snapshot_id and previous_snapshot_id are required")
            if side not in (None, "long", "short"):
                raise InvalidRequestError(f"Invalid side: {side}")
            self._require_storage()
            async with self._db.get_async_session() as session:
                repo = PositionSnapshotRepository(session)
                current_rows = await repo.list_positions(symbol, snapshot_id)
                previous_rows = await repo.list_positions(symbol, previous_snapshot_id)
            changes = diff_positions(previous_rows, current_rows, side=side)

            def count(change_type: ChangeType) -> int:
                return sum(1 for c in changes if c.change_type == change_type)

            new, closed = count(ChangeType.NEW), count(ChangeType.CLOSED)
            return {
                "coin": symbol,
                "side": side,
                "snapshot_id": snapshot_id,
                "previous_snapshot_id": previous_snapshot_id,
                "data": [c.to_dict() for c in changes[:limit]],
                "count": min(len(changes), limit),
                "summary": {
                    "total_changes": len(changes),
                    "new": new,
                    "increased": count(ChangeType.INCREASED),
                    "decreased": count(ChangeType.DECREASED),
                    "closed": closed,
                    "flipped": count(ChangeType.FLIPPED),
                    "net_trader_change": new - closed,
                },
            }

        return await self._respond("position_changes", {"coin": symbol, "type": "position_changes"}, handler)
