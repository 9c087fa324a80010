"""Write-path pipeline orchestrator.

This module provides the Pipeline class that drives raw fill batches
through normalization, position tracking, minute aggregation and whale
detection, and persists the results.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError

from perp_positioning.aggregator.minute import MinuteAggregator
from perp_positioning.aggregator.models import AggregationConflictError, MinuteAggregate, floor_minute
from perp_positioning.config import Settings, get_settings
from perp_positioning.detector.models import WhaleAlert
from perp_positioning.detector.whale import WhaleAlertDetector
from perp_positioning.ingestor.models import Fill
from perp_positioning.ingestor.normalizer import FillNormalizer
from perp_positioning.ingestor.wallets import InMemoryWalletRegistry, RedisWalletRegistry, WalletRegistry
from perp_positioning.storage.database import DatabaseManager
from perp_positioning.storage.repos import (
    FillRepository,
    MinuteAggregateRepository,
    PositionStateRepository,
    WhaleAlertRepository,
)
from perp_positioning.tracker.models import PositionDelta, PositionState
from perp_positioning.tracker.position_tracker import PositionTracker

logger = logging.getLogger(__name__)

# In-memory buckets older than this (relative to the newest fill) are dropped.
BUCKET_RETENTION = timedelta(hours=2)

# Fill ids remembered for replay protection.
RECENT_FILL_IDS = 100_000

Partition = tuple[str, str]


class PipelineState(str, Enum):
    """Pipeline lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class PipelineStats:
    """Statistics for the pipeline."""

    started_at: datetime | None = None
    batches_processed: int = 0
    fills_processed: int = 0
    fills_dropped: int = 0
    fills_skipped: int = 0
    duplicate_fills: int = 0
    deltas: int = 0
    alerts: int = 0
    bucket_conflicts: int = 0
    registry_errors: int = 0
    flush_failures: int = 0
    errors: int = 0
    last_fill_time: datetime | None = None
    last_error: str | None = None


@dataclass
class BatchResult:
    """What one call to ``process_batch`` produced."""

    fills: list[Fill] = field(default_factory=list)
    deltas: list[PositionDelta] = field(default_factory=list)
    alerts: list[WhaleAlert] = field(default_factory=list)
    buckets: list[MinuteAggregate] = field(default_factory=list)


class Pipeline:
    """Main write-path orchestrator.

    Pipeline flow:
        raw records -> FillNormalizer -> PositionTracker
            -> MinuteAggregator + WhaleAlertDetector -> storage

    Fills of a batch are grouped by (trader, coin) partition and sorted by
    time within each partition. Every partition is folded under its own
    asyncio.Lock, and partitions run concurrently. Minute buckets are
    combined in memory with the MinuteAggregate monoid and flushed with
    additive upserts, so concurrent flushes to one bucket commute.

    A failing record is logged and counted; it never aborts the batch. A
    failed flush is re-raised, and its results stay queued for the next one.

    Example:
        ```python
        from perp_positioning.config import get_settings
        from perp_positioning.pipeline import Pipeline

        async with Pipeline(get_settings()) as pipeline:
            result = await pipeline.process_batch(raw_fills)
            print(len(result.alerts), pipeline.stats.fills_processed)
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        db_manager: DatabaseManager | None = None,
        wallet_registry: WalletRegistry | None = None,
        dry_run: bool | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            db_manager: Database manager to use instead of one built from
                settings. The pipeline does not dispose an injected manager.
            wallet_registry: First-seen wallet registry. Defaults to Redis
                when REDIS_URL is set, otherwise an in-memory registry.
            dry_run: If True, skip persistence. Overrides settings.dry_run.
        """
        self._settings = settings or get_settings()
        self._dry_run = dry_run if dry_run is not None else self._settings.dry_run

        self._state = PipelineState.STOPPED
        self._stats = PipelineStats()

        self._db_manager = db_manager
        self._owns_db = db_manager is None
        self._wallets = wallet_registry
        self._redis: Redis | None = None

        self._normalizer = FillNormalizer(tracked_coins=self._settings.tracker.tracked_coins or None)
        self._tracker = PositionTracker()
        self._aggregator = MinuteAggregator(whale_threshold=self._settings.whale.notional_threshold)
        self._detector = WhaleAlertDetector(threshold=self._settings.whale.notional_threshold)

        self._locks: dict[Partition, asyncio.Lock] = {}
        self._lock_users: dict[Partition, int] = {}
        self._recent_fill_ids: OrderedDict[str, None] = OrderedDict()
        # Results of a batch whose flush failed; written by the next flush.
        self._unflushed = BatchResult()
        self._flush_lock = asyncio.Lock()

    @property
    def state(self) -> PipelineState:
        """Current pipeline state."""
        return self._state

    @property
    def stats(self) -> PipelineStats:
        """Current pipeline statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state == PipelineState.RUNNING

    @property
    def tracker(self) -> PositionTracker:
        return self._tracker

    @property
    def aggregator(self) -> MinuteAggregator:
        return self._aggregator

    @property
    def normalizer(self) -> FillNormalizer:
        return self._normalizer

    @property
    def persists(self) -> bool:
        """True when results are written to storage."""
        return not self._dry_run and self._db_manager is not None and self._db_manager.configured

    async def start(self) -> None:
        """Start the pipeline.

        Connects the wallet registry and database, and seeds the tracker
        with persisted position states.

        Raises:
            RuntimeError: If pipeline is already running.
            Exception: If any component fails to initialize.
        """
        if self._state != PipelineState.STOPPED:
            raise RuntimeError(f"Cannot start pipeline in state {self._state}")

        self._state = PipelineState.STARTING
        logger.info("Starting pipeline...")
        logger.debug("Settings: %s", self._settings.redacted_summary())

        try:
            await self._initialize_components()
            self._stats.started_at = datetime.now(UTC)
            self._state = PipelineState.RUNNING
            logger.info("Pipeline started successfully (dry_run=%s)", self._dry_run)
        except Exception as e:
            self._state = PipelineState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start pipeline: %s", e)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop the pipeline, flushing buckets that are still pending."""
        if self._state == PipelineState.STOPPED:
            return

        self._state = PipelineState.STOPPING
        logger.info("Stopping pipeline...")
        try:
            await self._flush(BatchResult())
        finally:
            await self._cleanup()
            self._state = PipelineState.STOPPED
            logger.info("Pipeline stopped")

    async def _initialize_components(self) -> None:
        settings = self._settings

        if self._wallets is None:
            if settings.redis.url:
                logger.debug("Initializing Redis wallet registry...")
                self._redis = Redis.from_url(settings.redis.url)
                self._wallets = RedisWalletRegistry(self._redis, key_prefix=settings.redis.key_prefix)
            else:
                self._wallets = InMemoryWalletRegistry()

        if self._db_manager is None and settings.database.configured:
            logger.debug("Initializing database manager...")
            self._db_manager = DatabaseManager.from_settings(settings.database)

        if self._db_manager is not None and self._db_manager.configured:
            await self.load_positions()
        elif not self._dry_run:
            logger.warning("DATABASE_URL not set; results will not be persisted")

    async def _cleanup(self) -> None:
        """Clean up resources."""
        if self._db_manager is not None and self._owns_db:
            await self._db_manager.dispose_async()
            self._db_manager = None

        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self._wallets = None

        logger.debug("Resources cleaned up")

    async def load_positions(self) -> int:
        """Seed the tracker with persisted position states.

        Returns:
            Number of states loaded.
        """
        if self._db_manager is None:
            return 0
        coins = self._settings.tracker.tracked_coins or None
        async with self._db_manager.get_async_session() as session:
            states = await PositionStateRepository(session).list_all(coins=coins)
        self._tracker.load(states)
        logger.info("Loaded %d position states", len(states))
        return len(states)

    def _wallet_registry(self) -> WalletRegistry:
        if self._wallets is None:
            raise RuntimeError("wallet registry is not initialized")
        return self._wallets

    def _is_duplicate(self, fill: Fill) -> bool:
        if fill.fill_id in self._recent_fill_ids:
            return True
        self._recent_fill_ids[fill.fill_id] = None
        if len(self._recent_fill_ids) > RECENT_FILL_IDS:
            self._recent_fill_ids.popitem(last=False)
        return False

    def _partition(self, fills: Iterable[Fill]) -> dict[Partition, list[Fill]]:
        partitions: dict[Partition, list[Fill]] = {}
        for fill in fills:
            if self._is_duplicate(fill):
                self._stats.duplicate_fills += 1
                logger.debug("Skipping duplicate fill %s", fill.fill_id)
                continue
            partitions.setdefault((fill.trader, fill.coin), []).append(fill)
        for batch in partitions.values():
            batch.sort(key=lambda f: f.timestamp)
        return partitions

    async def process_batch(self, records: Iterable[Any]) -> BatchResult:
        """Process one batch of raw fill records.

        Args:
            records: Raw feed records (``[address, details]`` pairs or
                flat mappings).

        Returns:
            BatchResult with the accepted fills, deltas, alerts and the
            bucket contributions flushed for this batch.

        Raises:
            RuntimeError: If the pipeline is not running.
        """
        if self._state != PipelineState.RUNNING:
            raise RuntimeError(f"Cannot process fills in state {self._state}")

        fills = self._normalizer.normalize_many(records)
        self._stats.fills_dropped = self._normalizer.stats.dropped
        self._stats.fills_skipped = self._normalizer.stats.skipped_untracked

        partitions = self._partition(fills)
        outcomes = await asyncio.gather(
            *(self._process_partition(key, batch) for key, batch in partitions.items())
        )

        result = BatchResult()
        for batch, (deltas, alerts) in zip(partitions.values(), outcomes, strict=True):
            result.fills.extend(batch)
            result.deltas.extend(deltas)
            result.alerts.extend(alerts)

        await self._flush(result)
        self._stats.batches_processed += 1
        if result.fills:
            newest = max(f.timestamp for f in result.fills)
            if self._stats.last_fill_time is None or newest > self._stats.last_fill_time:
                self._stats.last_fill_time = newest
            self._aggregator.prune_before(floor_minute(newest) - BUCKET_RETENTION)
        return result

    async def _process_partition(
        self,
        key: Partition,
        fills: list[Fill],
    ) -> tuple[list[PositionDelta], list[WhaleAlert]]:
        """Fold one partition's fills in order under the partition lock.

        Once the tracker has applied a fill, the delta always reaches whale
        detection. A registry outage or a bucket conflict costs only the
        wallet flag or that bucket's contribution.
        """
        lock = self._partition_lock(key)
        deltas: list[PositionDelta] = []
        alerts: list[WhaleAlert] = []
        try:
            async with lock:
                for fill in fills:
                    delta = self._apply(fill)
                    if delta is None:
                        continue
                    deltas.append(delta)

                    is_new = await self._mark_seen(fill)
                    self._fold(delta, is_new_wallet=is_new)

                    alert = self._detector.inspect(delta)
                    if alert is not None:
                        alerts.append(alert)
                        self._stats.alerts += 1
        finally:
            self._release_partition_lock(key)
        return deltas, alerts

    def _partition_lock(self, key: Partition) -> asyncio.Lock:
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        return self._locks.setdefault(key, asyncio.Lock())

    def _release_partition_lock(self, key: Partition) -> None:
        users = self._lock_users[key] - 1
        if users:
            self._lock_users[key] = users
            return
        # Nobody else is waiting on this partition.
        del self._lock_users[key]
        del self._locks[key]

    def _apply(self, fill: Fill) -> PositionDelta | None:
        try:
            delta = self._tracker.apply(fill)
        except Exception as e:
            self._stats.errors += 1
            self._stats.last_error = str(e)
            logger.exception("Error processing fill %s", fill.fill_id)
            return None
        self._stats.fills_processed += 1
        self._stats.deltas += 1
        return delta

    async def _mark_seen(self, fill: Fill) -> bool:
        """Record the wallet; an unreachable registry counts it as already seen."""
        try:
            return await self._wallet_registry().mark_seen(fill.coin, fill.trader)
        except (RedisError, OSError) as e:
            self._stats.registry_errors += 1
            self._stats.last_error = str(e)
            logger.warning("Wallet registry unavailable for %s on %s: %s", fill.trader, fill.coin, e)
            return False

    def _fold(self, delta: PositionDelta, *, is_new_wallet: bool) -> None:
        try:
            self._aggregator.fold(delta, is_new_wallet=is_new_wallet)
        except AggregationConflictError as e:
            self._stats.bucket_conflicts += 1
            self._stats.last_error = str(e)
            logger.error("Bucket conflict for fill %s: %s", delta.fill_id, e)

    async def _flush(self, result: BatchResult) -> None:
        """Persist a batch and every pending bucket contribution.

        A batch whose flush failed is carried over and written together with
        the next one. Flushes run one at a time so a concurrent success
        cannot discard a carried batch. Fills already applied to the tracker
        are never applied twice, so a retried batch is persisted through this
        carry-over rather than by reprocessing.

        Raises:
            Exception: Whatever the storage layer raised, after the drained
                contributions have been requeued.
        """
        async with self._flush_lock:
            updates = self._aggregator.drain()
            result.buckets = updates
            if not self.persists:
                if self._dry_run and (result.fills or updates):
                    logger.info(
                        "[DRY RUN] Would persist %d fills, %d alerts, %d buckets",
                        len(result.fills),
                        len(result.alerts),
                        len(updates),
                    )
                return

            db = self._db_manager
            if db is None:
                return
            carried = self._unflushed
            fills = carried.fills + result.fills
            deltas = carried.deltas + result.deltas
            alerts = carried.alerts + result.alerts
            states = self._changed_states(deltas)
            rejected: set[int] = set()
            try:
                async with db.get_async_session() as session:
                    await FillRepository(session).upsert_many(fills)
                    position_repo = PositionStateRepository(session)
                    for state in states:
                        await position_repo.upsert(state)
                    alert_repo = WhaleAlertRepository(session)
                    for alert in alerts:
                        await alert_repo.insert(alert)
                    aggregate_repo = MinuteAggregateRepository(session)
                    for update in updates:
                        try:
                            await aggregate_repo.merge(update)
                        except AggregationConflictError as e:
                            rejected.add(id(update))
                            self._stats.bucket_conflicts += 1
                            self._stats.last_error = str(e)
                            logger.error(
                                "Skipping bucket %s@%s: %s", update.coin, update.minute.isoformat(), e
                            )
            except Exception as e:
                self._aggregator.requeue(u for u in updates if id(u) not in rejected)
                self._unflushed = BatchResult(fills=fills, deltas=deltas, alerts=alerts)
                self._stats.flush_failures += 1
                self._stats.last_error = str(e)
                logger.error(
                    "Flush failed, keeping %d fills and %d buckets for retry: %s",
                    len(fills),
                    len(updates),
                    e,
                )
                raise
            self._unflushed = BatchResult()
            logger.debug(
                "Persisted %d fills, %d states, %d alerts, %d buckets",
                len(fills),
                len(states),
                len(alerts),
                len(updates),
            )

    def _changed_states(self, deltas: Iterable[PositionDelta]) -> list[PositionState]:
        keys = dict.fromkeys((d.trader, d.coin) for d in deltas)
        states = [self._tracker.get(trader, coin) for trader, coin in keys]
        return [s for s in states if s is not None]

    async def __aenter__(self) -> Pipeline:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()
