"""Storage layer - Database schemas and repositories."""

from perp_positioning.storage.database import (
    DatabaseManager,
    StorageUnavailableError,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from perp_positioning.storage.models import (
    Base,
    FillModel,
    MinuteAggregateModel,
    MinuteWalletModel,
    PositionSnapshotModel,
    PositionStateModel,
    TraderSnapshotModel,
    WhaleAlertModel,
)
from perp_positioning.storage.repos import (
    FillRepository,
    MinuteAggregateRepository,
    PositionSnapshotRepository,
    PositionStateRepository,
    TraderSnapshotRepository,
    WhaleAlertRepository,
)

__all__ = [
    "Base",
    "DatabaseManager",
    "FillModel",
    "FillRepository",
    "MinuteAggregateModel",
    "MinuteAggregateRepository",
    "MinuteWalletModel",
    "PositionSnapshotModel",
    "PositionSnapshotRepository",
    "PositionStateModel",
    "PositionStateRepository",
    "StorageUnavailableError",
    "TraderSnapshotModel",
    "TraderSnapshotRepository",
    "WhaleAlertModel",
    "WhaleAlertRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
