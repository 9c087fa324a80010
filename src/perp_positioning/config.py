"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
perp positioning engine, loading and validating environment variables
at startup.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

_DATABASE_SCHEMES = (
    "postgresql://",
    "postgresql+asyncpg://",
    "postgres://",
    "sqlite://",
    "sqlite+aiosqlite://",
)


class DatabaseSettings(BaseSettings):
    """Database connection settings.

    The URL is optional: without it the write path can still run in dry-run
    mode, but every read-path query reports the store as unavailable.
    """

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="DATABASE_URL",
        description="PostgreSQL or SQLite connection string",
    )
    pool_size: int = Field(
        default=5,
        alias="DATABASE_POOL_SIZE",
        ge=1,
        le=100,
        description="Connection pool size (ignored for SQLite)",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate database URL format."""
        if v is None or v == "":
            return None
        if not v.startswith(_DATABASE_SCHEMES):
            raise ValueError("DATABASE_URL must be a PostgreSQL or SQLite connection string")
        return v

    @property
    def configured(self) -> bool:
        return self.url is not None


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string for the first-seen wallet registry",
    )
    key_prefix: str = Field(
        default="perp:wallets:",
        alias="REDIS_WALLET_KEY_PREFIX",
        description="Key prefix for per-coin wallet sets",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None or v == "":
            return None
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class TrackerSettings(BaseSettings):
    """Fill ingestion and position tracking settings."""

    model_config = SettingsConfigDict(env_prefix="TRACKER_", extra="ignore")

    tracked_coins: Annotated[tuple[str, ...], NoDecode] = Field(
        default=("BTC", "ETH", "HYPE"),
        alias="TRACKER_TRACKED_COINS",
        description="Coins to track (comma-separated); empty tracks every coin",
    )

    @field_validator("tracked_coins", mode="before")
    @classmethod
    def _parse_tracked_coins(cls, v: object) -> tuple[str, ...]:
        if v is None:
            return ()
        if isinstance(v, str):
            return tuple(p.strip().upper() for p in v.split(",") if p.strip())
        if isinstance(v, list | tuple):
            return tuple(str(x).strip().upper() for x in v if str(x).strip())
        raise TypeError("Invalid TRACKER_TRACKED_COINS type")


class WhaleSettings(BaseSettings):
    """Whale alert settings."""

    model_config = SettingsConfigDict(env_prefix="WHALE_", extra="ignore")

    notional_threshold: Decimal = Field(
        default=Decimal("100000"),
        alias="WHALE_NOTIONAL_THRESHOLD",
        description="Position notional at or above which a trader is a whale",
    )

    @field_validator("notional_threshold")
    @classmethod
    def validate_notional_threshold(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("WHALE_NOTIONAL_THRESHOLD must be > 0")
        return v


class SnapshotSettings(BaseSettings):
    """Snapshot resampling and indicator query settings."""

    model_config = SettingsConfigDict(env_prefix="SNAPSHOT_", extra="ignore")

    bucket_width_minutes: int = Field(
        default=10,
        alias="SNAPSHOT_BUCKET_WIDTH_MINUTES",
        ge=1,
        le=60,
        description="Dedup bucket width, aligned within the hour",
    )
    fetch_multiplier: int = Field(
        default=2,
        alias="SNAPSHOT_FETCH_MULTIPLIER",
        ge=2,
        le=20,
        description="Rows fetched per requested point to absorb duplicates",
    )
    default_limit: int = Field(
        default=1000,
        alias="SNAPSHOT_DEFAULT_LIMIT",
        ge=1,
        description="Points returned when the caller gives no limit",
    )
    max_limit: int = Field(
        default=10_000,
        alias="SNAPSHOT_MAX_LIMIT",
        ge=1,
        description="Hard cap on points per indicator request",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from perp_positioning.config import get_settings

        settings = get_settings()
        print(settings.whale.notional_threshold)
        print(settings.log_level)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # Nested groups need the env_file passed explicitly to read `.env`.
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    tracker: TrackerSettings = Field(
        default_factory=lambda: TrackerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    whale: WhaleSettings = Field(
        default_factory=lambda: WhaleSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    snapshot: SnapshotSettings = Field(
        default_factory=lambda: SnapshotSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    # Application settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    dry_run: bool = Field(
        default=False,
        alias="DRY_RUN",
        description="Process fills without writing to storage",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url) if self.database.url else "(not set)",
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "tracker": {
                "tracked_coins": ",".join(self.tracker.tracked_coins) or "(all)",
            },
            "whale": {
                "notional_threshold": str(self.whale.notional_threshold),
            },
            "snapshot": {
                "bucket_width_minutes": str(self.snapshot.bucket_width_minutes),
                "fetch_multiplier": str(self.snapshot.fetch_multiplier),
                "max_limit": str(self.snapshot.max_limit),
            },
            "log_level": self.log_level,
            "dry_run": str(self.dry_run),
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If environment variables have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache so tests can reload the environment."""
    get_settings.cache_clear()
