"""Ingestion layer - raw fill validation and wallet registry."""

from perp_positioning.ingestor.models import Fill, FillSide, MalformedFillError
from perp_positioning.ingestor.normalizer import FillNormalizer, NormalizerStats
from perp_positioning.ingestor.wallets import (
    InMemoryWalletRegistry,
    RedisWalletRegistry,
    WalletRegistry,
)

__all__ = [
    "Fill",
    "FillNormalizer",
    "FillSide",
    "InMemoryWalletRegistry",
    "MalformedFillError",
    "NormalizerStats",
    "RedisWalletRegistry",
    "WalletRegistry",
]
