"""First-seen wallet registry used for new-wallet counts."""

from __future__ import annotations

from typing import Protocol

from redis.asyncio import Redis

DEFAULT_KEY_PREFIX = "perp:wallets:"


class WalletRegistry(Protocol):
    async def mark_seen(self, coin: str, trader: str) -> bool:
        """Record the wallet; return True if it was never seen before for coin."""
        ...


class InMemoryWalletRegistry:
    """Process-local registry. Forgets everything on restart."""

    def __init__(self) -> None:
        self._seen: dict[str, set[str]] = {}

    async def mark_seen(self, coin: str, trader: str) -> bool:
        seen = self._seen.setdefault(coin.upper(), set())
        if trader in seen:
            return False
        seen.add(trader)
        return True


class RedisWalletRegistry:
    """Registry backed by one Redis set per coin.

      key = {prefix}{coin}
      member = lowercased trader address

    SADD reports whether the member was added, which makes the check and
    the insert a single atomic operation across workers.
    """

    def __init__(self, redis: Redis, *, key_prefix: str = DEFAULT_KEY_PREFIX) -> None:
        self._redis = redis
        self._key_prefix = key_prefix

    def _key(self, coin: str) -> str:
        return f"{self._key_prefix}{coin.upper()}"

    async def mark_seen(self, coin: str, trader: str) -> bool:
        added = await self._redis.sadd(self._key(coin), trader.lower())
        return int(added) == 1

    async def count(self, coin: str) -> int:
        return int(await self._redis.scard(self._key(coin)))
