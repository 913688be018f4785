"""Fast shared balance store with atomic increments.

Key Schema (Redis):
    user:{user_id}:balance - Integer balance in cents
    overage:{user_id}:{YYYY-MM} - Once-per-period invoice claim with TTL
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..core.config import Settings, settings as default_settings
from ..core.errors import BalanceStoreError

logger = logging.getLogger(__name__)


class BalanceStore(ABC):
    """Keyed integer store; every mutation is a single atomic operation."""

    async def __aenter__(self) -> "BalanceStore":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.disconnect()

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    async def health_check(self) -> bool:
        return True

    @abstractmethod
    async def get(self, user_id: str) -> int | None:
        """Return the cached balance, or None when it has not been hydrated."""
        pass

    @abstractmethod
    async def hydrate(self, user_id: str, balance: int) -> bool:
        """Set the balance only if absent. Returns True if this call set it."""
        pass

    @abstractmethod
    async def incr_by(self, user_id: str, delta: int) -> int:
        """Atomically add ``delta`` and return the new balance."""
        pass

    @abstractmethod
    async def claim_once(self, key: str, ttl_seconds: int) -> bool:
        """Claim ``key`` for ``ttl_seconds``. Returns False if already claimed."""
        pass

    @abstractmethod
    async def release(self, key: str) -> None:
        """Drop a claim made with ``claim_once``."""
        pass


class RedisBalanceStore(BalanceStore):
    """Redis-backed balance store using INCRBY and SET NX."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or default_settings
        self.redis_client: redis.Redis | None = None

    async def connect(self) -> None:
        """Establish Redis connection."""
        try:
            self.redis_client = redis.from_url(
                self.settings.redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
            )

            # Test connection
            await self.redis_client.ping()
            logger.info("Connected to Redis balance store")

        except (RedisError, OSError) as e:
            logger.error(f"Failed to connect to Redis: {str(e)}")
            raise BalanceStoreError(f"Redis connection failed: {str(e)}") from e

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self.redis_client:
            await self.redis_client.aclose()
            self.redis_client = None
            logger.info("Disconnected from Redis balance store")

    async def health_check(self) -> bool:
        if not self.redis_client:
            return False
        try:
            return bool(await self.redis_client.ping())
        except (RedisError, OSError):
            return False

    def _client(self) -> redis.Redis:
        if not self.redis_client:
            raise BalanceStoreError("Redis client not connected")
        return self.redis_client

    @staticmethod
    def _balance_key(user_id: str) -> str:
        return f"user:{user_id}:balance"

    async def get(self, user_id: str) -> int | None:
        try:
            value = await self._client().get(self._balance_key(user_id))
        except (RedisError, OSError) as e:
            raise BalanceStoreError(f"Balance read failed: {str(e)}") from e
        return int(value) if value is not None else None

    async def hydrate(self, user_id: str, balance: int) -> bool:
        try:
            return bool(await self._client().set(self._balance_key(user_id), balance, nx=True))
        except (RedisError, OSError) as e:
            raise BalanceStoreError(f"Balance hydrate failed: {str(e)}") from e

    async def incr_by(self, user_id: str, delta: int) -> int:
        try:
            return int(await self._client().incrby(self._balance_key(user_id), delta))
        except (RedisError, OSError) as e:
            raise BalanceStoreError(f"Balance update failed: {str(e)}") from e

    async def claim_once(self, key: str, ttl_seconds: int) -> bool:
        try:
            return bool(await self._client().set(key, "1", nx=True, ex=ttl_seconds))
        except (RedisError, OSError) as e:
            raise BalanceStoreError(f"Claim failed for {key}: {str(e)}") from e

    async def release(self, key: str) -> None:
        try:
            await self._client().delete(key)
        except (RedisError, OSError) as e:
            raise BalanceStoreError(f"Release failed for {key}: {str(e)}") from e


class InMemoryBalanceStore(BalanceStore):
    """Single-process balance store guarded by an asyncio lock."""

    def __init__(self) -> None:
        self.balances: dict[str, int] = {}
        self._claims: dict[str, float] = {}
        self._lock = asyncio.Lock()

    async def get(self, user_id: str) -> int | None:
        return self.balances.get(user_id)

    async def hydrate(self, user_id: str, balance: int) -> bool:
        async with self._lock:
            if user_id in self.balances:
                return False
            self.balances[user_id] = balance
            return True

    async def incr_by(self, user_id: str, delta: int) -> int:
        async with self._lock:
            self.balances[user_id] = self.balances.get(user_id, 0) + delta
            return self.balances[user_id]

    async def claim_once(self, key: str, ttl_seconds: int) -> bool:
        async with self._lock:
            now = time.monotonic()
            expires_at = self._claims.get(key)
            if expires_at is not None and expires_at > now:
                return False
            self._claims[key] = now + ttl_seconds
            return True

    async def release(self, key: str) -> None:
        async with self._lock:
            self._claims.pop(key, None)
