"""Redis-backed real-time counter store."""

from __future__ import annotations

from datetime import datetime

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from config.settings import get_settings
from quotaflow.core.exceptions import CounterStoreError
from quotaflow.core.interfaces import CounterStore
from quotaflow.core.logging import get_logger

log = get_logger(__name__)

# Add a signed delta and clamp the result at zero, keeping any TTL.
CLAMPED_ADJUST_LUA = """
local value = tonumber(redis.call('GET', KEYS[1]) or '0') + tonumber(ARGV[1])
if value < 0 then
    value = 0
end
redis.call('SET', KEYS[1], value, 'KEEPTTL')
return value
"""


class RedisCounterStore(CounterStore):
    """Async Redis counters. INCRBY is atomic, so concurrent writers never lose updates."""

    def __init__(self, redis_url: str | None = None, client: aioredis.Redis | None = None) -> None:
        self._redis_url = redis_url
        self._redis: aioredis.Redis | None = client
        self._adjust_script = client.register_script(CLAMPED_ADJUST_LUA) if client is not None else None

    async def connect(self) -> None:
        """Initialize the Redis connection."""
        if self._redis is None:
            redis_url = self._redis_url or get_settings().redis_url.get_secret_value()
            self._redis = aioredis.from_url(
                redis_url,
                decode_responses=True,
            )
            self._adjust_script = self._redis.register_script(CLAMPED_ADJUST_LUA)
            log.info("redis_connected")

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            self._adjust_script = None
            log.info("redis_closed")

    async def _get_redis(self) -> aioredis.Redis:
        if self._redis is None:
            await self.connect()
        assert self._redis is not None
        return self._redis

    # ── Counters ─────────────────────────────────────────────────

    async def increment(self, key: str, amount: int = 1) -> int:
        try:
            r = await self._get_redis()
            return int(await r.incrby(key, amount))
        except RedisError as exc:
            raise CounterStoreError("counter increment failed", {"key": key}) from exc

    async def increment_with_expiry(self, key: str, amount: int, instant: datetime) -> int:
        """INCRBY and EXPIREAT NX in one transaction (needs Redis 7)."""
        try:
            r = await self._get_redis()
            async with r.pipeline(transaction=True) as pipe:
                pipe.incrby(key, amount)
                pipe.expireat(key, int(instant.timestamp()), nx=True)
                new_value, _ = await pipe.execute()
        except RedisError as exc:
            raise CounterStoreError("counter increment failed", {"key": key}) from exc
        return int(new_value)

    async def get(self, key: str) -> int | None:
        try:
            r = await self._get_redis()
            raw = await r.get(key)
        except RedisError as exc:
            raise CounterStoreError("counter read failed", {"key": key}) from exc
        return None if raw is None else int(raw)

    async def get_many(self, keys: list[str]) -> list[int | None]:
        if not keys:
            return []
        try:
            r = await self._get_redis()
            raw = await r.mget(keys)
        except RedisError as exc:
            raise CounterStoreError("counter read failed", {"keys": keys}) from exc
        return [None if value is None else int(value) for value in raw]

    async def expire_at(self, key: str, instant: datetime) -> None:
        try:
            r = await self._get_redis()
            await r.expireat(key, int(instant.timestamp()))
        except RedisError as exc:
            raise CounterStoreError("counter expiry failed", {"key": key}) from exc

    async def adjust_gauge(self, key: str, delta: int) -> int:
        try:
            await self._get_redis()
            assert self._adjust_script is not None
            return int(await self._adjust_script(keys=[key], args=[delta]))
        except RedisError as exc:
            raise CounterStoreError("gauge adjust failed", {"key": key, "delta": delta}) from exc

    async def set_value(self, key: str, value: int, expire_at: datetime | None = None) -> None:
        try:
            r = await self._get_redis()
            if expire_at is None:
                await r.set(key, value)
            else:
                await r.set(key, value, exat=int(expire_at.timestamp()))
        except RedisError as exc:
            raise CounterStoreError("counter write failed", {"key": key}) from exc

    # ── Activity Sets ────────────────────────────────────────────

    async def mark_active(self, set_key: str, member: str, expire_at: datetime) -> None:
        try:
            r = await self._get_redis()
            async with r.pipeline(transaction=True) as pipe:
                pipe.sadd(set_key, member)
                pipe.expireat(set_key, int(expire_at.timestamp()))
                await pipe.execute()
        except RedisError as exc:
            raise CounterStoreError("activity mark failed", {"key": set_key}) from exc

    async def members(self, set_key: str) -> set[str]:
        try:
            r = await self._get_redis()
            return set(await r.smembers(set_key))
        except RedisError as exc:
            raise CounterStoreError("activity read failed", {"key": set_key}) from exc

    # ── Health Check ─────────────────────────────────────────────

    async def ping(self) -> bool:
        """Check Redis connectivity."""
        try:
            r = await self._get_redis()
            return bool(await r.ping())
        except (RedisError, OSError):
            return False
