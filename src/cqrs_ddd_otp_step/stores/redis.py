"""Redis-backed attempt and rate-limit stores.

Atomicity comes from Redis itself: the fixed-window counter is a Lua
script, and attempt state is guarded by a token lock (``SET NX PX`` plus a
compare-and-delete release script).
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from ..exceptions import AttemptStateError
from ..ports import IAttemptStore, IRateLimitStore, RateLimitRecord

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from redis.asyncio import Redis

logger = logging.getLogger("cqrs_ddd.otp_step.redis")

_HIT_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])

local raw = redis.call('HMGET', key, 'start', 'count')
local start = tonumber(raw[1])
local count = tonumber(raw[2])

if (not start) or (now - start > window) then
    start = now
    count = 1
else
    count = count + 1
end

redis.call('HSET', key, 'start', start, 'count', count)
redis.call('PEXPIRE', key, window * 2)
return {start, count}
"""

_RELEASE_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""


async def _resolve(result: Any) -> Any:
    return await result if hasattr(result, "__await__") else result


def _as_int(value: Any) -> int:
    if isinstance(value, bytes):
        value = value.decode()
    return int(value)


class RedisRateLimitStore(IRateLimitStore):
    """Redis implementation of IRateLimitStore.

    Each hit runs one Lua script, so concurrent workers hitting the same key
    are serialized by Redis. Keys expire after two windows of inactivity.
    """

    def __init__(
        self,
        redis: Redis,  # type: ignore[type-arg]
        prefix: str = "otp:ratelimit",
    ) -> None:
        """
        Initialize RedisRateLimitStore.

        Args:
            redis: An initialized redis.asyncio.Redis client.
            prefix: Key prefix for Redis keys.
        """
        self._redis = redis
        self._prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def hit(self, key: str, window_ms: int, now_ms: int) -> RateLimitRecord:
        result = await _resolve(
            self._redis.eval(  # type: ignore[no-untyped-call]
                _HIT_SCRIPT, 1, self._key(key), str(now_ms), str(window_ms)
            )
        )
        start, count = result
        return RateLimitRecord(
            key=key, window_start_ms=_as_int(start), count=_as_int(count)
        )

    async def reset(self, key: str) -> None:
        await self._redis.delete(self._key(key))


class RedisAttemptStore(IAttemptStore):
    """Redis implementation of IAttemptStore.

    Attempt data is stored as JSON with a millisecond TTL. ``lock`` is a
    single-instance token lock; it expires on its own if a worker dies while
    holding it.
    """

    def __init__(
        self,
        redis: Redis,  # type: ignore[type-arg]
        prefix: str = "otp:attempt",
        *,
        lock_ttl_ms: int = 60_000,
        lock_timeout: float = 10.0,
        retry_interval: float = 0.05,
    ) -> None:
        """
        Initialize RedisAttemptStore.

        Args:
            redis: An initialized redis.asyncio.Redis client.
            prefix: Key prefix for Redis keys.
            lock_ttl_ms: Minimum expiry of a held lock. A longer ``ttl_ms``
                passed to ``lock`` wins.
            lock_timeout: Seconds to wait for the lock before giving up.
            retry_interval: Delay between acquisition attempts.
        """
        self._redis = redis
        self._prefix = prefix
        self._lock_ttl_ms = lock_ttl_ms
        self._lock_timeout = lock_timeout
        self._retry_interval = retry_interval

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    def _lock_key(self, key: str) -> str:
        return f"{self._prefix}:lock:{key}"

    @asynccontextmanager
    async def lock(
        self, key: str, *, ttl_ms: int | None = None
    ) -> AsyncIterator[None]:
        lock_key = self._lock_key(key)
        token = str(uuid.uuid4())
        await self._acquire(lock_key, token, max(self._lock_ttl_ms, ttl_ms or 0))
        try:
            yield
        finally:
            try:
                await _resolve(
                    self._redis.eval(  # type: ignore[no-untyped-call]
                        _RELEASE_SCRIPT, 1, lock_key, token
                    )
                )
            except Exception as exc:  # noqa: BLE001
                logger.warning("Failed to release attempt lock %s: %s", lock_key, exc)

    async def _acquire(self, lock_key: str, token: str, ttl_ms: int) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._lock_timeout
        while True:
            acquired = await self._redis.set(lock_key, token, nx=True, px=ttl_ms)
            if acquired:
                return
            if loop.time() >= deadline:
                raise AttemptStateError(
                    f"Timed out after {self._lock_timeout}s waiting for {lock_key}"
                )
            await asyncio.sleep(self._retry_interval)

    async def get(self, key: str) -> dict[str, Any] | None:
        raw = await self._redis.get(self._key(key))
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except ValueError as exc:
            raise AttemptStateError(f"Corrupt attempt state for {key}") from exc
        if not isinstance(data, dict):
            raise AttemptStateError(f"Corrupt attempt state for {key}")
        return data

    async def save(self, key: str, data: dict[str, Any], ttl_ms: int) -> None:
        await self._redis.set(self._key(key), json.dumps(data), px=ttl_ms)

    async def delete(self, key: str) -> None:
        await self._redis.delete(self._key(key))


__all__: list[str] = ["RedisAttemptStore", "RedisRateLimitStore"]
