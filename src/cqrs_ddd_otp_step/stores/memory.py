"""In-memory stores for development and testing.

WARNING: These implementations are NOT suitable for production use.
They keep state in process memory and will NOT work with multiple workers.

Use the Redis-backed stores in production.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from ..ports import IAttemptStore, IRateLimitStore, RateLimitRecord

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable
    from contextlib import AbstractAsyncContextManager


def _now_ms() -> int:
    return int(time.time() * 1000)


class _KeyedLocks:
    """One asyncio.Lock per key, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


class InMemoryRateLimitStore(IRateLimitStore):
    """In-memory fixed-window counters for TESTING ONLY.

    ⚠️ WARNING: Counters live in a local dictionary.
    Do NOT use in production with more than one worker!

    Expired windows are reset lazily on the next hit.
    """

    def __init__(self) -> None:
        self._records: dict[str, RateLimitRecord] = {}
        self._locks = _KeyedLocks()

    async def hit(self, key: str, window_ms: int, now_ms: int) -> RateLimitRecord:
        async with self._locks.hold(key):
            record = self._records.get(key)
            if record is None or now_ms - record.window_start_ms > window_ms:
                record = RateLimitRecord(key=key, window_start_ms=now_ms, count=1)
            else:
                record = RateLimitRecord(
                    key=key,
                    window_start_ms=record.window_start_ms,
                    count=record.count + 1,
                )
            self._records[key] = record
            return record

    async def reset(self, key: str) -> None:
        async with self._locks.hold(key):
            self._records.pop(key, None)

    def get(self, key: str) -> RateLimitRecord | None:
        """Peek at a counter. Useful in tests."""
        return self._records.get(key)

    def clear_all(self) -> None:
        """Clear all counters.

        Useful for testing cleanup.
        """
        self._records.clear()


class InMemoryAttemptStore(IAttemptStore):
    """In-memory attempt state store for TESTING ONLY.

    ⚠️ WARNING: This implementation stores data in a local dictionary.
    It will NOT work in multi-worker environments (Gunicorn/Uvicorn with workers>1).

    Example:
        ```python
        store = InMemoryAttemptStore()
        async with store.lock("session-1"):
            data = await store.get("session-1")
            await store.save("session-1", {"status": "challenged"}, ttl_ms=60_000)
        ```
    """

    def __init__(self, *, clock_ms: Callable[[], int] = _now_ms) -> None:
        """Initialize the in-memory attempt store.

        Args:
            clock_ms: Current time in epoch milliseconds.
        """
        self._store: dict[str, tuple[dict[str, Any], int]] = {}
        self._locks = _KeyedLocks()
        self._clock_ms = clock_ms

    def lock(
        self, key: str, *, ttl_ms: int | None = None
    ) -> AbstractAsyncContextManager[None]:
        # Local locks never expire.
        return self._locks.hold(key)

    async def get(self, key: str) -> dict[str, Any] | None:
        entry = self._store.get(key)
        if entry is None:
            return None

        data, expires_at_ms = entry

        # Check expiration
        if self._clock_ms() > expires_at_ms:
            del self._store[key]
            return None

        return dict(data)

    async def save(self, key: str, data: dict[str, Any], ttl_ms: int) -> None:
        self._store[key] = (dict(data), self._clock_ms() + ttl_ms)

    async def delete(self, key: str) -> None:
        self._store.pop(key, None)

    def __len__(self) -> int:
        return len(self._store)

    def clear_all(self) -> None:
        """Clear all attempt data.

        Useful for testing cleanup.
        """
        self._store.clear()


__all__: list[str] = ["InMemoryAttemptStore", "InMemoryRateLimitStore"]
