"""Tests for the in-memory stores."""

from __future__ import annotations

import asyncio

import pytest

from cqrs_ddd_otp_step import IAttemptStore, IRateLimitStore
from cqrs_ddd_otp_step.stores import InMemoryAttemptStore, InMemoryRateLimitStore


class TestInMemoryRateLimitStore:
    def test_implements_port(self) -> None:
        assert isinstance(InMemoryRateLimitStore(), IRateLimitStore)

    @pytest.mark.asyncio
    async def test_hit_opens_and_extends_window(self) -> None:
        store = InMemoryRateLimitStore()

        first = await store.hit("k", 1000, now_ms=5000)
        second = await store.hit("k", 1000, now_ms=5500)
        third = await store.hit("k", 1000, now_ms=6001)

        assert (first.window_start_ms, first.count) == (5000, 1)
        assert (second.window_start_ms, second.count) == (5000, 2)
        assert (third.window_start_ms, third.count) == (6001, 1)

    @pytest.mark.asyncio
    async def test_concurrent_hits_get_distinct_counts(self) -> None:
        store = InMemoryRateLimitStore()

        records = await asyncio.gather(
            *(store.hit("k", 60_000, now_ms=1000) for _ in range(20))
        )

        assert sorted(r.count for r in records) == list(range(1, 21))

    @pytest.mark.asyncio
    async def test_reset(self) -> None:
        store = InMemoryRateLimitStore()
        await store.hit("k", 1000, now_ms=0)

        await store.reset("k")

        assert store.get("k") is None


class TestInMemoryAttemptStore:
    def test_implements_port(self) -> None:
        assert isinstance(InMemoryAttemptStore(), IAttemptStore)

    @pytest.mark.asyncio
    async def test_save_get_delete(self, attempt_store) -> None:
        await attempt_store.save("s1", {"status": "challenged"}, ttl_ms=1000)

        assert await attempt_store.get("s1") == {"status": "challenged"}

        await attempt_store.delete("s1")
        assert await attempt_store.get("s1") is None

    @pytest.mark.asyncio
    async def test_get_returns_copy(self, attempt_store) -> None:
        await attempt_store.save("s1", {"count": 1}, ttl_ms=1000)

        data = await attempt_store.get("s1")
        data["count"] = 99

        assert await attempt_store.get("s1") == {"count": 1}

    @pytest.mark.asyncio
    async def test_entries_expire(self, attempt_store, clock) -> None:
        await attempt_store.save("s1", {"status": "challenged"}, ttl_ms=1000)

        clock.advance(1001)

        assert await attempt_store.get("s1") is None
        assert len(attempt_store) == 0

    @pytest.mark.asyncio
    async def test_lock_serializes_read_modify_write(self, attempt_store) -> None:
        await attempt_store.save("s1", {"count": 0}, ttl_ms=60_000)

        async def increment() -> None:
            async with attempt_store.lock("s1"):
                data = await attempt_store.get("s1")
                await asyncio.sleep(0)
                data["count"] += 1
                await attempt_store.save("s1", data, ttl_ms=60_000)

        await asyncio.gather(*(increment() for _ in range(10)))

        assert (await attempt_store.get("s1"))["count"] == 10
        assert len(attempt_store._locks) == 0

    @pytest.mark.asyncio
    async def test_locks_on_different_keys_do_not_block(self, attempt_store) -> None:
        async with attempt_store.lock("a"):
            async with attempt_store.lock("b"):
                pass
