"""Tests for the Redis stores (mocked client)."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from cqrs_ddd_otp_step import AttemptStateError, IAttemptStore, IRateLimitStore
from cqrs_ddd_otp_step.stores.redis import RedisAttemptStore, RedisRateLimitStore


@pytest.fixture
def redis() -> MagicMock:
    client = MagicMock()
    client.eval = AsyncMock()
    client.get = AsyncMock(return_value=None)
    client.set = AsyncMock(return_value=True)
    client.delete = AsyncMock(return_value=1)
    return client


class TestRedisRateLimitStore:
    def test_implements_port(self, redis) -> None:
        assert isinstance(RedisRateLimitStore(redis), IRateLimitStore)

    @pytest.mark.asyncio
    async def test_hit_runs_script(self, redis) -> None:
        redis.eval.return_value = [b"5000", b"2"]
        store = RedisRateLimitStore(redis)

        record = await store.hit("user-1:interactive", 60_000, now_ms=5500)

        assert record.key == "user-1:interactive"
        assert record.window_start_ms == 5000
        assert record.count == 2
        args = redis.eval.call_args.args
        assert args[1:] == (1, "otp:ratelimit:user-1:interactive", "5500", "60000")
        assert "PEXPIRE" in args[0]

    @pytest.mark.asyncio
    async def test_reset_deletes_key(self, redis) -> None:
        store = RedisRateLimitStore(redis, prefix="t")

        await store.reset("k")

        redis.delete.assert_awaited_once_with("t:k")


class TestRedisAttemptStore:
    def test_implements_port(self, redis) -> None:
        assert isinstance(RedisAttemptStore(redis), IAttemptStore)

    @pytest.mark.asyncio
    async def test_save_sets_json_with_ttl(self, redis) -> None:
        store = RedisAttemptStore(redis)

        await store.save("s1", {"status": "challenged"}, ttl_ms=30_000)

        redis.set.assert_awaited_once_with(
            "otp:attempt:s1", json.dumps({"status": "challenged"}), px=30_000
        )

    @pytest.mark.asyncio
    async def test_get_decodes_json(self, redis) -> None:
        redis.get.return_value = b'{"status": "challenged"}'
        store = RedisAttemptStore(redis)

        assert await store.get("s1") == {"status": "challenged"}
        redis.get.assert_awaited_once_with("otp:attempt:s1")

    @pytest.mark.asyncio
    async def test_get_missing(self, redis) -> None:
        assert await RedisAttemptStore(redis).get("s1") is None

    @pytest.mark.parametrize("raw", [b"{not json", b"[1, 2]"])
    @pytest.mark.asyncio
    async def test_get_corrupt_raises(self, redis, raw) -> None:
        redis.get.return_value = raw

        with pytest.raises(AttemptStateError):
            await RedisAttemptStore(redis).get("s1")

    @pytest.mark.asyncio
    async def test_lock_acquires_and_releases(self, redis) -> None:
        store = RedisAttemptStore(redis, lock_ttl_ms=5000)

        async with store.lock("s1"):
            (call,) = redis.set.await_args_list
            assert call.args[0] == "otp:attempt:lock:s1"
            assert call.kwargs == {"nx": True, "px": 5000}
            token = call.args[1]

        release_args = redis.eval.call_args.args
        assert release_args[1:] == (1, "otp:attempt:lock:s1", token)

    @pytest.mark.parametrize(("ttl_ms", "px"), [(130_000, 130_000), (1000, 5000)])
    @pytest.mark.asyncio
    async def test_lock_expiry_covers_requested_ttl(self, redis, ttl_ms, px) -> None:
        store = RedisAttemptStore(redis, lock_ttl_ms=5000)

        async with store.lock("s1", ttl_ms=ttl_ms):
            pass

        assert redis.set.await_args.kwargs == {"nx": True, "px": px}

    @pytest.mark.asyncio
    async def test_lock_retries_until_free(self, redis) -> None:
        redis.set.side_effect = [None, None, True]
        store = RedisAttemptStore(redis, retry_interval=0)

        async with store.lock("s1"):
            pass

        assert redis.set.await_count == 3

    @pytest.mark.asyncio
    async def test_lock_times_out(self, redis) -> None:
        redis.set.return_value = None
        store = RedisAttemptStore(redis, lock_timeout=0.02, retry_interval=0.005)

        with pytest.raises(AttemptStateError, match="Timed out"):
            async with store.lock("s1"):
                pass

        redis.eval.assert_not_called()

    @pytest.mark.asyncio
    async def test_release_failure_is_logged_not_raised(self, redis, caplog) -> None:
        redis.eval.side_effect = ConnectionError("gone")
        store = RedisAttemptStore(redis)

        async with store.lock("s1"):
            pass

        assert "Failed to release attempt lock" in caplog.text
