"""Tests for the fixed-window RateLimiter."""

from __future__ import annotations

import logging

import pytest

from cqrs_ddd_otp_step import LogContext, RateLimiter, StepConfiguration, rate_limit_key
from cqrs_ddd_otp_step.stores import InMemoryRateLimitStore

KEY = rate_limit_key("user-1", "interactive")


@pytest.fixture
def cfg() -> StepConfiguration:
    return StepConfiguration(max_attempts=3, lockout_window_ms=60_000)


@pytest.fixture
def log() -> LogContext:
    return LogContext.root().child("rate_limiter")


@pytest.fixture
def limiter(rate_store, clock) -> RateLimiter:
    return RateLimiter(rate_store, clock_ms=clock.ms)


def test_key_format() -> None:
    assert rate_limit_key("u1", "direct") == "u1:direct"


class TestFixedWindow:
    @pytest.mark.asyncio
    async def test_fourth_attempt_in_window_denied(
        self, limiter, cfg, log, clock
    ) -> None:
        decisions = []
        for _ in range(4):
            decisions.append(await limiter.check_and_increment(KEY, cfg, log))
            clock.advance(10_000)

        assert [d.allowed for d in decisions] == [True, True, True, False]
        assert [d.count for d in decisions] == [1, 2, 3, 4]
        # Window opened at t=0, 4th attempt at t=30s.
        assert decisions[-1].retry_after_ms == 30_000

    @pytest.mark.asyncio
    async def test_first_attempt_after_window_allowed(
        self, limiter, cfg, log, clock
    ) -> None:
        for _ in range(4):
            await limiter.check_and_increment(KEY, cfg, log)

        clock.advance(60_001)
        decision = await limiter.check_and_increment(KEY, cfg, log)

        assert decision.allowed
        assert decision.count == 1
        assert decision.retry_after_ms == 0

    @pytest.mark.asyncio
    async def test_denied_at_window_edge_has_positive_retry(
        self, limiter, cfg, log, clock
    ) -> None:
        for _ in range(3):
            await limiter.check_and_increment(KEY, cfg, log)

        clock.advance(60_000)
        decision = await limiter.check_and_increment(KEY, cfg, log)

        assert not decision.allowed
        assert decision.retry_after_ms == 1

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, limiter, cfg, log) -> None:
        for _ in range(4):
            await limiter.check_and_increment(KEY, cfg, log)

        other = await limiter.check_and_increment("user-2:interactive", cfg, log)

        assert other.allowed

    @pytest.mark.asyncio
    async def test_reset_clears_counter(
        self, limiter, cfg, log, rate_store: InMemoryRateLimitStore
    ) -> None:
        for _ in range(4):
            await limiter.check_and_increment(KEY, cfg, log)

        await limiter.reset(KEY, log)

        assert rate_store.get(KEY) is None
        assert (await limiter.check_and_increment(KEY, cfg, log)).allowed

    @pytest.mark.asyncio
    async def test_denial_is_logged(self, limiter, cfg, log, caplog) -> None:
        caplog.set_level(logging.WARNING, logger="cqrs_ddd.otp_step")

        for _ in range(4):
            await limiter.check_and_increment(KEY, cfg, log)

        (record,) = caplog.records
        assert record.otp_fields["key"] == KEY
        assert record.otp_fields["count"] == 4
