"""Fixed-window attempt rate limiter."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

    from .config import StepConfiguration
    from .logging_context import LogContext
    from .ports import IRateLimitStore


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class RateLimitDecision:
    """Result of a rate-limit check.

    Attributes:
        allowed: Whether the attempt may proceed.
        retry_after_ms: Milliseconds until the window ends (0 when allowed).
        count: Attempts counted in the current window.
    """

    allowed: bool
    retry_after_ms: int = 0
    count: int = 0


def rate_limit_key(user_id: str, channel: str) -> str:
    """Counter key for one identity on one channel."""
    return f"{user_id}:{channel}"


class RateLimiter:
    """Counts attempts per key and trips once ``max_attempts`` is exceeded.

    The counting itself is delegated to the store's atomic ``hit`` so that
    concurrent attempts for one key each see a distinct count.

    Example:
        ```python
        limiter = RateLimiter(InMemoryRateLimitStore())
        decision = await limiter.check_and_increment("u1:interactive", cfg, log)
        if not decision.allowed:
            raise RateLimitError(retry_after_ms=decision.retry_after_ms)
        ```
    """

    def __init__(
        self,
        store: IRateLimitStore,
        *,
        clock_ms: Callable[[], int] = _now_ms,
    ) -> None:
        """Initialize the rate limiter.

        Args:
            store: Atomic counter storage.
            clock_ms: Current time in epoch milliseconds.
        """
        self.store = store
        self._clock_ms = clock_ms

    async def check_and_increment(
        self,
        key: str,
        cfg: StepConfiguration,
        log: LogContext,
    ) -> RateLimitDecision:
        now = self._clock_ms()
        record = await self.store.hit(key, cfg.lockout_window_ms, now)

        if record.count > cfg.max_attempts:
            retry_after = max(1, record.window_start_ms + cfg.lockout_window_ms - now)
            log.warning(
                "Rate limit exceeded",
                key=key,
                count=record.count,
                max_attempts=cfg.max_attempts,
                retry_after_ms=retry_after,
            )
            return RateLimitDecision(
                allowed=False, retry_after_ms=retry_after, count=record.count
            )

        log.debug("Rate limit check passed", key=key, count=record.count)
        return RateLimitDecision(allowed=True, count=record.count)

    async def reset(self, key: str, log: LogContext) -> None:
        """Clear the counter after a successful verification."""
        await self.store.reset(key)
        log.debug("Rate limit counter reset", key=key)


__all__: list[str] = ["RateLimitDecision", "RateLimiter", "rate_limit_key"]
