"""OTP step ports (protocols).

Storage the step shares across requests and workers. Implementations must
make per-key read-modify-write atomic: two concurrent submissions for the
same user must never both pass a check when only one should.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from contextlib import AbstractAsyncContextManager


@dataclass(frozen=True)
class RateLimitRecord:
    """Fixed-window attempt counter.

    Attributes:
        key: ``"{user_id}:{channel}"``.
        window_start_ms: Epoch milliseconds when the window opened.
        count: Attempts recorded in the window, including the current one.
    """

    key: str
    window_start_ms: int
    count: int


@runtime_checkable
class IRateLimitStore(Protocol):
    """Protocol for rate-limit counter storage."""

    async def hit(self, key: str, window_ms: int, now_ms: int) -> RateLimitRecord:
        """Atomically record one attempt.

        Starts a new window with ``count=1`` when no record exists or
        ``now_ms - window_start_ms > window_ms``; otherwise increments
        the count.

        Args:
            key: Counter key.
            window_ms: Window length in milliseconds.
            now_ms: Current time in epoch milliseconds.

        Returns:
            The record after this attempt was counted.
        """
        ...

    async def reset(self, key: str) -> None:
        """Drop the counter for a key.

        Args:
            key: Counter key.
        """
        ...


@runtime_checkable
class IAttemptStore(Protocol):
    """Protocol for attempt state that survives the challenge round trip.

    Callers hold ``lock(key)`` around ``get``/``save``/``delete`` so a
    read-modify-write on one attempt is never interleaved with another.
    """

    def lock(
        self, key: str, *, ttl_ms: int | None = None
    ) -> AbstractAsyncContextManager[None]:
        """Exclusive lock on one attempt key.

        Args:
            key: Attempt key (login session id, or ``direct:{user_id}``).
            ttl_ms: How long the holder may keep the lock. Stores whose
                locks expire must not expire it sooner.
        """
        ...

    async def get(self, key: str) -> dict[str, Any] | None:
        """Load attempt data.

        Args:
            key: Attempt key.

        Returns:
            Stored data or None if absent or expired.
        """
        ...

    async def save(self, key: str, data: dict[str, Any], ttl_ms: int) -> None:
        """Store attempt data.

        Args:
            key: Attempt key.
            data: Serialized attempt state.
            ttl_ms: Time-to-live; abandoned attempts disappear on their own.
        """
        ...

    async def delete(self, key: str) -> None:
        """Delete attempt data.

        Args:
            key: Attempt key.
        """
        ...


__all__: list[str] = [
    "RateLimitRecord",
    "IRateLimitStore",
    "IAttemptStore",
]
