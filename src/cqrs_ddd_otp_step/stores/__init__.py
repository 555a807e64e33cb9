"""Attempt and rate-limit stores.

``memory`` is for development and tests. ``redis`` is for multi-worker
deployments and requires the ``redis`` extra:

    from cqrs_ddd_otp_step.stores.redis import RedisAttemptStore
"""

from __future__ import annotations

from .memory import InMemoryAttemptStore, InMemoryRateLimitStore

__all__: list[str] = [
    "InMemoryAttemptStore",
    "InMemoryRateLimitStore",
]
