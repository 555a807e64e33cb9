"""Test configuration and fixtures."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest

from cqrs_ddd_otp_step import (
    ExternalVerificationClient,
    FlowRouter,
    RateLimiter,
    StepUser,
)
from cqrs_ddd_otp_step.stores import InMemoryAttemptStore, InMemoryRateLimitStore

BASE_URL = "https://otp.example.com/api"
VALID_CODE = "123456"


class FakeClock:
    """Settable UTC clock shared by the router, limiter and stores."""

    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def ms(self) -> int:
        return int(self.now.timestamp() * 1000)

    def advance(self, ms: int) -> None:
        self.now += timedelta(milliseconds=ms)


class FakeVerificationService:
    """In-process stand-in for the external verification service.

    ``/issue`` answers with ``issue_status`` and a fresh ``codeRef``.
    ``/verify`` answers 200 for ``valid_code`` and 400 otherwise, unless
    ``verify_status`` forces a status. Setting ``error`` makes every call
    raise it instead.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.valid_code = VALID_CODE
        self.issue_status = 200
        self.verify_status: int | None = None
        self.error: Exception | None = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error

        body = json.loads(request.content)
        if request.url.path.endswith("/issue"):
            return httpx.Response(
                self.issue_status, json={"codeRef": f"ref-{self.calls('issue')}"}
            )

        status = self.verify_status
        if status is None:
            status = 200 if body["submittedCode"] == self.valid_code else 400
        return httpx.Response(status, json={"ok": status == 200})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def calls(self, operation: str) -> int:
        return sum(1 for r in self.requests if r.url.path.endswith(f"/{operation}"))

    def bodies(self, operation: str) -> list[dict[str, Any]]:
        return [
            json.loads(r.content)
            for r in self.requests
            if r.url.path.endswith(f"/{operation}")
        ]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def service() -> FakeVerificationService:
    return FakeVerificationService()


@pytest.fixture
def rate_store() -> InMemoryRateLimitStore:
    return InMemoryRateLimitStore()


@pytest.fixture
def attempt_store(clock: FakeClock) -> InMemoryAttemptStore:
    return InMemoryAttemptStore(clock_ms=clock.ms)


@pytest.fixture
def client(service: FakeVerificationService) -> ExternalVerificationClient:
    return ExternalVerificationClient(transport=service.transport)


@pytest.fixture
def flow(
    client: ExternalVerificationClient,
    clock: FakeClock,
    rate_store: InMemoryRateLimitStore,
    attempt_store: InMemoryAttemptStore,
) -> FlowRouter:
    return FlowRouter(
        client=client,
        rate_limiter=RateLimiter(rate_store, clock_ms=clock.ms),
        attempt_store=attempt_store,
        clock=clock,
    )


@pytest.fixture
def user() -> StepUser:
    return StepUser(user_id="user-1", username="alice", email="alice@example.com")


@pytest.fixture
def attributes() -> dict[str, str | None]:
    """Minimal tenant attributes for a configured step."""
    return {
        "plugin.external.api.url": BASE_URL,
        "plugin.external.api.token": "s3cret",
    }
