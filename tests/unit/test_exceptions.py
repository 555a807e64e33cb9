"""Tests for OTP step exceptions."""

from __future__ import annotations

import pytest

from cqrs_ddd_otp_step import (
    AttemptStateError,
    ConfigurationError,
    OtpStepError,
    RateLimitError,
    ServiceError,
    ValidationError,
)


@pytest.mark.parametrize(
    "error",
    [
        ConfigurationError("x"),
        ValidationError("x"),
        ServiceError("x", operation="verify"),
        RateLimitError(),
        AttemptStateError("x"),
    ],
)
def test_hierarchy(error) -> None:
    assert isinstance(error, OtpStepError)


class TestValidationError:
    def test_structured_errors(self) -> None:
        error = ValidationError({"custom_input": ["Enter 6 digits.", "Second"]})

        assert error.errors == {"custom_input": ["Enter 6 digits.", "Second"]}
        assert error.user_message == "Enter 6 digits."

    def test_string_becomes_root_error(self) -> None:
        error = ValidationError("Bad code")

        assert error.errors == {"__root__": ["Bad code"]}
        assert error.user_message == "Bad code"

    def test_empty_has_generic_message(self) -> None:
        assert ValidationError().user_message == "Invalid verification code."


class TestRateLimitError:
    @pytest.mark.parametrize(
        ("retry_after_ms", "seconds"),
        [(0, 1), (1, 1), (1000, 1), (1001, 2), (59_999, 60)],
    )
    def test_retry_after_seconds_rounds_up(self, retry_after_ms, seconds) -> None:
        assert RateLimitError(retry_after_ms=retry_after_ms).retry_after_seconds == seconds

    def test_user_message_mentions_retry_time(self) -> None:
        error = RateLimitError(retry_after_ms=90_000)

        assert error.user_message == "Too many attempts. Please try again in 90 seconds."


def test_service_error_attributes() -> None:
    error = ServiceError("boom", operation="issue", status_code=502, latency_ms=12)

    assert str(error) == "boom"
    assert error.operation == "issue"
    assert error.status_code == 502
    assert error.latency_ms == 12
