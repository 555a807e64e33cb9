"""OTP step exceptions.

All step errors inherit from OtpStepError. Only ValidationError and
RateLimitError carry text meant for the end user; the others are absorbed
by the flow router into a success/failure decision.
"""

from __future__ import annotations

# ═══════════════════════════════════════════════════════════════
# BASE ERROR
# ═══════════════════════════════════════════════════════════════


class OtpStepError(Exception):
    """Root exception for the OTP authentication step."""


# ═══════════════════════════════════════════════════════════════
# CONFIGURATION ERRORS
# ═══════════════════════════════════════════════════════════════


class ConfigurationError(OtpStepError):
    """Raised when the step is enabled but not configured.

    The step is skipped (or failed, when fail-open is off). Never shown to
    the end user.
    """


# ═══════════════════════════════════════════════════════════════
# USER-FACING ERRORS
# ═══════════════════════════════════════════════════════════════


class ValidationError(OtpStepError):
    """Raised when a submitted code is malformed.

    Carries structured errors: ``{field: [messages]}``.
    """

    def __init__(self, errors: dict[str, list[str]] | str | None = None) -> None:
        if isinstance(errors, str):
            self.errors: dict[str, list[str]] = {"__root__": [errors]}
        elif errors is None:
            self.errors = {}
        else:
            self.errors = errors
        super().__init__(str(self.errors))

    @property
    def user_message(self) -> str:
        """First message, suitable for display on the challenge page."""
        for messages in self.errors.values():
            if messages:
                return messages[0]
        return "Invalid verification code."


class RateLimitError(OtpStepError):
    """Raised when an identity is locked out by the rate limiter.

    Attributes:
        retry_after_ms: Milliseconds until the lockout window ends.
    """

    def __init__(
        self,
        message: str = "Too many attempts",
        retry_after_ms: int = 0,
    ) -> None:
        super().__init__(message)
        self.retry_after_ms = retry_after_ms

    @property
    def retry_after_seconds(self) -> int:
        """Retry delay rounded up to whole seconds."""
        return max(1, -(-self.retry_after_ms // 1000))

    @property
    def user_message(self) -> str:
        return (
            "Too many attempts. Please try again in "
            f"{self.retry_after_seconds} seconds."
        )


# ═══════════════════════════════════════════════════════════════
# INFRASTRUCTURE ERRORS
# ═══════════════════════════════════════════════════════════════


class ServiceError(OtpStepError):
    """Raised when the external verification service call fails.

    Covers transport errors, timeouts and unexpected HTTP statuses.

    Attributes:
        operation: ``issue`` or ``verify``.
        status_code: HTTP status, or None when no response was received.
        latency_ms: Time spent on the call.
    """

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        status_code: int | None = None,
        latency_ms: int = 0,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.status_code = status_code
        self.latency_ms = latency_ms


class AttemptStateError(OtpStepError):
    """Raised when persisted attempt state cannot be decoded."""


__all__: list[str] = [
    "OtpStepError",
    "ConfigurationError",
    "ValidationError",
    "RateLimitError",
    "ServiceError",
    "AttemptStateError",
]
