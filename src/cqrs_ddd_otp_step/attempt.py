"""Attempt state for one run of the OTP step.

An ``AttemptState`` is created when the step begins, owned by the flow
router for the attempt's lifetime and dropped once the attempt reaches a
terminal status (or its stored copy expires with the login session).
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from .exceptions import AttemptStateError


class Channel(str, Enum):
    """How the one-time code reaches the step."""

    INTERACTIVE = "interactive"
    DIRECT = "direct"


class AttemptStatus(str, Enum):
    """Attempt lifecycle.

    ``pending -> challenged -> verifying -> succeeded | failed | locked``.
    ``challenged`` is only used on the interactive channel.
    """

    PENDING = "pending"
    CHALLENGED = "challenged"
    VERIFYING = "verifying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    LOCKED = "locked"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset(
    {AttemptStatus.SUCCEEDED, AttemptStatus.FAILED, AttemptStatus.LOCKED}
)

# status -> statuses reachable from it
_TRANSITIONS: dict[AttemptStatus, frozenset[AttemptStatus]] = {
    AttemptStatus.PENDING: frozenset(
        {
            AttemptStatus.CHALLENGED,
            AttemptStatus.VERIFYING,
            AttemptStatus.SUCCEEDED,
            AttemptStatus.FAILED,
            AttemptStatus.LOCKED,
        }
    ),
    AttemptStatus.CHALLENGED: frozenset(
        {
            AttemptStatus.CHALLENGED,
            AttemptStatus.VERIFYING,
            AttemptStatus.SUCCEEDED,
            AttemptStatus.FAILED,
            AttemptStatus.LOCKED,
        }
    ),
    AttemptStatus.VERIFYING: frozenset(
        {
            AttemptStatus.CHALLENGED,
            AttemptStatus.SUCCEEDED,
            AttemptStatus.FAILED,
            AttemptStatus.LOCKED,
        }
    ),
}


@dataclass
class AttemptState:
    """Mutable state of one authentication attempt.

    Attributes:
        attempt_id: Unique attempt identifier.
        user_id: User being authenticated.
        channel: Interactive or direct.
        status: Current lifecycle status.
        attempt_count: Failed verifications so far.
        resend_count: Codes re-issued on request.
        issued_at: When the current code was issued (None if never).
        expires_at: When the current code stops being accepted.
        code_ref: Reference returned by the verification service on issue.
    """

    user_id: str
    channel: Channel
    attempt_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: AttemptStatus = AttemptStatus.PENDING
    attempt_count: int = 0
    resend_count: int = 0
    issued_at: datetime | None = None
    expires_at: datetime | None = None
    code_ref: str | None = None

    def transition(self, status: AttemptStatus) -> None:
        """Move to ``status``.

        Raises:
            AttemptStateError: If the move is not allowed from the current
                status (terminal statuses allow none).
        """
        allowed = _TRANSITIONS.get(self.status, frozenset())
        if status not in allowed:
            raise AttemptStateError(
                f"Illegal transition {self.status.value} -> {status.value}"
            )
        self.status = status

    def mark_issued(
        self, code_ref: str | None, now: datetime, ttl_ms: int
    ) -> None:
        """Record a freshly issued code."""
        self.code_ref = code_ref
        self.issued_at = now
        self.expires_at = now + timedelta(milliseconds=ttl_ms)

    def is_expired(self, now: datetime) -> bool:
        """Whether the current code has expired. False if none was issued."""
        return self.expires_at is not None and now > self.expires_at

    def to_dict(self) -> dict[str, Any]:
        """Convert state to a JSON-compatible dictionary."""
        return {
            "attempt_id": self.attempt_id,
            "user_id": self.user_id,
            "channel": self.channel.value,
            "status": self.status.value,
            "attempt_count": self.attempt_count,
            "resend_count": self.resend_count,
            "issued_at": self.issued_at.isoformat() if self.issued_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "code_ref": self.code_ref,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AttemptState:
        """Create state from a dictionary.

        Raises:
            AttemptStateError: If required fields are missing or invalid.
        """
        try:
            return cls(
                attempt_id=str(data["attempt_id"]),
                user_id=str(data["user_id"]),
                channel=Channel(data["channel"]),
                status=AttemptStatus(data["status"]),
                attempt_count=int(data.get("attempt_count", 0)),
                resend_count=int(data.get("resend_count", 0)),
                issued_at=_parse_datetime(data.get("issued_at")),
                expires_at=_parse_datetime(data.get("expires_at")),
                code_ref=data.get("code_ref"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise AttemptStateError(f"Invalid attempt state: {e}") from e


def _parse_datetime(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


__all__: list[str] = ["AttemptState", "AttemptStatus", "Channel"]
