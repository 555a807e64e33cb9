"""Tests for attempt state."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from cqrs_ddd_otp_step import AttemptState, AttemptStateError, AttemptStatus, Channel

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def state() -> AttemptState:
    return AttemptState(user_id="user-1", channel=Channel.INTERACTIVE)


class TestTransitions:
    def test_new_attempt_is_pending(self, state) -> None:
        assert state.status is AttemptStatus.PENDING
        assert state.attempt_count == 0
        assert state.resend_count == 0
        assert len(state.attempt_id) == 32

    def test_interactive_path(self, state) -> None:
        for status in (
            AttemptStatus.CHALLENGED,
            AttemptStatus.VERIFYING,
            AttemptStatus.CHALLENGED,
            AttemptStatus.VERIFYING,
            AttemptStatus.SUCCEEDED,
        ):
            state.transition(status)

        assert state.status is AttemptStatus.SUCCEEDED

    def test_direct_path_skips_challenged(self) -> None:
        state = AttemptState(user_id="user-1", channel=Channel.DIRECT)

        state.transition(AttemptStatus.VERIFYING)
        state.transition(AttemptStatus.FAILED)

        assert state.status is AttemptStatus.FAILED

    @pytest.mark.parametrize(
        "terminal",
        [AttemptStatus.SUCCEEDED, AttemptStatus.FAILED, AttemptStatus.LOCKED],
    )
    def test_terminal_statuses_are_final(self, state, terminal) -> None:
        state.transition(terminal)

        assert terminal.is_terminal
        with pytest.raises(AttemptStateError, match="Illegal transition"):
            state.transition(AttemptStatus.CHALLENGED)

    def test_verifying_cannot_return_to_pending(self, state) -> None:
        state.transition(AttemptStatus.VERIFYING)

        with pytest.raises(AttemptStateError):
            state.transition(AttemptStatus.PENDING)


class TestCodeLifetime:
    def test_not_expired_without_issue(self, state) -> None:
        assert not state.is_expired(NOW)

    def test_mark_issued(self, state) -> None:
        state.mark_issued("ref-1", NOW, ttl_ms=300_000)

        assert state.code_ref == "ref-1"
        assert state.issued_at == NOW
        assert state.expires_at == NOW + timedelta(minutes=5)
        assert not state.is_expired(NOW + timedelta(minutes=5))
        assert state.is_expired(NOW + timedelta(minutes=5, milliseconds=1))


class TestSerialization:
    def test_round_trip(self, state) -> None:
        state.mark_issued("ref-1", NOW, ttl_ms=60_000)
        state.transition(AttemptStatus.CHALLENGED)
        state.attempt_count = 2
        state.resend_count = 1

        assert AttemptState.from_dict(state.to_dict()) == state

    def test_naive_datetimes_are_utc(self, state) -> None:
        data = state.to_dict()
        data["expires_at"] = "2026-01-01T12:05:00"

        restored = AttemptState.from_dict(data)

        assert restored.expires_at == NOW + timedelta(minutes=5)

    @pytest.mark.parametrize(
        "broken",
        [
            {},
            {"attempt_id": "a", "user_id": "u", "channel": "carrier-pigeon", "status": "pending"},
            {"attempt_id": "a", "user_id": "u", "channel": "direct", "status": "bored"},
            {
                "attempt_id": "a",
                "user_id": "u",
                "channel": "direct",
                "status": "pending",
                "issued_at": "yesterday",
            },
        ],
    )
    def test_invalid_data_raises(self, broken) -> None:
        with pytest.raises(AttemptStateError, match="Invalid attempt state"):
            AttemptState.from_dict(broken)
