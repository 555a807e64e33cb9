"""Inbound request classification.

The raw form/query fields are inspected exactly once, at the pipeline
boundary, and turned into a ``StepRequest``. Everything downstream
dispatches on the type instead of re-reading form fields.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Union

from .attempt import Channel

if TYPE_CHECKING:
    from collections.abc import Mapping

CODE_FIELD = "custom_input"
GRANT_TYPE_FIELD = "grant_type"
PASSWORD_GRANT = "password"  # noqa: S105
TWO_STEP_FIELD = "otp_two_step"
USERNAME_FIELD = "username"
RESEND_PARAM = "resend"

_TRUTHY = frozenset({"true", "1", "yes", "on"})


@dataclass(frozen=True)
class InteractiveRequest:
    """Browser flow: a rendered challenge followed by a form submission.

    Attributes:
        submitted_code: Value of ``custom_input``, if the form was posted.
        resend: ``?resend=true`` was present.
    """

    submitted_code: str | None = None
    resend: bool = False

    @property
    def channel(self) -> Channel:
        return Channel.INTERACTIVE


@dataclass(frozen=True)
class DirectRequest:
    """Password grant carrying the one-time code in the same request.

    Attributes:
        username: Username from the grant.
        submitted_code: Value of ``custom_input``; None asks for a code to be
            issued.
    """

    username: str | None = None
    submitted_code: str | None = None

    @property
    def channel(self) -> Channel:
        return Channel.DIRECT


StepRequest = Union[InteractiveRequest, DirectRequest]


def _is_truthy(value: str | None) -> bool:
    return value is not None and value.strip().lower() in _TRUTHY


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip() or None


def _code(value: str | None) -> str | None:
    # Codes are passed through untouched; validation rejects padding.
    return value or None


def classify_request(
    form: Mapping[str, str],
    query: Mapping[str, str] | None = None,
) -> StepRequest:
    """Classify an inbound request.

    A request is direct iff it carries ``grant_type=password`` **and** a
    truthy ``otp_two_step`` marker; anything else is interactive.

    Args:
        form: Submitted form fields.
        query: Query string parameters.

    Returns:
        ``DirectRequest`` or ``InteractiveRequest``.
    """
    query = query or {}
    grant_type = (form.get(GRANT_TYPE_FIELD) or "").strip()

    if grant_type == PASSWORD_GRANT and _is_truthy(form.get(TWO_STEP_FIELD)):
        return DirectRequest(
            username=_clean(form.get(USERNAME_FIELD)),
            submitted_code=_code(form.get(CODE_FIELD)),
        )

    return InteractiveRequest(
        submitted_code=_code(form.get(CODE_FIELD)),
        resend=_is_truthy(query.get(RESEND_PARAM)),
    )


__all__: list[str] = [
    "CODE_FIELD",
    "RESEND_PARAM",
    "TWO_STEP_FIELD",
    "DirectRequest",
    "InteractiveRequest",
    "StepRequest",
    "classify_request",
]
