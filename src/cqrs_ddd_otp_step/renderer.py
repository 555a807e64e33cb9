"""Challenge page renderer.

Turns a ``ChallengeContext`` into a self-contained HTML page: all styling
is inline and nothing is fetched from elsewhere. Interpolated values are
HTML-escaped by Jinja2 autoescaping.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from .channel import CODE_FIELD, RESEND_PARAM

CONTENT_TYPE = "text/html; charset=UTF-8"
CODE_LENGTH = 6
CODE_PATTERN = "[0-9]{6}"

_TEMPLATE_DIR = Path(__file__).parent / "templates"
_TEMPLATE_NAME = "challenge.html"
_FAILURE_TEMPLATE_NAME = "failure.html"


@dataclass(frozen=True)
class ChallengeContext:
    """Everything the challenge page may show.

    Attributes:
        action_url: Where the form posts to.
        email: Shown in the identity block when present.
        session_note: Short hint under the identity block.
        message: Error or info text shown above the form.
    """

    action_url: str
    email: str | None = None
    session_note: str | None = None
    message: str | None = None


def resend_url(action_url: str) -> str:
    """Append ``resend=true`` to ``action_url``, replacing any existing flag."""
    parts = urlsplit(action_url)
    query = [
        (k, v)
        for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if k != RESEND_PARAM
    ]
    query.append((RESEND_PARAM, "true"))
    return urlunsplit(parts._replace(query=urlencode(query)))


class ChallengeRenderer:
    """Renders the one-time code challenge page.

    Rendering is a pure function of its inputs: identical arguments always
    produce byte-identical markup.

    Example:
        ```python
        renderer = ChallengeRenderer()
        html = renderer.render(
            "/login/otp?session=abc",
            ChallengeContext(action_url="/login/otp?session=abc", email="u@example.com"),
            message="Invalid code.",
        )
        ```
    """

    def __init__(self, template_dir: Path | None = None) -> None:
        """Initialize the renderer.

        Args:
            template_dir: Directory holding ``challenge.html``; defaults to
                the packaged template.
        """
        self._env = Environment(
            loader=FileSystemLoader(str(template_dir or _TEMPLATE_DIR)),
            autoescape=True,
            undefined=StrictUndefined,
        )
        self._template = self._env.get_template(_TEMPLATE_NAME)
        self._failure_template = self._env.get_template(_FAILURE_TEMPLATE_NAME)

    def render(
        self,
        action_url: str,
        context: ChallengeContext,
        message: str | None = None,
    ) -> str:
        """Render the challenge page.

        Args:
            action_url: Form target; the resend link is derived from it.
            context: Identity and note to display.
            message: Message block text; falls back to ``context.message``.
                The block is omitted when empty.

        Returns:
            Complete HTML document.
        """
        text = message if message is not None else context.message
        return self._template.render(
            action_url=action_url,
            resend_url=resend_url(action_url),
            email=context.email or None,
            session_note=context.session_note or None,
            message=text or None,
            code_field=CODE_FIELD,
            max_length=CODE_LENGTH,
            pattern=CODE_PATTERN,
        )

    def render_context(self, context: ChallengeContext) -> str:
        """Render using the context's own action URL and message."""
        return self.render(context.action_url, context, context.message)

    def render_failure(self, message: str) -> str:
        """Render the terminal failure page (no form, no resend link)."""
        return self._failure_template.render(message=message)


__all__: list[str] = [
    "CONTENT_TYPE",
    "ChallengeContext",
    "ChallengeRenderer",
    "resend_url",
]
