"""FastAPI routes for the OTP step.

Exposes the two channels over HTTP:

- ``GET  {prefix}/challenge``  starts the interactive step (or re-issues
  the code when ``?resend=true`` is present).
- ``POST {prefix}/challenge``  submits the challenge form.
- ``POST {prefix}/token``      direct password grant carrying the code.

The enclosing login pipeline stays in charge of who the user is: the
router asks ``resolve_user`` for the ``StepUser`` and ``resolve_attributes``
for the tenant attributes on every request.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

from fastapi import APIRouter, Request
from starlette.responses import HTMLResponse, JSONResponse, RedirectResponse, Response

from ...attempt import AttemptStatus
from ...channel import RESEND_PARAM, InteractiveRequest, classify_request
from ...exceptions import RateLimitError
from ...renderer import CONTENT_TYPE

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

    from ...flow import FlowRouter, StepOutcome, StepUser

    UserResolver = Callable[[Request], Awaitable["StepUser | None"]]
    AttributesResolver = Callable[[Request], Awaitable["Mapping[str, str | None]"]]
    SessionResolver = Callable[[Request], "str | None"]
    TokenIssuer = Callable[[Request, "StepUser", "StepOutcome"], Awaitable[dict[str, Any]]]

SESSION_PARAM = "session"


def _session_from_query(request: Request) -> str | None:
    return request.query_params.get(SESSION_PARAM) or None


async def _default_token_payload(
    request: Request, user: StepUser, outcome: StepOutcome
) -> dict[str, Any]:
    attempt_id = outcome.attempt.attempt_id if outcome.attempt else None
    return {"status": outcome.status.value, "attempt_id": attempt_id}


def _action_url(request: Request) -> str:
    """Current path and query, minus the resend flag."""
    query = [(k, v) for k, v in request.query_params.multi_items() if k != RESEND_PARAM]
    if not query:
        return request.url.path
    return f"{request.url.path}?{urlencode(query)}"


async def _form_fields(request: Request) -> dict[str, str]:
    form = await request.form()
    return {k: v for k, v in form.items() if isinstance(v, str)}


def _retry_after(outcome: StepOutcome) -> str:
    return str(RateLimitError(retry_after_ms=outcome.retry_after_ms).retry_after_seconds)


def _oauth_error(
    status_code: int,
    error: str,
    description: str | None,
    headers: dict[str, str] | None = None,
    **extra: Any,
) -> JSONResponse:
    content: dict[str, Any] = {"error": error}
    if description:
        content["error_description"] = description
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def create_otp_step_router(
    flow: FlowRouter,
    *,
    resolve_user: UserResolver,
    resolve_attributes: AttributesResolver,
    resolve_session: SessionResolver | None = None,
    issue_token: TokenIssuer | None = None,
    success_url: str = "/",
    prefix: str = "/otp",
) -> APIRouter:
    """Create an APIRouter serving both OTP step channels.

    Args:
        flow: The flow router driving every attempt.
        resolve_user: Returns the user authenticated earlier in the login
            pipeline (for ``/token``: the password grant's user), or None.
        resolve_attributes: Returns the tenant attributes for the request.
        resolve_session: Returns the login session id; defaults to the
            ``session`` query parameter.
        issue_token: Builds the ``/token`` success body; defaults to a
            status payload.
        success_url: Where the browser goes once the challenge is passed.
        prefix: Route prefix.

    Returns:
        Router to include in the application.

    Example:
        ```python
        app = FastAPI()
        app.include_router(
            create_otp_step_router(
                flow_router,
                resolve_user=current_login_user,
                resolve_attributes=tenant_attributes,
                success_url="/login/complete",
            )
        )
        ```
    """
    router = APIRouter(prefix=prefix, tags=["otp-step"])
    session_of = resolve_session or _session_from_query
    token_payload = issue_token or _default_token_payload

    def _page_response(outcome: StepOutcome) -> Response:
        if outcome.succeeded:
            return RedirectResponse(success_url, status_code=303)

        headers: dict[str, str] = {}
        status_code = 200
        if outcome.status is AttemptStatus.LOCKED:
            status_code = 429
            headers["Retry-After"] = _retry_after(outcome)
        elif outcome.terminal:
            status_code = 401
        return HTMLResponse(
            outcome.page or "",
            status_code=status_code,
            headers=headers,
            media_type=CONTENT_TYPE,
        )

    async def _interactive(
        request: Request, step: InteractiveRequest, *, begin: bool
    ) -> Response:
        user = await resolve_user(request)
        session_key = session_of(request)
        if user is None or session_key is None:
            return HTMLResponse(
                "Login session not found", status_code=400, media_type=CONTENT_TYPE
            )

        attributes = await resolve_attributes(request)
        handler = flow.authenticate if begin else flow.action
        outcome = await handler(
            step,
            user,
            attributes,
            session_key=session_key,
            action_url=_action_url(request),
        )
        return _page_response(outcome)

    @router.get("/challenge")
    async def start_challenge(request: Request) -> Response:
        """Render the challenge page, issuing a code."""
        step = classify_request({}, dict(request.query_params))
        assert isinstance(step, InteractiveRequest)
        return await _interactive(request, step, begin=not step.resend)

    @router.post("/challenge")
    async def submit_challenge(request: Request) -> Response:
        """Check the submitted code."""
        form = await _form_fields(request)
        step = classify_request(form, dict(request.query_params))
        if not isinstance(step, InteractiveRequest):
            step = InteractiveRequest(submitted_code=step.submitted_code)
        return await _interactive(request, step, begin=False)

    @router.post("/token")
    async def direct_grant(request: Request) -> Response:
        """Password grant with the one-time code in the same request."""
        form = await _form_fields(request)
        step = classify_request(form, dict(request.query_params))
        if isinstance(step, InteractiveRequest):
            return _oauth_error(
                400, "invalid_request", "otp_two_step password grant required"
            )

        user = await resolve_user(request)
        if user is None:
            return _oauth_error(401, "invalid_grant", "Invalid user credentials")

        attributes = await resolve_attributes(request)
        outcome = await flow.authenticate(
            step, user, attributes, session_key=f"direct:{user.user_id}"
        )

        if outcome.succeeded:
            return JSONResponse(await token_payload(request, user, outcome))
        if outcome.status is AttemptStatus.LOCKED:
            return _oauth_error(
                429,
                "rate_limited",
                outcome.message,
                headers={"Retry-After": _retry_after(outcome)},
                retry_after_ms=outcome.retry_after_ms,
            )
        if outcome.error_code == "otp_required":
            return _oauth_error(401, "otp_required", outcome.message)
        return _oauth_error(
            401, "invalid_grant", outcome.message, reason=outcome.error_code
        )

    return router


__all__: list[str] = ["SESSION_PARAM", "create_otp_step_router"]
