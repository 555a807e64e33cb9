"""Flow router: the OTP step state machine.

One ``FlowRouter`` serves every attempt. Each public operation takes an
already classified ``StepRequest`` and always returns a ``StepOutcome``;
no exception escapes.

States: ``pending -> challenged -> verifying -> succeeded | failed | locked``.
The direct channel never passes through ``challenged``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from .attempt import AttemptState, AttemptStatus, Channel
from .channel import CODE_FIELD, DirectRequest, InteractiveRequest
from .client import VerifyOutcome
from .config import ConfigResolver
from .exceptions import (
    AttemptStateError,
    ConfigurationError,
    RateLimitError,
    ServiceError,
    ValidationError,
)
from .logging_context import LogContext
from .observability import StepMetrics
from .rate_limit import rate_limit_key
from .renderer import ChallengeContext, ChallengeRenderer

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

    from .channel import StepRequest
    from .client import ExternalVerificationClient
    from .config import StepConfiguration
    from .ports import IAttemptStore
    from .rate_limit import RateLimiter

_CODE_RE = re.compile(r"[0-9]{6}")

# Headroom over the external call timeout for the store round trips made
# while an attempt lock is held. A request makes at most one external call.
LOCK_MARGIN_MS = 10_000

MSG_INVALID_FORMAT = "Please enter the 6-digit verification code."
MSG_INVALID_CODE = "Invalid verification code. Please try again."
MSG_EXPIRED = "The verification code has expired. Please request a new code."
MSG_RESENT = "A new verification code has been sent."
MSG_RESTARTED = "Your verification session expired. A new code has been sent."
MSG_FAILED = "Verification failed. Please start the login again."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class StepUser:
    """The user the login pipeline has identified before this step.

    Attributes:
        user_id: Stable user identifier.
        username: Login name.
        email: Email address, shown on the challenge page when present.
    """

    user_id: str
    username: str
    email: str | None = None

    @property
    def identifier(self) -> str:
        """Identifier sent to the verification service."""
        return self.email or self.username


@dataclass(frozen=True)
class StepOutcome:
    """How one inbound request resolved.

    Attributes:
        status: What this request resolved to. ``failed`` with
            ``terminal=False`` is a re-challenge after a wrong code.
        attempt: Attempt state after the request (None if never created).
        terminal: The attempt is over and its stored state was released.
        page: Challenge or failure HTML (interactive channel only).
        message: User-facing text, if any.
        retry_after_ms: Lockout remaining, for ``locked``.
        error_code: Machine-readable reason for non-success outcomes.
        skipped: The step did not run (disabled, or not configured with
            fail-open).
    """

    status: AttemptStatus
    attempt: AttemptState | None = None
    terminal: bool = False
    page: str | None = None
    message: str | None = None
    retry_after_ms: int = 0
    error_code: str | None = None
    skipped: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status is AttemptStatus.SUCCEEDED


@dataclass
class _Run:
    """Everything one request needs while it travels through the router."""

    request: StepRequest
    user: StepUser
    cfg: StepConfiguration
    log: LogContext
    key: str
    action_url: str
    session_note: str | None = None
    state: AttemptState | None = None

    @property
    def channel(self) -> Channel:
        return self.request.channel

    @property
    def interactive(self) -> bool:
        return self.channel is Channel.INTERACTIVE

    @property
    def limiter_key(self) -> str:
        return rate_limit_key(self.user.user_id, self.channel.value)


class FlowRouter:
    """Drives one OTP step per login attempt.

    Example:
        ```python
        router = FlowRouter(
            client=ExternalVerificationClient(),
            rate_limiter=RateLimiter(InMemoryRateLimitStore()),
            attempt_store=InMemoryAttemptStore(),
        )
        request = classify_request(form, query)
        outcome = await router.authenticate(
            request, user, tenant_attributes,
            session_key="auth-session-1", action_url="/login/otp",
        )
        ```
    """

    def __init__(
        self,
        *,
        client: ExternalVerificationClient,
        rate_limiter: RateLimiter,
        attempt_store: IAttemptStore,
        renderer: ChallengeRenderer | None = None,
        config_resolver: ConfigResolver | None = None,
        clock: Callable[[], datetime] = _utcnow,
        log: LogContext | None = None,
    ) -> None:
        """Initialize the router.

        Args:
            client: External verification service client.
            rate_limiter: Attempt rate limiter.
            attempt_store: Storage for attempt state between requests.
            renderer: Challenge page renderer.
            config_resolver: Tenant attribute resolver.
            clock: Current UTC time.
            log: Root logging context; a fresh one is used if omitted.
        """
        self.client = client
        self.rate_limiter = rate_limiter
        self.attempt_store = attempt_store
        self.renderer = renderer or ChallengeRenderer()
        self.config_resolver = config_resolver or ConfigResolver()
        self._clock = clock
        self._log = log or LogContext.root()

    # ───────────────────────────────────────────────────────────
    # Public operations
    # ───────────────────────────────────────────────────────────

    async def authenticate(
        self,
        request: StepRequest,
        user: StepUser,
        attributes: Mapping[str, str | None],
        *,
        session_key: str,
        action_url: str = "",
        session_note: str | None = None,
    ) -> StepOutcome:
        """Begin the step for a login attempt.

        Interactive requests are challenged; direct requests are verified
        straight away when they carry a code, otherwise a code is issued.

        Args:
            request: Classified inbound request.
            user: User identified earlier in the pipeline.
            attributes: Tenant attributes for ConfigResolver.
            session_key: Login session id (interactive channel).
            action_url: Form target for the challenge page.
            session_note: Optional hint shown on the challenge page.
        """
        run = self._start(
            request, user, attributes, session_key, action_url, session_note
        )
        return await self._guard(run, self._begin)

    async def action(
        self,
        request: StepRequest,
        user: StepUser,
        attributes: Mapping[str, str | None],
        *,
        session_key: str,
        action_url: str = "",
        session_note: str | None = None,
    ) -> StepOutcome:
        """Handle a challenge form submission (code or resend).

        Args:
            request: Classified inbound request.
            user: User identified earlier in the pipeline.
            attributes: Tenant attributes for ConfigResolver.
            session_key: Login session id.
            action_url: Form target for the challenge page.
            session_note: Optional hint shown on the challenge page.
        """
        run = self._start(
            request, user, attributes, session_key, action_url, session_note
        )
        return await self._guard(run, self._continue)

    async def abandon(self, session_key: str) -> None:
        """Release the state of an attempt whose login session was cancelled.

        Store failures are logged; the state then expires with its TTL.
        """
        try:
            async with self.attempt_store.lock(session_key):
                await self.attempt_store.delete(session_key)
        except Exception:  # noqa: BLE001
            self._log.exception(
                "Failed to release abandoned attempt", session_key=session_key
            )
            return
        self._log.info("Attempt abandoned", session_key=session_key)

    # ───────────────────────────────────────────────────────────
    # Dispatch
    # ───────────────────────────────────────────────────────────

    def _start(
        self,
        request: StepRequest,
        user: StepUser,
        attributes: Mapping[str, str | None],
        session_key: str,
        action_url: str,
        session_note: str | None,
    ) -> _Run:
        log = self._log.bind(user_id=user.user_id, channel=request.channel.value)
        cfg = self.config_resolver.resolve(attributes, log.child("config"))
        key = session_key
        if isinstance(request, DirectRequest):
            key = f"direct:{user.user_id}"
        return _Run(
            request=request,
            user=user,
            cfg=cfg,
            log=log,
            key=key,
            action_url=action_url,
            session_note=session_note,
        )

    async def _guard(
        self, run: _Run, handler: Callable[[_Run], Awaitable[StepOutcome]]
    ) -> StepOutcome:
        """Run a handler so that every path ends in a defined outcome."""
        try:
            outcome = self._config_gate(run)
            if outcome is None:
                ttl_ms = run.cfg.timeout_ms + LOCK_MARGIN_MS
                async with self.attempt_store.lock(run.key, ttl_ms=ttl_ms):
                    outcome = await handler(run)
        except Exception:  # noqa: BLE001
            run.log.exception("Unexpected error in OTP step")
            outcome = await self._internal_failure(run)

        run.log.info(
            "Step request resolved",
            status=outcome.status.value,
            terminal=outcome.terminal,
            error_code=outcome.error_code,
        )
        StepMetrics.record_outcome(run.channel.value, outcome.status.value)
        return outcome

    def _config_gate(self, run: _Run) -> StepOutcome | None:
        cfg = run.cfg
        if not cfg.enabled:
            run.log.info("OTP step disabled, skipping")
            return self._resolved(run, AttemptStatus.SUCCEEDED, skipped=True)
        if cfg.is_configured:
            return None

        error = ConfigurationError("OTP step enabled without plugin.external.api.url")
        run.log.warning(
            "OTP step not configured", error=str(error), fail_open=cfg.fail_open
        )
        if cfg.fail_open:
            return self._resolved(run, AttemptStatus.SUCCEEDED, skipped=True)
        return self._resolved(
            run,
            AttemptStatus.FAILED,
            message=MSG_FAILED,
            error_code="not_configured",
            page=self.renderer.render_failure(MSG_FAILED) if run.interactive else None,
        )

    def _resolved(
        self,
        run: _Run,
        status: AttemptStatus,
        *,
        skipped: bool = False,
        message: str | None = None,
        error_code: str | None = None,
        page: str | None = None,
    ) -> StepOutcome:
        """Outcome for an attempt that ended before any state was stored."""
        state = self._fresh(run)
        state.transition(status)
        return StepOutcome(
            status=status,
            attempt=state,
            terminal=True,
            page=page,
            message=message,
            error_code=error_code,
            skipped=skipped,
        )

    async def _begin(self, run: _Run) -> StepOutcome:
        if isinstance(run.request, DirectRequest):
            return await self._direct(run, run.request)
        run.state = AttemptState(user_id=run.user.user_id, channel=Channel.INTERACTIVE)
        return await self._challenge(run)

    async def _continue(self, run: _Run) -> StepOutcome:
        request = run.request
        if isinstance(request, DirectRequest):
            return await self._direct(run, request)

        assert isinstance(request, InteractiveRequest)
        run.state = await self._load(run)

        if request.resend:
            if run.state is None:
                run.state = self._fresh(run)
                return await self._challenge(run, message=MSG_RESTARTED)
            return await self._challenge(run, message=MSG_RESENT, resend=True)

        invalid = self._validate(request.submitted_code)
        if invalid is not None:
            return self._invalid_format(run, invalid)

        if run.state is None:
            run.state = self._fresh(run)
            return await self._challenge(run, message=MSG_RESTARTED)

        assert request.submitted_code is not None
        return await self._verify(run, request.submitted_code)

    async def _direct(self, run: _Run, request: DirectRequest) -> StepOutcome:
        run.state = await self._load(run) or self._fresh(run)
        code = request.submitted_code
        if code is None:
            return await self._challenge(run, resend=run.state.issued_at is not None)

        invalid = self._validate(code)
        if invalid is not None:
            return self._invalid_format(run, invalid)
        return await self._verify(run, code)

    # ───────────────────────────────────────────────────────────
    # Transitions
    # ───────────────────────────────────────────────────────────

    async def _challenge(
        self, run: _Run, *, message: str | None = None, resend: bool = False
    ) -> StepOutcome:
        """Issue (or re-issue) a code and present the challenge."""
        state = run.state
        assert state is not None

        decision = await self.rate_limiter.check_and_increment(
            run.limiter_key, run.cfg, run.log.child("rate_limiter")
        )
        if not decision.allowed:
            return await self._lock_out(run, decision.retry_after_ms)

        issued = await self.client.issue(
            run.user.identifier,
            run.cfg,
            run.log.child("client").bind(attempt_id=state.attempt_id),
            metadata=self._metadata(run),
        )
        if issued.error is not None:
            return await self._service_failure(run, issued.error)

        state.mark_issued(issued.code_ref, self._clock(), run.cfg.code_ttl_ms)
        if resend:
            state.resend_count += 1

        if not run.interactive:
            await self._save(run)
            return StepOutcome(
                status=AttemptStatus.PENDING,
                attempt=state,
                message="A verification code is required.",
                error_code="otp_required",
            )

        state.transition(AttemptStatus.CHALLENGED)
        await self._save(run)
        return StepOutcome(
            status=AttemptStatus.CHALLENGED,
            attempt=state,
            page=self._page(run, message),
            message=message,
        )

    async def _verify(self, run: _Run, code: str) -> StepOutcome:
        state = run.state
        assert state is not None

        decision = await self.rate_limiter.check_and_increment(
            run.limiter_key, run.cfg, run.log.child("rate_limiter")
        )
        if not decision.allowed:
            return await self._lock_out(run, decision.retry_after_ms)

        state.transition(AttemptStatus.VERIFYING)

        if state.is_expired(self._clock()):
            run.log.info("Submitted code has expired", attempt_id=state.attempt_id)
            return await self._mismatch(run, MSG_EXPIRED, "expired_code")

        result = await self.client.verify(
            run.user.identifier,
            code,
            run.cfg,
            run.log.child("client").bind(attempt_id=state.attempt_id),
            metadata=self._metadata(run),
        )

        if result.outcome is VerifyOutcome.MATCH:
            return await self._success(run)
        if result.outcome is VerifyOutcome.SERVICE_ERROR:
            assert result.error is not None
            if run.cfg.fail_open:
                run.log.warning(
                    "Verification service failed, failing open",
                    error=str(result.error),
                )
                return await self._success(run)
            run.log.error(
                "Verification service failed, failing closed",
                error=str(result.error),
            )
            return await self._mismatch(run, MSG_INVALID_CODE, "service_error")
        return await self._mismatch(run, MSG_INVALID_CODE, "invalid_code")

    async def _success(self, run: _Run) -> StepOutcome:
        state = run.state
        assert state is not None
        state.transition(AttemptStatus.SUCCEEDED)
        await self.attempt_store.delete(run.key)
        await self.rate_limiter.reset(run.limiter_key, run.log.child("rate_limiter"))
        return StepOutcome(status=AttemptStatus.SUCCEEDED, attempt=state, terminal=True)

    async def _mismatch(self, run: _Run, message: str, error_code: str) -> StepOutcome:
        """Count a failed verification; re-challenge while retries remain."""
        state = run.state
        assert state is not None
        state.attempt_count += 1

        if not run.interactive or state.attempt_count >= run.cfg.max_attempts:
            return await self._fail(run, message, error_code)

        state.transition(AttemptStatus.CHALLENGED)
        await self._save(run)
        return StepOutcome(
            status=AttemptStatus.FAILED,
            attempt=state,
            terminal=False,
            page=self._page(run, message),
            message=message,
            error_code=error_code,
        )

    async def _fail(self, run: _Run, message: str, error_code: str) -> StepOutcome:
        state = run.state
        assert state is not None
        state.transition(AttemptStatus.FAILED)
        await self.attempt_store.delete(run.key)
        page = None
        if run.interactive:
            message = MSG_FAILED
            page = self.renderer.render_failure(message)
        return StepOutcome(
            status=AttemptStatus.FAILED,
            attempt=state,
            terminal=True,
            page=page,
            message=message,
            error_code=error_code,
        )

    async def _lock_out(self, run: _Run, retry_after_ms: int) -> StepOutcome:
        state = run.state
        assert state is not None
        error = RateLimitError(retry_after_ms=retry_after_ms)
        state.transition(AttemptStatus.LOCKED)
        await self.attempt_store.delete(run.key)
        return StepOutcome(
            status=AttemptStatus.LOCKED,
            attempt=state,
            terminal=True,
            page=self._page(run, error.user_message),
            message=error.user_message,
            retry_after_ms=error.retry_after_ms,
            error_code="rate_limited",
        )

    async def _service_failure(self, run: _Run, error: ServiceError) -> StepOutcome:
        """Issue failed: resolve through fail-open."""
        if run.cfg.fail_open:
            run.log.warning("Code issue failed, failing open", error=str(error))
            return await self._success(run)
        run.log.error("Code issue failed, failing closed", error=str(error))
        return await self._fail(run, MSG_FAILED, "service_error")

    def _invalid_format(self, run: _Run, error: ValidationError) -> StepOutcome:
        message = error.user_message
        return StepOutcome(
            status=AttemptStatus.CHALLENGED if run.interactive else AttemptStatus.FAILED,
            attempt=run.state,
            terminal=False,
            page=self._page(run, message),
            message=message,
            error_code="invalid_format",
        )

    async def _internal_failure(self, run: _Run) -> StepOutcome:
        try:
            await self.attempt_store.delete(run.key)
        except Exception:  # noqa: BLE001
            run.log.exception("Failed to release attempt state")
        state = run.state
        if state is not None and not state.status.is_terminal:
            state.status = AttemptStatus.FAILED
        return StepOutcome(
            status=AttemptStatus.FAILED,
            attempt=state,
            terminal=True,
            page=self.renderer.render_failure(MSG_FAILED) if run.interactive else None,
            message=MSG_FAILED,
            error_code="internal_error",
        )

    # ───────────────────────────────────────────────────────────
    # Helpers
    # ───────────────────────────────────────────────────────────

    @staticmethod
    def _validate(code: str | None) -> ValidationError | None:
        if code is None or _CODE_RE.fullmatch(code) is None:
            return ValidationError({CODE_FIELD: [MSG_INVALID_FORMAT]})
        return None

    def _fresh(self, run: _Run) -> AttemptState:
        return AttemptState(user_id=run.user.user_id, channel=run.channel)

    async def _load(self, run: _Run) -> AttemptState | None:
        try:
            data = await self.attempt_store.get(run.key)
            if data is None:
                return None
            state = AttemptState.from_dict(data)
        except AttemptStateError as e:
            run.log.warning("Discarding unreadable attempt state", error=str(e))
            return None
        if state.user_id != run.user.user_id or state.status.is_terminal:
            return None
        return state

    async def _save(self, run: _Run) -> None:
        assert run.state is not None
        await self.attempt_store.save(
            run.key, run.state.to_dict(), run.cfg.attempt_ttl_ms
        )

    def _page(self, run: _Run, message: str | None) -> str | None:
        if not run.interactive:
            return None
        context = ChallengeContext(
            action_url=run.action_url,
            email=run.user.email,
            session_note=run.session_note,
            message=message,
        )
        return self.renderer.render(run.action_url, context, message)

    @staticmethod
    def _metadata(run: _Run) -> dict[str, str]:
        assert run.state is not None
        return {
            "attempt_id": run.state.attempt_id,
            "channel": run.channel.value,
            "user_id": run.user.user_id,
        }


__all__: list[str] = [
    "FlowRouter",
    "StepOutcome",
    "StepUser",
    "MSG_EXPIRED",
    "MSG_FAILED",
    "MSG_INVALID_CODE",
    "MSG_INVALID_FORMAT",
    "MSG_RESENT",
    "MSG_RESTARTED",
]
