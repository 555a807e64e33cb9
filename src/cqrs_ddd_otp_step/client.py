"""External verification service client.

Issues and checks one-time codes against an HTTP service:

- ``POST {base}/issue``  body ``{identifier, metadata}`` -> ``{codeRef}``
- ``POST {base}/verify`` body ``{identifier, submittedCode, metadata}``
  -> 2xx on match

The client never raises past its public methods. Failures come back as a
``service_error`` outcome carrying the ``ServiceError`` cause; the caller
decides what fail-open means.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

import httpx
import pydantic
from pydantic import BaseModel, ConfigDict, Field

from .config import AuthScheme
from .exceptions import ServiceError
from .observability import StepMetrics, StepTracing

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from .config import StepConfiguration
    from .logging_context import LogContext

# Statuses that mean the service could not judge the code at all.
_SERVICE_FAILURE_STATUSES = frozenset({401, 403, 407, 408, 429})

_MASK = "***"


def _latency_ms(
    response: VerificationResponse | None, error: ServiceError | None
) -> int:
    if response is not None:
        return response.latency_ms
    return error.latency_ms if error is not None else 0


class VerifyOutcome(str, Enum):
    """Result of a verification call."""

    MATCH = "match"
    MISMATCH = "mismatch"
    SERVICE_ERROR = "service_error"


# ═══════════════════════════════════════════════════════════════
# WIRE MODELS
# ═══════════════════════════════════════════════════════════════


class IssuePayload(BaseModel):
    identifier: str
    metadata: dict[str, str] = Field(default_factory=dict)


class IssueReply(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    code_ref: str | None = Field(default=None, alias="codeRef")


class VerifyPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    identifier: str
    submitted_code: str = Field(alias="submittedCode")
    metadata: dict[str, str] = Field(default_factory=dict)


# ═══════════════════════════════════════════════════════════════
# RESULTS
# ═══════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class VerificationRequest:
    """One outbound verification request."""

    identifier: str
    submitted_code: str
    metadata: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class VerificationResponse:
    """What came back from the service.

    Attributes:
        http_status: HTTP status code.
        body: Decoded JSON body, or raw text when not JSON.
        latency_ms: Round-trip time.
    """

    http_status: int
    body: Any
    latency_ms: int

    @property
    def is_success(self) -> bool:
        return 200 <= self.http_status < 300


@dataclass(frozen=True)
class IssueResult:
    """Result of ``issue``. ``error`` is set iff the code was not issued."""

    code_ref: str | None = None
    error: ServiceError | None = None
    response: VerificationResponse | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class VerifyResult:
    """Result of ``verify``. ``error`` is set iff outcome is SERVICE_ERROR."""

    outcome: VerifyOutcome
    error: ServiceError | None = None
    response: VerificationResponse | None = None


class ExternalVerificationClient:
    """HTTP client for the external verification service.

    Every call is a single POST with a hard timeout of ``cfg.timeout_ms``.
    Nothing is retried. Each call, successful or not, emits exactly one
    structured log record with target, status, latency and success flag.

    Example:
        ```python
        client = ExternalVerificationClient()
        issued = await client.issue("user@example.com", cfg, log)
        result = await client.verify("user@example.com", "123456", cfg, log)
        if result.outcome is VerifyOutcome.MATCH:
            ...
        ```
    """

    def __init__(
        self,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        user_agent: str = "cqrs-ddd-otp-step/0.1.0",
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the client.

        Args:
            transport: httpx transport override (tests, proxies).
            user_agent: User-Agent header value.
            monotonic: Clock used for latency measurement.
        """
        self._transport = transport
        self.user_agent = user_agent
        self._monotonic = monotonic

    def _headers(self, cfg: StepConfiguration) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": self.user_agent,
        }
        token = cfg.api_token
        if token and cfg.auth_scheme is AuthScheme.BEARER:
            headers["Authorization"] = f"Bearer {token}"
        elif token and cfg.auth_scheme is AuthScheme.APIKEY:
            headers[cfg.api_key_header] = token
        return headers

    async def _post(
        self,
        operation: str,
        payload: BaseModel,
        cfg: StepConfiguration,
    ) -> VerificationResponse:
        """POST one payload.

        Raises:
            ServiceError: On timeout or transport failure.
        """
        url = f"{cfg.base_url}/{operation}"
        timeout = cfg.timeout_seconds
        start = self._monotonic()

        def elapsed_ms() -> int:
            return int((self._monotonic() - start) * 1000)

        try:
            async with httpx.AsyncClient(
                timeout=timeout, transport=self._transport
            ) as client:
                response = await asyncio.wait_for(
                    client.post(
                        url,
                        json=payload.model_dump(by_alias=True),
                        headers=self._headers(cfg),
                    ),
                    timeout=timeout,
                )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise ServiceError(
                f"Verification service timed out after {cfg.timeout_ms}ms",
                operation=operation,
                latency_ms=elapsed_ms(),
            ) from e
        except Exception as e:  # noqa: BLE001
            raise ServiceError(
                f"Verification service unreachable: {e}",
                operation=operation,
                latency_ms=elapsed_ms(),
            ) from e

        try:
            body: Any = response.json()
        except ValueError:
            body = response.text

        return VerificationResponse(
            http_status=response.status_code,
            body=body,
            latency_ms=elapsed_ms(),
        )

    def _audit(
        self,
        log: LogContext,
        cfg: StepConfiguration,
        *,
        operation: str,
        success: bool,
        response: VerificationResponse | None,
        error: ServiceError | None,
        **fields: Any,
    ) -> None:
        """Emit the single log record for one call."""
        record = {
            "target": f"{cfg.base_url}/{operation}",
            "operation": operation,
            "status": response.http_status if response else None,
            "latency_ms": _latency_ms(response, error),
            "success": success,
            **fields,
        }
        if error is not None:
            log.error("Verification service call failed", error=str(error), **record)
        else:
            log.info("Verification service call", **record)

    def _reveal(self, value: str | None, cfg: StepConfiguration) -> str | None:
        if value is None:
            return None
        return value if cfg.log_codes else _MASK

    async def issue(
        self,
        identifier: str,
        cfg: StepConfiguration,
        log: LogContext,
        metadata: Mapping[str, str] | None = None,
    ) -> IssueResult:
        """Ask the service to issue a code for ``identifier``.

        Args:
            identifier: Who the code is for (email or username).
            cfg: Configuration snapshot.
            log: Logging context.
            metadata: Extra context forwarded to the service.

        Returns:
            IssueResult with ``code_ref`` or ``error``.
        """
        payload = IssuePayload(identifier=identifier, metadata=dict(metadata or {}))
        response: VerificationResponse | None = None
        error: ServiceError | None = None
        code_ref: str | None = None

        with StepTracing.span("issue", target=cfg.base_url) as span:
            try:
                response = await self._post("issue", payload, cfg)
            except ServiceError as e:
                error = e
            else:
                if not response.is_success:
                    error = ServiceError(
                        f"Issue rejected with HTTP {response.http_status}",
                        operation="issue",
                        status_code=response.http_status,
                        latency_ms=response.latency_ms,
                    )
                elif isinstance(response.body, dict):
                    try:
                        code_ref = IssueReply.model_validate(response.body).code_ref
                    except pydantic.ValidationError as e:
                        error = ServiceError(
                            f"Malformed issue reply: {e}",
                            operation="issue",
                            status_code=response.http_status,
                            latency_ms=response.latency_ms,
                        )
            result = "issued" if error is None else VerifyOutcome.SERVICE_ERROR.value
            StepTracing.set_result(span, result, ok=error is None)

        StepMetrics.observe_call(
            "issue", result=result, duration=_latency_ms(response, error) / 1000
        )
        self._audit(
            log,
            cfg,
            operation="issue",
            success=error is None,
            response=response,
            error=error,
            identifier=identifier,
            code_ref=self._reveal(code_ref, cfg),
        )
        return IssueResult(code_ref=code_ref, error=error, response=response)

    async def verify(
        self,
        identifier: str,
        submitted_code: str,
        cfg: StepConfiguration,
        log: LogContext,
        metadata: Mapping[str, str] | None = None,
    ) -> VerifyResult:
        """Check ``submitted_code`` for ``identifier``.

        2xx is a match. 5xx and the statuses that mean the service could not
        judge the code (401, 403, 407, 408, 429) are service errors. Any
        other 4xx is a mismatch.

        Args:
            identifier: Who the code was issued to.
            submitted_code: The code the user entered.
            cfg: Configuration snapshot.
            log: Logging context.
            metadata: Extra context forwarded to the service.

        Returns:
            VerifyResult with the outcome.
        """
        request = VerificationRequest(
            identifier=identifier,
            submitted_code=submitted_code,
            metadata=dict(metadata or {}),
        )
        payload = VerifyPayload(
            identifier=request.identifier,
            submitted_code=request.submitted_code,
            metadata=dict(request.metadata),
        )
        response: VerificationResponse | None = None
        error: ServiceError | None = None

        with StepTracing.span("verify", target=cfg.base_url) as span:
            try:
                response = await self._post("verify", payload, cfg)
            except ServiceError as e:
                error = e
                outcome = VerifyOutcome.SERVICE_ERROR
            else:
                outcome = self._classify(response)
                if outcome is VerifyOutcome.SERVICE_ERROR:
                    error = ServiceError(
                        f"Verify failed with HTTP {response.http_status}",
                        operation="verify",
                        status_code=response.http_status,
                        latency_ms=response.latency_ms,
                    )
            StepTracing.set_result(
                span, outcome.value, ok=outcome is not VerifyOutcome.SERVICE_ERROR
            )

        StepMetrics.observe_call(
            "verify", result=outcome.value, duration=_latency_ms(response, error) / 1000
        )
        self._audit(
            log,
            cfg,
            operation="verify",
            success=outcome is VerifyOutcome.MATCH,
            response=response,
            error=error,
            identifier=identifier,
            outcome=outcome.value,
            submitted_code=self._reveal(submitted_code, cfg),
        )
        return VerifyResult(outcome=outcome, error=error, response=response)

    @staticmethod
    def _classify(response: VerificationResponse) -> VerifyOutcome:
        status = response.http_status
        if response.is_success:
            return VerifyOutcome.MATCH
        if status >= 500 or status in _SERVICE_FAILURE_STATUSES or status < 400:
            return VerifyOutcome.SERVICE_ERROR
        return VerifyOutcome.MISMATCH


__all__: list[str] = [
    "ExternalVerificationClient",
    "IssueResult",
    "VerificationRequest",
    "VerificationResponse",
    "VerifyOutcome",
    "VerifyResult",
]
