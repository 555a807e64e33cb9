"""CQRS-DDD OTP Step Package

One-time code verification as a step of an identity provider's login
pipeline.

A ``FlowRouter`` issues a code through an external HTTP verification
service, accepts the answer through the browser (challenge page) or in a
single password-grant request, and locks an identity out after too many
attempts.

Usage:
    ```python
    from cqrs_ddd_otp_step import (
        ExternalVerificationClient,
        FlowRouter,
        RateLimiter,
        StepUser,
        classify_request,
    )
    from cqrs_ddd_otp_step.stores import InMemoryAttemptStore, InMemoryRateLimitStore

    router = FlowRouter(
        client=ExternalVerificationClient(),
        rate_limiter=RateLimiter(InMemoryRateLimitStore()),
        attempt_store=InMemoryAttemptStore(),
    )

    outcome = await router.authenticate(
        classify_request(form, query),
        StepUser(user_id="u1", username="alice", email="alice@example.com"),
        {"plugin.external.api.url": "https://otp.example.com"},
        session_key="login-session-1",
        action_url="/login/otp?session=login-session-1",
    )
    ```

Submodules:
    - `stores`: in-memory and Redis attempt / rate-limit stores
    - `observability`: Prometheus metrics and OpenTelemetry spans
    - `contrib.fastapi`: FastAPI router for the challenge and token endpoints
"""

from __future__ import annotations

# Attempt state
from .attempt import AttemptState, AttemptStatus, Channel

# Request classification
from .channel import (
    CODE_FIELD,
    DirectRequest,
    InteractiveRequest,
    StepRequest,
    classify_request,
)

# External verification service
from .client import (
    ExternalVerificationClient,
    IssueResult,
    VerificationRequest,
    VerificationResponse,
    VerifyOutcome,
    VerifyResult,
)

# Configuration
from .config import AuthScheme, ConfigResolver, StepConfiguration

# Exceptions
from .exceptions import (
    AttemptStateError,
    ConfigurationError,
    OtpStepError,
    RateLimitError,
    ServiceError,
    ValidationError,
)

# Flow
from .flow import FlowRouter, StepOutcome, StepUser

# Logging
from .logging_context import LogContext

# Ports
from .ports import IAttemptStore, IRateLimitStore, RateLimitRecord

# Rate limiting
from .rate_limit import RateLimitDecision, RateLimiter, rate_limit_key

# Rendering
from .renderer import CONTENT_TYPE, ChallengeContext, ChallengeRenderer

__all__: list[str] = [
    # Flow
    "FlowRouter",
    "StepOutcome",
    "StepUser",
    # Attempt state
    "AttemptState",
    "AttemptStatus",
    "Channel",
    # Request classification
    "CODE_FIELD",
    "DirectRequest",
    "InteractiveRequest",
    "StepRequest",
    "classify_request",
    # External verification service
    "ExternalVerificationClient",
    "IssueResult",
    "VerificationRequest",
    "VerificationResponse",
    "VerifyOutcome",
    "VerifyResult",
    # Configuration
    "AuthScheme",
    "ConfigResolver",
    "StepConfiguration",
    # Rate limiting
    "RateLimitDecision",
    "RateLimiter",
    "rate_limit_key",
    # Rendering
    "CONTENT_TYPE",
    "ChallengeContext",
    "ChallengeRenderer",
    # Ports
    "IAttemptStore",
    "IRateLimitStore",
    "RateLimitRecord",
    # Logging
    "LogContext",
    # Exceptions
    "OtpStepError",
    "ConfigurationError",
    "ValidationError",
    "ServiceError",
    "RateLimitError",
    "AttemptStateError",
]
