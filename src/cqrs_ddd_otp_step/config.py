"""Step configuration resolved from tenant attributes.

Tenant attributes are an opaque string-to-string mapping owned by the
identity provider. ``ConfigResolver`` turns them into an immutable
``StepConfiguration`` snapshot once per attempt.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Annotated, Any

import pydantic
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

if TYPE_CHECKING:
    from collections.abc import Mapping

    from .logging_context import LogContext


class AuthScheme(str, Enum):
    """How the external verification service is authenticated."""

    BEARER = "bearer"
    APIKEY = "apikey"
    NONE = "none"


# Tenant attribute keys
ENABLED = "plugin.enabled"
EXTERNAL_API_URL = "plugin.external.api.url"
API_TOKEN = "plugin.external.api.token"  # noqa: S105
AUTH_TYPE = "plugin.external.auth.type"
API_KEY_HEADER = "plugin.external.api.key.header"
TIMEOUT = "plugin.timeout"
FAIL_OPEN = "plugin.fail.open"
MAX_ATTEMPTS = "plugin.max.attempts"
LOCKOUT_WINDOW_MS = "plugin.lockout.window.ms"
CODE_TTL_MS = "plugin.code.ttl.ms"
ATTEMPT_TTL_MS = "plugin.attempt.ttl.ms"
LOG_CODES = "plugin.log.codes"


class StepConfiguration(BaseModel):
    """Immutable configuration snapshot for one authentication attempt.

    Attributes:
        enabled: Whether the step runs at all.
        external_api_url: Base URL of the verification service.
        api_token: Credential sent to the verification service.
        auth_scheme: How ``api_token`` is sent.
        api_key_header: Header name used with ``AuthScheme.APIKEY``.
        timeout_ms: Hard timeout for each external call.
        fail_open: Treat verification service failures as success.
        max_attempts: Attempts allowed per lockout window.
        lockout_window_ms: Length of the rate-limit window.
        code_ttl_ms: Lifetime of an issued code.
        attempt_ttl_ms: Lifetime of stored attempt state.
        log_codes: Include submitted codes and code refs in audit logs.
    """

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    external_api_url: str | None = None
    api_token: str | None = None
    auth_scheme: AuthScheme = AuthScheme.BEARER
    api_key_header: str = "X-API-Key"
    timeout_ms: int = 30_000
    fail_open: bool = False
    max_attempts: int = 5
    lockout_window_ms: int = 900_000  # 15 minutes
    code_ttl_ms: int = 300_000  # 5 minutes
    attempt_ttl_ms: int = 1_800_000  # 30 minutes
    log_codes: bool = False

    @property
    def is_configured(self) -> bool:
        """Enabled and pointing at a verification service."""
        return self.enabled and bool((self.external_api_url or "").strip())

    @property
    def base_url(self) -> str:
        return (self.external_api_url or "").strip().rstrip("/")

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000


_PositiveInt = Annotated[int, Field(gt=0)]
_NonEmptyStr = Annotated[str, Field(min_length=1)]

# attribute key -> (model field, adapter)
_FIELDS: dict[str, tuple[str, TypeAdapter[Any]]] = {
    ENABLED: ("enabled", TypeAdapter(bool)),
    EXTERNAL_API_URL: ("external_api_url", TypeAdapter(_NonEmptyStr)),
    API_TOKEN: ("api_token", TypeAdapter(_NonEmptyStr)),
    AUTH_TYPE: ("auth_scheme", TypeAdapter(AuthScheme)),
    API_KEY_HEADER: ("api_key_header", TypeAdapter(_NonEmptyStr)),
    TIMEOUT: ("timeout_ms", TypeAdapter(_PositiveInt)),
    FAIL_OPEN: ("fail_open", TypeAdapter(bool)),
    MAX_ATTEMPTS: ("max_attempts", TypeAdapter(_PositiveInt)),
    LOCKOUT_WINDOW_MS: ("lockout_window_ms", TypeAdapter(_PositiveInt)),
    CODE_TTL_MS: ("code_ttl_ms", TypeAdapter(_PositiveInt)),
    ATTEMPT_TTL_MS: ("attempt_ttl_ms", TypeAdapter(_PositiveInt)),
    LOG_CODES: ("log_codes", TypeAdapter(bool)),
}


class ConfigResolver:
    """Resolves a ``StepConfiguration`` from tenant attributes.

    Each attribute is coerced on its own. A missing attribute takes the
    documented default; a malformed one takes the default and logs a
    warning. Resolution never raises.

    Example:
        ```python
        cfg = ConfigResolver().resolve(
            {"plugin.external.api.url": "https://otp.example.com",
             "plugin.timeout": "5000"},
            LogContext.root(),
        )
        assert cfg.is_configured
        ```
    """

    def resolve(
        self,
        attributes: Mapping[str, str | None],
        log: LogContext,
    ) -> StepConfiguration:
        values: dict[str, Any] = {}
        for key, (field_name, adapter) in _FIELDS.items():
            raw = attributes.get(key)
            if raw is None:
                continue
            text = raw.strip()
            if not text:
                continue
            if field_name == "auth_scheme":
                text = text.lower()
            try:
                values[field_name] = adapter.validate_python(text)
            except pydantic.ValidationError:
                log.warning(
                    "Invalid configuration value, using default",
                    key=key,
                    value=raw,
                    default=StepConfiguration.model_fields[field_name].default,
                )
        return StepConfiguration(**values)


__all__: list[str] = [
    "AuthScheme",
    "StepConfiguration",
    "ConfigResolver",
]
