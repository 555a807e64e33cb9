"""Spans around calls to the external verification service.

Each ``issue`` and ``verify`` call made by ``ExternalVerificationClient``
runs inside one span:

- name ``otp_step.issue`` or ``otp_step.verify``
- ``otp_step.operation``: the operation name
- ``otp_step.target``: service base URL
- ``otp_step.result``: ``issued``, ``match``, ``mismatch`` or
  ``service_error``, set once the call resolves

Codes and code refs are never put on a span. Without ``opentelemetry-api``
every helper is a no-op.

Usage:
    ```python
    from cqrs_ddd_otp_step.observability import StepTracing

    with StepTracing.span("verify", target=cfg.base_url) as span:
        ...
        StepTracing.set_result(span, "match")
    ```
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Generator

try:
    from opentelemetry import trace
    from opentelemetry.trace import Status, StatusCode

    HAS_OTEL = True
except ImportError:
    HAS_OTEL = False
    trace = None
    Status = None
    StatusCode = None

TRACER_NAME = "cqrs-ddd-otp-step"
SPAN_PREFIX = "otp_step"


class _StepTracerRegistry:
    """Resolves the step tracer on first use, after the app configured OTel."""

    def __init__(self) -> None:
        self._tracer: Any = None
        self._resolved = False

    @property
    def tracer(self) -> Any:
        if not self._resolved:
            if HAS_OTEL and trace:
                self._tracer = trace.get_tracer(TRACER_NAME)
            self._resolved = True
        return self._tracer


_registry = _StepTracerRegistry()


class StepTracing:
    """Span helpers for external verification calls."""

    @staticmethod
    @contextmanager
    def span(
        operation: str,
        *,
        target: str | None = None,
        attributes: dict[str, Any] | None = None,
    ) -> Generator[Any, None, None]:
        """Trace one external call.

        Args:
            operation: ``issue`` or ``verify``.
            target: Service base URL.
            attributes: Extra span attributes.

        Yields:
            The span, or None when tracing is disabled.
        """
        tracer = _registry.tracer
        if not tracer:
            yield None
            return

        with tracer.start_as_current_span(f"{SPAN_PREFIX}.{operation}") as span:
            try:
                span.set_attribute(f"{SPAN_PREFIX}.operation", operation)
                if target is not None:
                    span.set_attribute(f"{SPAN_PREFIX}.target", target)
                for key, value in (attributes or {}).items():
                    span.set_attribute(key, str(value))
                yield span
            except Exception as e:
                if Status and StatusCode:
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                    span.record_exception(e)
                raise

    @staticmethod
    def set_result(span: Any, result: str, *, ok: bool = True) -> None:
        """Record how the call resolved; service errors mark the span failed."""
        if not span:
            return
        span.set_attribute(f"{SPAN_PREFIX}.result", result)
        if Status and StatusCode:
            if ok:
                span.set_status(Status(StatusCode.OK))
            else:
                span.set_status(Status(StatusCode.ERROR, result))


__all__: list[str] = ["HAS_OTEL", "StepTracing"]
