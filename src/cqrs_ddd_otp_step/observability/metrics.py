"""OTP step metrics for Prometheus integration.

Usage:
    ```python
    from cqrs_ddd_otp_step.observability import StepMetrics

    StepMetrics.observe_call("verify", result="match", duration=0.12)
    StepMetrics.record_outcome("interactive", "succeeded")
    ```
"""

from __future__ import annotations

import logging
from typing import Any

_logger = logging.getLogger(__name__)


class _StepMetricsRegistry:
    """Registry for OTP step Prometheus metrics.

    Lazily initializes Prometheus metrics on first use.
    """

    def __init__(self) -> None:
        self._histogram: Any = None
        self._counter: Any = None
        self._outcomes: Any = None
        self._initialized = False

    def _ensure_initialized(self) -> None:
        """Initialize Prometheus metrics if available."""
        if self._initialized:
            return

        try:
            from prometheus_client import Counter, Histogram

            self._histogram = Histogram(
                "otp_step_operation_duration_seconds",
                "External verification call duration",
                ["operation"],
            )
            self._counter = Counter(
                "otp_step_operations_total",
                "External verification call count",
                ["operation", "result"],
            )
            self._outcomes = Counter(
                "otp_step_outcomes_total",
                "Resolved OTP step outcomes",
                ["channel", "status"],
            )
        except ImportError:
            _logger.debug("prometheus_client not available, metrics disabled")

        self._initialized = True

    @property
    def histogram(self) -> Any:
        self._ensure_initialized()
        return self._histogram

    @property
    def counter(self) -> Any:
        self._ensure_initialized()
        return self._counter

    @property
    def outcomes(self) -> Any:
        self._ensure_initialized()
        return self._outcomes


# Global registry instance
_registry = _StepMetricsRegistry()


class StepMetrics:
    """Metric helpers for the OTP step.

    Integrates with Prometheus when available, no-op otherwise. Metric
    failures never affect the authentication flow.
    """

    @staticmethod
    def observe_call(operation: str, *, result: str, duration: float) -> None:
        """Record one external verification call.

        Args:
            operation: ``issue`` or ``verify``.
            result: ``issued``, ``match``, ``mismatch`` or ``service_error``.
            duration: Call duration in seconds.
        """
        if _registry.histogram:
            try:
                _registry.histogram.labels(operation=operation).observe(duration)
            except Exception:  # noqa: BLE001
                _logger.debug("Failed to record histogram")

        if _registry.counter:
            try:
                _registry.counter.labels(operation=operation, result=result).inc()
            except Exception:  # noqa: BLE001
                _logger.debug("Failed to record counter")

    @staticmethod
    def record_outcome(channel: str, status: str) -> None:
        """Record a resolved step outcome.

        Args:
            channel: ``interactive`` or ``direct``.
            status: Attempt status the request resolved to.
        """
        if _registry.outcomes:
            try:
                _registry.outcomes.labels(channel=channel, status=status).inc()
            except Exception:  # noqa: BLE001
                _logger.debug("Failed to record outcome")


__all__: list[str] = ["StepMetrics"]
