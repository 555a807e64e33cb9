"""OTP step observability helpers for metrics and tracing.

Optional integrations with Prometheus and OpenTelemetry; both degrade to
no-ops when the libraries are not installed.
"""

from __future__ import annotations

from .metrics import StepMetrics
from .tracing import HAS_OTEL, StepTracing

__all__: list[str] = [
    "StepMetrics",
    "StepTracing",
    "HAS_OTEL",
]
