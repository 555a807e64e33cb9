"""Explicit logging context.

Components never reach for a shared logger instance on their own. Each call
receives a ``LogContext`` carrying the component name and the structured
fields of the current attempt, and logs through it.

Usage:
    ```python
    log = LogContext.root().bind(attempt_id="a1", user_id="u1")
    client_log = log.child("client")
    client_log.info("External call finished", status=200)
    ```
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Mapping

ROOT_LOGGER_NAME = "cqrs_ddd.otp_step"


@dataclass(frozen=True)
class LogContext:
    """Immutable logging context passed into each component call.

    Attributes:
        component: Component name (``flow``, ``client``, ``rate_limiter``...).
        fields: Structured key/value pairs attached to every record.
        logger: Target logger. Records are emitted with ``otp_component``
            and ``otp_fields`` in ``extra`` so formatters can render them.
    """

    component: str
    fields: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    logger: logging.Logger = field(
        default_factory=lambda: logging.getLogger(ROOT_LOGGER_NAME),
        compare=False,
    )

    @classmethod
    def root(cls, logger: logging.Logger | None = None) -> LogContext:
        """Create the top-level context for one authentication attempt."""
        return cls(
            component="flow",
            logger=logger or logging.getLogger(ROOT_LOGGER_NAME),
        )

    def bind(self, **fields: Any) -> LogContext:
        """Return a new context with additional fields."""
        merged = {**self.fields, **fields}
        return LogContext(
            component=self.component,
            fields=MappingProxyType(merged),
            logger=self.logger,
        )

    def child(self, component: str) -> LogContext:
        """Return a context for a sub-component, keeping the fields."""
        return LogContext(
            component=component,
            fields=self.fields,
            logger=self.logger.getChild(component),
        )

    def _emit(
        self,
        level: int,
        message: str,
        fields: dict[str, Any],
        exc_info: bool = False,
    ) -> None:
        if not self.logger.isEnabledFor(level):
            return
        merged = {**self.fields, **fields}
        rendered = " ".join(f"{k}={v}" for k, v in merged.items())
        self.logger.log(
            level,
            "[%s] %s %s",
            self.component,
            message,
            rendered,
            exc_info=exc_info,
            extra={"otp_component": self.component, "otp_fields": merged},
        )

    def debug(self, message: str, **fields: Any) -> None:
        self._emit(logging.DEBUG, message, fields)

    def info(self, message: str, **fields: Any) -> None:
        self._emit(logging.INFO, message, fields)

    def warning(self, message: str, **fields: Any) -> None:
        self._emit(logging.WARNING, message, fields)

    def error(self, message: str, **fields: Any) -> None:
        self._emit(logging.ERROR, message, fields)

    def exception(self, message: str, **fields: Any) -> None:
        """Log at ERROR level with the active exception's traceback."""
        self._emit(logging.ERROR, message, fields, exc_info=True)


__all__: list[str] = ["LogContext", "ROOT_LOGGER_NAME"]
