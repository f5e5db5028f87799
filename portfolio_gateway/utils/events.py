"""Observability hooks for procedure invocations.

This module defines the observer interface the invoker and retry policy report
to, plus two implementations: a plain logger-backed observer and an event
logger with rotation and structured JSON output for analysis.
"""

import json
import logging
import logging.handlers
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from portfolio_gateway.utils.logging import DEFAULT_FORMAT, SecretFilter, get_logger

logger = get_logger(__name__)


class InvocationObserver(Protocol):
    """Callbacks invoked by the gateway core.

    Implementations must be thread-safe; the same observer is shared by all
    concurrent invocations.
    """

    def on_retry(self, attempt: int, delay: float, cause: BaseException) -> None:
        """Called before retry ``attempt`` (1-based) sleeps for ``delay`` seconds."""
        ...

    def on_invocation(self, procedure: str, elapsed: float, row_count: int) -> None:
        """Called after a procedure call completed and its results were consumed."""
        ...


class LoggingObserver:
    """Observer that reports through the module logger only."""

    def on_retry(self, attempt: int, delay: float, cause: BaseException) -> None:
        logger.warning(
            "Retry %d after %.2fs while executing SQL command: %s",
            attempt,
            delay,
            cause,
        )

    def on_invocation(self, procedure: str, elapsed: float, row_count: int) -> None:
        logger.info(
            "%s executed in %.1f ms and returned %d rows",
            procedure,
            elapsed * 1000,
            row_count,
        )


class GatewayEventType(Enum):
    """Types of gateway events to log."""

    RETRY_SCHEDULED = "retry_scheduled"
    INVOCATION_COMPLETED = "invocation_completed"


# The message is already a JSON object, so it is embedded unquoted.
JSON_LINE_FORMAT = '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "message": %(message)s}'


def _handler(handler: logging.Handler, level: int, fmt: str) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt))
    handler.addFilter(SecretFilter())
    return handler


class GatewayEventLogger:
    """Writes gateway events as JSON lines to size-rotated files.

    ``invocations.log`` receives one line per completed call and
    ``errors.log`` one line per scheduled retry. Implements
    ``InvocationObserver`` so it can be handed straight to ``PortfolioAPI``.

    Example:
        >>> events = GatewayEventLogger(log_dir="logs")
        >>> events.on_invocation("dbo.sp_GetPortfolioAnalytics", 0.042, 6)
        >>> events.close()
    """

    def __init__(
        self,
        log_dir: str | Path = "logs",
        max_bytes: int = 10 * 1024 * 1024,
        backup_count: int = 30,
        enable_console: bool = True,
    ):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.max_bytes = max_bytes
        self.backup_count = backup_count
        self.enable_console = enable_console

        self.invocation_logger = self._open("invocations", logging.INFO)
        self.error_logger = self._open("errors", logging.WARNING)

    def _open(self, stream: str, level: int) -> logging.Logger:
        """Create a logger for ``<log_dir>/<stream>.log`` owned by this instance.

        The logger is not registered with ``logging.getLogger``, so several
        event loggers (one per API) never share or strip each other's handlers.
        """
        event_logger = logging.Logger(f"gateway.{stream}", level)
        event_logger.propagate = False

        rotating = logging.handlers.RotatingFileHandler(
            self.log_dir / f"{stream}.log",
            maxBytes=self.max_bytes,
            backupCount=self.backup_count,
            encoding="utf-8",
        )
        event_logger.addHandler(_handler(rotating, level, JSON_LINE_FORMAT))
        if self.enable_console:
            event_logger.addHandler(_handler(logging.StreamHandler(), level, DEFAULT_FORMAT))
        return event_logger

    @staticmethod
    def _detach(event_logger: logging.Logger) -> None:
        for handler in list(event_logger.handlers):
            handler.close()
            event_logger.removeHandler(handler)

    def _emit(
        self,
        event_logger: logging.Logger,
        level: int,
        event_type: GatewayEventType,
        **fields: Any,
    ) -> None:
        payload = {"event_type": event_type.value, "timestamp": datetime.now().isoformat()}
        payload.update(fields)
        event_logger.log(level, json.dumps(payload, default=str))

    def on_retry(self, attempt: int, delay: float, cause: BaseException) -> None:
        self._emit(
            self.error_logger,
            logging.WARNING,
            GatewayEventType.RETRY_SCHEDULED,
            attempt=attempt,
            delay_s=round(delay, 3),
            cause=str(cause),
            cause_type=type(cause).__name__,
        )

    def on_invocation(self, procedure: str, elapsed: float, row_count: int) -> None:
        self._emit(
            self.invocation_logger,
            logging.INFO,
            GatewayEventType.INVOCATION_COMPLETED,
            procedure=procedure,
            elapsed_ms=round(elapsed * 1000, 3),
            row_count=row_count,
        )

    def close(self) -> None:
        self._detach(self.invocation_logger)
        self._detach(self.error_logger)
