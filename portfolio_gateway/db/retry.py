"""Fault classification and retry with exponential backoff.

``FaultClassifier.classify`` is a pure function of the error: it decides
whether a failure is worth retrying. ``RetryPolicy.execute`` is the generic
wrapper that applies the decision, so both can be tested with injected errors
and no network.
"""

import random
import re
import threading
import time
from enum import Enum
from typing import Callable, Iterable, Optional, TypeVar

from sqlalchemy.exc import DBAPIError

from portfolio_gateway.utils.config import DEFAULT_TRANSIENT_CODES, GatewaySettings
from portfolio_gateway.utils.exceptions import (
    ConnectionUnavailable,
    FatalFault,
    OperationCancelled,
    PortfolioGatewayError,
    RetriesExhausted,
    StoreError,
    TransientFault,
)
from portfolio_gateway.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# ODBC SQLSTATEs: timeout expired, connection timeout, communication link
# failure, unable to establish connection.
TRANSIENT_SQLSTATES = frozenset({"HYT00", "HYT01", "08S01", "08001"})

# pyodbc messages end with "... (40501) (SQLExecDirectW)"
_NATIVE_CODE = re.compile(r"\((-?\d+)\)\s*\(SQL\w*\)")
_SQLSTATE = re.compile(r"^[0-9A-Z]{5}$")


class FaultClass(Enum):
    """Retry decision for a failure."""

    TRANSIENT = "transient"
    FATAL = "fatal"


def _driver_error(error: BaseException) -> BaseException:
    if isinstance(error, DBAPIError) and error.orig is not None:
        return error.orig
    return error


def native_error_code(error: BaseException) -> Optional[int]:
    """Extract the store's native error number from a driver exception.

    Handles drivers exposing ``number`` (SqlClient style), drivers passing the
    number as the first argument (pymssql) and pyodbc, which embeds it in the
    message text.
    """
    error = _driver_error(error)

    number = getattr(error, "number", None)
    if isinstance(number, int) and not isinstance(number, bool):
        return number

    args = getattr(error, "args", ())
    if args and isinstance(args[0], int) and not isinstance(args[0], bool):
        return args[0]

    text = " ".join(str(a) for a in args)
    match = _NATIVE_CODE.search(text)
    if match:
        return int(match.group(1))
    return None


def sqlstate(error: BaseException) -> Optional[str]:
    """Extract the ODBC SQLSTATE (pyodbc passes it as the first argument)."""
    error = _driver_error(error)
    args = getattr(error, "args", ())
    if args and isinstance(args[0], str) and _SQLSTATE.match(args[0]):
        return args[0]
    return None


class FaultClassifier:
    """Classifies failures as transient or fatal.

    Attributes:
        transient_codes: Native store error numbers treated as transient
        transient_sqlstates: ODBC SQLSTATEs treated as transient
    """

    def __init__(
        self,
        transient_codes: Iterable[int] = DEFAULT_TRANSIENT_CODES,
        transient_sqlstates: Iterable[str] = TRANSIENT_SQLSTATES,
    ):
        self.transient_codes = frozenset(transient_codes)
        self.transient_sqlstates = frozenset(transient_sqlstates)

    def classify(self, error: BaseException) -> FaultClass:
        """Decide whether ``error`` is worth retrying."""
        if isinstance(error, (ConnectionUnavailable, TransientFault, TimeoutError)):
            return FaultClass.TRANSIENT
        if isinstance(error, PortfolioGatewayError):
            return FaultClass.FATAL

        state = sqlstate(error)
        if state is not None and state in self.transient_sqlstates:
            return FaultClass.TRANSIENT

        code = native_error_code(error)
        if code is not None and code in self.transient_codes:
            return FaultClass.TRANSIENT

        return FaultClass.FATAL

    def to_store_error(self, error: BaseException, procedure: str = "") -> StoreError:
        """Translate a driver exception into the gateway taxonomy.

        The caller is expected to chain the original with ``raise ... from``.
        """
        if isinstance(error, StoreError):
            return error

        code = native_error_code(error)
        if code is None:
            code = sqlstate(error)
        where = f" while executing {procedure}" if procedure else ""
        message = f"{type(_driver_error(error)).__name__}{where}: {_driver_error(error)}"

        if self.classify(error) is FaultClass.TRANSIENT:
            return TransientFault(message, code=code)
        return FatalFault(message, code=code)


def classify(
    error: BaseException,
    transient_codes: Iterable[int] = DEFAULT_TRANSIENT_CODES,
) -> FaultClass:
    """Classify ``error`` against ``transient_codes``.

    Example:
        >>> classify(TransientFault("busy", code=40501))
        <FaultClass.TRANSIENT: 'transient'>
    """
    return FaultClassifier(transient_codes).classify(error)


class RetryPolicy:
    """Runs operations, retrying transient failures with exponential backoff.

    Holds no per-call state, so one instance can serve concurrent callers.

    Example:
        >>> policy = RetryPolicy(max_attempts=3, backoff_base=2.0)
        >>> policy.execute(lambda: fetch_summary())
    """

    def __init__(
        self,
        max_attempts: int = 3,
        backoff_base: float = 2.0,
        jitter: float = 0.0,
        max_delay: Optional[float] = None,
        classifier: Optional[FaultClassifier] = None,
        on_retry: Optional[Callable[[int, float, BaseException], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize retry policy.

        Args:
            max_attempts: Total attempts including the first one
            backoff_base: Delay before retry k is backoff_base ** k seconds
            jitter: Proportional random jitter, 0 disables it
            max_delay: Cap for a single delay, None for unbounded
            classifier: FaultClassifier (defaults to the built-in code set)
            on_retry: Hook called with (attempt, delay, cause) before each retry
            sleep: Sleep function used when no cancellation event is given
        """
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.jitter = jitter
        self.max_delay = max_delay
        self.classifier = classifier or FaultClassifier()
        self.on_retry = on_retry
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: GatewaySettings,
        on_retry: Optional[Callable[[int, float, BaseException], None]] = None,
    ) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_attempts,
            backoff_base=settings.backoff_base,
            jitter=settings.retry_jitter,
            max_delay=settings.max_retry_delay,
            classifier=FaultClassifier(settings.transient_codes),
            on_retry=on_retry,
        )

    def compute_delay(self, retry_number: int) -> float:
        """Delay in seconds before retry ``retry_number`` (1-based)."""
        delay = float(self.backoff_base**retry_number)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        if self.jitter:
            spread = delay * self.jitter
            delay += random.uniform(-spread, spread)
        return max(0.0, delay)

    def execute(
        self,
        operation: Callable[[], T],
        cancel: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
        on_retry: Optional[Callable[[int, float, BaseException], None]] = None,
    ) -> T:
        """Run ``operation`` until it succeeds, fails fatally or runs out of attempts.

        Args:
            operation: Zero-argument callable; the whole unit is re-run on retry
            cancel: Event that stops further attempts and interrupts backoff
            deadline: ``time.monotonic()`` value after which no retry starts
            on_retry: Per-call hook, overrides the policy-level hook

        Returns:
            Result of ``operation``

        Raises:
            OperationCancelled: If ``cancel`` is set before an attempt or during backoff
            RetriesExhausted: If a transient failure outlives the attempt bound
                or the deadline
            Exception: Fatal failures propagate unchanged
        """
        hook = on_retry or self.on_retry
        attempt = 0

        while True:
            if cancel is not None and cancel.is_set():
                raise OperationCancelled(f"Cancelled before attempt {attempt + 1}")

            attempt += 1
            try:
                return operation()
            except Exception as e:
                if self.classifier.classify(e) is FaultClass.FATAL:
                    raise

                if attempt >= self.max_attempts:
                    logger.error(
                        "Transient failure persisted after %d attempts: %s", attempt, e
                    )
                    raise RetriesExhausted(attempt, e) from e

                delay = self.compute_delay(attempt)
                if deadline is not None and time.monotonic() + delay > deadline:
                    logger.error(
                        "Deadline leaves no room for retry %d (delay %.2fs): %s",
                        attempt,
                        delay,
                        e,
                    )
                    raise RetriesExhausted(attempt, e) from e

                logger.warning(
                    "Transient failure (attempt %d/%d), retrying in %.2fs: %s",
                    attempt,
                    self.max_attempts,
                    delay,
                    e,
                )
                if hook is not None:
                    hook(attempt, delay, e)

                if cancel is None:
                    self._sleep(delay)
                elif cancel.wait(delay):
                    raise OperationCancelled(
                        f"Cancelled while waiting to retry (attempt {attempt})"
                    ) from e
