"""Custom exceptions for Portfolio Gateway.

This module defines the exception hierarchy for the application.

Transient faults (``ConnectionUnavailable``, ``TransientFault``) are retried by
the retry policy and only reach callers wrapped in ``RetriesExhausted``.
Everything else propagates unchanged with the original cause chained.
"""

from typing import Optional


class PortfolioGatewayError(Exception):
    """Base exception for all Portfolio Gateway errors.

    All custom exceptions in the application should inherit from this class.
    """

    pass


class ConfigurationError(PortfolioGatewayError):
    """Raised when configuration is invalid or missing.

    Examples:
        - PORTFOLIO_DB_URL not set
        - Negative pool size or retry attempts
        - Configuration file not found
    """

    pass


class ValidationFailure(PortfolioGatewayError):
    """Raised when a local pre-flight check fails before any network call.

    Never retried.

    Examples:
        - Missing portfolio or security id
        - Unknown transaction type
        - Float passed where a decimal amount is required
    """

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        self.field = field
        super().__init__(message)


class OperationCancelled(PortfolioGatewayError):
    """Raised when the caller's cancellation signal is set."""

    pass


class StoreError(PortfolioGatewayError):
    """Base exception for failures talking to the relational store.

    Parent class for all store-related exceptions.
    """

    pass


class ConnectionUnavailable(StoreError):
    """Raised when a pooled connection cannot be obtained.

    Examples:
        - Pool exhausted within the acquisition timeout
        - Login handshake failed
    """

    pass


class _CodedFault(StoreError):
    """Store fault carrying the store-reported error number, if any."""

    def __init__(self, message: str, code: Optional[int | str] = None) -> None:
        self.code = code
        super().__init__(message)

    def __str__(self) -> str:
        base = super().__str__()
        if self.code is None:
            return base
        return f"{base} [code={self.code}]"


class TransientFault(_CodedFault):
    """Raised for faults expected to clear on retry.

    Examples:
        - Throttling (40501, 10928, 10929)
        - Failover in progress (40197, 40613)
        - Deadlock victim (1205)
        - Local command timeout
    """

    pass


class FatalFault(_CodedFault):
    """Raised for faults that retrying cannot fix.

    Examples:
        - Constraint violation
        - Bad parameter or permission denied
        - Procedure contract mismatch
    """

    pass


class DecodeError(FatalFault):
    """Raised when a response does not match the procedure contract.

    Examples:
        - Expected column missing from a result set
        - Column value of the wrong type
        - SUCCESS status reported without a transaction id
    """

    pass


class RetriesExhausted(StoreError):
    """Raised when a transient fault persists past the attempt bound."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Operation failed after {attempts} attempts: {last_error}"
        )


class BatchUpsertError(StoreError):
    """Raised when a batch fails after earlier batches were already applied.

    Whether rows of the failing batch were committed depends on the store
    procedure; ``rows_applied`` only counts batches that reported success.
    """

    def __init__(self, message: str, rows_applied: int, batch_index: int) -> None:
        self.rows_applied = rows_applied
        self.batch_index = batch_index
        super().__init__(message)
