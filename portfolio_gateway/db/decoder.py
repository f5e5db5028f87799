"""Decoding of procedure responses into domain models.

Columns are always read by name. Nullable columns map SQL NULL to None;
a NULL in a required column, or a missing column, is a contract mismatch and
raises ``DecodeError``, which is never retried.
"""

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, List, Mapping, Optional, TypeVar

from portfolio_gateway.db.invoker import ResultStream, Row
from portfolio_gateway.models.base import (
    Holding,
    PerformancePoint,
    PortfolioSummary,
    SymbolSummary,
    TransactionRecorded,
    TransactionRejected,
    TransactionResult,
    TypeAllocation,
)
from portfolio_gateway.utils.exceptions import DecodeError
from portfolio_gateway.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

SUCCESS_STATUS = "SUCCESS"


def _value(row: Row, column: str, nullable: bool) -> Any:
    if column not in row:
        raise DecodeError(f"Column {column!r} missing from result set")
    value = row[column]
    if value is None and not nullable:
        raise DecodeError(f"Column {column!r} is NULL but required")
    return value


def read_int(row: Row, column: str, nullable: bool = False) -> Optional[int]:
    value = _value(row, column, nullable)
    if value is None:
        return None
    if isinstance(value, bool):
        raise DecodeError(f"Column {column!r} expected integer, got {value!r}")
    try:
        number = int(value)
    except (TypeError, ValueError, OverflowError) as e:
        raise DecodeError(f"Column {column!r} expected integer, got {value!r}") from e
    if isinstance(value, (float, Decimal)) and number != value:
        raise DecodeError(f"Column {column!r} expected integer, got fractional {value!r}")
    return number


def read_decimal(row: Row, column: str, nullable: bool = False) -> Optional[Decimal]:
    """Read a DECIMAL column.

    Drivers normally return ``Decimal`` already; ints and strings are
    converted exactly, floats through their shortest repr.
    """
    value = _value(row, column, nullable)
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise DecodeError(f"Column {column!r} expected decimal, got {value!r}")
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise DecodeError(f"Column {column!r} expected decimal, got {value!r}") from e


def read_str(row: Row, column: str, nullable: bool = False) -> Optional[str]:
    value = _value(row, column, nullable)
    if value is None:
        return None
    return str(value)


def read_datetime(row: Row, column: str, nullable: bool = False) -> Optional[datetime]:
    value = _value(row, column, nullable)
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError as e:
            raise DecodeError(f"Column {column!r} expected datetime, got {value!r}") from e
    raise DecodeError(f"Column {column!r} expected datetime, got {value!r}")


def read_date(row: Row, column: str, nullable: bool = False) -> Optional[date]:
    value = _value(row, column, nullable)
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value[:10])
        except ValueError as e:
            raise DecodeError(f"Column {column!r} expected date, got {value!r}") from e
    raise DecodeError(f"Column {column!r} expected date, got {value!r}")


def decode_allocation(row: Row) -> TypeAllocation:
    return TypeAllocation(
        security_type=read_str(row, "SecurityType"),
        securities_count=read_int(row, "SecuritiesCount"),
        total_net_quantity=read_decimal(row, "TotalNetQuantity"),
        total_market_value=read_decimal(row, "TotalMarketValue"),
        allocation_percent=read_decimal(row, "AllocationPercent"),
    )


def decode_holding(row: Row) -> Holding:
    return Holding(
        security_id=read_int(row, "SecurityID"),
        security_name=read_str(row, "SecurityName"),
        security_type=read_str(row, "SecurityType"),
        net_quantity=read_decimal(row, "NetQuantity"),
        current_price=read_decimal(row, "CurrentPrice"),
        market_value=read_decimal(row, "MarketValue"),
        allocation_percent=read_decimal(row, "AllocationPercent"),
    )


def decode_performance_point(row: Row) -> PerformancePoint:
    return PerformancePoint(
        snapshot_date=read_date(row, "SnapshotDate"),
        cash_flow=read_decimal(row, "CashFlow"),
        cumulative_pnl=read_decimal(row, "CumulativePnL"),
    )


def decode_symbol_summary(row: Row) -> SymbolSummary:
    return SymbolSummary(
        portfolio_name=read_str(row, "PortfolioName"),
        symbol=read_str(row, "Symbol"),
        gross_amount=read_decimal(row, "GrossAmount"),
        total_fees=read_decimal(row, "TotalFees"),
        trades_count=read_int(row, "TradesCount"),
    )


class DecodeState(Enum):
    """Position of the analytics decoder in the response."""

    EXPECT_SUMMARY = "expect_summary"
    EXPECT_ALLOCATIONS = "expect_allocations"
    EXPECT_HOLDINGS = "expect_holdings"
    DONE = "done"


_NEXT_STATE = {
    DecodeState.EXPECT_SUMMARY: DecodeState.EXPECT_ALLOCATIONS,
    DecodeState.EXPECT_ALLOCATIONS: DecodeState.EXPECT_HOLDINGS,
    DecodeState.EXPECT_HOLDINGS: DecodeState.DONE,
}


class PortfolioSummaryDecoder:
    """Decodes the three result sets of the portfolio analytics procedure.

    Result sets, in order:
        1. zero or one summary row
        2. allocation rows by security type
        3. holding rows

    Each transition is triggered by advancing the stream to its next result
    set. An empty summary set means the portfolio has no data: decoding stops
    there and returns a zero-valued summary.

    Example:
        >>> decoder = PortfolioSummaryDecoder(portfolio_id=42)
        >>> summary = invoker.query(call, decoder)
    """

    def __init__(self, portfolio_id: int = 0):
        self.portfolio_id = portfolio_id
        self.state = DecodeState.EXPECT_SUMMARY

    def __call__(self, stream: ResultStream) -> PortfolioSummary:
        return self.decode(stream)

    def decode(self, stream: ResultStream) -> PortfolioSummary:
        # The invoker may call us again on a fresh stream after a retry
        self.state = DecodeState.EXPECT_SUMMARY
        summary_row: Optional[Row] = None
        allocations: List[TypeAllocation] = []
        holdings: List[Holding] = []

        while self.state is not DecodeState.DONE:
            if self.state is DecodeState.EXPECT_SUMMARY:
                summary_row = self._read_summary_row(stream)
                if summary_row is None:
                    logger.info(
                        "No analytics returned for PortfolioID=%s", self.portfolio_id
                    )
                    self.state = DecodeState.DONE
                    break
            elif self.state is DecodeState.EXPECT_ALLOCATIONS:
                allocations.extend(decode_allocation(row) for row in stream.rows())
            elif self.state is DecodeState.EXPECT_HOLDINGS:
                holdings.extend(decode_holding(row) for row in stream.rows())

            self._advance(stream)

        if summary_row is None:
            return PortfolioSummary(portfolio_id=self.portfolio_id)

        return PortfolioSummary(
            portfolio_id=read_int(summary_row, "PortfolioID"),
            total_value=read_decimal(summary_row, "TotalValue"),
            securities_held=read_int(summary_row, "SecuritiesHeld"),
            distinct_security_types=read_int(summary_row, "DistinctSecurityTypes"),
            total_transactions=read_int(summary_row, "TotalTransactions"),
            first_transaction_date=read_datetime(
                summary_row, "FirstTransactionDate", nullable=True
            ),
            last_transaction_date=read_datetime(
                summary_row, "LastTransactionDate", nullable=True
            ),
            snapshot_date=read_datetime(summary_row, "SnapshotDate"),
            allocation_by_type=tuple(allocations),
            holdings=tuple(holdings),
        )

    def _read_summary_row(self, stream: ResultStream) -> Optional[Row]:
        rows = stream.rows()
        first = next(rows, None)
        if first is not None and next(rows, None) is not None:
            raise DecodeError("Summary result set returned more than one row")
        return first

    def _advance(self, stream: ResultStream) -> None:
        if self.state is DecodeState.EXPECT_HOLDINGS or not stream.next_result_set():
            self.state = DecodeState.DONE
        else:
            self.state = _NEXT_STATE[self.state]


def decode_rows(decode_row: Callable[[Row], T]) -> Callable[[ResultStream], List[T]]:
    """Build a consumer that decodes every row of the first result set."""

    def consume(stream: ResultStream) -> List[T]:
        return [decode_row(row) for row in stream.rows()]

    return consume


def decode_scalar(column: str) -> Callable[[ResultStream], Optional[Decimal]]:
    """Build a consumer reading one decimal from the first row, None if no row."""

    def consume(stream: ResultStream) -> Optional[Decimal]:
        row = next(stream.rows(), None)
        if row is None:
            return None
        return read_decimal(row, column)

    return consume


def decode_transaction_result(
    outputs: Mapping[str, Any],
    status_column: str = "Result",
    id_column: str = "TransactionID",
) -> TransactionResult:
    """Decode the status/id output pair of a write procedure.

    The status is compared case-insensitively with ``SUCCESS``.

    Raises:
        DecodeError: If the store reports success without an id
    """
    raw_status = outputs.get(status_column)
    status = "" if raw_status is None else str(raw_status).strip()
    raw_id = outputs.get(id_column)

    if status.upper() == SUCCESS_STATUS:
        if raw_id is None:
            raise DecodeError(f"Store reported {status!r} without a {id_column}")
        try:
            return TransactionRecorded(transaction_id=int(raw_id), message=status)
        except (TypeError, ValueError) as e:
            raise DecodeError(f"{id_column} is not an integer: {raw_id!r}") from e

    return TransactionRejected(message=status)


def decode_rows_affected(outputs: Mapping[str, Any], column: str = "RowsAffected") -> int:
    value = outputs.get(column)
    if value is None:
        return 0
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise DecodeError(f"{column} is not an integer: {value!r}") from e

