"""User-friendly Portfolio API for analytics and transaction recording.

This module provides a simple, high-level interface over the portfolio stored
procedures: analytics retrieval, transaction recording, value recalculation
and bulk quote loading.
"""

import json
import numbers
import threading
import time
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Union

import pandas as pd

from portfolio_gateway.db import contracts
from portfolio_gateway.db.connection import ConnectionProvider, PooledConnectionProvider
from portfolio_gateway.db.decoder import (
    PortfolioSummaryDecoder,
    decode_performance_point,
    decode_rows,
    decode_rows_affected,
    decode_scalar,
    decode_symbol_summary,
    decode_transaction_result,
)
from portfolio_gateway.db.invoker import ProcedureInvoker
from portfolio_gateway.db.procedures import quantize_decimal
from portfolio_gateway.db.retry import RetryPolicy
from portfolio_gateway.models.base import (
    ZERO,
    PerformancePoint,
    PortfolioSummary,
    Quote,
    SymbolSummary,
    Trade,
    Transaction,
    TransactionRecorded,
    TransactionResult,
    TransactionType,
)
from portfolio_gateway.utils.config import (
    GatewaySettings,
    load_config,
    load_gateway_settings,
)
from portfolio_gateway.utils.events import GatewayEventLogger, InvocationObserver
from portfolio_gateway.utils.exceptions import (
    BatchUpsertError,
    OperationCancelled,
    PortfolioGatewayError,
    StoreError,
    ValidationFailure,
)
from portfolio_gateway.utils.logging import get_logger, log_with_context

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 500

PERFORMANCE_COLUMNS = ["cash_flow", "cumulative_pnl"]


def _deadline(timeout: Optional[float]) -> Optional[float]:
    if timeout is None:
        return None
    if timeout <= 0:
        raise ValidationFailure(f"timeout must be positive, got {timeout}", field="timeout")
    return time.monotonic() + timeout


def _require_id(value, name: str) -> int:
    if value is None:
        raise ValidationFailure(f"{name} is required", field=name)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationFailure(f"{name} must be an integer, got {value!r}", field=name)
    if value <= 0:
        raise ValidationFailure(f"{name} must be positive, got {value}", field=name)
    return value


def _require_decimal(value, name: str, allow_zero: bool = True) -> Decimal:
    if value is None:
        raise ValidationFailure(f"{name} is required", field=name)
    amount = quantize_decimal(value, name=name)
    if amount < 0 or (amount == 0 and not allow_zero):
        bound = "non-negative" if allow_zero else "positive"
        raise ValidationFailure(f"{name} must be {bound}, got {amount}", field=name)
    return amount


def _frame_int(value, name: str, default: Optional[int] = None) -> int:
    """Integer from a DataFrame cell; pandas upcasts int columns holding gaps to float."""
    if value is None or pd.isna(value):
        if default is None:
            raise ValidationFailure(f"{name} is missing", field=name)
        return default
    if isinstance(value, bool):
        raise ValidationFailure(f"{name} must be an integer, got {value!r}", field=name)
    if isinstance(value, numbers.Integral):
        return int(value)
    if isinstance(value, numbers.Real) and float(value).is_integer():
        return int(value)
    raise ValidationFailure(f"{name} must be an integer, got {value!r}", field=name)


def _normalize_type(value, name: str = "type") -> TransactionType:
    try:
        return TransactionType.normalize(value)
    except ValueError as e:
        raise ValidationFailure(str(e), field=name) from e


class PortfolioAPI:
    """High-level API for portfolio analytics and transactions.

    Every method accepts an optional ``cancel`` event, checked before each
    attempt and during backoff, and an optional ``timeout`` in seconds that
    bounds the whole call including retries.

    Example:
        >>> from portfolio_gateway.api.portfolio_api import PortfolioAPI
        >>>
        >>> # Initialize API from config/default.yaml and .env
        >>> api = PortfolioAPI.from_config()
        >>>
        >>> # Read analytics
        >>> summary = api.get_summary(42)
        >>> print(summary.total_value, len(summary.holdings))
        >>>
        >>> # Record a buy
        >>> result = api.record_transaction(
        ...     Transaction(portfolio_id=42, security_id=7,
        ...                 quantity=Decimal("10"), price=Decimal("189.50"))
        ... )
        >>> if not result.success:
        ...     print("Rejected:", result.message)
    """

    def __init__(
        self,
        provider: Optional[ConnectionProvider] = None,
        settings: Optional[GatewaySettings] = None,
        invoker: Optional[ProcedureInvoker] = None,
        observer: Optional[InvocationObserver] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        """Initialize PortfolioAPI.

        Args:
            provider: ConnectionProvider (defaults to a pool built from settings)
            settings: GatewaySettings (defaults to load_gateway_settings())
            invoker: Pre-built ProcedureInvoker; overrides provider and settings
            observer: Receives retry and invocation events
            batch_size: Default number of quotes per bulk upsert call
        """
        if batch_size < 1:
            raise ValidationFailure(f"batch_size must be >= 1, got {batch_size}", field="batch_size")
        self.batch_size = batch_size
        self._owns_provider = False
        self._event_logger: Optional[GatewayEventLogger] = None

        if invoker is not None:
            self.invoker = invoker
        else:
            if provider is None:
                settings = settings or load_gateway_settings()
                provider = PooledConnectionProvider(settings)
                self._owns_provider = True
            retry_policy = RetryPolicy.from_settings(settings) if settings else RetryPolicy()
            self.invoker = ProcedureInvoker(provider, retry_policy, observer)

        self.provider = self.invoker.provider

        logger.debug(
            "PortfolioAPI initialized with %s", type(self.provider).__name__
        )

    @classmethod
    def from_config(
        cls,
        config_file: Union[str, Path, None] = None,
        env_file: Union[str, Path] = ".env",
        observer: Optional[InvocationObserver] = None,
    ) -> "PortfolioAPI":
        """Build an API from the YAML configuration and environment.

        When ``gateway.events.log_dir`` is configured and no observer is
        given, events are written through a ``GatewayEventLogger``.
        """
        settings = load_gateway_settings(config_file, env_file)
        config = load_config(config_file)

        events = config.section("gateway.events")
        event_logger = None
        if observer is None and events.get("log_dir"):
            event_logger = GatewayEventLogger(
                log_dir=events.get("log_dir"),
                enable_console=bool(events.get("enable_console", False)),
            )
            observer = event_logger

        api = cls(
            settings=settings,
            observer=observer,
            batch_size=int(config.get("gateway.batch.size", DEFAULT_BATCH_SIZE)),
        )
        api._event_logger = event_logger
        return api

    def get_summary(
        self,
        portfolio_id: int,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> PortfolioSummary:
        """Get analytics for one portfolio.

        Args:
            portfolio_id: Portfolio identifier
            cancel: Cancellation event
            timeout: Overall time budget in seconds, retries included

        Returns:
            PortfolioSummary with allocations and holdings in store order.
            A portfolio without data yields a zero-valued summary.

        Raises:
            ValidationFailure: If portfolio_id is missing or not positive
            FatalFault: If the store rejects the call or the response shape changed
            RetriesExhausted: If transient faults persist

        Example:
            >>> summary = api.get_summary(42)
            >>> for allocation in summary.allocation_by_type:
            ...     print(allocation.security_type, allocation.allocation_percent)
        """
        portfolio_id = _require_id(portfolio_id, "portfolio_id")
        deadline = _deadline(timeout)

        summary = self.invoker.query(
            contracts.portfolio_analytics_call(portfolio_id),
            PortfolioSummaryDecoder(portfolio_id),
            cancel=cancel,
            deadline=deadline,
        )

        if not summary.allocation_is_consistent():
            logger.warning(
                "Allocation for PortfolioID=%s sums to %s%%",
                portfolio_id,
                summary.total_allocation_percent,
            )
        return summary

    def record_transaction(
        self,
        transaction: Transaction,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> TransactionResult:
        """Record a buy or sell.

        All fields are validated locally before the store is contacted.

        Args:
            transaction: Transaction to record
            cancel: Cancellation event
            timeout: Overall time budget in seconds, retries included

        Returns:
            TransactionRecorded with the generated id, or TransactionRejected
            carrying the store status (e.g. ``INSUFFICIENT_HOLDINGS``)

        Raises:
            ValidationFailure: If a required field is missing or invalid
            FatalFault: If the store fails the call
            RetriesExhausted: If transient faults persist

        Example:
            >>> result = api.record_transaction(
            ...     Transaction(42, 7, Decimal("5"), Decimal("101.25"), type="sell")
            ... )
            >>> result.success
            False
        """
        if transaction is None:
            raise ValidationFailure("transaction is required", field="transaction")

        portfolio_id = _require_id(transaction.portfolio_id, "portfolio_id")
        security_id = _require_id(transaction.security_id, "security_id")
        quantity = _require_decimal(transaction.quantity, "quantity", allow_zero=False)
        price = _require_decimal(transaction.price, "price")
        transaction_type = _normalize_type(transaction.type)
        if transaction.transaction_date is not None and not isinstance(
            transaction.transaction_date, datetime
        ):
            raise ValidationFailure(
                f"transaction_date must be a datetime, got {transaction.transaction_date!r}",
                field="transaction_date",
            )

        call = contracts.add_transaction_call(
            portfolio_id,
            security_id,
            quantity,
            price,
            transaction.transaction_date,
            transaction_type.value,
        )
        outputs = self.invoker.execute(call, cancel=cancel, deadline=_deadline(timeout))
        result = decode_transaction_result(outputs)

        if isinstance(result, TransactionRecorded):
            log_with_context(
                logger,
                "info",
                "Transaction recorded",
                portfolio_id=portfolio_id,
                security_id=security_id,
                type=transaction_type.value,
                transaction_id=result.transaction_id,
            )
        else:
            log_with_context(
                logger,
                "warning",
                "Transaction rejected",
                portfolio_id=portfolio_id,
                security_id=security_id,
                type=transaction_type.value,
                status=result.message,
            )
        return result

    def recalculate_value(
        self,
        portfolio_id: int,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> Decimal:
        """Refresh and return the stored portfolio value.

        Returns:
            The new PortfolioValue, or Decimal("0") when the procedure returns
            no row (e.g. a portfolio without holdings)
        """
        portfolio_id = _require_id(portfolio_id, "portfolio_id")

        value = self.invoker.query(
            contracts.update_portfolio_value_call(portfolio_id),
            decode_scalar("PortfolioValue"),
            cancel=cancel,
            deadline=_deadline(timeout),
        )
        if value is None:
            logger.warning(
                "No value returned for PortfolioID=%s; treating as 0", portfolio_id
            )
            return ZERO

        logger.info("PortfolioID=%s recalculated to %s", portfolio_id, value)
        return value

    def bulk_upsert_quotes(
        self,
        quotes: Union[Sequence[Quote], pd.DataFrame],
        batch_size: Optional[int] = None,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> int:
        """Insert or update quotes, one procedure call per batch.

        Every record is validated before the first batch is sent. Each batch
        commits on its own: whether a failing batch is applied partially is
        decided by the store procedure, not here.

        Args:
            quotes: Quote objects, or a DataFrame with columns
                security_id, price, quote_date and optionally volume, source
            batch_size: Quotes per call (defaults to the API batch size)
            cancel: Cancellation event, checked between batches too
            timeout: Overall time budget in seconds for all batches

        Returns:
            Total affected-row count reported by the store

        Raises:
            ValidationFailure: If any record is invalid (nothing is sent)
            BatchUpsertError: If a batch fails after earlier batches were applied
            StoreError: If the first batch fails (nothing was applied)

        Example:
            >>> df = pd.DataFrame({
            ...     "security_id": [1, 2],
            ...     "price": [Decimal("189.50"), Decimal("415.10")],
            ...     "quote_date": [datetime(2024, 12, 31)] * 2,
            ... })
            >>> api.bulk_upsert_quotes(df, batch_size=1000)
            2
        """
        batch_size = batch_size or self.batch_size
        if batch_size < 1:
            raise ValidationFailure(f"batch_size must be >= 1, got {batch_size}", field="batch_size")

        if isinstance(quotes, pd.DataFrame):
            records = self.quotes_from_frame(quotes)
        else:
            records = list(quotes)
        payloads = [self._quote_payload(quote, i) for i, quote in enumerate(records)]

        if not payloads:
            logger.info("No quotes to upsert")
            return 0

        deadline = _deadline(timeout)
        batches = [
            payloads[start : start + batch_size]
            for start in range(0, len(payloads), batch_size)
        ]
        logger.info("Upserting %d quotes in %d batches", len(payloads), len(batches))

        rows_applied = 0
        for index, batch in enumerate(batches):
            call = contracts.bulk_upsert_quotes_call(json.dumps(batch))
            try:
                outputs = self.invoker.execute(call, cancel=cancel, deadline=deadline)
            except (StoreError, OperationCancelled) as e:
                if index == 0:
                    raise
                logger.error(
                    "Batch %d/%d failed after %d rows were applied: %s",
                    index + 1,
                    len(batches),
                    rows_applied,
                    e,
                )
                raise BatchUpsertError(
                    f"Batch {index + 1} of {len(batches)} failed: {e}",
                    rows_applied=rows_applied,
                    batch_index=index,
                ) from e

            affected = decode_rows_affected(outputs)
            rows_applied += affected
            logger.debug("Batch %d/%d affected %d rows", index + 1, len(batches), affected)

        logger.info("Bulk upsert affected %d rows", rows_applied)
        return rows_applied

    @staticmethod
    def quotes_from_frame(frame: pd.DataFrame) -> List[Quote]:
        """Convert a quotes DataFrame to Quote records.

        Float prices are converted through their shortest decimal repr.

        Raises:
            ValidationFailure: If a required column is missing, or an id,
                volume or date cell is empty or not integral
        """
        missing = [c for c in ("security_id", "price", "quote_date") if c not in frame.columns]
        if missing:
            raise ValidationFailure(f"Quote frame missing columns: {missing}", field="quotes")

        records = []
        for index, row in enumerate(frame.to_dict(orient="records")):
            price = row["price"]
            if isinstance(price, float):
                price = Decimal(repr(price))
            quote_date = row["quote_date"]
            if quote_date is None or pd.isna(quote_date):
                raise ValidationFailure(
                    f"quotes[{index}].quote_date is missing", field="quote_date"
                )
            if isinstance(quote_date, pd.Timestamp):
                quote_date = quote_date.to_pydatetime()
            volume = row.get("volume")
            source = row.get("source")
            records.append(
                Quote(
                    security_id=_frame_int(row["security_id"], f"quotes[{index}].security_id"),
                    price=price,
                    quote_date=quote_date,
                    volume=_frame_int(volume, f"quotes[{index}].volume", default=0),
                    source=None if source is None or pd.isna(source) else str(source),
                )
            )
        return records

    @staticmethod
    def _quote_payload(quote: Quote, index: int) -> dict:
        if not isinstance(quote, Quote):
            raise ValidationFailure(
                f"quotes[{index}] must be a Quote, got {type(quote).__name__}",
                field="quotes",
            )
        security_id = _require_id(quote.security_id, f"quotes[{index}].security_id")
        price = _require_decimal(quote.price, f"quotes[{index}].price")
        if quote.quote_date is pd.NaT or not isinstance(quote.quote_date, (datetime, date)):
            raise ValidationFailure(
                f"quotes[{index}].quote_date must be a datetime, got {quote.quote_date!r}",
                field="quote_date",
            )
        if isinstance(quote.volume, bool) or not isinstance(quote.volume, int) or quote.volume < 0:
            raise ValidationFailure(
                f"quotes[{index}].volume must be a non-negative integer, got {quote.volume!r}",
                field="volume",
            )
        return {
            "SecurityID": security_id,
            # strings keep the 4-digit scale through OPENJSON
            "Price": str(price),
            "QuoteDate": quote.quote_date.isoformat(),
            "Volume": quote.volume,
            "Source": quote.source,
        }

    def upsert_trade(
        self,
        trade: Trade,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """Insert or update a trade keyed by portfolio, symbol and date.

        Raises:
            ValidationFailure: If a field is missing or invalid
            FatalFault: If the store fails the call
            RetriesExhausted: If transient faults persist
        """
        if trade is None:
            raise ValidationFailure("trade is required", field="trade")

        portfolio_id = _require_id(trade.portfolio_id, "portfolio_id")
        if not isinstance(trade.symbol, str) or not trade.symbol.strip():
            raise ValidationFailure("symbol is required", field="symbol")
        if not isinstance(trade.trade_date, date):
            raise ValidationFailure(
                f"trade_date must be a date, got {trade.trade_date!r}", field="trade_date"
            )
        if isinstance(trade.quantity, bool) or not isinstance(trade.quantity, int) or trade.quantity <= 0:
            raise ValidationFailure(
                f"quantity must be a positive integer, got {trade.quantity!r}",
                field="quantity",
            )

        call = contracts.upsert_trade_call(
            portfolio_id,
            trade.symbol.strip().upper(),
            trade.trade_date,
            _normalize_type(trade.trade_type, "trade_type").value,
            trade.quantity,
            _require_decimal(trade.price, "price"),
            _require_decimal(trade.fees, "fees"),
        )
        self.invoker.execute(call, cancel=cancel, deadline=_deadline(timeout))
        log_with_context(
            logger,
            "info",
            "Trade upserted",
            portfolio_id=portfolio_id,
            symbol=trade.symbol,
            trade_date=trade.trade_date,
        )

    def get_symbol_summaries(
        self,
        portfolio_id: int,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> List[SymbolSummary]:
        """Gross traded amount and fees per symbol for one portfolio."""
        portfolio_id = _require_id(portfolio_id, "portfolio_id")
        return self.invoker.query(
            contracts.portfolio_summary_call(portfolio_id),
            decode_rows(decode_symbol_summary),
            cancel=cancel,
            deadline=_deadline(timeout),
        )

    def get_performance_history(
        self,
        portfolio_id: int,
        start: Union[date, str],
        end: Union[date, str],
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> List[PerformancePoint]:
        """Daily cash flow and cumulative P&L between two dates (inclusive).

        Args:
            portfolio_id: Portfolio identifier
            start: First day, as a date or ISO string
            end: Last day, as a date or ISO string

        Raises:
            ValidationFailure: If a date is invalid or start is after end

        Example:
            >>> points = api.get_performance_history(42, "2024-01-01", "2024-12-31")
            >>> df = PortfolioAPI.performance_frame(points)
        """
        portfolio_id = _require_id(portfolio_id, "portfolio_id")
        start_date = self._parse_date(start, "start")
        end_date = self._parse_date(end, "end")
        if start_date > end_date:
            raise ValidationFailure(
                f"start ({start_date}) is after end ({end_date})", field="start"
            )

        return self.invoker.query(
            contracts.performance_history_call(portfolio_id, start_date, end_date),
            decode_rows(decode_performance_point),
            cancel=cancel,
            deadline=_deadline(timeout),
        )

    @staticmethod
    def _parse_date(value: Union[date, str], name: str) -> date:
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        if isinstance(value, str):
            try:
                return date.fromisoformat(value)
            except ValueError as e:
                raise ValidationFailure(f"{name} is not an ISO date: {value!r}", field=name) from e
        raise ValidationFailure(f"{name} must be a date, got {value!r}", field=name)

    @staticmethod
    def performance_frame(points: Iterable[PerformancePoint]) -> pd.DataFrame:
        """Tabulate a performance history.

        Returns:
            DataFrame indexed by snapshot_date with cash_flow and
            cumulative_pnl columns (Decimal values, object dtype)
        """
        points = list(points)
        if not points:
            return pd.DataFrame(columns=PERFORMANCE_COLUMNS)

        df = pd.DataFrame(
            {
                "snapshot_date": [p.snapshot_date for p in points],
                "cash_flow": [p.cash_flow for p in points],
                "cumulative_pnl": [p.cumulative_pnl for p in points],
            }
        )
        return df.set_index("snapshot_date")

    def test_connection(self) -> bool:
        """Check that a connection can be opened and a trivial query runs.

        Returns:
            True if the store answered, False otherwise (the failure is logged)
        """
        try:
            with self.provider.connection() as conn:
                cursor = conn.cursor()
                try:
                    cursor.execute("SELECT 1")
                    cursor.fetchone()
                finally:
                    cursor.close()
        except (PortfolioGatewayError, *self.provider.driver_errors) as e:
            logger.error("Connection test failed: %s", e)
            return False

        logger.info("Connection test succeeded")
        return True

    def close(self) -> None:
        """Dispose the pool and event logger if this API created them."""
        if self._owns_provider:
            self.provider.close()
        if self._event_logger is not None:
            self._event_logger.close()

    def __enter__(self) -> "PortfolioAPI":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
