"""Domain models for portfolio analytics and transaction recording.

Read models (``PortfolioSummary`` and friends) are immutable value objects
built fresh for every query. Write models (``Transaction``, ``Trade``,
``Quote``) are flat records passed as procedure inputs; they have no identity
until the store assigns one.

All money and quantity fields are ``Decimal``.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Tuple, Union

ZERO = Decimal("0")

# Allocation percentages are rounded by the store; one summary may drift
# from 100 by up to this much.
ALLOCATION_TOLERANCE = Decimal("0.5")


class TransactionType(Enum):
    """Transaction codes accepted by the store."""

    BUY = "BUY"
    SELL = "SELL"

    @classmethod
    def normalize(cls, value: Union["TransactionType", str, None]) -> "TransactionType":
        """Map user input onto a transaction code.

        Accepts the enum itself or a case-insensitive string with surrounding
        whitespace.

        Raises:
            ValueError: If the value is not a known code
        """
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValueError(f"Transaction type must be a string, got {value!r}")
        try:
            return cls(value.strip().upper())
        except ValueError:
            raise ValueError(
                f"Unknown transaction type {value!r}; expected one of "
                f"{', '.join(t.value for t in cls)}"
            ) from None


@dataclass(frozen=True)
class TypeAllocation:
    """Composition of a portfolio grouped by security type.

    Attributes:
        security_type: Security type label (e.g. "Stock", "Bond")
        securities_count: Number of securities of this type
        total_net_quantity: Summed net quantity
        total_market_value: Summed market value
        allocation_percent: Share of total value, 0-100
    """

    security_type: str
    securities_count: int
    total_net_quantity: Decimal
    total_market_value: Decimal
    allocation_percent: Decimal


@dataclass(frozen=True)
class Holding:
    """A single position within a portfolio.

    Attributes:
        security_id: Store identifier of the security
        security_name: Display name
        security_type: Security type label
        net_quantity: Net quantity (negative for short positions)
        current_price: Latest quote
        market_value: net_quantity * current_price, computed by the store
        allocation_percent: Share of total value, 0-100
    """

    security_id: int
    security_name: str
    security_type: str
    net_quantity: Decimal
    current_price: Decimal
    market_value: Decimal
    allocation_percent: Decimal

    @property
    def is_short(self) -> bool:
        return self.net_quantity < 0


@dataclass(frozen=True)
class PortfolioSummary:
    """Aggregate analytics for one portfolio snapshot.

    Attributes:
        portfolio_id: Portfolio identifier
        total_value: Aggregate market value
        securities_held: Distinct securities with a non-zero position
        distinct_security_types: Distinct security types held
        total_transactions: Transactions recorded for the portfolio
        first_transaction_date: Earliest transaction, None if none recorded
        last_transaction_date: Latest transaction, None if none recorded
        snapshot_date: When the store computed the snapshot
        allocation_by_type: Allocation rows in store order
        holdings: Holding rows in store order
    """

    portfolio_id: int = 0
    total_value: Decimal = ZERO
    securities_held: int = 0
    distinct_security_types: int = 0
    total_transactions: int = 0
    first_transaction_date: Optional[datetime] = None
    last_transaction_date: Optional[datetime] = None
    snapshot_date: Optional[datetime] = None
    allocation_by_type: Tuple[TypeAllocation, ...] = field(default_factory=tuple)
    holdings: Tuple[Holding, ...] = field(default_factory=tuple)

    @property
    def is_empty(self) -> bool:
        """True when the store returned no data for the portfolio."""
        return (
            self.total_value == ZERO
            and self.securities_held == 0
            and not self.allocation_by_type
            and not self.holdings
        )

    @property
    def total_allocation_percent(self) -> Decimal:
        return sum((a.allocation_percent for a in self.allocation_by_type), ZERO)

    def allocation_is_consistent(self, tolerance: Decimal = ALLOCATION_TOLERANCE) -> bool:
        """Check that allocation percentages add up to ~100.

        An empty allocation sequence is trivially consistent.
        """
        if not self.allocation_by_type:
            return True
        return abs(self.total_allocation_percent - Decimal("100")) <= tolerance


@dataclass(frozen=True)
class TransactionRecorded:
    """The store accepted the transaction and assigned it an id."""

    transaction_id: int
    message: str = "SUCCESS"

    @property
    def success(self) -> bool:
        return True


@dataclass(frozen=True)
class TransactionRejected:
    """The store executed the call but refused the transaction.

    ``message`` carries the store status, e.g. ``INSUFFICIENT_HOLDINGS``.
    """

    message: str

    @property
    def success(self) -> bool:
        return False

    @property
    def transaction_id(self) -> None:
        return None


TransactionResult = Union[TransactionRecorded, TransactionRejected]


@dataclass
class Transaction:
    """A buy or sell to record against a portfolio.

    Attributes:
        portfolio_id: Target portfolio
        security_id: Security traded
        quantity: Quantity traded (DECIMAL(18,4))
        price: Unit price (DECIMAL(18,4))
        type: BUY or SELL (case-insensitive)
        transaction_date: Trade timestamp; None lets the store default it
        notes: Free text, not sent to the store
    """

    portfolio_id: Optional[int]
    security_id: Optional[int]
    quantity: Optional[Decimal]
    price: Optional[Decimal]
    type: Union[TransactionType, str, None] = TransactionType.BUY
    transaction_date: Optional[datetime] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class Trade:
    """A trade imported by symbol rather than security id."""

    portfolio_id: int
    symbol: str
    trade_date: date
    trade_type: Union[TransactionType, str]
    quantity: int
    price: Decimal
    fees: Decimal = ZERO


@dataclass(frozen=True)
class Quote:
    """A price snapshot for a security."""

    security_id: int
    price: Decimal
    quote_date: datetime
    volume: int = 0
    source: Optional[str] = None


@dataclass(frozen=True)
class PerformancePoint:
    """One day of portfolio performance history."""

    snapshot_date: date
    cash_flow: Decimal
    cumulative_pnl: Decimal


@dataclass(frozen=True)
class SymbolSummary:
    """Gross traded amount and fees for one symbol of a portfolio."""

    portfolio_name: str
    symbol: str
    gross_amount: Decimal
    total_fees: Decimal
    trades_count: int
