"""Domain models.

Components:
- PortfolioSummary, TypeAllocation, Holding: analytics read model
- TransactionRecorded, TransactionRejected: outcome of recording a transaction
- Transaction, Trade, Quote: procedure inputs
- PerformancePoint, SymbolSummary: reporting read models
"""

from portfolio_gateway.models.base import (
    Holding,
    PerformancePoint,
    PortfolioSummary,
    Quote,
    SymbolSummary,
    Trade,
    Transaction,
    TransactionRecorded,
    TransactionRejected,
    TransactionResult,
    TransactionType,
    TypeAllocation,
)

__all__ = [
    "PortfolioSummary",
    "TypeAllocation",
    "Holding",
    "TransactionRecorded",
    "TransactionRejected",
    "TransactionResult",
    "TransactionType",
    "Transaction",
    "Trade",
    "Quote",
    "PerformancePoint",
    "SymbolSummary",
]
