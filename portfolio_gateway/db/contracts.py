"""Stored-procedure contracts used by the portfolio API.

Each builder returns the ``ProcedureCall`` for one procedure with its fixed
name, parameter order and declared types. Result-set shapes are documented
next to the decoders in ``portfolio_gateway.db.decoder``.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from portfolio_gateway.db.procedures import InputParam, OutputParam, ProcedureCall, SqlType

GET_PORTFOLIO_ANALYTICS = "dbo.sp_GetPortfolioAnalytics"
ADD_TRANSACTION = "dbo.sp_AddTransaction"
UPDATE_PORTFOLIO_VALUE = "dbo.sp_UpdatePortfolioValue"
BULK_UPSERT_QUOTES = "dbo.usp_BulkUpsertQuotes"
UPSERT_TRADE = "dbo.usp_UpsertTrade"
GET_PORTFOLIO_SUMMARY = "dbo.usp_GetPortfolioSummary"
GET_PERFORMANCE_HISTORY = "dbo.usp_GetPerformanceHistory"

RESULT_OUTPUT = OutputParam("Result", SqlType.NVARCHAR, size=20)
TRANSACTION_ID_OUTPUT = OutputParam("TransactionID", SqlType.BIGINT)
ROWS_AFFECTED_OUTPUT = OutputParam("RowsAffected", SqlType.INT)


def portfolio_analytics_call(portfolio_id: int) -> ProcedureCall:
    """Result sets: summary row, allocation rows, holding rows."""
    return ProcedureCall(
        GET_PORTFOLIO_ANALYTICS,
        inputs=(InputParam("PortfolioID", SqlType.INT, portfolio_id),),
    )


def add_transaction_call(
    portfolio_id: int,
    security_id: int,
    quantity: Decimal,
    price: Decimal,
    transaction_date: Optional[datetime],
    transaction_type: str,
) -> ProcedureCall:
    """Outputs: @Result NVARCHAR(20), @TransactionID BIGINT."""
    return ProcedureCall(
        ADD_TRANSACTION,
        inputs=(
            InputParam("PortfolioID", SqlType.INT, portfolio_id),
            InputParam("SecurityID", SqlType.INT, security_id),
            InputParam("Quantity", SqlType.DECIMAL, quantity),
            InputParam("Price", SqlType.DECIMAL, price),
            InputParam("TransactionDate", SqlType.DATETIME2, transaction_date),
            InputParam("Type", SqlType.NVARCHAR, transaction_type, size=4),
        ),
        outputs=(RESULT_OUTPUT, TRANSACTION_ID_OUTPUT),
    )


def update_portfolio_value_call(portfolio_id: int) -> ProcedureCall:
    """Result set: one row with PortfolioValue."""
    return ProcedureCall(
        UPDATE_PORTFOLIO_VALUE,
        inputs=(InputParam("PortfolioID", SqlType.INT, portfolio_id),),
    )


def bulk_upsert_quotes_call(quotes_json: str) -> ProcedureCall:
    """Inputs: @Quotes NVARCHAR(MAX) JSON array. Outputs: @RowsAffected INT."""
    return ProcedureCall(
        BULK_UPSERT_QUOTES,
        inputs=(InputParam("Quotes", SqlType.NVARCHAR, quotes_json),),
        outputs=(ROWS_AFFECTED_OUTPUT,),
    )


def upsert_trade_call(
    portfolio_id: int,
    symbol: str,
    trade_date: date,
    trade_type: str,
    quantity: int,
    price: Decimal,
    fees: Decimal,
) -> ProcedureCall:
    return ProcedureCall(
        UPSERT_TRADE,
        inputs=(
            InputParam("PortfolioId", SqlType.INT, portfolio_id),
            InputParam("Symbol", SqlType.NVARCHAR, symbol, size=12),
            InputParam("TradeDate", SqlType.DATE, trade_date),
            InputParam("TradeType", SqlType.CHAR, trade_type, size=4),
            InputParam("Quantity", SqlType.INT, quantity),
            InputParam("Price", SqlType.DECIMAL, price),
            InputParam("Fees", SqlType.DECIMAL, fees),
        ),
    )


def portfolio_summary_call(portfolio_id: int) -> ProcedureCall:
    """Result set: PortfolioName, Symbol, GrossAmount, TotalFees, TradesCount."""
    return ProcedureCall(
        GET_PORTFOLIO_SUMMARY,
        inputs=(InputParam("PortfolioId", SqlType.INT, portfolio_id),),
    )


def performance_history_call(
    portfolio_id: int, start_date: date, end_date: date
) -> ProcedureCall:
    """Result set: SnapshotDate, CashFlow, CumulativePnL."""
    return ProcedureCall(
        GET_PERFORMANCE_HISTORY,
        inputs=(
            InputParam("PortfolioId", SqlType.INT, portfolio_id),
            InputParam("StartDate", SqlType.DATE, start_date),
            InputParam("EndDate", SqlType.DATE, end_date),
        ),
    )
