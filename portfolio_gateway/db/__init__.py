"""Database Layer - Pooled stored-procedure invocation and result decoding.

This module provides connection pooling, retry with fault classification,
typed procedure calls and decoders for the portfolio procedures.
"""

from portfolio_gateway.db.connection import ConnectionProvider, PooledConnectionProvider
from portfolio_gateway.db.decoder import DecodeState, PortfolioSummaryDecoder
from portfolio_gateway.db.invoker import OutputValues, ProcedureInvoker, ResultStream
from portfolio_gateway.db.procedures import InputParam, OutputParam, ProcedureCall, SqlType
from portfolio_gateway.db.retry import FaultClass, FaultClassifier, RetryPolicy, classify

__all__ = [
    # Connections
    "ConnectionProvider",
    "PooledConnectionProvider",
    # Retry
    "FaultClass",
    "FaultClassifier",
    "RetryPolicy",
    "classify",
    # Invocation
    "InputParam",
    "OutputParam",
    "ProcedureCall",
    "SqlType",
    "ProcedureInvoker",
    "ResultStream",
    "OutputValues",
    # Decoding
    "DecodeState",
    "PortfolioSummaryDecoder",
]
