"""Shared fixtures for gateway unit tests."""

from datetime import datetime
from decimal import Decimal
from typing import List

import pytest

from portfolio_gateway.db.connection import ConnectionProvider
from portfolio_gateway.db.invoker import ProcedureInvoker
from portfolio_gateway.db.retry import RetryPolicy
from tests.unit.fakes import RecordingObserver, ResultSet, analytics_response


@pytest.fixture
def sleeps() -> List[float]:
    """Delays requested by the retry policy, instead of sleeping."""
    return []


@pytest.fixture
def retry_policy(sleeps: List[float]) -> RetryPolicy:
    return RetryPolicy(max_attempts=3, backoff_base=2.0, sleep=sleeps.append)


@pytest.fixture
def observer() -> RecordingObserver:
    return RecordingObserver()


@pytest.fixture
def make_invoker(retry_policy: RetryPolicy, observer: RecordingObserver):
    def _make(provider: ConnectionProvider) -> ProcedureInvoker:
        return ProcedureInvoker(provider, retry_policy, observer)

    return _make


@pytest.fixture
def portfolio_42_response() -> List[ResultSet]:
    """One summary row, two allocation rows and three holding rows."""
    return analytics_response(
        summary_rows=[
            (
                42,
                Decimal("15000.00"),
                3,
                2,
                7,
                datetime(2024, 1, 2, 9, 30),
                datetime(2024, 6, 28, 15, 45),
                datetime(2024, 7, 1, 8, 0),
            )
        ],
        allocation_rows=[
            ("Stock", 2, Decimal("30.0000"), Decimal("9000.00"), Decimal("60.00")),
            ("Bond", 1, Decimal("80.0000"), Decimal("6000.00"), Decimal("40.00")),
        ],
        holding_rows=[
            (1, "Apple Inc.", "Stock", Decimal("20.0000"), Decimal("250.0000"),
             Decimal("5000.00"), Decimal("33.33")),
            (2, "Microsoft Corp.", "Stock", Decimal("10.0000"), Decimal("400.0000"),
             Decimal("4000.00"), Decimal("26.67")),
            (3, "Total Bond Market ETF", "Bond", Decimal("80.0000"), Decimal("75.0000"),
             Decimal("6000.00"), Decimal("40.00")),
        ],
    )
