"""Scripted DB-API fakes.

The fakes script a DB-API connection per attempt so retry, decoding and
orchestration can be tested without a database.
"""

from typing import Any, List, Optional, Sequence, Tuple, Union

from portfolio_gateway.db.connection import ConnectionProvider

# (columns, rows); columns None models a row-count message without a result set
ResultSet = Tuple[Optional[Sequence[str]], Sequence[Sequence[Any]]]
Response = Union[List[ResultSet], BaseException]


class FakeDriverError(Exception):
    """Driver exception carrying a native error number, like SqlClient."""

    def __init__(self, number: int, message: str = "driver error"):
        self.number = number
        super().__init__(message)


class FakeCursor:
    def __init__(self, result_sets: List[ResultSet], error: Optional[BaseException] = None):
        self._sets = list(result_sets) or [(None, [])]
        self._error = error
        self._index = 0
        self._row = 0
        self.executed: List[Tuple[str, Tuple[Any, ...]]] = []
        self.closed = False

    @property
    def description(self):
        columns = self._sets[self._index][0]
        if columns is None:
            return None
        return [(name, None, None, None, None, None, None) for name in columns]

    def execute(self, sql: str, params: Sequence[Any] = ()) -> None:
        self.executed.append((sql, tuple(params)))
        if self._error is not None:
            raise self._error

    def fetchone(self):
        rows = self._sets[self._index][1]
        if self._row >= len(rows):
            return None
        row = rows[self._row]
        self._row += 1
        return tuple(row)

    def nextset(self) -> Optional[bool]:
        if self._index + 1 >= len(self._sets):
            return None
        self._index += 1
        self._row = 0
        return True

    def close(self) -> None:
        self.closed = True


class FakeConnection:
    def __init__(self, response: Response):
        if isinstance(response, BaseException):
            self.cursor_obj = FakeCursor([], error=response)
        else:
            self.cursor_obj = FakeCursor(response)
        self.commits = 0
        self.closed = False

    def cursor(self) -> FakeCursor:
        return self.cursor_obj

    def commit(self) -> None:
        self.commits += 1

    def close(self) -> None:
        self.closed = True


class FakeProvider(ConnectionProvider):
    """Call-counting provider handing out one scripted connection per acquire.

    Each response is either a list of result sets or an exception raised by
    ``cursor.execute``. An ``AcquireFailure`` wrapper makes ``acquire`` itself
    raise. The last response repeats once the script runs out.
    """

    driver_errors = (FakeDriverError,)

    def __init__(self, *responses: Union[Response, "AcquireFailure"]):
        self.responses = list(responses) or [[]]
        self.acquire_count = 0
        self.released: List[Tuple[FakeConnection, bool]] = []
        self.connections: List[FakeConnection] = []
        self.closed = False

    def acquire(self) -> FakeConnection:
        index = min(self.acquire_count, len(self.responses) - 1)
        self.acquire_count += 1
        response = self.responses[index]
        if isinstance(response, AcquireFailure):
            raise response.error
        connection = FakeConnection(response)
        self.connections.append(connection)
        return connection

    def release(self, connection: FakeConnection, discard: bool = False) -> None:
        connection.close()
        self.released.append((connection, discard))

    def close(self) -> None:
        self.closed = True

    @property
    def executed(self) -> List[Tuple[str, Tuple[Any, ...]]]:
        return [sql for c in self.connections for sql in c.cursor_obj.executed]


class AcquireFailure:
    def __init__(self, error: BaseException):
        self.error = error


class RecordingObserver:
    def __init__(self):
        self.retries: List[Tuple[int, float, BaseException]] = []
        self.invocations: List[Tuple[str, float, int]] = []

    def on_retry(self, attempt: int, delay: float, cause: BaseException) -> None:
        self.retries.append((attempt, delay, cause))

    def on_invocation(self, procedure: str, elapsed: float, row_count: int) -> None:
        self.invocations.append((procedure, elapsed, row_count))


SUMMARY_COLUMNS = [
    "PortfolioID",
    "TotalValue",
    "SecuritiesHeld",
    "DistinctSecurityTypes",
    "TotalTransactions",
    "FirstTransactionDate",
    "LastTransactionDate",
    "SnapshotDate",
]
ALLOCATION_COLUMNS = [
    "SecurityType",
    "SecuritiesCount",
    "TotalNetQuantity",
    "TotalMarketValue",
    "AllocationPercent",
]
HOLDING_COLUMNS = [
    "SecurityID",
    "SecurityName",
    "SecurityType",
    "NetQuantity",
    "CurrentPrice",
    "MarketValue",
    "AllocationPercent",
]


def analytics_response(
    summary_rows=None, allocation_rows=None, holding_rows=None
) -> List[ResultSet]:
    return [
        (SUMMARY_COLUMNS, summary_rows or []),
        (ALLOCATION_COLUMNS, allocation_rows or []),
        (HOLDING_COLUMNS, holding_rows or []),
    ]
