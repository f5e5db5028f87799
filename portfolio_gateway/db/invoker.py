"""Stored-procedure execution through the retry policy.

The retried unit is the whole acquire, bind, execute and consume sequence: a
transient failure halfway through reading results restarts the call on a
fresh connection instead of resuming the old stream.
"""

import threading
import time
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, TypeVar

from portfolio_gateway.db.connection import ConnectionProvider
from portfolio_gateway.db.procedures import ProcedureCall
from portfolio_gateway.db.retry import FaultClassifier, RetryPolicy
from portfolio_gateway.utils.events import InvocationObserver, LoggingObserver
from portfolio_gateway.utils.exceptions import DecodeError, TransientFault
from portfolio_gateway.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

Row = Dict[str, Any]


class ResultStream:
    """Forward-only reader over the result sets of one execution.

    Rows are exposed as dicts keyed by column name. Result sets without
    columns (row-count messages) are skipped. There is no way back: once
    ``next_result_set`` moves on, earlier rows are gone.
    """

    def __init__(self, cursor: Any):
        self._cursor = cursor
        self._exhausted = False
        self.rows_read = 0
        self._skip_countless()

    def _skip_countless(self) -> bool:
        while self._cursor.description is None:
            if not self._advance_cursor():
                self._exhausted = True
                return False
        return True

    def _advance_cursor(self) -> bool:
        nextset = getattr(self._cursor, "nextset", None)
        if nextset is None:
            return False
        return bool(nextset())

    @property
    def exhausted(self) -> bool:
        return self._exhausted

    @property
    def columns(self) -> List[str]:
        if self._exhausted or self._cursor.description is None:
            return []
        return [column[0] for column in self._cursor.description]

    def rows(self) -> Iterator[Row]:
        """Yield the remaining rows of the current result set."""
        if self._exhausted:
            return
        columns = self.columns
        while True:
            row = self._cursor.fetchone()
            if row is None:
                return
            self.rows_read += 1
            yield dict(zip(columns, row))

    def next_result_set(self) -> bool:
        """Move to the next result set; False when there are no more."""
        if self._exhausted:
            return False
        if not self._advance_cursor():
            self._exhausted = True
            return False
        return self._skip_countless()


class OutputValues(Mapping[str, Any]):
    """Values of a call's OUTPUT parameters, keyed without the "@" prefix."""

    def __init__(self, values: Mapping[str, Any]):
        self._values = dict(values)

    def __getitem__(self, key: str) -> Any:
        return self._values[key.lstrip("@")]

    def __iter__(self):
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"OutputValues({self._values!r})"


class ProcedureInvoker:
    """Executes ``ProcedureCall``s against pooled connections.

    Example:
        >>> invoker = ProcedureInvoker(provider, RetryPolicy())
        >>> value = invoker.query(call, lambda stream: next(stream.rows(), None))
    """

    def __init__(
        self,
        provider: ConnectionProvider,
        retry_policy: Optional[RetryPolicy] = None,
        observer: Optional[InvocationObserver] = None,
    ):
        """Initialize invoker.

        Args:
            provider: ConnectionProvider handing out DB-API connections
            retry_policy: RetryPolicy (defaults to 3 attempts, base 2)
            observer: Receives retry and completion callbacks
        """
        self.provider = provider
        self.retry_policy = retry_policy or RetryPolicy()
        self.observer = observer or LoggingObserver()

    @property
    def classifier(self) -> FaultClassifier:
        return self.retry_policy.classifier

    def query(
        self,
        call: ProcedureCall,
        consume: Callable[[ResultStream], T],
        cancel: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
    ) -> T:
        """Execute a read call and hand its result stream to ``consume``.

        ``consume`` runs inside the retried unit while the connection is held,
        so it may be invoked more than once; it must not have side effects
        beyond building its return value.

        Raises:
            ValidationFailure: If input binding fails (before any network call)
            FatalFault: For non-retryable store errors and decode errors
            RetriesExhausted: If transient failures persist
            OperationCancelled: If ``cancel`` is set
        """
        return self._run(call, consume, cancel, deadline)

    def execute(
        self,
        call: ProcedureCall,
        cancel: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
    ) -> OutputValues:
        """Execute a write call and return its OUTPUT parameter values."""
        return self._run(call, self._read_outputs(call), cancel, deadline)

    @staticmethod
    def _read_outputs(call: ProcedureCall) -> Callable[[ResultStream], OutputValues]:
        def consume(stream: ResultStream) -> OutputValues:
            if not call.outputs:
                # drain anything the procedure returned
                while not stream.exhausted:
                    for _ in stream.rows():
                        pass
                    stream.next_result_set()
                return OutputValues({})

            # outputs are selected after the procedure's own result sets
            last: Optional[Row] = None
            while not stream.exhausted:
                for row in stream.rows():
                    last = row
                stream.next_result_set()

            expected = [p.column for p in call.outputs]
            if last is None or any(column not in last for column in expected):
                raise DecodeError(
                    f"{call.name} did not return output parameters {expected}"
                )
            return OutputValues({column: last[column] for column in expected})

        return consume

    def _run(
        self,
        call: ProcedureCall,
        consume: Callable[[ResultStream], T],
        cancel: Optional[threading.Event],
        deadline: Optional[float],
    ) -> T:
        sql, params = call.render()

        def attempt() -> T:
            started = time.perf_counter()
            connection = self.provider.acquire()
            discard = False
            try:
                cursor = connection.cursor()
                try:
                    cursor.execute(sql, params)
                    stream = ResultStream(cursor)
                    result = consume(stream)
                    connection.commit()
                finally:
                    cursor.close()
            except self.provider.driver_errors as e:
                error = self.classifier.to_store_error(e, call.name)
                discard = isinstance(error, TransientFault)
                logger.warning("%s failed: %s", call.name, error)
                raise error from e
            finally:
                self.provider.release(connection, discard=discard)

            self.observer.on_invocation(
                call.name, time.perf_counter() - started, stream.rows_read
            )
            return result

        return self.retry_policy.execute(
            attempt,
            cancel=cancel,
            deadline=deadline,
            on_retry=self.observer.on_retry,
        )
