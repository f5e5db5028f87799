"""Pooled connection management.

This module provides the ConnectionProvider interface used by the invoker and
a SQLAlchemy-backed implementation that hands out raw DB-API connections from
a ``QueuePool``.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Iterator, Optional, Tuple, Type

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import DBAPIError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from portfolio_gateway.utils.config import GatewaySettings
from portfolio_gateway.utils.exceptions import ConnectionUnavailable
from portfolio_gateway.utils.logging import get_logger

logger = get_logger(__name__)


class ConnectionProvider(ABC):
    """Abstract source of ready-to-use connections.

    Implementations must be safe to call from several threads at once.

    Example:
        >>> with provider.connection() as conn:
        ...     cursor = conn.cursor()
    """

    #: Exception types raised by the underlying driver.
    driver_errors: Tuple[Type[BaseException], ...] = ()

    @abstractmethod
    def acquire(self) -> Any:
        """Return an open DB-API connection scoped to one operation.

        Raises:
            ConnectionUnavailable: If no connection can be obtained in time
        """
        pass

    @abstractmethod
    def release(self, connection: Any, discard: bool = False) -> None:
        """Give a connection back.

        Args:
            connection: Connection obtained from ``acquire``
            discard: Drop the connection instead of reusing it (e.g. after a
                transient failure that may have broken it)
        """
        pass

    @contextmanager
    def connection(self) -> Iterator[Any]:
        """Scoped acquisition: release runs on every exit path."""
        conn = self.acquire()
        try:
            yield conn
        finally:
            self.release(conn)

    def close(self) -> None:
        """Release pooled resources. No-op by default."""
        pass


class PooledConnectionProvider(ConnectionProvider):
    """Connection provider backed by a SQLAlchemy engine pool.

    Attributes:
        settings: GatewaySettings used to build the engine
        engine: SQLAlchemy Engine owning the pool
    """

    def __init__(self, settings: GatewaySettings, engine: Optional[Engine] = None):
        """Initialize provider.

        Args:
            settings: Pool sizing, timeouts and encryption options
            engine: Pre-built engine (built from settings when None)
        """
        self.settings = settings
        self.engine = engine or self._create_engine(settings)

        dialect = self.engine.dialect
        dbapi = getattr(dialect, "loaded_dbapi", None) or getattr(dialect, "dbapi", None)
        driver_error = getattr(dbapi, "Error", None)
        self.driver_errors = (driver_error,) if driver_error is not None else ()

        logger.info(
            "Connection pool created for %s (size=%d, max_overflow=%d, timeout=%.1fs)",
            settings.redacted_url(),
            settings.pool_size,
            settings.max_overflow,
            settings.pool_timeout,
        )

    @staticmethod
    def _create_engine(settings: GatewaySettings) -> Engine:
        url = make_url(settings.database_url)
        if url.get_backend_name() == "mssql":
            url = url.update_query_dict(
                {
                    "Encrypt": "yes" if settings.encrypt else "no",
                    "TrustServerCertificate": (
                        "yes" if settings.trust_server_certificate else "no"
                    ),
                }
            )

        return create_engine(
            url,
            pool_size=settings.pool_size,
            max_overflow=settings.max_overflow,
            pool_timeout=settings.pool_timeout,
            pool_recycle=settings.pool_recycle,
            pool_pre_ping=True,
        )

    def acquire(self) -> Any:
        try:
            connection = self.engine.raw_connection()
        except PoolTimeoutError as e:
            logger.warning("Connection pool exhausted: %s", e)
            raise ConnectionUnavailable(
                f"No connection available within {self.settings.pool_timeout}s"
            ) from e
        except DBAPIError as e:
            logger.warning("Failed to open connection: %s", e.orig)
            raise ConnectionUnavailable(f"Failed to open connection: {e.orig}") from e
        except self.driver_errors as e:
            logger.warning("Failed to open connection: %s", e)
            raise ConnectionUnavailable(f"Failed to open connection: {e}") from e

        self._apply_command_timeout(connection)
        return connection

    def _apply_command_timeout(self, connection: Any) -> None:
        # pyodbc exposes the per-statement timeout as a connection attribute
        driver_connection = getattr(connection, "driver_connection", connection)
        if self.settings.command_timeout and hasattr(driver_connection, "timeout"):
            driver_connection.timeout = self.settings.command_timeout

    def release(self, connection: Any, discard: bool = False) -> None:
        try:
            if discard:
                connection.invalidate()
        finally:
            connection.close()

    def pool_status(self) -> str:
        """Human-readable pool occupancy, for diagnostics."""
        return self.engine.pool.status()

    def close(self) -> None:
        self.engine.dispose()
        logger.info("Connection pool disposed for %s", self.settings.redacted_url())

    def __enter__(self) -> "PooledConnectionProvider":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
