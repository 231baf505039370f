"""PostgreSQL database adapter."""

from __future__ import annotations

from typing import Any

from allotment.core.errors import ConfigError, DatabaseConnectionError
from allotment.core.logging import get_logger
from allotment.core.schema import WRITE_TABLES

from .base import DatabaseAdapter
from .types import DatabaseConfig, DatabaseType

logger = get_logger(__name__)

# lock_not_available, serialization_failure, deadlock_detected
BUSY_PGCODES = frozenset({"55P03", "40001", "40P01"})


class PostgreSQLAdapter(DatabaseAdapter):
    """
    PostgreSQL database adapter.

    Holds one psycopg2 connection in autocommit mode; transactions are
    explicit ``BEGIN``/``COMMIT``/``ROLLBACK`` statements, the same as on
    SQLite.  ``begin()`` also takes a writer lock on the allocation tables so
    that concurrent check-then-insert sequences from other engines are
    serialized, while plain reads go through.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 5432,
        database: str = "",
        username: str | None = None,
        password: str | None = None,
        *,
        connect_timeout: int = 10,
        **kwargs: Any,
    ):
        config = DatabaseConfig(
            db_type=DatabaseType.POSTGRESQL,
            host=host,
            port=port,
            database=database,
            username=username,
            password=password,
            connect_timeout=connect_timeout,
            options=kwargs,
        )
        super().__init__(config)
        self._conn: Any = None

    def connect(self) -> None:
        """Connect to PostgreSQL database."""
        try:
            import psycopg2
        except ImportError:
            raise ConfigError(
                "psycopg2 is required for PostgreSQL. Install with: pip install allotment[postgresql]"
            ) from None

        try:
            self._conn = psycopg2.connect(
                host=self._config.host,
                port=self._config.port,
                dbname=self._config.database,
                user=self._config.username,
                password=self._config.password,
                connect_timeout=self._config.connect_timeout,
                **self._config.options,
            )
            self._conn.autocommit = True
            self._connected = True
        except psycopg2.Error as e:
            self._conn = None
            raise DatabaseConnectionError(
                f"Failed to connect to PostgreSQL: {e}",
                cause=e,
            ).with_context(backend="postgresql", host=self._config.host) from e

    def disconnect(self) -> None:
        """Close PostgreSQL connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            self._connected = False

    def get_connection(self) -> Any:
        """Get the PostgreSQL connection."""
        if self._conn is None:
            raise DatabaseConnectionError("PostgreSQL adapter is not connected").with_context(
                backend="postgresql", host=self._config.host
            )
        return self._conn

    def begin(self) -> None:
        """``BEGIN`` plus the writer lock, as one retryable step."""
        self.execute(self._dialect.begin())
        try:
            self.execute(self._dialect.lock_tables(list(WRITE_TABLES)))
        except Exception:
            # Leave no aborted transaction behind for the retried begin()
            try:
                self.execute("ROLLBACK")
            except Exception:
                logger.warning("lock_rollback_failed", exc_info=True)
            raise

    def is_busy(self, error: BaseException) -> bool:
        """Lock timeouts, serialization failures and deadlocks."""
        return getattr(error, "pgcode", None) in BUSY_PGCODES

    def is_disconnect(self, error: BaseException) -> bool:
        """``InterfaceError``, or an ``OperationalError`` that closed the session."""
        if super().is_disconnect(error):
            return True
        if self._conn is None or self.is_busy(error):
            return False

        import psycopg2

        if isinstance(error, psycopg2.InterfaceError):
            return True
        return isinstance(error, psycopg2.OperationalError) and bool(self._conn.closed)


__all__ = [
    "PostgreSQLAdapter",
    "BUSY_PGCODES",
]
