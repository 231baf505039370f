"""Database adapter base class.

An adapter owns exactly one connection/session and executes one statement
per call.  It is deliberately synchronous: the engine runs every adapter call
on a single dedicated worker thread, one at a time, so the adapter never
needs locking of its own.

Features:
    - Abstract ``connect()``, ``disconnect()``, ``get_connection()``, ``is_busy()``
    - ``is_disconnect()`` to tell a lost session from a failed statement
    - ``execute()`` / ``query()`` / ``query_one()`` / ``count()`` with
      dialect-normalized row shapes
    - Explicit ``begin()`` / ``commit()`` / ``rollback()`` statements
    - Context-manager protocol for connection lifecycle

Errors raised by a statement are the driver's own, unmodified; callers use
``is_busy()`` to tell a locked store apart from every other failure.
An adapter never reconnects on its own: once disconnected, every call
raises ``DatabaseConnectionError`` until ``connect()`` is called again.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from contextlib import closing
from typing import Any

from allotment.core.dialect import Dialect, get_dialect
from allotment.core.errors import DatabaseConnectionError

from .types import DatabaseConfig, DatabaseType


class DatabaseAdapter(ABC):
    """
    Abstract base class for database adapters.

    Provides common functionality and defines the interface
    that all adapters must implement.
    """

    def __init__(self, config: DatabaseConfig):
        self._config = config
        self._connected = False
        self._dialect: Dialect = get_dialect(config.db_type.value)

    @property
    def config(self) -> DatabaseConfig:
        """Configuration this adapter was built from."""
        return self._config

    @property
    def dialect(self) -> Dialect:
        """SQL dialect for this adapter's database type."""
        return self._dialect

    @property
    def db_type(self) -> DatabaseType:
        """Database type."""
        return self._config.db_type

    @property
    def is_connected(self) -> bool:
        """Whether adapter is connected."""
        return self._connected

    @abstractmethod
    def connect(self) -> None:
        """Establish the connection (raises ``DatabaseConnectionError``)."""
        ...

    @abstractmethod
    def disconnect(self) -> None:
        """Close the connection."""
        ...

    @abstractmethod
    def get_connection(self) -> Any:
        """Return the underlying DB-API connection.

        Raises:
            DatabaseConnectionError: The adapter is not connected.
        """
        ...

    @abstractmethod
    def is_busy(self, error: BaseException) -> bool:
        """Whether ``error`` means another writer holds the store."""
        ...

    def is_disconnect(self, error: BaseException) -> bool:
        """Whether ``error`` means the connection itself is gone."""
        return isinstance(error, DatabaseConnectionError)

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Execute one statement and return the affected row count."""
        conn = self.get_connection()
        with closing(conn.cursor()) as cursor:
            cursor.execute(sql, tuple(params))
            return cursor.rowcount

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        """Execute query and return results as dicts."""
        conn = self.get_connection()
        with closing(conn.cursor()) as cursor:
            cursor.execute(sql, tuple(params))
            columns = [desc[0] for desc in cursor.description]
            return [dict(zip(columns, row, strict=False)) for row in cursor.fetchall()]

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> dict[str, Any] | None:
        """Execute query and return the first row, or ``None``."""
        results = self.query(sql, params)
        return results[0] if results else None

    def count(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Execute a bare aggregate query and return its single value.

        Reads the first column positionally, so ``count(*)`` works whatever
        column name the backend gives it.
        """
        conn = self.get_connection()
        with closing(conn.cursor()) as cursor:
            cursor.execute(sql, tuple(params))
            row = cursor.fetchone()
        return int(row[0]) if row is not None and row[0] is not None else 0

    def begin(self) -> None:
        """Open a write transaction."""
        self.execute(self._dialect.begin())

    def commit(self) -> None:
        """Commit the open transaction."""
        self.execute("COMMIT")

    def rollback(self) -> None:
        """Roll back the open transaction."""
        self.execute("ROLLBACK")

    def __enter__(self) -> DatabaseAdapter:
        """Context manager entry."""
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Context manager exit."""
        self.disconnect()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._config.describe()!r})"


__all__ = [
    "DatabaseAdapter",
]
