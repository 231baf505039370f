"""SQLite database adapter."""

from __future__ import annotations

import sqlite3
from typing import Any
from urllib.request import pathname2url

from allotment.core.errors import DatabaseConnectionError, InvalidConfigError

from .base import DatabaseAdapter
from .types import DatabaseConfig, DatabaseType

# Primary result codes (extended codes carry these in the low byte)
SQLITE_BUSY = 5
SQLITE_LOCKED = 6

_BUSY_MESSAGES = ("database is locked", "database table is locked", "database schema is locked")

_MODES = ("ro", "rw", "rwc", "memory")


class SQLiteAdapter(DatabaseAdapter):
    """
    SQLite database adapter.

    Uses the built-in sqlite3 module in autocommit mode so transactions are
    opened and closed by explicit statements.  Several adapters (in one or
    many processes) may share one file; SQLite's own locking arbitrates
    between them.

    ``timeout`` defaults to zero so a locked file is reported at once as a
    busy error and the engine's retry loop decides how long to wait.
    """

    def __init__(
        self,
        path: str = ":memory:",
        *,
        mode: str = "rwc",
        timeout: float = 0.0,
        **kwargs: Any,
    ):
        if mode not in _MODES:
            raise InvalidConfigError("mode", mode)
        config = DatabaseConfig(
            db_type=DatabaseType.SQLITE,
            path=path,
            mode=mode,
            options=kwargs,
        )
        super().__init__(config)
        self._timeout = timeout
        self._conn: sqlite3.Connection | None = None

    def _database_uri(self) -> str:
        path = self._config.path or ":memory:"
        if path.startswith("file:"):
            return path
        return f"file:{pathname2url(path)}?mode={self._config.mode}"

    def connect(self) -> None:
        """Connect to SQLite database."""
        path = self._config.path or ":memory:"

        try:
            if path == ":memory:":
                self._conn = sqlite3.connect(
                    path,
                    timeout=self._timeout,
                    isolation_level=None,
                    check_same_thread=False,
                )
            else:
                self._conn = sqlite3.connect(
                    self._database_uri(),
                    timeout=self._timeout,
                    isolation_level=None,
                    check_same_thread=False,
                    uri=True,
                )
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._connected = True

        except sqlite3.Error as e:
            self._conn = None
            raise DatabaseConnectionError(
                f"Failed to connect to SQLite: {e}",
                cause=e,
            ).with_context(backend="sqlite", path=path) from e

    def disconnect(self) -> None:
        """Close SQLite connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            self._connected = False

    def get_connection(self) -> sqlite3.Connection:
        """Get the SQLite connection."""
        if self._conn is None:
            raise DatabaseConnectionError("SQLite adapter is not connected").with_context(
                backend="sqlite", path=self._config.path
            )
        return self._conn

    def is_busy(self, error: BaseException) -> bool:
        """``SQLITE_BUSY``/``SQLITE_LOCKED``, by result code or by message."""
        if not isinstance(error, sqlite3.OperationalError):
            return False
        code = getattr(error, "sqlite_errorcode", None)
        if code is not None:
            return (code & 0xFF) in (SQLITE_BUSY, SQLITE_LOCKED)
        message = str(error)
        return any(text in message for text in _BUSY_MESSAGES)

    def is_disconnect(self, error: BaseException) -> bool:
        """Not connected, or the connection was closed underneath a statement."""
        if isinstance(error, sqlite3.ProgrammingError) and "closed database" in str(error):
            return True
        return super().is_disconnect(error)


__all__ = [
    "SQLiteAdapter",
    "SQLITE_BUSY",
    "SQLITE_LOCKED",
]
