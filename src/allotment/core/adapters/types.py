"""Backend selector and connection parameters."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class DatabaseType(str, Enum):
    """Backends an allocator can store its tables in."""

    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"

    @classmethod
    def from_name(cls, name: str) -> DatabaseType:
        """Resolve a backend selector, accepting the ``postgres`` alias."""
        name = name.lower()
        if name == "postgres":
            return cls.POSTGRESQL
        return cls(name)


@dataclass
class DatabaseConfig:
    """
    Where an allocator's tables live.

    SQLite uses ``path`` and ``mode``; PostgreSQL uses the server fields.
    ``options`` is passed through to the driver's ``connect()``.
    """

    db_type: DatabaseType = DatabaseType.SQLITE

    # SQLite
    path: str | None = None
    mode: str = "rwc"  # ro, rw, rwc, memory

    # PostgreSQL
    host: str = "localhost"
    port: int = 5432
    database: str = ""
    username: str | None = None
    password: str | None = None
    connect_timeout: int = 10

    options: dict[str, Any] = field(default_factory=dict)

    def describe(self) -> str:
        """Human-readable target, never including the password."""
        if self.db_type is DatabaseType.SQLITE:
            return self.path or ":memory:"
        user = f"{self.username}@" if self.username else ""
        return f"postgresql://{user}{self.host}:{self.port}/{self.database}"

    def adapter_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for the matching adapter constructor."""
        if self.db_type is DatabaseType.SQLITE:
            return {"path": self.path or ":memory:", "mode": self.mode, **self.options}
        return {
            "host": self.host,
            "port": self.port,
            "database": self.database,
            "username": self.username,
            "password": self.password,
            "connect_timeout": self.connect_timeout,
            **self.options,
        }


__all__ = [
    "DatabaseType",
    "DatabaseConfig",
]
