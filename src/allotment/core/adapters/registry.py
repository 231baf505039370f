"""Backend selector → adapter class.

Unknown selectors fail synchronously with ``ConfigError`` so a misconfigured
allocator never gets as far as opening a connection.  Applications may
register further adapters (e.g. an instrumented SQLite subclass) under new
names.
"""

from __future__ import annotations

from typing import Any

from allotment.core.errors import ConfigError

from .base import DatabaseAdapter
from .postgresql import PostgreSQLAdapter
from .sqlite import SQLiteAdapter
from .types import DatabaseConfig, DatabaseType


class AdapterRegistry:
    """Maps backend selectors (case-insensitive) to adapter classes."""

    def __init__(self):
        self._classes: dict[str, type[DatabaseAdapter]] = {}
        self.register(SQLiteAdapter, DatabaseType.SQLITE.value)
        self.register(PostgreSQLAdapter, DatabaseType.POSTGRESQL.value, "postgres")

    def register(self, adapter_class: type[DatabaseAdapter], *names: str) -> None:
        for name in names:
            self._classes[name.lower()] = adapter_class

    def resolve(self, name: str) -> type[DatabaseAdapter]:
        try:
            return self._classes[name.lower()]
        except KeyError:
            known = ", ".join(self.names())
            raise ConfigError(f"Unknown database adapter: {name} (known: {known})") from None

    def create(self, name: str, **kwargs: Any) -> DatabaseAdapter:
        """Instantiate the adapter registered as ``name`` (not connected)."""
        return self.resolve(name)(**kwargs)

    def names(self) -> list[str]:
        return sorted(self._classes)


adapter_registry = AdapterRegistry()


def get_adapter(db_type: DatabaseType | str, **kwargs: Any) -> DatabaseAdapter:
    """
    Build an unconnected adapter.

    Usage:
        adapter = get_adapter(DatabaseType.SQLITE, path="allotment.sqlite3")
        adapter = get_adapter("postgresql", host="localhost", database="allotment")
    """
    name = db_type.value if isinstance(db_type, DatabaseType) else db_type
    return adapter_registry.create(name, **kwargs)


def adapter_from_config(config: DatabaseConfig) -> DatabaseAdapter:
    """Build an unconnected adapter from a ``DatabaseConfig``."""
    return get_adapter(config.db_type, **config.adapter_kwargs())


__all__ = [
    "AdapterRegistry",
    "adapter_registry",
    "get_adapter",
    "adapter_from_config",
]
