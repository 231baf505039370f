"""Storage adapters: one synchronous interface over SQLite and PostgreSQL.

::

    DatabaseAdapter (base.py)        connect / execute / query / begin / is_busy
        ├── SQLiteAdapter            stdlib sqlite3, file or :memory:
        └── PostgreSQLAdapter        psycopg2, imported on connect()

    AdapterRegistry (registry.py)    backend selector → adapter class
    DatabaseConfig (types.py)        where the tables live

Install the PostgreSQL driver with ``pip install allotment[postgresql]``.
"""

from .base import DatabaseAdapter
from .postgresql import PostgreSQLAdapter
from .registry import AdapterRegistry, adapter_from_config, adapter_registry, get_adapter
from .sqlite import SQLiteAdapter
from .types import DatabaseConfig, DatabaseType

__all__ = [
    "DatabaseType",
    "DatabaseConfig",
    "DatabaseAdapter",
    "SQLiteAdapter",
    "PostgreSQLAdapter",
    "AdapterRegistry",
    "adapter_registry",
    "get_adapter",
    "adapter_from_config",
]
