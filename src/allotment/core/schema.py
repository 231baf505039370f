"""
Allocation schema.

Two tables and one index, identical on every backend::

    instances   (id TEXT PRIMARY KEY, available BOOLEAN)
    allocations (job TEXT PRIMARY KEY, instance TEXT REFERENCES instances(id))
    by_instance ON allocations (instance)

``allocations.job`` being the primary key is what makes a second
allocation row for the same job impossible, whatever the engine does.

``create_schema`` is idempotent and is what tests and ``allotment db init``
use; versioned migrations are left to the embedding application.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from allotment.core.adapters.base import DatabaseAdapter

INSTANCES_TABLE = "instances"
ALLOCATIONS_TABLE = "allocations"
BY_INSTANCE_INDEX = "by_instance"

# Tables a write transaction locks on backends without a database-level
# writer lock.
WRITE_TABLES = (INSTANCES_TABLE, ALLOCATIONS_TABLE)

CREATE_STATEMENTS = (
    f"""
    CREATE TABLE IF NOT EXISTS {INSTANCES_TABLE} (
        id TEXT PRIMARY KEY,
        available BOOLEAN
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {ALLOCATIONS_TABLE} (
        job TEXT PRIMARY KEY,
        instance TEXT,
        FOREIGN KEY (instance) REFERENCES {INSTANCES_TABLE} (id)
    )
    """,
    f"CREATE INDEX IF NOT EXISTS {BY_INSTANCE_INDEX} ON {ALLOCATIONS_TABLE} (instance)",
)

DROP_STATEMENTS = (
    f"DROP INDEX IF EXISTS {BY_INSTANCE_INDEX}",
    f"DROP TABLE IF EXISTS {ALLOCATIONS_TABLE}",
    f"DROP TABLE IF EXISTS {INSTANCES_TABLE}",
)


def create_schema(adapter: DatabaseAdapter) -> None:
    """Create the allocation tables and index if they do not exist."""
    for statement in CREATE_STATEMENTS:
        adapter.execute(statement)


def drop_schema(adapter: DatabaseAdapter) -> None:
    """Drop the allocation tables and index."""
    for statement in DROP_STATEMENTS:
        adapter.execute(statement)


__all__ = [
    "INSTANCES_TABLE",
    "ALLOCATIONS_TABLE",
    "BY_INSTANCE_INDEX",
    "WRITE_TABLES",
    "create_schema",
    "drop_schema",
]
