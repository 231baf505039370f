"""SQL dialect abstraction for backend-agnostic domain code.

The allocation logic is written once and interpolates dialect fragments for
everything the two backends disagree on: parameter placeholders, boolean
literals, insert-if-absent and how a write transaction begins.

Architecture::

    Domain Code:
    ┌────────────────────────────────────────────────────────────────┐
    │  sql = d.insert_or_ignore("instances", ["id", "available"])   │
    │  sql = f"UPDATE instances SET available = {d.boolean_true()}" │
    │        f" WHERE id = {d.placeholder(0)}"                       │
    └────────────────────────────────────────────────────────────────┘
                              │
                              ▼
              ┌──────────────────┐   ┌──────────────────────┐
              │ SQLite           │   │ PostgreSQL           │
              │ ?1, ?2           │   │ %s, %s               │
              │ 1 / 0            │   │ TRUE / FALSE         │
              │ INSERT OR IGNORE │   │ ON CONFLICT NOTHING  │
              │ BEGIN IMMEDIATE  │   │ BEGIN + LOCK TABLE   │
              └──────────────────┘   └──────────────────────┘

Placeholders are numbered for SQLite (``?1``, ``?2``...) so a statement
binds identically whether the driver treats them as ordinals or positions.
Either way they must appear in the SQL text in ascending order of use.

Examples:
    >>> d = SQLiteDialect()
    >>> d.placeholders(2)
    '?1, ?2'
    >>> PostgreSQLDialect().insert_or_ignore("instances", ["id", "available"])
    'INSERT INTO instances (id, available) VALUES (%s, %s) ON CONFLICT DO NOTHING'
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class Dialect(Protocol):
    """SQL dialect contract.

    Every method returns a **SQL fragment** (string) that is valid for the
    target database.
    """

    @property
    def name(self) -> str:
        """Human-readable dialect name (e.g. ``'sqlite'``)."""
        ...

    def placeholder(self, index: int) -> str:
        """Single positional placeholder (0-based index)."""
        ...

    def placeholders(self, count: int) -> str:
        """Comma-separated placeholder list, starting at index 0."""
        ...

    def insert_or_ignore(self, table: str, columns: list[str]) -> str:
        """``INSERT … ON CONFLICT DO NOTHING`` (or equivalent)."""
        ...

    def boolean_true(self) -> str:
        """SQL literal for boolean true."""
        ...

    def boolean_false(self) -> str:
        """SQL literal for boolean false."""
        ...

    def boolean(self, value: bool) -> str:
        """SQL literal for ``value``."""
        ...

    def begin(self) -> str:
        """Statement opening a write transaction."""
        ...


class SQLiteDialect:
    """SQLite dialect (stdlib ``sqlite3``)."""

    @property
    def name(self) -> str:
        return "sqlite"

    def placeholder(self, index: int) -> str:
        return f"?{index + 1}"

    def placeholders(self, count: int) -> str:
        return ", ".join(self.placeholder(i) for i in range(count))

    def insert_or_ignore(self, table: str, columns: list[str]) -> str:
        cols = ", ".join(columns)
        ph = self.placeholders(len(columns))
        return f"INSERT OR IGNORE INTO {table} ({cols}) VALUES ({ph})"

    def boolean_true(self) -> str:
        return "1"

    def boolean_false(self) -> str:
        return "0"

    def boolean(self, value: bool) -> str:
        return self.boolean_true() if value else self.boolean_false()

    def begin(self) -> str:
        # Take the reserved lock up front: a busy error can then only
        # happen before this connection holds any lock.
        return "BEGIN IMMEDIATE"


class PostgreSQLDialect:
    """PostgreSQL dialect (``psycopg2``)."""

    @property
    def name(self) -> str:
        return "postgresql"

    def placeholder(self, index: int) -> str:  # noqa: ARG002
        return "%s"

    def placeholders(self, count: int) -> str:
        return ", ".join("%s" for _ in range(count))

    def insert_or_ignore(self, table: str, columns: list[str]) -> str:
        cols = ", ".join(columns)
        ph = self.placeholders(len(columns))
        return f"INSERT INTO {table} ({cols}) VALUES ({ph}) ON CONFLICT DO NOTHING"

    def boolean_true(self) -> str:
        return "TRUE"

    def boolean_false(self) -> str:
        return "FALSE"

    def boolean(self, value: bool) -> str:
        return self.boolean_true() if value else self.boolean_false()

    def begin(self) -> str:
        return "BEGIN"

    def lock_tables(self, tables: list[str]) -> str:
        """Writer lock taken right after ``BEGIN``; plain reads still proceed."""
        return f"LOCK TABLE {', '.join(tables)} IN SHARE ROW EXCLUSIVE MODE"


_DIALECTS: dict[str, type] = {
    "sqlite": SQLiteDialect,
    "postgresql": PostgreSQLDialect,
    "postgres": PostgreSQLDialect,
}


def get_dialect(name: str) -> Dialect:
    """Return the dialect for a backend name.

    Raises:
        ValueError: If the backend name is unknown
    """
    try:
        return _DIALECTS[name.lower()]()
    except KeyError:
        raise ValueError(f"Unknown SQL dialect: {name}") from None


__all__ = [
    "Dialect",
    "SQLiteDialect",
    "PostgreSQLDialect",
    "get_dialect",
]
