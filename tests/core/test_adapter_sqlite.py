"""Tests for ``allotment.core.adapters.sqlite`` — SQLite adapter."""

from __future__ import annotations

import sqlite3

import pytest

from allotment.core.adapters.sqlite import SQLITE_BUSY, SQLiteAdapter
from allotment.core.errors import DatabaseConnectionError, InvalidConfigError


class TestSQLiteAdapterInit:
    def test_defaults(self):
        adapter = SQLiteAdapter()
        assert adapter.db_type.value == "sqlite"
        assert adapter.config.path == ":memory:"
        assert adapter.is_connected is False

    def test_bad_mode(self):
        with pytest.raises(InvalidConfigError):
            SQLiteAdapter("x.db", mode="append")

    def test_repr(self):
        assert repr(SQLiteAdapter("jobs.db")) == "SQLiteAdapter('jobs.db')"


class TestSQLiteAdapterConnect:
    def test_memory(self):
        adapter = SQLiteAdapter(":memory:")
        adapter.connect()
        assert adapter.is_connected is True
        adapter.disconnect()
        assert adapter.is_connected is False

    def test_creates_file_in_rwc(self, tmp_path):
        path = tmp_path / "new.sqlite3"
        with SQLiteAdapter(str(path)):
            pass
        assert path.exists()

    def test_rw_requires_existing_file(self, tmp_path):
        adapter = SQLiteAdapter(str(tmp_path / "missing.sqlite3"), mode="rw")
        with pytest.raises(DatabaseConnectionError, match="Failed to connect") as exc_info:
            adapter.connect()
        assert exc_info.value.context.backend == "sqlite"
        assert adapter.is_connected is False

    def test_ro_rejects_writes(self, tmp_path):
        path = tmp_path / "ro.sqlite3"
        with SQLiteAdapter(str(path)) as rw:
            rw.execute("CREATE TABLE t (x)")
        with SQLiteAdapter(str(path), mode="ro") as ro:
            with pytest.raises(sqlite3.OperationalError):
                ro.execute("INSERT INTO t (x) VALUES (1)")

    def test_foreign_keys_enabled(self):
        with SQLiteAdapter() as adapter:
            assert adapter.count("PRAGMA foreign_keys") == 1

    def test_disconnect_when_not_connected(self):
        SQLiteAdapter().disconnect()


class TestSQLiteAdapterStatements:
    @pytest.fixture
    def adapter(self):
        with SQLiteAdapter() as adapter:
            adapter.execute("CREATE TABLE t (id TEXT PRIMARY KEY, flag BOOLEAN)")
            yield adapter

    def test_execute_returns_rowcount(self, adapter):
        assert adapter.execute("INSERT INTO t (id, flag) VALUES (?1, ?2)", ("a", True)) == 1
        assert adapter.execute("DELETE FROM t WHERE id = ?1", ("zzz",)) == 0

    def test_query_returns_dicts(self, adapter):
        adapter.execute("INSERT INTO t (id, flag) VALUES (?1, ?2)", ("a", True))
        assert adapter.query("SELECT id, flag FROM t") == [{"id": "a", "flag": 1}]

    def test_query_one_none(self, adapter):
        assert adapter.query_one("SELECT id FROM t WHERE id = ?1", ("nope",)) is None

    def test_count_reads_first_column(self, adapter):
        adapter.execute("INSERT INTO t (id, flag) VALUES (?1, ?2)", ("a", True))
        adapter.execute("INSERT INTO t (id, flag) VALUES (?1, ?2)", ("b", False))
        assert adapter.count("SELECT count(*) FROM t") == 2

    def test_explicit_transaction_rolls_back(self, adapter):
        adapter.begin()
        adapter.execute("INSERT INTO t (id, flag) VALUES (?1, ?2)", ("a", True))
        adapter.rollback()
        assert adapter.count("SELECT count(*) FROM t") == 0


class TestSQLiteAdapterDisconnected:
    def test_statement_before_connect_fails(self):
        adapter = SQLiteAdapter()
        with pytest.raises(DatabaseConnectionError, match="not connected") as exc_info:
            adapter.execute("SELECT 1")
        assert adapter.is_disconnect(exc_info.value) is True
        assert adapter.is_connected is False

    def test_no_reconnect_after_disconnect(self, tmp_path):
        path = str(tmp_path / "gone.sqlite3")
        adapter = SQLiteAdapter(path)
        adapter.connect()
        adapter.execute("CREATE TABLE t (x)")
        adapter.disconnect()

        with pytest.raises(DatabaseConnectionError):
            adapter.begin()
        assert adapter.is_connected is False

        # No write lock was taken behind our back
        with SQLiteAdapter(path) as other:
            other.begin()
            other.rollback()

    def test_closed_underlying_connection_is_disconnect(self):
        adapter = SQLiteAdapter()
        adapter.connect()
        adapter.get_connection().close()
        with pytest.raises(sqlite3.ProgrammingError) as exc_info:
            adapter.execute("SELECT 1")
        assert adapter.is_disconnect(exc_info.value) is True

    def test_statement_errors_are_not_disconnects(self):
        adapter = SQLiteAdapter()
        assert adapter.is_disconnect(sqlite3.OperationalError("no such table: x")) is False
        assert adapter.is_disconnect(sqlite3.OperationalError("database is locked")) is False


class TestSQLiteAdapterBusy:
    def test_second_writer_is_busy(self, tmp_path):
        path = str(tmp_path / "locked.sqlite3")
        with SQLiteAdapter(path) as first, SQLiteAdapter(path) as second:
            first.execute("CREATE TABLE t (x)")
            first.begin()
            try:
                with pytest.raises(sqlite3.OperationalError) as exc_info:
                    second.begin()
                assert second.is_busy(exc_info.value) is True
            finally:
                first.rollback()
            second.begin()
            second.rollback()

    def test_busy_by_message(self):
        assert SQLiteAdapter().is_busy(sqlite3.OperationalError("database is locked")) is True

    def test_busy_by_code(self):
        error = sqlite3.OperationalError("whatever")
        error.sqlite_errorcode = SQLITE_BUSY | (1 << 8)
        assert SQLiteAdapter().is_busy(error) is True

    def test_other_errors_not_busy(self):
        adapter = SQLiteAdapter()
        assert adapter.is_busy(sqlite3.OperationalError("no such table: x")) is False
        assert adapter.is_busy(sqlite3.IntegrityError("UNIQUE constraint failed")) is False
        assert adapter.is_busy(ValueError("database is locked")) is False
