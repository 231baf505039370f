"""
Shared pytest fixtures for allotment tests.

This module provides:
- File-backed SQLite databases with the allocation schema
- Open allocators that are closed after the test
- A scriptable fake adapter for retry-protocol tests
"""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from allotment.allocator import Allocator
from allotment.core.adapters.sqlite import SQLiteAdapter
from allotment.core.schema import create_schema
from tests._support.fakes import FakeAdapter

# Short enough that busy retries do not slow the suite down
FAST_BUSY_WAIT = 0.01


@pytest.fixture
def fake_adapter() -> FakeAdapter:
    adapter = FakeAdapter()
    adapter.connect()
    return adapter


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    """Path of a fresh SQLite database with the allocation schema."""
    path = tmp_path / "allocations.sqlite3"
    with SQLiteAdapter(str(path)) as adapter:
        create_schema(adapter)
    return str(path)


@pytest.fixture
def raw_rows(db_path: str) -> Callable[[str], list[tuple]]:
    """Query the database directly, bypassing every allocator."""

    def _query(sql: str) -> list[tuple]:
        conn = sqlite3.connect(db_path)
        try:
            return conn.execute(sql).fetchall()
        finally:
            conn.close()

    return _query


@pytest_asyncio.fixture
async def make_allocator(db_path: str) -> AsyncIterator[Callable[..., Any]]:
    """Factory for open allocators on ``db_path``; all are closed afterwards."""
    opened: list[Allocator] = []

    async def factory(**kwargs: Any) -> Allocator:
        kwargs.setdefault("busy_wait", FAST_BUSY_WAIT)
        allocator = await Allocator.connect(db_path, **kwargs)
        opened.append(allocator)
        return allocator

    yield factory

    for allocator in opened:
        await allocator.close()


@pytest_asyncio.fixture
async def allocator(make_allocator) -> Allocator:
    return await make_allocator()
