"""Tests for ``allotment.allocator`` — allocation semantics and lifecycle."""

from __future__ import annotations

import asyncio
import sqlite3
from unittest.mock import MagicMock, patch

import pytest

from allotment.allocator import Allocator, LifecycleEvent
from allotment.core.adapters.postgresql import PostgreSQLAdapter
from allotment.core.adapters.types import DatabaseConfig
from allotment.core.errors import (
    ConfigError,
    DatabaseConnectionError,
    EngineClosedError,
    NoInstancesError,
)
from allotment.core.settings import AllotmentSettings
from allotment.models import AllocationResult, InstanceRecord
from allotment.placement import Placement, local_only


class TestInstances:
    @pytest.mark.asyncio
    async def test_available_is_idempotent(self, allocator):
        await allocator.available("foo")
        await allocator.available("foo")
        assert await allocator.instances() == [InstanceRecord("foo", True)]

    @pytest.mark.asyncio
    async def test_unavailable_unknown_instance_creates_it(self, allocator):
        await allocator.unavailable("ghost")
        assert await allocator.instances() == [InstanceRecord("ghost", False)]

    @pytest.mark.asyncio
    async def test_toggle_availability(self, allocator):
        await allocator.available("foo")
        await allocator.unavailable("foo")
        assert await allocator.instances() == [InstanceRecord("foo", False)]
        await allocator.available("foo")
        assert await allocator.instances() == [InstanceRecord("foo", True)]

    @pytest.mark.asyncio
    async def test_available_is_real_bool(self, allocator):
        await allocator.available("foo")
        (record,) = await allocator.instances()
        assert record.available is True
        assert record.to_dict() == {"id": "foo", "available": True}

    @pytest.mark.asyncio
    async def test_unavailable_keeps_allocations(self, allocator):
        await allocator.available("foo")
        await allocator.allocate("bar")
        await allocator.unavailable("foo")

        assert await allocator.has_jobs("foo") is True
        assert await allocator.allocate("bar") == AllocationResult("foo", False)

    @pytest.mark.asyncio
    async def test_destroy_removes_instance_and_allocations(self, allocator, raw_rows):
        await allocator.available("foo")
        await allocator.allocate("bar")
        await allocator.unavailable("foo", destroy=True)

        assert await allocator.instances() == []
        assert await allocator.has_jobs("foo") is False
        assert await allocator.instance("bar") is None
        assert raw_rows("SELECT * FROM allocations") == []

    @pytest.mark.asyncio
    async def test_destroy_unknown_instance_is_noop(self, allocator):
        await allocator.unavailable("never-seen", destroy=True)
        assert await allocator.instances() == []


class TestAllocate:
    @pytest.mark.asyncio
    async def test_no_instances(self, allocator, raw_rows):
        with pytest.raises(NoInstancesError, match="no instances") as exc_info:
            await allocator.allocate("bar")
        assert exc_info.value.context.job_id == "bar"
        assert raw_rows("SELECT * FROM allocations") == []

    @pytest.mark.asyncio
    async def test_only_unavailable_instances(self, allocator):
        await allocator.unavailable("foo")
        with pytest.raises(NoInstancesError):
            await allocator.allocate("bar")

    @pytest.mark.asyncio
    async def test_idempotent(self, allocator, raw_rows):
        await allocator.available("foo")
        assert await allocator.allocate("bar") == AllocationResult("foo", True)
        assert await allocator.allocate("bar") == AllocationResult("foo", False)
        assert raw_rows("SELECT job, instance FROM allocations") == [("bar", "foo")]

    @pytest.mark.asyncio
    async def test_existing_allocation_ignores_new_instances(self, allocator):
        await allocator.available("foo")
        await allocator.allocate("bar2")
        await allocator.available("foo2")
        # bar2 hashes to foo2 once foo2 is a candidate, but it is already placed
        assert await allocator.allocate("bar2") == AllocationResult("foo", False)

    @pytest.mark.asyncio
    async def test_concurrent_allocations_of_one_job(self, allocator):
        await allocator.available("foo")
        await allocator.available("foo2")

        results = await asyncio.gather(*(allocator.allocate("bar5") for _ in range(5)))
        assert {r.instance_id for r in results} == {"foo2"}
        assert sum(r.persisted for r in results) == 1

    @pytest.mark.asyncio
    async def test_deallocate_then_reallocate(self, allocator):
        await allocator.available("foo")
        await allocator.allocate("bar9")
        await allocator.deallocate("bar9")
        assert await allocator.instance("bar9") is None

        await allocator.available("foo2")
        await allocator.available("foo3")
        assert await allocator.allocate("bar9") == AllocationResult("foo2", True)

    @pytest.mark.asyncio
    async def test_deallocate_missing_job(self, allocator):
        await allocator.deallocate("bar4")

    @pytest.mark.asyncio
    async def test_round_trip(self, allocator):
        await allocator.available("instance0")
        await allocator.available("instance1")
        for job_id in ("job0", "job1", "job2"):
            result = await allocator.allocate(job_id)
            assert await allocator.instance(job_id) == result.instance_id
            assert job_id in await allocator.jobs(result.instance_id)
            assert await allocator.has_jobs(result.instance_id) is True


class TestPlacement:
    @pytest.mark.asyncio
    async def test_veto_does_not_persist(self, allocator):
        await allocator.available("foo")
        await allocator.available("foo3")

        result = await allocator.allocate("bar11", placement=local_only("foo"))
        assert result == AllocationResult("foo3", False)
        assert await allocator.has_jobs("foo3") is False
        assert await allocator.instance("bar11") is None

    @pytest.mark.asyncio
    async def test_engine_default_strategy(self, make_allocator):
        calls = []

        def first_candidate(job_id, instance_ids):
            calls.append((job_id, list(instance_ids)))
            return Placement(instance_ids[0])

        allocator = await make_allocator(placement=first_candidate)
        await allocator.available("a")
        await allocator.available("b")
        assert await allocator.allocate("j") == AllocationResult("a", True)
        assert calls == [("j", ["a", "b"])]

    @pytest.mark.asyncio
    async def test_strategy_not_consulted_for_existing(self, allocator):
        await allocator.available("foo")
        await allocator.allocate("bar")

        def explode(job_id, instance_ids):
            raise AssertionError("should not be called")

        assert await allocator.allocate("bar", placement=explode) == AllocationResult("foo", False)

    @pytest.mark.asyncio
    async def test_strategy_error_rolls_back(self, allocator, raw_rows):
        await allocator.available("foo")

        def broken(job_id, instance_ids):
            raise RuntimeError("strategy failed")

        with pytest.raises(RuntimeError, match="strategy failed"):
            await allocator.allocate("bar", placement=broken)
        assert raw_rows("SELECT * FROM allocations") == []
        # Connection is usable again after the rollback
        assert await allocator.allocate("bar") == AllocationResult("foo", True)

    @pytest.mark.asyncio
    async def test_redirect_to_unknown_instance(self, allocator):
        await allocator.available("foo")
        with pytest.raises(sqlite3.IntegrityError):
            await allocator.allocate("bar", placement=lambda j, ids: Placement("elsewhere"))
        assert await allocator.instance("bar") is None


class TestScenario:
    """The foo/foo2/foo3 walk-through, one engine, in order."""

    @pytest.mark.asyncio
    async def test_walkthrough(self, allocator, make_allocator):
        a = allocator
        assert await a.has_jobs("foo") is False
        with pytest.raises(NoInstancesError):
            await a.allocate("bar")

        await a.available("foo")
        assert await a.allocate("bar") == AllocationResult("foo", True)

        await a.available("foo2")
        assert await a.allocate("bar2") == AllocationResult("foo2", True)
        assert await asyncio.gather(a.allocate("bar5"), a.allocate("bar3")) == [
            AllocationResult("foo2", True),
            AllocationResult("foo", True),
        ]

        await a.available("foo3")
        assert await asyncio.gather(*(a.allocate(j) for j in ("bar", "bar2", "bar5", "bar3"))) == [
            AllocationResult("foo", False),
            AllocationResult("foo2", False),
            AllocationResult("foo2", False),
            AllocationResult("foo", False),
        ]
        assert [await a.has_jobs(i) for i in ("foo", "foo2", "foo3")] == [True, True, False]

        await asyncio.gather(*(a.available(i) for i in ("foo", "foo2", "foo3")))
        assert sorted(await a.jobs("foo")) == ["bar", "bar3"]
        assert sorted(await a.jobs("foo2")) == ["bar2", "bar5"]
        assert await a.jobs("foo3") == []

        await a.deallocate("bar5")
        assert await a.has_jobs("foo2") is True
        await a.deallocate("bar2")
        assert await a.has_jobs("foo2") is False
        await a.deallocate("bar4")
        assert await a.allocate("bar5") == AllocationResult("foo3", True)
        assert await a.allocate("bar2") == AllocationResult("foo3", True)
        assert await a.allocate("bar9") == AllocationResult("foo2", True)

        await a.unavailable("foo2")
        assert await a.has_jobs("foo2") is True
        assert await a.allocate("bar9") == AllocationResult("foo2", False)
        await a.deallocate("bar9")
        assert await a.allocate("bar9") == AllocationResult("foo3", True)

        await a.unavailable("foo3", destroy=True)
        assert await a.has_jobs("foo3") is False
        assert await a.allocate("bar9") == AllocationResult("foo", True)

        await a.available("foo3")
        other = await make_allocator(placement=local_only("foo"))
        assert await other.allocate("bar11") == AllocationResult("foo3", False)
        assert await a.has_jobs("foo3") is False

        assert sorted(await a.jobs("foo")) == ["bar", "bar3", "bar9"]
        assert await a.jobs("foo2") == []
        assert await a.jobs("foo3") == []
        assert sorted(await a.instances(), key=lambda r: r.id) == [
            InstanceRecord("foo", True),
            InstanceRecord("foo2", False),
            InstanceRecord("foo3", True),
        ]
        assert await a.instance("bar") == "foo"
        assert await a.instance("hasnotbeenallocated") is None


class TestBusyStore:
    @pytest.mark.asyncio
    async def test_reads_wait_for_external_lock(self, allocator, db_path):
        await allocator.available("foo")

        locker = sqlite3.connect(db_path, isolation_level=None)
        locker.execute("BEGIN EXCLUSIVE")
        try:
            task = asyncio.create_task(allocator.instances())
            await asyncio.sleep(0.1)
            assert not task.done()
            assert allocator.runner.busy_retries > 0
        finally:
            locker.execute("COMMIT")
            locker.close()

        assert await task == [InstanceRecord("foo", True)]

    @pytest.mark.asyncio
    async def test_allocate_waits_for_external_writer(self, allocator, db_path):
        await allocator.available("foo")

        locker = sqlite3.connect(db_path, isolation_level=None)
        locker.execute("BEGIN IMMEDIATE")
        try:
            task = asyncio.create_task(allocator.allocate("bar"))
            await asyncio.sleep(0.1)
            assert not task.done()
        finally:
            locker.execute("ROLLBACK")
            locker.close()

        assert await task == AllocationResult("foo", True)

    @pytest.mark.asyncio
    async def test_cancelled_allocate_releases_store(self, make_allocator, db_path):
        first = await make_allocator()
        second = await make_allocator()
        await first.available("foo")

        # A reader's shared lock makes the allocation's COMMIT busy
        reader = sqlite3.connect(db_path, isolation_level=None)
        try:
            reader.execute("BEGIN")
            reader.execute("SELECT * FROM instances").fetchall()
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(first.allocate("job"), 0.2)
            reader.execute("COMMIT")
        finally:
            reader.close()

        assert await asyncio.wait_for(second.allocate("job2"), 5) == AllocationResult("foo", True)
        assert await asyncio.wait_for(first.allocate("job3"), 5) == AllocationResult("foo", True)
        assert await second.instance("job") == "foo"

    @pytest.mark.asyncio
    async def test_close_while_begin_waits(self, make_allocator, db_path):
        allocator = await make_allocator(busy_wait=0.05)
        await allocator.available("foo")

        locker = sqlite3.connect(db_path, isolation_level=None, timeout=0)
        try:
            locker.execute("BEGIN IMMEDIATE")
            task = asyncio.create_task(allocator.allocate("bar"))
            await asyncio.sleep(0.02)
            await allocator.close()
            locker.execute("ROLLBACK")

            with pytest.raises((EngineClosedError, DatabaseConnectionError)):
                await task

            # Nothing reopened the file behind the closed allocator
            await asyncio.sleep(0.1)
            locker.execute("BEGIN IMMEDIATE")
            locker.execute("ROLLBACK")
        finally:
            locker.close()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_events(self, db_path):
        events = []
        allocator = Allocator(db_path, busy_wait=0.01)
        allocator.on(LifecycleEvent.READY, lambda a: events.append(("ready", a)))
        allocator.on("close", lambda a: events.append(("close", a)))

        async with allocator:
            assert allocator.is_open is True
        assert events == [("ready", allocator), ("close", allocator)]
        assert allocator.is_open is False

    @pytest.mark.asyncio
    async def test_async_listener_and_off(self, db_path):
        seen = []

        async def listener(a):
            seen.append(a)

        def removed(a):
            seen.append("removed")

        allocator = Allocator(db_path).on("ready", listener).on("ready", removed).off("ready", removed)
        await allocator.open()
        await allocator.close()
        assert seen == [allocator]

    @pytest.mark.asyncio
    async def test_connection_error(self, tmp_path):
        errors = []
        allocator = Allocator(DatabaseConfig(path=str(tmp_path / "does_not_exist.sqlite3"), mode="ro"))
        allocator.on("error", errors.append)

        with pytest.raises(DatabaseConnectionError, match="unable to open database file"):
            await allocator.open()
        assert len(errors) == 1
        assert isinstance(errors[0], DatabaseConnectionError)
        await allocator.close()

    @pytest.mark.asyncio
    async def test_operations_before_open(self, db_path):
        allocator = Allocator(db_path)
        with pytest.raises(EngineClosedError, match="not open"):
            await allocator.allocate("bar")

    @pytest.mark.asyncio
    async def test_operations_after_close(self, db_path):
        allocator = await Allocator.connect(db_path)
        await allocator.close()
        with pytest.raises(EngineClosedError, match="closed"):
            await allocator.instances()
        with pytest.raises(EngineClosedError):
            await allocator.open()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, db_path):
        closes = []
        allocator = await Allocator.connect(db_path)
        allocator.on("close", closes.append)
        await allocator.close()
        await allocator.close()
        assert closes == [allocator]

    @pytest.mark.asyncio
    async def test_create_schema_on_open(self, tmp_path):
        path = str(tmp_path / "fresh.sqlite3")
        async with Allocator(path, create_schema=True) as allocator:
            await allocator.available("foo")
            assert await allocator.allocate("bar") == AllocationResult("foo", True)

    @pytest.mark.asyncio
    async def test_lost_connection_notifies_error_listeners(self):
        import psycopg2

        lost = psycopg2.InterfaceError("connection already closed")
        mock_conn = MagicMock(closed=0)
        mock_conn.cursor.return_value.execute.side_effect = lost
        errors = []

        with patch("psycopg2.connect", return_value=mock_conn):
            allocator = Allocator(PostgreSQLAdapter(database="alloc"), busy_wait=0.01)
            allocator.on(LifecycleEvent.ERROR, errors.append)
            await allocator.open()
            try:
                with pytest.raises(psycopg2.InterfaceError):
                    await allocator.instances()
            finally:
                await allocator.close()

        assert errors == [lost]

    @pytest.mark.asyncio
    async def test_statement_errors_do_not_notify(self, allocator):
        errors = []
        allocator.on(LifecycleEvent.ERROR, errors.append)

        with pytest.raises(NoInstancesError):
            await allocator.allocate("bar")
        assert errors == []


class TestConstruction:
    def test_unknown_backend(self):
        with pytest.raises(ConfigError):
            Allocator(AllotmentSettings(db_type="mysql"))

    def test_negative_busy_wait(self, db_path):
        with pytest.raises(ConfigError):
            Allocator(db_path, busy_wait=-1)

    def test_busy_wait_from_settings(self, db_path):
        allocator = Allocator(AllotmentSettings(db_filename=db_path, busy_wait=0.5))
        assert allocator.busy_wait == 0.5
