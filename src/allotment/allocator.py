"""Allocator — persistent, idempotent assignment of jobs to instances.

Many ``Allocator`` objects, in one process or many, may point at the same
store.  They all make and see the same allocations: a job gets at most one
allocation row, written by whichever engine's transaction gets there first,
and every later ``allocate`` for that job returns the same instance with
``persisted=False``.

ARCHITECTURE
────────────
::

    Allocator
      ├── available / unavailable      ─ transaction (upsert, update[, destroy])
      ├── allocate                     ─ transaction (read, candidates, place, insert)
      ├── deallocate                   ─ single statement
      ├── instances / jobs / has_jobs / instance   ─ single reads
      └── open / close / on / off      ─ lifecycle

    operation ──▶ TransactionRunner ──▶ SerialTaskQueue ──▶ worker thread ──▶ adapter

Nothing is cached: every call reads the store inside its own transaction or
statement.

Example::

    async with Allocator("jobs.sqlite3", create_schema=True) as allocator:
        await allocator.available("worker-1")
        instance_id, persisted = await allocator.allocate("job-42")
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, TypeVar

from allotment.core.adapters.base import DatabaseAdapter
from allotment.core.adapters.registry import adapter_from_config, get_adapter
from allotment.core.adapters.types import DatabaseConfig
from allotment.core.errors import DatabaseConnectionError, EngineClosedError, NoInstancesError
from allotment.core.logging import get_logger
from allotment.core.schema import ALLOCATIONS_TABLE, INSTANCES_TABLE, create_schema
from allotment.core.settings import AllotmentSettings, get_settings
from allotment.engine.queue import SerialTaskQueue
from allotment.engine.transaction import DEFAULT_BUSY_WAIT, Transaction, TransactionRunner
from allotment.models import AllocationResult, InstanceRecord
from allotment.placement import PlacementStrategy, hash_placement, resolve_placement

logger = get_logger(__name__)

T = TypeVar("T")


class LifecycleEvent(str, Enum):
    """Lifecycle notifications an allocator emits."""

    READY = "ready"
    ERROR = "error"
    CLOSE = "close"


Listener = Callable[..., Any]


def _build_adapter(
    target: DatabaseAdapter | DatabaseConfig | AllotmentSettings | str | None,
) -> tuple[DatabaseAdapter, AllotmentSettings | None]:
    if isinstance(target, DatabaseAdapter):
        return target, None
    if isinstance(target, DatabaseConfig):
        return adapter_from_config(target), None
    if isinstance(target, str):
        return get_adapter("sqlite", path=target), None
    settings = target if target is not None else get_settings()
    return adapter_from_config(settings.to_database_config()), settings


class Allocator:
    """Allocates jobs across instances, persisting allocations in one store.

    Args:
        target: Where allocations live: a SQLite file path, a
            ``DatabaseConfig``, ``AllotmentSettings``, a ready-made adapter,
            or ``None`` to read ``ALLOTMENT_*`` settings from the environment.
        placement: Default placement strategy (``hash_placement``).
        busy_wait: Seconds to wait before retrying while another engine has
            the store locked.  Defaults to the settings value, else 1.0.
        create_schema: Create the tables on ``open()`` if missing.
        name: Name used for the queue, worker thread and log context.

    Raises:
        ConfigError: Unknown backend selector or invalid option (raised
            here, synchronously).
    """

    def __init__(
        self,
        target: DatabaseAdapter | DatabaseConfig | AllotmentSettings | str | None = None,
        *,
        placement: PlacementStrategy = hash_placement,
        busy_wait: float | None = None,
        create_schema: bool = False,
        name: str = "allotment",
    ):
        self._adapter, settings = _build_adapter(target)
        if busy_wait is None:
            busy_wait = settings.busy_wait if settings is not None else DEFAULT_BUSY_WAIT

        self.name = name
        self._placement = placement
        self._create_schema = create_schema
        self._runner = TransactionRunner(
            self._adapter,
            SerialTaskQueue(name),
            busy_wait=busy_wait,
        )
        self._listeners: dict[LifecycleEvent, list[Listener]] = {event: [] for event in LifecycleEvent}
        self._open = False
        self._closed = False
        self._log = logger.bind(engine=name, backend=self._adapter.db_type.value)

    @classmethod
    async def connect(cls, *args: Any, **kwargs: Any) -> Allocator:
        """Construct and open in one step."""
        return await cls(*args, **kwargs).open()

    # -- Properties ----------------------------------------------------------

    @property
    def adapter(self) -> DatabaseAdapter:
        return self._adapter

    @property
    def runner(self) -> TransactionRunner:
        return self._runner

    @property
    def busy_wait(self) -> float:
        return self._runner.busy_wait

    @property
    def is_open(self) -> bool:
        return self._open

    # -- Lifecycle -----------------------------------------------------------

    def on(self, event: LifecycleEvent | str, listener: Listener) -> Allocator:
        """Subscribe to ``ready``, ``error`` or ``close``.  Returns self."""
        self._listeners[LifecycleEvent(event)].append(listener)
        return self

    def off(self, event: LifecycleEvent | str, listener: Listener) -> Allocator:
        """Remove a listener added with :meth:`on`."""
        listeners = self._listeners[LifecycleEvent(event)]
        if listener in listeners:
            listeners.remove(listener)
        return self

    async def _emit(self, event: LifecycleEvent, *args: Any) -> None:
        for listener in list(self._listeners[event]):
            try:
                result = listener(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                self._log.exception("lifecycle_listener_failed", lifecycle_event=event.value)

    async def open(self) -> Allocator:
        """Open the connection; resolves once the allocator is ready.

        Raises:
            DatabaseConnectionError: The store could not be opened.  ``error``
                listeners are notified first.
            EngineClosedError: The allocator was already closed.
        """
        if self._closed:
            raise EngineClosedError(f"Allocator {self.name!r} is closed")
        if self._open:
            return self

        try:
            await self._runner.run(self._adapter.connect)
            if self._create_schema:
                await self._runner.single(create_schema, self._adapter, operation="create_schema")
        except DatabaseConnectionError as exc:
            self._log.error("allocator_connect_failed", error=exc)
            await self._emit(LifecycleEvent.ERROR, exc)
            raise

        self._open = True
        self._log.info("allocator_ready", busy_wait=self.busy_wait)
        await self._emit(LifecycleEvent.READY, self)
        return self

    async def close(self) -> None:
        """Close the connection after queued work; subsequent operations fail."""
        if self._closed:
            return
        self._closed = True
        was_open = self._open
        self._open = False

        try:
            if was_open:
                await self._runner.run(self._adapter.disconnect)
        finally:
            self._runner.queue.close()
            self._runner.shutdown()

        self._log.info("allocator_closed")
        await self._emit(LifecycleEvent.CLOSE, self)

    async def __aenter__(self) -> Allocator:
        return await self.open()

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    def _ensure_open(self) -> None:
        if not self._open:
            state = "closed" if self._closed else "not open"
            raise EngineClosedError(f"Allocator {self.name!r} is {state}")

    async def _watch(self, pending: Awaitable[T]) -> T:
        """Await storage work; a lost connection is also reported to ``error`` listeners."""
        try:
            return await pending
        except Exception as exc:
            if self._open and self._adapter.is_disconnect(exc):
                self._log.error("allocator_connection_lost", error=exc)
                await self._emit(LifecycleEvent.ERROR, exc)
            raise

    # -- Instances -----------------------------------------------------------

    async def available(self, instance_id: str) -> None:
        """Make an instance available for job allocation (idempotent)."""
        await self._set_availability(instance_id, available=True, destroy=False)

    async def unavailable(self, instance_id: str, destroy: bool = False) -> None:
        """Stop allocating jobs to an instance.

        Args:
            instance_id: ID of the instance.
            destroy: Also delete the instance and all of its job allocations.
                Without it, existing allocations stay in place.
        """
        await self._set_availability(instance_id, available=False, destroy=destroy)

    async def _set_availability(self, instance_id: str, *, available: bool, destroy: bool) -> None:
        self._ensure_open()
        d = self._adapter.dialect
        operation = "available" if available else "unavailable"

        async def body(tx: Transaction) -> None:
            await tx.execute(
                d.insert_or_ignore(INSTANCES_TABLE, ["id", "available"]),
                (instance_id, available),
            )
            # No-op insert for a known instance; the update sets the flag either way
            await tx.execute(
                f"UPDATE {INSTANCES_TABLE} SET available = {d.boolean(available)} "
                f"WHERE id = {d.placeholder(0)}",
                (instance_id,),
            )
            if destroy:
                await tx.execute(
                    f"DELETE FROM {ALLOCATIONS_TABLE} WHERE instance = {d.placeholder(0)}",
                    (instance_id,),
                )
                await tx.execute(
                    f"DELETE FROM {INSTANCES_TABLE} WHERE id = {d.placeholder(0)}",
                    (instance_id,),
                )

        await self._watch(self._runner.transaction(body, operation=operation))
        self._log.info(f"instance_{operation}", instance_id=instance_id, destroyed=destroy)

    async def instances(self) -> list[InstanceRecord]:
        """All instances with their availability."""
        self._ensure_open()
        rows = await self._watch(self._runner.single(
            self._adapter.query,
            f"SELECT id, available FROM {INSTANCES_TABLE}",
            operation="instances",
        ))
        return [InstanceRecord(id=row["id"], available=bool(row["available"])) for row in rows]

    # -- Jobs ----------------------------------------------------------------

    async def allocate(
        self,
        job_id: str,
        placement: PlacementStrategy | None = None,
    ) -> AllocationResult:
        """Allocate a job to an instance.

        An existing allocation is returned as is (``persisted=False``).
        Otherwise the placement strategy picks among the available instances
        and, unless it vetoes persistence, the allocation is written
        (``persisted=True``).  Check, pick and write are one transaction.

        Args:
            job_id: ID of the job to allocate.
            placement: Strategy for this call only; defaults to the
                allocator's strategy.

        Raises:
            NoInstancesError: No instance is available (nothing is written).
        """
        self._ensure_open()
        strategy = placement or self._placement
        d = self._adapter.dialect

        async def body(tx: Transaction) -> AllocationResult:
            row = await tx.query_one(
                f"SELECT instance FROM {ALLOCATIONS_TABLE} WHERE job = {d.placeholder(0)}",
                (job_id,),
            )
            if row is not None:
                return AllocationResult(row["instance"], False)

            rows = await tx.query(
                f"SELECT id FROM {INSTANCES_TABLE} WHERE available = {d.boolean_true()}"
            )
            if not rows:
                raise NoInstancesError().with_context(operation="allocate", job_id=job_id)

            choice = await resolve_placement(strategy, job_id, [r["id"] for r in rows])
            if not choice.persist:
                return AllocationResult(choice.instance_id, False)

            await tx.execute(
                f"INSERT INTO {ALLOCATIONS_TABLE} (job, instance) VALUES ({d.placeholders(2)})",
                (job_id, choice.instance_id),
            )
            return AllocationResult(choice.instance_id, True)

        try:
            result = await self._watch(self._runner.transaction(body, operation="allocate"))
        except NoInstancesError:
            self._log.info("allocation_failed", job_id=job_id, reason="no instances")
            raise

        self._log.debug(
            "job_allocated",
            job_id=job_id,
            instance_id=result.instance_id,
            persisted=result.persisted,
        )
        return result

    async def deallocate(self, job_id: str) -> None:
        """Remove a job's allocation; a no-op when there is none."""
        self._ensure_open()
        d = self._adapter.dialect
        await self._watch(self._runner.single(
            self._adapter.execute,
            f"DELETE FROM {ALLOCATIONS_TABLE} WHERE job = {d.placeholder(0)}",
            (job_id,),
            operation="deallocate",
        ))
        self._log.debug("job_deallocated", job_id=job_id)

    async def has_jobs(self, instance_id: str) -> bool:
        """Whether any job is allocated to the instance."""
        self._ensure_open()
        d = self._adapter.dialect
        count = await self._watch(self._runner.single(
            self._adapter.count,
            f"SELECT count(*) FROM {ALLOCATIONS_TABLE} WHERE instance = {d.placeholder(0)}",
            (instance_id,),
            operation="has_jobs",
        ))
        return count > 0

    async def jobs(self, instance_id: str) -> list[str]:
        """IDs of the jobs allocated to the instance."""
        self._ensure_open()
        d = self._adapter.dialect
        rows = await self._watch(self._runner.single(
            self._adapter.query,
            f"SELECT job FROM {ALLOCATIONS_TABLE} WHERE instance = {d.placeholder(0)}",
            (instance_id,),
            operation="jobs",
        ))
        return [row["job"] for row in rows]

    async def instance(self, job_id: str) -> str | None:
        """The instance a job is allocated to, or ``None``."""
        self._ensure_open()
        d = self._adapter.dialect
        row = await self._watch(self._runner.single(
            self._adapter.query_one,
            f"SELECT instance FROM {ALLOCATIONS_TABLE} WHERE job = {d.placeholder(0)}",
            (job_id,),
            operation="instance",
        ))
        return row["instance"] if row is not None else None

    def __repr__(self) -> str:
        state = "open" if self._open else "closed" if self._closed else "new"
        return f"Allocator({self.name!r}, {self._adapter!r}, {state})"


__all__ = [
    "Allocator",
    "LifecycleEvent",
]
