"""Transaction & retry protocol over a serial task queue.

Every multi-step operation of an engine runs as one transaction::

    Idle ──BEGIN──▶ InTransaction ──all steps ok──▶ Committing ──▶ Done
                          │                              │
                          │ step error (not busy)        │ error (not busy)
                          ▼                              ▼
                     RollingBack ───────────────────▶ Failed

Busy handling (the store is locked by another writer):

- ``BEGIN`` busy: nothing is locked yet, so the engine steps aside.  It sleeps
  ``busy_wait`` off the queue, letting unrelated work through, and
  resubmits ``BEGIN`` at the back.
- Step, ``COMMIT`` or ``ROLLBACK`` busy: a priority timer is pushed, so the
  connection stays with this transaction, and the same statement is retried.
- Single statements outside a transaction (reads, ``deallocate``) behave like
  ``BEGIN``: sleep off the queue, resubmit at the back.

Retries are unlimited at a fixed interval.  An operation ends only on success
or on a non-busy error.

Error policy:

- Non-busy step error → ``ROLLBACK`` → the step error is raised.  If the
  rollback itself fails (non-busy), the failure is logged and the original
  error still wins.
- Non-busy ``COMMIT`` error → raised as is, no rollback attempted.
- Caller-requested rollback without an error → the rollback's own error, if
  any, is raised.

Cancellation:

- During ``BEGIN``: once it lands, a priority ``ROLLBACK`` undoes it.
- During a body step: a priority ``ROLLBACK`` is queued ahead of other work.
- During ``COMMIT`` or ``ROLLBACK``, busy retries included: the terminal step
  keeps running to completion and holds the queue until it is done.

Storage calls are blocking DB-API calls; they run on one dedicated worker
thread so the connection is only ever touched from that thread.
"""

from __future__ import annotations

import asyncio
import functools
from collections.abc import Awaitable, Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Any, TypeVar

from allotment.core.adapters.base import DatabaseAdapter
from allotment.core.dialect import Dialect
from allotment.core.errors import InvalidConfigError, TransactionClosedError
from allotment.core.logging import get_logger

from .queue import SerialTaskQueue, Work

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_BUSY_WAIT = 1.0


class TransactionState(str, Enum):
    """Lifecycle of one transaction."""

    IDLE = "idle"
    IN_TRANSACTION = "in_transaction"
    COMMITTING = "committing"
    ROLLING_BACK = "rolling_back"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TransactionState.DONE, TransactionState.FAILED)


class Transaction:
    """Handle passed to a transaction body; every call is one queued step."""

    def __init__(self, runner: TransactionRunner, operation: str):
        self._runner = runner
        self.operation = operation
        self.state = TransactionState.IDLE
        self.steps = 0
        # Set when a cancelled caller left COMMIT/ROLLBACK running on its own
        self.detached = False

    @property
    def dialect(self) -> Dialect:
        return self._runner.adapter.dialect

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a statement; returns the affected row count."""
        return await self._runner.step(self, self._runner.adapter.execute, sql, params)

    async def query(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        """Run a query; returns all rows as dicts."""
        return await self._runner.step(self, self._runner.adapter.query, sql, params)

    async def query_one(self, sql: str, params: Sequence[Any] = ()) -> dict[str, Any] | None:
        """Run a query; returns the first row or ``None``."""
        return await self._runner.step(self, self._runner.adapter.query_one, sql, params)

    async def count(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a bare aggregate query; returns its value."""
        return await self._runner.step(self, self._runner.adapter.count, sql, params)

    async def rollback(self) -> None:
        """Abandon the transaction without an error.

        A rollback failure is raised to the caller here, since there is no
        earlier error to report instead.
        """
        await self._runner.settle(self, rollback=True)

    def __repr__(self) -> str:
        return f"Transaction({self.operation!r}, state={self.state.value})"


class TransactionRunner:
    """Runs storage work for one engine through its queue, with busy retries."""

    def __init__(
        self,
        adapter: DatabaseAdapter,
        queue: SerialTaskQueue | None = None,
        *,
        busy_wait: float = DEFAULT_BUSY_WAIT,
        executor: ThreadPoolExecutor | None = None,
    ):
        if busy_wait < 0:
            raise InvalidConfigError("busy_wait", busy_wait)
        self.adapter = adapter
        self.queue = queue or SerialTaskQueue()
        self.busy_wait = busy_wait
        self._executor = executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"{self.queue.name}-db"
        )
        self.busy_retries = 0

    # -- Plumbing ----------------------------------------------------------

    def _work(self, fn: Callable[..., T], *args: Any) -> Work:
        """Wrap a blocking adapter call as a queue work item."""
        def work() -> Awaitable[T]:
            loop = asyncio.get_running_loop()
            return loop.run_in_executor(self._executor, functools.partial(fn, *args))
        return work

    def _note_busy(self, operation: str, step: str, attempt: int, error: BaseException) -> None:
        self.busy_retries += 1
        logger.debug(
            "store_busy_retry",
            operation=operation,
            step=step,
            attempt=attempt,
            wait=self.busy_wait,
            error=error,
        )

    def shutdown(self) -> None:
        """Stop the worker thread once queued calls have finished."""
        self._executor.shutdown(wait=False)

    # -- Outside a transaction ---------------------------------------------

    async def run(self, fn: Callable[..., T], *args: Any) -> T:
        """Queue one call at the back, no retry (connect, disconnect)."""
        return await self.queue.enqueue(self._work(fn, *args))

    async def single(self, fn: Callable[..., T], *args: Any, operation: str = "read") -> T:
        """Queue one statement at the back, retrying while the store is busy."""
        attempt = 0
        while True:
            try:
                return await self.queue.enqueue(self._work(fn, *args))
            except Exception as exc:
                if not self.adapter.is_busy(exc):
                    raise
                attempt += 1
                self._note_busy(operation, getattr(fn, "__name__", "call"), attempt, exc)
                await asyncio.sleep(self.busy_wait)

    # -- Transactions ------------------------------------------------------

    async def transaction(
        self,
        body: Callable[[Transaction], Awaitable[T]],
        *,
        operation: str = "transaction",
    ) -> T:
        """Run ``body`` inside BEGIN … COMMIT/ROLLBACK and return its result."""
        tx = Transaction(self, operation)
        await self._begin(tx)
        try:
            try:
                result = await body(tx)
            except Exception as exc:
                if not tx.state.is_terminal:
                    await self.settle(tx, exc)
                raise
            except BaseException:
                # Cancelled mid-transaction: roll back ahead of any other work
                if not tx.state.is_terminal and not tx.detached:
                    tx.state = TransactionState.FAILED
                    self._fire_and_forget(self.adapter.rollback, operation)
                raise

            if not tx.state.is_terminal:
                await self.settle(tx)
            return result
        finally:
            if not tx.detached:
                self.queue.release()

    async def _begin(self, tx: Transaction) -> None:
        attempt = 0
        while True:
            future = self.queue.enqueue(self._work(self.adapter.begin), hold=True)
            try:
                await asyncio.shield(future)
            except asyncio.CancelledError:
                future.add_done_callback(functools.partial(self._abandon, tx.operation))
                raise
            except Exception as exc:
                if not self.adapter.is_busy(exc):
                    tx.state = TransactionState.FAILED
                    raise
                attempt += 1
                self._note_busy(tx.operation, "begin", attempt, exc)
                await asyncio.sleep(self.busy_wait)
                continue

            tx.state = TransactionState.IN_TRANSACTION
            return

    def _abandon(self, operation: str, future: asyncio.Future) -> None:
        """BEGIN finished after its caller went away: undo it and let go."""
        if future.cancelled() or future.exception() is not None:
            return
        self._fire_and_forget(self.adapter.rollback, operation)
        self.queue.release()

    def _fire_and_forget(self, fn: Callable[..., Any], operation: str) -> None:
        def _log_failure(fut: asyncio.Future) -> None:
            if not fut.cancelled() and fut.exception() is not None:
                logger.warning(
                    "abandoned_rollback_failed",
                    operation=operation,
                    error=fut.exception(),
                )

        self.queue.enqueue_priority(self._work(fn)).add_done_callback(_log_failure)

    async def step(self, tx: Transaction, fn: Callable[..., T], *args: Any) -> T:
        """Run one statement of ``tx``, retrying it in place while busy."""
        if tx.state.is_terminal:
            raise TransactionClosedError(
                f"Transaction {tx.operation!r} is already {tx.state.value}"
            ).with_context(operation=tx.operation)
        attempt = 0
        tx.steps += 1
        while True:
            try:
                return await self.queue.enqueue_priority(self._work(fn, *args))
            except Exception as exc:
                if not self.adapter.is_busy(exc):
                    raise
                attempt += 1
                self._note_busy(tx.operation, f"step {tx.steps}", attempt, exc)
                await self.queue.delay(self.busy_wait, priority=True)

    async def _terminal(self, tx: Transaction, fn: Callable[[], None], step: str) -> None:
        attempt = 0
        while True:
            try:
                await self.queue.enqueue_priority(self._work(fn))
                return
            except Exception as exc:
                if not self.adapter.is_busy(exc):
                    raise
                attempt += 1
                self._note_busy(tx.operation, step, attempt, exc)
                await self.queue.delay(self.busy_wait, priority=True)

    async def settle(
        self,
        tx: Transaction,
        error: BaseException | None = None,
        *,
        rollback: bool | None = None,
    ) -> None:
        """:meth:`end_transaction`, run to completion even if the caller is cancelled.

        A cancelled caller gets ``CancelledError`` at once; the COMMIT or
        ROLLBACK carries on, busy retries included, and the queue hold is
        released when it finishes.
        """
        finishing = asyncio.ensure_future(self.end_transaction(tx, error, rollback=rollback))
        try:
            await asyncio.shield(finishing)
        except asyncio.CancelledError:
            if not finishing.done():
                tx.detached = True
                finishing.add_done_callback(functools.partial(self._detached_done, tx, error))
            elif not finishing.cancelled():
                # Outcome already recorded on tx; nobody is left to see it
                finishing.exception()
            raise

    def _detached_done(
        self,
        tx: Transaction,
        error: BaseException | None,
        finishing: asyncio.Future,
    ) -> None:
        self.queue.release()
        if finishing.cancelled():
            return
        failure = finishing.exception()
        if failure is not None and failure is not error:
            logger.warning(
                "abandoned_transaction_failed",
                operation=tx.operation,
                state=tx.state.value,
                error=failure,
            )

    async def end_transaction(
        self,
        tx: Transaction,
        error: BaseException | None = None,
        *,
        rollback: bool | None = None,
    ) -> None:
        """Commit, or roll back and re-raise ``error``.

        Args:
            tx: Transaction to finish
            error: Error that ended the body, if any (implies rollback)
            rollback: Force a rollback even without an error
        """
        if rollback is None:
            rollback = error is not None

        if not rollback:
            tx.state = TransactionState.COMMITTING
            try:
                await self._terminal(tx, self.adapter.commit, "commit")
            except Exception:
                tx.state = TransactionState.FAILED
                raise
            tx.state = TransactionState.DONE
            return

        tx.state = TransactionState.ROLLING_BACK
        try:
            await self._terminal(tx, self.adapter.rollback, "rollback")
        except Exception as rollback_error:
            tx.state = TransactionState.FAILED
            if error is None:
                raise
            logger.warning(
                "rollback_failed",
                operation=tx.operation,
                error=rollback_error,
                original_error=error,
            )
        else:
            tx.state = TransactionState.FAILED if error is not None else TransactionState.DONE

        if error is not None:
            raise error


__all__ = [
    "DEFAULT_BUSY_WAIT",
    "Transaction",
    "TransactionRunner",
    "TransactionState",
]
