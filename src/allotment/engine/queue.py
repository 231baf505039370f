"""Serial Task Queue — single-flight scheduling of storage work.

WHY
───
An engine owns one connection, and neither backend allows two statements to
run on one connection at the same time.  Every storage call an engine makes
therefore goes through one ``SerialTaskQueue``, which runs exactly one work
item at a time no matter how many operations are in flight.

ARCHITECTURE
────────────
::

    SerialTaskQueue
      ├── .enqueue(work)             ─ back of the queue (new request)
      ├── .enqueue(work, hold=True)  ─ back; owner keeps the connection
      ├── .enqueue_priority(work)    ─ front (continuation of held work)
      ├── .delay(seconds, priority)  ─ pure timer task
      ├── .release()                 ─ owner gives the connection back
      └── .close()                   ─ fail everything not yet started

    front deque ──▶ ┐
                    ├──▶ runner (one item at a time) ──▶ future
    back deque  ──▶ ┘   (back is skipped while held)

Holding
───────
A transaction begins with a held item.  From the moment that item starts
until ``release()``, items waiting at the back are not started; only
priority items run.  The owner's next step is submitted after it has awaited
the previous one, so without the hold an unrelated request could slip in
between two statements of one transaction.

Example::

    queue = SerialTaskQueue()
    await queue.enqueue(begin, hold=True)
    try:
        await queue.enqueue_priority(insert)
        await queue.enqueue_priority(commit)
    finally:
        queue.release()
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from allotment.core.errors import QueueClosedError
from allotment.core.logging import get_logger

logger = get_logger(__name__)

Work = Callable[[], Awaitable[Any]]


@dataclass
class _Item:
    work: Work
    future: asyncio.Future
    hold: bool = False


class SerialTaskQueue:
    """Runs async work items one at a time, FIFO with front insertion."""

    def __init__(self, name: str = "allotment"):
        self.name = name
        self._front: deque[_Item] = deque()
        self._back: deque[_Item] = deque()
        self._held = False
        self._running = False
        self._closed = False
        self._wakeup: asyncio.Event | None = None
        self._runner: asyncio.Task | None = None

    # -- Introspection -----------------------------------------------------

    @property
    def pending(self) -> int:
        """Number of items waiting to start."""
        return len(self._front) + len(self._back)

    @property
    def running(self) -> bool:
        """Whether an item is executing right now."""
        return self._running

    @property
    def held(self) -> bool:
        """Whether an owner currently holds the connection."""
        return self._held

    @property
    def closed(self) -> bool:
        return self._closed

    # -- Submission --------------------------------------------------------

    def enqueue(self, work: Work, *, hold: bool = False) -> asyncio.Future:
        """Append ``work`` at the back; returns a future for its result."""
        return self._submit(work, front=False, hold=hold)

    def enqueue_priority(self, work: Work) -> asyncio.Future:
        """Insert ``work`` at the front; returns a future for its result."""
        return self._submit(work, front=True, hold=False)

    def delay(self, seconds: float, *, priority: bool = False) -> asyncio.Future:
        """Push a timer task that occupies the queue for ``seconds``."""
        return self._submit(lambda: asyncio.sleep(seconds), front=priority, hold=False)

    def release(self) -> None:
        """End the current hold so back-of-queue work may start again."""
        self._held = False
        self._wake()

    def close(self) -> None:
        """Fail every item that has not started; refuse new submissions."""
        self._closed = True
        while self._front or self._back:
            item = self._front.popleft() if self._front else self._back.popleft()
            if not item.future.done():
                item.future.set_exception(QueueClosedError(f"Task queue {self.name!r} is closed"))
        self._held = False
        self._wake()

    # -- Internals ---------------------------------------------------------

    def _submit(self, work: Work, *, front: bool, hold: bool) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        if self._closed:
            future.set_exception(QueueClosedError(f"Task queue {self.name!r} is closed"))
            return future

        item = _Item(work=work, future=future, hold=hold)
        if front:
            self._front.appendleft(item)
        else:
            self._back.append(item)

        if self._runner is None or self._runner.done():
            self._runner = loop.create_task(self._drain(), name=f"{self.name}-queue")
        else:
            self._wake()
        return future

    def _wake(self) -> None:
        if self._wakeup is not None:
            self._wakeup.set()

    def _next_item(self) -> _Item | None:
        if self._front:
            return self._front.popleft()
        if not self._held and self._back:
            return self._back.popleft()
        return None

    async def _drain(self) -> None:
        while True:
            item = self._next_item()

            if item is None:
                if not self._held or self._closed:
                    return
                # Owner is between two steps
                self._wakeup = asyncio.Event()
                try:
                    await self._wakeup.wait()
                finally:
                    self._wakeup = None
                continue

            if item.future.done():
                # Caller gave up before the item started
                continue

            await self._run(item)

    async def _run(self, item: _Item) -> None:
        self._running = True
        if item.hold:
            self._held = True
        try:
            result = await item.work()
        except Exception as exc:
            if item.hold:
                self._held = False
            if not item.future.done():
                item.future.set_exception(exc)
        else:
            if not item.future.done():
                item.future.set_result(result)
        finally:
            self._running = False


__all__ = [
    "SerialTaskQueue",
    "Work",
]
