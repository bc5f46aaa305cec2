"""Bounded-concurrency work queue."""

import asyncio
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Generic, Optional, TypeVar

import structlog

from wrasse.errors import QueueClosedError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

Worker = Callable[[T], Awaitable[Any]]
ErrorHook = Callable[[T, Exception], None]


class WorkQueue(Generic[T]):
    """
    Runs a worker over pushed items with at most ``limit`` in flight.

    - push() enqueues; items start as soon as a slot is free
    - a failing item calls the error hook and never stops the queue
    - close() forbids further pushes; join() returns once closed and drained
    - completion order is not guaranteed
    """

    def __init__(
        self,
        worker: Worker,
        limit: int = 10,
        name: str = "queue",
        on_error: Optional[ErrorHook] = None,
    ):
        if limit < 1:
            raise ValueError("limit must be >= 1")

        self._worker = worker
        self._limit = limit
        self._name = name
        self._on_error = on_error

        self._pending: Deque[T] = deque()
        self._tasks: set[asyncio.Task] = set()
        self._closed = False
        self._drained = asyncio.Event()

        self.completed = 0
        self.failed = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def npending(self) -> int:
        return len(self._pending)

    @property
    def nactive(self) -> int:
        return len(self._tasks)

    def push(self, item: T) -> None:
        """Enqueue an item. Raises QueueClosedError after close()."""
        if self._closed:
            raise QueueClosedError(f"{self._name}: push after close")

        self._drained.clear()
        self._pending.append(item)
        self._schedule()

    def close(self) -> None:
        """No more items will be pushed."""
        self._closed = True
        self._check_drained()

    async def join(self) -> None:
        """Wait until the queue is closed and every item has finished."""
        await self._drained.wait()

    async def abort(self) -> None:
        """Close, drop pending items and cancel the ones in flight."""
        self._closed = True
        self._pending.clear()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._check_drained()

    def _schedule(self) -> None:
        while self._pending and len(self._tasks) < self._limit:
            item = self._pending.popleft()
            task = asyncio.create_task(self._run(item))
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)

    async def _run(self, item: T) -> None:
        try:
            await self._worker(item)
            self.completed += 1
        except Exception as e:
            self.failed += 1
            logger.debug("queue_item_failed", queue=self._name, error=str(e))
            if self._on_error is not None:
                self._on_error(item, e)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        self._schedule()
        self._check_drained()

    def _check_drained(self) -> None:
        if self._closed and not self._pending and not self._tasks:
            self._drained.set()
