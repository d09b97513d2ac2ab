# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Priority queue of email tasks shared by the worker pool.

The queue is an in-memory binary min-heap ordered by ``task.priority``:
the task with the numerically smallest priority is popped first. Tasks with
equal priority are popped in an unspecified order; insertion order is NOT
preserved and callers must not rely on it.

Every mutation runs under a single ``asyncio.Lock`` held only for the heap
operation itself. The lock is never held across a network send, so one
slow delivery cannot stall the other workers.

Popping an empty queue returns ``None``. Workers either poll or block on
:meth:`TaskPriorityQueue.wait_for_task` with a timeout.

The queue is safe for coroutines sharing one event loop only. It is not
thread-safe: an ``asyncio.Lock`` does not guard against other threads or
processes, which would need an external lock or a shared broker.
The queue binds to the loop of its first mutation and raises ``RuntimeError``
when used from another one.

Example:
    Feeding and draining the queue::

        queue = TaskPriorityQueue()
        await queue.push(task)

        task = await queue.pop()
        if task is None:
            await queue.wait_for_task(timeout=1.0)
"""

from __future__ import annotations

import asyncio
import heapq
from dataclasses import dataclass, field

from .logger import get_logger
from .task import EmailTask


@dataclass(order=True)
class _HeapEntry:
    priority: int
    task: EmailTask = field(compare=False)


class TaskPriorityQueue:
    """Asyncio-safe min-heap of ``EmailTask`` objects.

    Attributes:
        lock: Asyncio lock guarding the heap.
        logger: Logger instance for diagnostic output.
    """

    def __init__(self, logger=None):
        self._heap: list[_HeapEntry] = []
        self.lock = asyncio.Lock()
        self._not_empty = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self.logger = logger or get_logger("TaskPriorityQueue")

    def __len__(self) -> int:
        return len(self._heap)

    def _check_loop(self) -> None:
        loop = asyncio.get_running_loop()
        if self._loop is None:
            self._loop = loop
        elif self._loop is not loop:
            raise RuntimeError("TaskPriorityQueue is bound to a different event loop")

    def peek(self) -> EmailTask | None:
        """Return the most urgent task without removing it."""
        return self._heap[0].task if self._heap else None

    async def push(self, task: EmailTask) -> None:
        """Insert a task in O(log n)."""
        self._check_loop()
        async with self.lock:
            heapq.heappush(self._heap, _HeapEntry(task.priority, task))
            self._not_empty.set()
        self.logger.debug(
            "Enqueued email task %s with priority %d (queue size %d)",
            task.task_id,
            task.priority,
            len(self._heap),
        )

    async def pop(self) -> EmailTask | None:
        """Remove and return the most urgent task, or ``None`` if empty."""
        self._check_loop()
        async with self.lock:
            if not self._heap:
                self._not_empty.clear()
                return None
            entry = heapq.heappop(self._heap)
            if not self._heap:
                self._not_empty.clear()
        return entry.task

    async def wait_for_task(self, timeout: float | None = None) -> bool:
        """Block until the queue may hold a task or the timeout elapses.

        Args:
            timeout: Maximum seconds to wait. ``None`` waits indefinitely.

        Returns:
            True if the queue was signalled non-empty, False on timeout. A
            True result does not guarantee the next ``pop`` succeeds: another
            worker may win the race.
        """
        if self._not_empty.is_set():
            return True
        try:
            await asyncio.wait_for(self._not_empty.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def snapshot(self) -> list[EmailTask]:
        """Return the enqueued tasks sorted by priority (for inspection only)."""
        return [entry.task for entry in sorted(self._heap)]

    async def clear(self) -> int:
        """Drop every enqueued task and return how many were removed."""
        self._check_loop()
        async with self.lock:
            removed = len(self._heap)
            self._heap.clear()
            self._not_empty.clear()
        return removed
