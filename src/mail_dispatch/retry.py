# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Retry policy: backoff schedule and the store of parked tasks.

The policy answers two independent questions:

- ``interval_for(attempt)``: how long to wait before retry ``attempt``
  (0-indexed). Attempts past the end of the schedule reuse the last value.
- ``is_eligible(task)``: whether the task may be retried at all.

Neither call sleeps. Waiting is done by the worker pool with a scheduled
requeue, so no worker is held for the duration of a backoff.

The policy also keeps a small in-memory table of tasks parked between a
failure and their delayed requeue, keyed by task ID. The table lives in
process memory only and is lost on restart.
Like the queue, the table assumes every caller runs on the same event loop.
It takes no lock and is not thread-safe; use from several threads or
processes needs external locking.
"""

from __future__ import annotations

from collections.abc import Sequence

from .config import DEFAULT_RETRY_INTERVALS
from .errors import RetryExhaustedError
from .logger import get_logger
from .task import EmailTask


class RetryPolicy:
    """Backoff schedule plus the table of tasks awaiting retry.

    Attributes:
        max_retries: Global retry ceiling copied from configuration.
        intervals: Backoff in seconds indexed by retry attempt.
        logger: Logger instance for diagnostic output.
    """

    def __init__(self, max_retries: int = 3, intervals: Sequence[float] | None = None, logger=None):
        """Initialize the policy.

        Args:
            max_retries: Global retry ceiling.
            intervals: Backoff schedule in seconds. Empty or ``None`` falls
                back to ``DEFAULT_RETRY_INTERVALS`` (1, 5, 10 minutes).
            logger: Custom logger instance.
        """
        self.logger = logger or get_logger("RetryPolicy")
        if not intervals:
            self.logger.warning("No retry intervals provided, falling back to default intervals")
            intervals = DEFAULT_RETRY_INTERVALS
        self.max_retries = max_retries
        self.intervals: tuple[float, ...] = tuple(float(value) for value in intervals)
        self._failed_tasks: dict[str, EmailTask] = {}

    def __len__(self) -> int:
        return len(self._failed_tasks)

    def interval_for(self, attempt: int) -> float:
        """Return the backoff in seconds before retry ``attempt``."""
        if attempt < 0:
            return self.intervals[0]
        if attempt >= len(self.intervals):
            return self.intervals[-1]
        return self.intervals[attempt]

    @staticmethod
    def is_eligible(task: EmailTask) -> bool:
        """True if the task is not terminal and has retries left."""
        return task.can_retry

    # ------------------------------------------------------------ parked tasks
    def save_failed_task(self, task: EmailTask) -> None:
        """Park a task until its retry is due.

        Raises:
            RetryExhaustedError: If the task has no retries left.
        """
        if not self.is_eligible(task):
            self.logger.warning(
                "Max retries reached, discarding task %s (retry_count=%d)",
                task.task_id,
                task.retry_count,
            )
            raise RetryExhaustedError(task.task_id, task.max_retries, task.last_error)
        self._failed_tasks[task.task_id] = task
        self.logger.debug("Saved failed email task %s for retry (retry_count=%d)", task.task_id, task.retry_count)

    def get_failed_tasks(self) -> list[EmailTask]:
        """Return parked tasks that are still eligible for retry."""
        tasks = [task for task in self._failed_tasks.values() if self.is_eligible(task)]
        self.logger.debug("Fetched failed tasks for retry (eligible=%d)", len(tasks))
        return tasks

    def claim_task(self, task_id: str) -> EmailTask | None:
        """Remove and return a parked task; ``None`` if someone else took it."""
        return self._failed_tasks.pop(task_id, None)

    def remove_task(self, task_id: str) -> bool:
        """Drop a parked task after success or final failure."""
        if self._failed_tasks.pop(task_id, None) is not None:
            self.logger.debug("Removed task %s from failed task store", task_id)
            return True
        return False

    def has_failed_task(self, task_id: str) -> bool:
        return task_id in self._failed_tasks

    def get_task_by_id(self, task_id: str) -> EmailTask:
        """Return a parked task.

        Raises:
            KeyError: If no task with that ID is parked.
        """
        try:
            return self._failed_tasks[task_id]
        except KeyError:
            raise KeyError(f"task not found: {task_id}") from None

    def clear_failed_tasks(self) -> None:
        self._failed_tasks.clear()
        self.logger.info("Cleared all failed email tasks from retry store")
