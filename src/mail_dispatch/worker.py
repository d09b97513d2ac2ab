# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Worker pool draining the task queue.

``N`` asyncio workers share one :class:`~mail_dispatch.queue.TaskPriorityQueue`
and one :class:`~mail_dispatch.retry.RetryPolicy`. Each worker loops:

1. pop the most urgent task, or wait up to ``poll_interval`` when empty;
2. skip tasks that are already ``sent`` or ``failed``;
3. deliver through the provider the task was bound to at enqueue time.

On failure the backoff is read for the current attempt, the retry count is
incremented, and a still-queued task is parked in the retry store while a
timer pushes it back after the backoff. The worker itself never sleeps
through a backoff. A task that runs out of retries is finalized as
``failed`` and an admin alert task is enqueued for it. Alert tasks are
single-shot: a failing alert is not retried and never alerts again. A
message the provider rejects as invalid fails at once, without retries.

``stop()`` prevents new pops and lets in-flight sends finish. Delayed
requeues already scheduled are left to fire.

Example:
    Running the pool::

        pool = EmailWorkerPool(manager, queue, retry_policy, worker_count=4, poll_interval=1.0,
                               admin_email="admin@example.com")
        await pool.start()
        ...
        await pool.stop()
"""

from __future__ import annotations

import asyncio
import html

from .config import EmailConfig
from .errors import EmailValidationError, RetryExhaustedError
from .logger import get_logger
from .manager import EmailManager
from .models import Email, new_email
from .prometheus import MailMetrics
from .queue import TaskPriorityQueue
from .retry import RetryPolicy
from .task import EmailTask, TaskStatus

ADMIN_ALERT_PRIORITY = 0
"""Most urgent priority, used for failure alerts."""

ADMIN_ALERT_TYPE = "admin_failure_alert"


class EmailWorkerPool:
    """Fixed-size pool of asyncio workers consuming email tasks.

    Attributes:
        manager: Provider registry used to resolve bound providers.
        queue: Shared task queue.
        retry_policy: Backoff schedule and parked-task store.
        worker_count: Number of concurrent workers.
        poll_interval: Seconds to wait on an empty queue.
        admin_email: Recipient of failure alerts; alerts are skipped when empty.
        alerts_emitted: Number of admin alert tasks enqueued so far.
    """

    def __init__(
        self,
        manager: EmailManager,
        queue: TaskPriorityQueue,
        retry_policy: RetryPolicy,
        worker_count: int = 4,
        poll_interval: float = 1.0,
        admin_email: str = "",
        metrics: MailMetrics | None = None,
        log_delivery_activity: bool = False,
        logger=None,
    ):
        if worker_count < 1:
            raise ValueError("worker_count must be at least 1")
        self.manager = manager
        self.queue = queue
        self.retry_policy = retry_policy
        self.worker_count = worker_count
        self.poll_interval = poll_interval
        self.admin_email = admin_email
        self.metrics = metrics
        self.logger = logger or get_logger("EmailWorkerPool")
        self._log_delivery_activity = log_delivery_activity

        self._stop = asyncio.Event()
        self._workers: list[asyncio.Task] = []
        self._requeue_timers: dict[str, asyncio.TimerHandle] = {}
        self._requeue_jobs: set[asyncio.Task] = set()
        self.alerts_emitted = 0

    @classmethod
    def from_config(
        cls,
        config: EmailConfig,
        manager: EmailManager,
        queue: TaskPriorityQueue,
        retry_policy: RetryPolicy,
        metrics: MailMetrics | None = None,
    ) -> EmailWorkerPool:
        return cls(
            manager,
            queue,
            retry_policy,
            worker_count=config.worker.count,
            poll_interval=config.worker.poll_interval,
            admin_email=config.admin_email,
            metrics=metrics,
            log_delivery_activity=config.log_delivery_activity,
        )

    @property
    def is_running(self) -> bool:
        return any(not worker.done() for worker in self._workers)

    @property
    def pending_requeues(self) -> int:
        """Number of delayed requeues that have not fired yet."""
        return sum(1 for task_id in self._requeue_timers if self.retry_policy.has_failed_task(task_id))

    # ----------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Spawn the workers. Calling it on a running pool does nothing."""
        if self.is_running:
            self.logger.warning("Worker pool already running")
            return
        self._stop.clear()
        self._workers = [
            asyncio.create_task(self._worker_loop(index), name=f"email-worker-{index}")
            for index in range(self.worker_count)
        ]
        self.logger.info("Started %d email workers", self.worker_count)

    async def stop(self) -> None:
        """Signal the workers to stop and wait for in-flight sends to finish."""
        self._stop.set()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self.logger.info("Email workers stopped (pending requeues: %d)", self.pending_requeues)

    async def _worker_loop(self, worker_id: int) -> None:
        self.logger.debug("Email worker %d started", worker_id)
        while not self._stop.is_set():
            try:
                task = await self.queue.pop()
                if task is None:
                    await self.queue.wait_for_task(timeout=self.poll_interval)
                    continue
                if task.is_completed:
                    self.logger.debug("Skipping completed task %s (status=%s)", task.task_id, task.status.value)
                    continue
                await self.process_task(task)
            except Exception as exc:  # pragma: no cover
                self.logger.exception("Unhandled error in email worker %d: %s", worker_id, exc)
        self.logger.debug("Email worker %d exiting", worker_id)

    # ------------------------------------------------------------- processing
    async def process_task(self, task: EmailTask) -> bool:
        """Attempt delivery of one task and apply the retry rules.

        Returns:
            True if the email was delivered.
        """
        if task.is_completed:
            return False

        if self._log_delivery_activity:
            self.logger.info(
                "Delivery attempt for task %s via %s (attempt %d/%d, priority=%d)",
                task.task_id,
                task.provider_name,
                task.retry_count + 1,
                task.max_retries,
                task.priority,
            )
        try:
            provider = self.manager.get_provider(task.provider_name)
            result = await provider.send(task.email)
        except Exception as exc:
            await self._handle_failure(task, exc)
            return False

        task.mark_sent()
        self.retry_policy.remove_task(task.task_id)
        if self.metrics:
            self.metrics.inc_sent(task.provider_name)
            self.metrics.set_pending(len(self.queue))
        self._log_delivery_event(task, message_id=result.message_id)
        return True

    async def _handle_failure(self, task: EmailTask, exc: Exception) -> None:
        error = str(exc) or type(exc).__name__

        # An invalid message fails the same way on every attempt.
        if isinstance(exc, EmailValidationError):
            task.mark_failed(f"invalid email: {error}")
            await self._finalize_failure(task, reason="Invalid message")
            return

        delay = self.retry_policy.interval_for(task.retry_count)
        task.increment_retry(error)

        if task.status == TaskStatus.FAILED:
            task.last_error = str(RetryExhaustedError(task.task_id, task.max_retries, error))
            await self._finalize_failure(task, reason="Max retries exceeded")
            return

        self.retry_policy.save_failed_task(task)
        self._schedule_requeue(task.task_id, delay)
        if self.metrics:
            self.metrics.inc_retried(task.provider_name)
        self._log_delivery_event(task, delay=delay)

    async def _finalize_failure(self, task: EmailTask, reason: str) -> None:
        self.retry_policy.remove_task(task.task_id)
        self.cancel_requeue(task.task_id)
        if self.metrics:
            self.metrics.inc_error(task.provider_name)
        self._log_delivery_event(task)
        if self._is_admin_alert(task):
            self.logger.error("Admin alert task %s failed, not raising another alert", task.task_id)
            return
        await self._emit_admin_alert(task, reason)

    # ---------------------------------------------------------------- requeue
    def _schedule_requeue(self, task_id: str, delay: float) -> None:
        loop = asyncio.get_running_loop()
        self.cancel_requeue(task_id)
        self._requeue_timers[task_id] = loop.call_later(delay, self._fire_requeue, task_id)

    def cancel_requeue(self, task_id: str) -> bool:
        """Drop the delayed requeue of ``task_id``; True if one was pending."""
        handle = self._requeue_timers.pop(task_id, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    async def retry_failed_tasks(self) -> int:
        """Push every parked task back now, cancelling their delayed requeues.

        Returns:
            Number of tasks pushed back onto the queue.
        """
        requeued = await self.manager.retry_failed_tasks(self.retry_policy)
        for task_id in list(self._requeue_timers):
            if not self.retry_policy.has_failed_task(task_id):
                self.cancel_requeue(task_id)
        return requeued

    def _fire_requeue(self, task_id: str) -> None:
        self._requeue_timers.pop(task_id, None)
        job = asyncio.ensure_future(self._requeue(task_id))
        self._requeue_jobs.add(job)
        job.add_done_callback(self._requeue_jobs.discard)

    async def _requeue(self, task_id: str) -> None:
        task = self.retry_policy.claim_task(task_id)
        if task is None:
            self.logger.debug("Task %s already requeued", task_id)
            return
        if task.is_completed:
            return
        await self.queue.push(task)
        if self.metrics:
            self.metrics.set_pending(len(self.queue))
        self.logger.debug("Requeued task %s after backoff (retry_count=%d)", task_id, task.retry_count)

    # ------------------------------------------------------------ admin alerts
    @staticmethod
    def _is_admin_alert(task: EmailTask) -> bool:
        return task.email.metadata.get("type") == ADMIN_ALERT_TYPE

    def build_admin_alert(self, task: EmailTask, reason: str = "Max retries exceeded") -> Email:
        """Build the notification sent to the administrator for a failed task."""
        email = task.email
        rows = [
            ("Task ID", task.task_id),
            ("Recipients", email.join_recipients()),
            ("Subject", email.subject),
            ("Provider", task.provider_name),
            ("Priority", str(task.priority)),
            ("Retries", f"{task.retry_count}/{task.max_retries}"),
            ("Reason", reason),
            ("Last error", task.last_error or "-"),
        ]
        items = "\n".join(f"<li><strong>{label}:</strong> {html.escape(value)}</li>" for label, value in rows)
        body = (
            "<h2>Email delivery failure</h2>\n"
            "<p>An email could not be delivered and will not be retried.</p>\n"
            f"<ul>\n{items}\n</ul>\n"
        )
        return new_email(
            [self.admin_email],
            f"[Alert] Email delivery failed for task {task.task_id}",
            body,
            metadata={"type": ADMIN_ALERT_TYPE, "task_id": task.task_id},
            sender=self.manager.config.sender_email,
        )

    async def _emit_admin_alert(self, task: EmailTask, reason: str) -> None:
        if not self.admin_email:
            self.logger.warning("No admin email configured, skipping failure alert for task %s", task.task_id)
            return
        alert = EmailTask(
            email=self.build_admin_alert(task, reason),
            provider_name=self.manager.default_provider_name,
            priority=ADMIN_ALERT_PRIORITY,
            max_retries=1,
        )
        alert.prepare()
        await self.queue.push(alert)
        self.alerts_emitted += 1
        if self.metrics:
            self.metrics.inc_alert(alert.provider_name)
        self.logger.warning("Admin alert task %s enqueued for failed task %s", alert.task_id, task.task_id)

    def _log_delivery_event(self, task: EmailTask, *, message_id: str | None = None, delay: float | None = None) -> None:
        """Audit-log a delivery outcome with recipients, subject and delivery ID or error."""
        email = task.email
        match task.status:
            case TaskStatus.SENT:
                self.logger.info(
                    "Email sent for task %s to %s (subject=%r, provider=%s, message_id=%s)",
                    task.task_id,
                    email.all_recipients(),
                    email.subject,
                    task.provider_name,
                    message_id or "-",
                )
            case TaskStatus.FAILED:
                self.logger.error(
                    "Delivery failed for task %s to %s (subject=%r, provider=%s, retries=%d/%d): %s",
                    task.task_id,
                    email.all_recipients(),
                    email.subject,
                    task.provider_name,
                    task.retry_count,
                    task.max_retries,
                    task.last_error,
                )
            case TaskStatus.QUEUED:
                self.logger.warning(
                    "Delivery attempt %d/%d failed for task %s to %s (subject=%r, provider=%s), retrying in %.1fs: %s",
                    task.retry_count,
                    task.max_retries,
                    task.task_id,
                    email.all_recipients(),
                    email.subject,
                    task.provider_name,
                    delay or 0.0,
                    task.last_error,
                )
