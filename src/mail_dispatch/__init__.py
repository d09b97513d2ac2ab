"""Asynchronous email dispatch for the budget planner backend.

This package provides the outbound email pipeline of the application:

- Priority queue of email tasks drained by a pool of asyncio workers
- Retry with a configurable backoff schedule and admin failure alerts
- SMTP delivery with TLS, STARTTLS and plaintext fallback
- Provider registry with a switchable default provider
- Prometheus metrics for monitoring

Example:
    Wiring the pipeline at application startup::

        from mail_dispatch.config import load_config
        from mail_dispatch.manager import EmailManager
        from mail_dispatch.queue import TaskPriorityQueue
        from mail_dispatch.retry import RetryPolicy
        from mail_dispatch.worker import EmailWorkerPool

        config = load_config()
        queue = TaskPriorityQueue()
        retry_policy = RetryPolicy(config.retry.max_retries, config.retry.intervals)
        manager = EmailManager(config, queue=queue)
        pool = EmailWorkerPool.from_config(config, manager, queue, retry_policy)
        await pool.start()

Authors:
    Softwell S.r.l.
"""
