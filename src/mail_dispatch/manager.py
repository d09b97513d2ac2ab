# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Email manager: provider registry and the entry points used by the app.

The manager owns the provider registry and the current default provider.
Application code talks to it in two ways:

- :meth:`EmailManager.send` delivers synchronously through the default
  provider and returns the delivery ID. Errors propagate to the caller.
- :meth:`EmailManager.queue_email` validates the message, wraps it in an
  :class:`~mail_dispatch.task.EmailTask` bound to the current default
  provider and pushes it to the shared queue. Delivery happens later in the
  worker pool; the caller only learns whether enqueueing succeeded.

The registry is mutated only here, under the manager's own lock. Workers
look providers up by name and never modify the registry.

Example:
    Wiring the manager with a queue::

        config = load_config()
        queue = TaskPriorityQueue()
        manager = EmailManager(config, queue=queue)

        await manager.queue(["user@example.com"], "Welcome", "<p>Hello</p>")
"""

from __future__ import annotations

import asyncio

from .config import EmailConfig
from .errors import (
    EmailValidationError,
    ProviderConfigurationError,
    ProviderNotFoundError,
    QueueNotReadyError,
)
from .logger import get_logger
from .models import Attachment, Email, new_email
from .prometheus import MailMetrics
from .providers.base import EmailProvider
from .providers.smtp import SMTPProvider
from .queue import TaskPriorityQueue
from .retry import RetryPolicy
from .task import EmailTask

STANDARD_PROVIDER = "smtp"
"""Provider used when the configured default is not available."""


class EmailManager:
    """Registry of delivery providers plus the send and enqueue API.

    Attributes:
        config: Dispatch configuration.
        email_queue: Shared task queue, ``None`` until wired with :meth:`set_queue`.
        metrics: Optional Prometheus metrics.
        logger: Logger instance for diagnostic output.
    """

    def __init__(
        self,
        config: EmailConfig,
        queue: TaskPriorityQueue | None = None,
        providers: list[EmailProvider] | None = None,
        metrics: MailMetrics | None = None,
        logger=None,
    ):
        """Build the registry and select the default provider.

        Args:
            config: Dispatch configuration.
            queue: Task queue used by :meth:`queue_email`.
            providers: Providers to register. When ``None`` they are built
                from ``config`` (SMTP only, when complete and enabled).
            metrics: Optional metrics collector.
            logger: Custom logger instance.

        Raises:
            ProviderConfigurationError: If no usable default provider exists
                or email sending is disabled.
        """
        self.config = config
        self.email_queue = queue
        self.metrics = metrics
        self.logger = logger or get_logger("EmailManager")
        self._lock = asyncio.Lock()
        self._providers: dict[str, EmailProvider] = {}

        self.logger.info("Loading email providers...")
        for provider in providers if providers is not None else self._load_providers():
            self._add_provider(provider)

        self._default_name = self._select_default()

    def _load_providers(self) -> list[EmailProvider]:
        smtp = self.config.smtp
        if not (self.config.enabled and smtp.enabled):
            return []
        if not smtp.is_complete:
            self.logger.warning("SMTP provider is not fully configured (host, port and sender are required)")
            return []
        self.logger.info("SMTP provider configured (host=%s, sender_email=%s)", smtp.host, smtp.from_email)
        return [SMTPProvider(smtp, sender_name=self.config.sender_name)]

    def _select_default(self) -> str:
        preferred = self.config.provider
        if self.config.enabled and preferred in self._providers:
            self.logger.info("Default email provider configured: %s", preferred)
            return preferred

        self.logger.warning("Configured default provider %r not found, falling back to %s", preferred, STANDARD_PROVIDER)
        if self.config.enabled and STANDARD_PROVIDER in self._providers:
            return STANDARD_PROVIDER
        raise ProviderConfigurationError("no valid email provider configured or email sending is disabled")

    # ------------------------------------------------------------ registry
    async def register_provider(self, provider: EmailProvider) -> None:
        """Add (or replace) a provider under its own name.

        Raises:
            ProviderConfigurationError: If ``provider`` does not implement ``EmailProvider``.
        """
        async with self._lock:
            self._add_provider(provider)

    def _add_provider(self, provider: EmailProvider) -> None:
        if not isinstance(provider, EmailProvider):
            raise ProviderConfigurationError(f"object {provider!r} does not implement EmailProvider")
        self._providers[provider.name] = provider
        self.logger.debug("Registered email provider %s", provider.name)

    def get_provider(self, name: str) -> EmailProvider:
        """Return a registered provider.

        Raises:
            ProviderNotFoundError: If ``name`` is not registered.
        """
        try:
            return self._providers[name]
        except KeyError:
            raise ProviderNotFoundError(name) from None

    @property
    def provider_names(self) -> list[str]:
        return list(self._providers)

    @property
    def default_provider_name(self) -> str:
        return self._default_name

    @property
    def default_provider(self) -> EmailProvider:
        return self._providers[self._default_name]

    async def set_default_provider(self, name: str) -> None:
        """Switch the default provider.

        Raises:
            ProviderNotFoundError: If ``name`` is not registered.
            ProviderConfigurationError: If ``name`` is already the default.
        """
        async with self._lock:
            if name not in self._providers:
                self.logger.error("Failed to set default provider: provider %r not found", name)
                raise ProviderNotFoundError(name)
            if name == self._default_name:
                self.logger.warning("Attempted to reset the same default provider %r", name)
                raise ProviderConfigurationError(f"provider '{name}' is already the default provider")
            self._default_name = name
        self.logger.info("Default provider set to %s", name)

    def set_queue(self, queue: TaskPriorityQueue) -> None:
        self.email_queue = queue
        self.logger.info("Email queue set for EmailManager")

    # ---------------------------------------------------------------- send
    async def send(self, email: Email) -> str:
        """Deliver ``email`` now through the default provider.

        Returns:
            The provider delivery ID.

        Raises:
            EmailValidationError: If the message is invalid.
            DeliveryError: If the provider could not deliver it.
        """
        provider = self.default_provider
        try:
            result = await provider.send(email)
        except Exception as exc:
            self.logger.error(
                "Error sending email to %s (cc=%s, bcc=%s, subject=%r): %s",
                email.to,
                email.cc,
                email.bcc,
                email.subject,
                exc,
            )
            raise
        if self.metrics:
            self.metrics.inc_sent(provider.name)
        self.logger.info(
            "Email sent successfully (message_id=%s, to=%s, subject=%r)",
            result.message_id,
            email.to,
            email.subject,
        )
        return result.message_id

    async def queue_email(
        self,
        email: Email,
        priority: int | None = None,
        max_retries: int | None = None,
    ) -> EmailTask:
        """Validate ``email`` and enqueue it for asynchronous delivery.

        Out-of-range overrides are ignored: ``priority`` must fall within the
        configured bounds and ``max_retries`` within ``1..config max``.

        Returns:
            The enqueued task.

        Raises:
            QueueNotReadyError: If no queue has been wired in.
            EmailValidationError: If the message is invalid; nothing is enqueued.
        """
        if self.email_queue is None:
            self.logger.error("Email queue is not initialized")
            raise QueueNotReadyError("email queue not initialized")

        try:
            email.validate_for_send()
        except EmailValidationError as exc:
            self.logger.error("Invalid email detected for %s: %s", email.to, exc)
            raise
        email.clean_metadata()

        task = EmailTask(
            email=email,
            provider_name=self._default_name,
            max_retries=self._resolve_max_retries(max_retries),
            priority=self._resolve_priority(priority),
        )
        task.prepare()
        await self.email_queue.push(task)
        if self.metrics:
            self.metrics.set_pending(len(self.email_queue))

        self.logger.info(
            "Email added to queue (task_id=%s, to=%s, subject=%r, priority=%d, max_retries=%d)",
            task.task_id,
            email.to,
            email.subject,
            task.priority,
            task.max_retries,
        )
        return task

    async def queue(
        self,
        to: list[str],
        subject: str,
        body: str,
        cc: list[str] | None = None,
        bcc: list[str] | None = None,
        attachments: list[Attachment] | None = None,
        metadata: dict[str, str] | None = None,
        priority: int | None = None,
        max_retries: int | None = None,
    ) -> EmailTask:
        """Build an email from plain values and enqueue it."""
        email = new_email(
            to,
            subject,
            body,
            cc=cc,
            bcc=bcc,
            attachments=attachments,
            metadata=metadata,
            sender=self.config.sender_email,
        )
        return await self.queue_email(email, priority=priority, max_retries=max_retries)

    def _resolve_priority(self, priority: int | None) -> int:
        if priority is None:
            return self.config.default_priority
        if self.config.min_priority <= priority <= self.config.max_priority:
            return priority
        self.logger.warning(
            "Ignoring out of range priority %s, using default %d",
            priority,
            self.config.default_priority,
        )
        return self.config.default_priority

    def _resolve_max_retries(self, max_retries: int | None) -> int:
        ceiling = self.config.retry.max_retries
        if max_retries is None:
            return ceiling
        if 0 < max_retries <= ceiling:
            return max_retries
        self.logger.warning("Ignoring max_retries override %s, using %d", max_retries, ceiling)
        return ceiling

    # ----------------------------------------------------------- maintenance
    async def health_check(self) -> None:
        """Health-check every registered provider; the first failure propagates."""
        for name, provider in list(self._providers.items()):
            try:
                await provider.health_check()
            except Exception as exc:
                self.logger.error("Health check failed for provider %s: %s", name, exc)
                raise
            self.logger.info("Health check passed for provider %s", name)

    async def retry_failed_tasks(self, retry_policy: RetryPolicy) -> int:
        """Requeue every parked task that is still eligible, right away.

        Tasks are claimed from the retry store before being pushed, so a
        pending delayed requeue for the same task becomes a no-op.

        Returns:
            Number of tasks pushed back onto the queue.

        Raises:
            QueueNotReadyError: If no queue has been wired in.
        """
        if self.email_queue is None:
            raise QueueNotReadyError("email queue not initialized")

        requeued = 0
        for task in retry_policy.get_failed_tasks():
            claimed = retry_policy.claim_task(task.task_id)
            if claimed is None or claimed.is_completed:
                continue
            await self.email_queue.push(claimed)
            requeued += 1
            self.logger.info("Requeued failed email task %s (retry_count=%d)", claimed.task_id, claimed.retry_count)
        if self.metrics:
            self.metrics.set_pending(len(self.email_queue))
        return requeued
