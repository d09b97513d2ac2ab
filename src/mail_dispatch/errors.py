# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Exception hierarchy for the mail dispatch pipeline.

Every error carries a short machine-readable ``code`` so callers in the
HTTP layer can map failures to responses without string matching.

Propagation rules:
    - ``EmailValidationError`` and ``ProviderConfigurationError`` are raised
      synchronously to the caller of the manager.
    - ``TransportError`` and ``DeliveryError`` are raised by providers and
      consumed by the worker pool; they never reach the code that enqueued
      the message.
    - ``RetryExhaustedError`` is recorded on a task when it becomes terminal.
"""

from __future__ import annotations


class MailDispatchError(Exception):
    """Base class for all mail dispatch errors."""

    default_code = "mail_dispatch_error"

    def __init__(self, message: str = "", *, code: str | None = None):
        super().__init__(message)
        self.code = code or self.default_code


class EmailValidationError(MailDispatchError, ValueError):
    """Raised when a message is malformed and must not be sent."""

    default_code = "invalid_email"


class TransportError(MailDispatchError):
    """A single delivery method failed (connect, handshake, auth, data)."""

    default_code = "transport_failed"

    def __init__(self, method: str, message: str):
        super().__init__(f"{method}: {message}")
        self.method = method


class DeliveryError(MailDispatchError):
    """Every delivery method failed for one send attempt."""

    default_code = "delivery_failed"

    def __init__(self, message: str, last_error: Exception | None = None):
        super().__init__(message)
        self.last_error = last_error


class RetryExhaustedError(MailDispatchError):
    """A task reached its maximum retry count."""

    default_code = "retries_exhausted"

    def __init__(self, task_id: str, max_retries: int, last_error: str | None = None):
        message = f"Max retries ({max_retries}) exceeded for task {task_id}"
        if last_error:
            message = f"{message}: {last_error}"
        super().__init__(message)
        self.task_id = task_id
        self.max_retries = max_retries


class ProviderConfigurationError(MailDispatchError):
    """Provider setup is unusable (no default provider, bad settings)."""

    default_code = "provider_configuration"


class ProviderNotFoundError(MailDispatchError, KeyError):
    """A provider name is not present in the registry."""

    default_code = "provider_not_found"

    def __init__(self, name: str):
        super().__init__(f"Provider '{name}' not found")
        self.name = name

    def __str__(self) -> str:
        return self.args[0]


class QueueNotReadyError(MailDispatchError):
    """The manager was asked to enqueue before a queue was wired in."""

    default_code = "queue_not_ready"
