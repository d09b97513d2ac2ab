# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Email task model: one delivery attempt sequence for a message.

A task wraps an :class:`~mail_dispatch.models.Email` with the name of the
provider it is bound to, its priority and its retry bookkeeping. Only three
statuses are materialised: ``queued``, ``sent`` and ``failed``. A task that
is waiting for another attempt is still ``queued``; whether a retry is in
flight is derived from ``retry_count``.

Invariant:
    ``retry_count <= max_retries`` after every mutation, and a task whose
    ``retry_count`` equals ``max_retries`` is ``failed``.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .errors import EmailValidationError
from .models import Email, utc_now

DEFAULT_PRIORITY = 2
"""Mid-level priority used when the caller does not specify one."""


class TaskStatus(str, Enum):
    """Lifecycle status of an email task.

    Attributes:
        QUEUED: Waiting in the queue, possibly after failed attempts.
        SENT: Delivered (terminal).
        FAILED: Retries exhausted (terminal).
    """

    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"


class EmailTask(BaseModel):
    """Scheduled delivery of one email with retry and priority state.

    Attributes:
        task_id: Opaque unique ID, assigned at enqueue time.
        email: Message to deliver.
        provider_name: Provider bound at enqueue time.
        retry_count: Failed attempts so far.
        max_retries: Failed attempts after which the task is terminal.
        priority: Lower value is served first.
        status: Current lifecycle status.
        created_at: Creation timestamp.
        requested_at: Optional caller-supplied request time.
        last_error: Description of the most recent failure.
    """

    model_config = ConfigDict(extra="forbid")

    task_id: Annotated[str, Field(default="", description="Unique task identifier")]
    email: Email
    provider_name: Annotated[str, Field(default="", description="Provider bound at enqueue time")]
    retry_count: Annotated[int, Field(default=0, ge=0)]
    max_retries: Annotated[int, Field(default=3, ge=1)]
    priority: Annotated[int, Field(default=DEFAULT_PRIORITY)]
    status: TaskStatus = TaskStatus.QUEUED
    created_at: datetime = Field(default_factory=utc_now)
    requested_at: datetime | None = None
    last_error: str | None = None

    @model_validator(mode="after")
    def _check_retry_bounds(self) -> EmailTask:
        if self.retry_count > self.max_retries:
            raise ValueError("retry_count cannot exceed max_retries")
        return self

    def prepare(self) -> None:
        """Assign an ID if missing, reset status to queued and stamp times."""
        if not self.task_id:
            self.task_id = str(uuid.uuid4())
        self.created_at = utc_now()
        self.status = TaskStatus.QUEUED
        self.email.prepare_for_send()

    def validate_task(self) -> None:
        """Check the task and its email before it enters the queue.

        Raises:
            EmailValidationError: If the email or the provider binding is invalid.
        """
        if not self.provider_name:
            raise EmailValidationError("email provider is required")
        self.email.validate_for_send()

    @property
    def is_completed(self) -> bool:
        return self.status in (TaskStatus.SENT, TaskStatus.FAILED)

    @property
    def can_retry(self) -> bool:
        return not self.is_completed and self.retry_count < self.max_retries

    @property
    def is_retry_in_flight(self) -> bool:
        """True for a queued task that has already failed at least once."""
        return self.status == TaskStatus.QUEUED and self.retry_count > 0

    def mark_sent(self) -> None:
        self.status = TaskStatus.SENT
        self.last_error = None

    def mark_failed(self, error: str | None = None) -> None:
        """Finalize the task as failed; no further retries are possible."""
        self.status = TaskStatus.FAILED
        self.retry_count = self.max_retries
        if error is not None:
            self.last_error = error

    def increment_retry(self, error: str | None = None) -> None:
        """Record a failed attempt.

        The count is incremented first and eligibility is evaluated on the
        new value, so reaching ``max_retries`` finalizes the task.
        """
        if self.is_completed:
            return
        self.retry_count += 1
        if error is not None:
            self.last_error = error
        if self.retry_count >= self.max_retries:
            self.mark_failed()

    def is_valid_provider(self, provider_names: list[str]) -> bool:
        return self.provider_name in provider_names
