# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Delivery provider interface.

A provider is anything exposing the four members below; there is no base
class to inherit from. SMTP is the reference implementation, HTTP-API
services are further variants of the same interface. Tests inject stub
providers through this interface instead of patching module globals.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from ..models import DeliveryResult, Email


@runtime_checkable
class EmailProvider(Protocol):
    """Protocol for email delivery providers used by the manager and workers."""

    @property
    def name(self) -> str:
        """Registry name of the provider (e.g. ``"smtp"``)."""

    async def send(self, email: Email) -> DeliveryResult:
        """Deliver one message.

        Raises:
            EmailValidationError: If the message is invalid; nothing is sent.
            DeliveryError: If every delivery method failed.
        """

    async def batch_send(self, emails: list[Email]) -> list[DeliveryResult]:
        """Deliver several messages independently.

        Returns one result per input message, in order. A failing message
        yields a ``failed`` result and never aborts the rest of the batch.
        """

    async def health_check(self) -> None:
        """Check reachability without sending mail.

        Raises:
            TransportError: If the provider cannot be reached.
        """
