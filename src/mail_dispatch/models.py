# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models for email payloads and delivery results.

Models:
    - Attachment: file attached to an email
    - Email: the message handed to a delivery provider
    - DeliveryResult: outcome of one provider send

Structural typing is enforced by pydantic at construction time. Semantic
validation (recipients present, addresses well formed, allow-listed
attachment types) is a separate :meth:`Email.validate_for_send` step so that
an invalid message can still be represented, logged and rejected with a
domain error instead of a pydantic ``ValidationError``.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field

from .errors import EmailValidationError
from .logger import get_logger

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
METADATA_KEY_PATTERN = re.compile(r"^[a-z0-9_\-]+$")

ALLOWED_CONTENT_TYPES = frozenset(
    {
        "application/pdf",
        "image/png",
        "image/jpeg",
        "text/plain",
    }
)

logger = get_logger("EmailModels")


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def is_valid_address(address: str) -> bool:
    """Check the basic shape of an email address."""
    return bool(address) and EMAIL_PATTERN.fullmatch(address) is not None


def has_line_break(value: str) -> bool:
    """True if ``value`` would split a header line."""
    return "\r" in value or "\n" in value


class DeliveryStatus(str, Enum):
    """Outcome of a single provider send."""

    SENT = "sent"
    FAILED = "failed"


class Attachment(BaseModel):
    """Email attachment carried inline with the message.

    Attributes:
        filename: Name shown to the recipient.
        content_type: Declared MIME type, must be in ``ALLOWED_CONTENT_TYPES``.
        content: Raw file bytes.
    """

    model_config = ConfigDict(extra="forbid")

    filename: Annotated[str, Field(default="", description="Attachment filename")]
    content_type: Annotated[str, Field(default="", description="Declared MIME type")]
    content: Annotated[bytes, Field(default=b"", repr=False, description="Binary content")]


class Email(BaseModel):
    """Email message payload.

    Attributes:
        id: Optional caller-side tracking ID.
        to: Primary recipients.
        cc: Carbon-copy recipients.
        bcc: Blind carbon-copy recipients (envelope only).
        sender: Sender address; empty means the provider default.
        subject: Subject line.
        body: HTML (or plain text) body.
        attachments: Inline attachments.
        metadata: Free-form string tags used for auditing.
        sent_at: Set when the message is handed to a provider.
    """

    model_config = ConfigDict(extra="forbid")

    id: Annotated[str | None, Field(default=None, description="Tracking ID")]
    to: Annotated[list[str], Field(default_factory=list, description="Recipients")]
    cc: Annotated[list[str], Field(default_factory=list, description="CC recipients")]
    bcc: Annotated[list[str], Field(default_factory=list, description="BCC recipients")]
    sender: Annotated[str, Field(default="", description="Sender address")]
    subject: Annotated[str, Field(default="", description="Subject line")]
    body: Annotated[str, Field(default="", description="Email body, HTML or plain text")]
    attachments: Annotated[list[Attachment], Field(default_factory=list)]
    metadata: Annotated[dict[str, str], Field(default_factory=dict)]
    sent_at: Annotated[datetime | None, Field(default=None)]

    def all_recipients(self) -> list[str]:
        """Return to, cc and bcc recipients in that order."""
        return [*self.to, *self.cc, *self.bcc]

    def join_recipients(self) -> str:
        """Return every recipient as a comma-separated string."""
        return ", ".join(self.all_recipients())

    def validate_for_send(self) -> None:
        """Check that the message can be delivered.

        An empty or malformed sender is not an error: the provider falls back
        to its configured default and a warning is logged.

        Raises:
            EmailValidationError: On the first problem found.
        """
        if not (self.to or self.cc or self.bcc):
            raise EmailValidationError("no recipients specified in to, cc, or bcc")

        if not is_valid_address(self.sender):
            logger.warning("Invalid sender address %r, the provider default will be used", self.sender)

        for recipient in self.all_recipients():
            if not is_valid_address(recipient):
                raise EmailValidationError(f"invalid recipient email: {recipient}")

        if not self.subject.strip():
            raise EmailValidationError("email subject is required")
        if has_line_break(self.subject):
            raise EmailValidationError("email subject must not contain line breaks")
        if not self.body.strip():
            raise EmailValidationError("email body is empty")

        for attachment in self.attachments:
            if not attachment.filename:
                raise EmailValidationError("attachment filename is missing")
            if has_line_break(attachment.filename):
                raise EmailValidationError(f"attachment filename must not contain line breaks: {attachment.filename!r}")
            if not attachment.content_type:
                raise EmailValidationError(f"attachment content type is missing: {attachment.filename}")
            if not attachment.content:
                raise EmailValidationError(f"attachment content is empty: {attachment.filename}")
            if attachment.content_type not in ALLOWED_CONTENT_TYPES:
                raise EmailValidationError(
                    f"attachment {attachment.filename} has an unsupported content type: {attachment.content_type}"
                )

    def prepare_for_send(self) -> None:
        """Stamp ``sent_at`` if it was not set by the caller."""
        if self.sent_at is None:
            self.sent_at = utc_now()

    def clean_metadata(self) -> None:
        """Normalise metadata keys and drop the ones that are not slug-like."""
        cleaned: dict[str, str] = {}
        for key, value in self.metadata.items():
            cleaned_key = key.strip().lower()
            if METADATA_KEY_PATTERN.match(cleaned_key):
                cleaned[cleaned_key] = value.strip()
        self.metadata = cleaned


class DeliveryResult(BaseModel):
    """Outcome of a provider send.

    Attributes:
        message_id: Provider delivery ID (empty on failure).
        status: ``sent`` or ``failed``.
        sent_at: Time the result was produced.
        error: Failure description when status is ``failed``.
    """

    message_id: str = ""
    status: DeliveryStatus = DeliveryStatus.SENT
    sent_at: datetime = Field(default_factory=utc_now)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == DeliveryStatus.SENT


def new_email(
    to: list[str] | None,
    subject: str,
    body: str,
    *,
    cc: list[str] | None = None,
    bcc: list[str] | None = None,
    attachments: list[Attachment] | None = None,
    metadata: dict[str, str] | None = None,
    sender: str = "",
) -> Email:
    """Build an ``Email`` from plain values, as domain services do."""
    return Email(
        to=list(to or []),
        cc=list(cc or []),
        bcc=list(bcc or []),
        sender=sender,
        subject=subject,
        body=body,
        attachments=list(attachments or []),
        metadata=dict(metadata or {}),
    )
