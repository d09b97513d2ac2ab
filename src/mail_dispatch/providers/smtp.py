# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SMTP delivery provider with connection-method fallback.

Every send walks a fixed chain of connection methods and stops at the
first one that delivers:

1. ``TLS``: implicit TLS, handshake before any SMTP exchange.
2. ``STARTTLS``: plaintext connect, EHLO, then upgrade. Fails fast when the
   server does not advertise STARTTLS.
3. ``PLAIN``: unencrypted delivery, always attempted when the first two
   failed. Availability is preferred over confidentiality here.

Validation and MIME construction happen once, before any connection is
opened; an invalid message never touches the network. Each method failure
is logged with the method name and only after all three fail is a single
``DeliveryError`` raised, wrapping the last failure.

Example:
    Sending through the provider::

        provider = SMTPProvider(SMTPConfig(host="smtp.example.com", from_email="no-reply@example.com"))
        result = await provider.send(email)
        print(result.message_id)
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable
from email.message import EmailMessage
from email.utils import formataddr, formatdate, make_msgid

import aiosmtplib

from ..config import SMTPConfig
from ..errors import DeliveryError, EmailValidationError, MailDispatchError, TransportError
from ..logger import get_logger
from ..models import DeliveryResult, DeliveryStatus, Email, is_valid_address

X_MAILER = "Budget Planner Email Service"

_BLOCK_TAGS = re.compile(r"<\s*(br\s*/?|/?p|/?div|/li)\s*>", re.IGNORECASE)
_LIST_ITEM = re.compile(r"<\s*li\s*>", re.IGNORECASE)
_ANY_TAG = re.compile(r"<[^>]*>")
_BLANK_RUNS = re.compile(r"\n\s*\n")

SendMethod = Callable[[EmailMessage, str, list[str]], Awaitable[None]]


def html_to_text(html: str) -> str:
    """Derive a plain-text fallback from an HTML body.

    Line-level tags become line breaks, list items become dashes, any other
    markup is dropped and runs of blank lines are collapsed.
    """
    text = _LIST_ITEM.sub("- ", html)
    text = _BLOCK_TAGS.sub("\n", text)
    text = _ANY_TAG.sub("", text)
    text = _BLANK_RUNS.sub("\n\n", text)
    return text.strip() + "\n"


class SMTPProvider:
    """``EmailProvider`` implementation speaking SMTP via aiosmtplib.

    The provider holds only its configuration; a fresh connection is opened
    for every delivery attempt and closed afterwards.

    Attributes:
        config: SMTP relay settings captured at construction.
        sender_name: Display name used in the From header.
        logger: Logger instance for diagnostic output.
    """

    name = "smtp"

    def __init__(self, config: SMTPConfig, *, sender_name: str | None = None, logger=None):
        self.config = config
        self.sender_name = sender_name or config.from_name
        self.logger = logger or get_logger("SMTPProvider")

    @property
    def sender_email(self) -> str:
        return self.config.from_email

    @property
    def _connect_budget(self) -> float:
        # Hard cap above the socket timeout in case aiosmtplib's own timeout does not fire.
        return float(self.config.timeout) + 5.0

    # ------------------------------------------------------------ MIME building
    def build_message(self, email: Email) -> EmailMessage:
        """Build the MIME message for ``email``.

        The result is ``multipart/alternative`` (plain text, then HTML), or
        ``multipart/mixed`` wrapping that alternative part followed by the
        base64-encoded attachments.

        Raises:
            EmailValidationError: If a header value cannot be encoded.
        """
        sender = self._resolve_sender(email)
        domain = self.config.host or "localhost.localdomain"

        msg = EmailMessage()
        try:
            msg["From"] = formataddr((self.sender_name, sender)) if self.sender_name else sender
            if email.to:
                msg["To"] = ", ".join(email.to)
            if email.cc:
                msg["Cc"] = ", ".join(email.cc)
            msg["Subject"] = email.subject
            msg["Message-ID"] = make_msgid(domain=domain)
            msg["Date"] = formatdate(localtime=True)
            msg["X-Mailer"] = X_MAILER
            msg["Return-Path"] = f"<{sender}>"
            msg["Reply-To"] = sender
            msg["List-Unsubscribe"] = f"<mailto:{sender}?subject=unsubscribe>"

            msg.set_content(html_to_text(email.body))
            msg.add_alternative(email.body, subtype="html")

            for attachment in email.attachments:
                maintype, subtype = attachment.content_type.split("/", 1)
                msg.add_attachment(
                    attachment.content,
                    maintype=maintype,
                    subtype=subtype,
                    filename=attachment.filename,
                )
        except (ValueError, TypeError) as exc:
            raise EmailValidationError(f"cannot build MIME message: {exc}") from exc
        return msg

    def _resolve_sender(self, email: Email) -> str:
        if is_valid_address(email.sender):
            return email.sender
        return self.config.from_email

    # --------------------------------------------------------------- send API
    async def send(self, email: Email) -> DeliveryResult:
        """Validate, build and deliver ``email`` through the fallback chain.

        Returns:
            A ``sent`` result whose ``message_id`` is the Message-ID header.

        Raises:
            EmailValidationError: If the message is invalid (no connection made).
            DeliveryError: If all connection methods failed.
        """
        try:
            email.validate_for_send()
        except EmailValidationError as exc:
            self.logger.error("SMTP: invalid email: %s", exc)
            raise

        message = self.build_message(email)
        sender = self._resolve_sender(email)
        recipients = email.all_recipients()
        self.logger.info("SMTP: preparing to send email to %s (subject=%r)", recipients, email.subject)

        method = await self._try_all_methods(message, sender, recipients)
        message_id = message["Message-ID"]
        email.prepare_for_send()
        self.logger.info("SMTP: email sent to %s via %s (message_id=%s)", recipients, method, message_id)
        return DeliveryResult(message_id=message_id, status=DeliveryStatus.SENT)

    async def batch_send(self, emails: list[Email]) -> list[DeliveryResult]:
        """Send each message independently, reporting one result per message."""
        results: list[DeliveryResult] = []
        for email in emails:
            try:
                result = await self.send(email)
            except MailDispatchError as exc:
                self.logger.error(
                    "Failed to send batch email to %s (subject=%r): %s",
                    email.to,
                    email.subject,
                    exc,
                )
                results.append(DeliveryResult(status=DeliveryStatus.FAILED, error=str(exc)))
                continue
            results.append(result)
        return results

    async def health_check(self) -> None:
        """Open and close a plain connection to the relay.

        Raises:
            TransportError: If the server cannot be reached.
        """
        smtp = self._client(use_tls=False)
        try:
            await asyncio.wait_for(smtp.connect(), timeout=self._connect_budget)
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as exc:
            self.logger.error("SMTP health check failed: %s", exc)
            raise TransportError("HEALTH", f"SMTP service not reachable: {exc}") from exc
        await self._close(smtp)
        self.logger.debug("SMTP health check passed for %s:%s", self.config.host, self.config.port)

    # ------------------------------------------------------- fallback chain
    async def _try_all_methods(self, message: EmailMessage, sender: str, recipients: list[str]) -> str:
        methods: tuple[tuple[str, SendMethod], ...] = (
            ("TLS", self._send_with_tls),
            ("STARTTLS", self._send_with_starttls),
            ("PLAIN", self._send_plain),
        )
        last_error: TransportError | None = None
        for method_name, method in methods:
            self.logger.debug("SMTP: attempting delivery using method %s", method_name)
            try:
                await asyncio.wait_for(method(message, sender, recipients), timeout=self._connect_budget)
            except TransportError as exc:
                last_error = exc
            except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as exc:
                last_error = TransportError(method_name, str(exc) or type(exc).__name__)
            else:
                return method_name
            self.logger.warning("SMTP: method %s failed: %s", method_name, last_error)

        raise DeliveryError(f"all SMTP connection methods failed, last error: {last_error}", last_error)

    def _client(self, *, use_tls: bool) -> aiosmtplib.SMTP:
        return aiosmtplib.SMTP(
            hostname=self.config.host,
            port=self.config.port,
            use_tls=use_tls,
            start_tls=False,
            validate_certs=self.config.validate_certs,
            timeout=self.config.timeout,
        )

    async def _send_with_tls(self, message: EmailMessage, sender: str, recipients: list[str]) -> None:
        smtp = self._client(use_tls=True)
        await smtp.connect()
        try:
            await self._transmit(smtp, message, sender, recipients)
        finally:
            await self._close(smtp)

    async def _send_with_starttls(self, message: EmailMessage, sender: str, recipients: list[str]) -> None:
        smtp = self._client(use_tls=False)
        await smtp.connect()
        try:
            await smtp.ehlo()
            if not smtp.supports_extension("starttls"):
                raise TransportError("STARTTLS", "server does not support STARTTLS")
            await smtp.starttls()
            await self._transmit(smtp, message, sender, recipients)
        finally:
            await self._close(smtp)

    async def _send_plain(self, message: EmailMessage, sender: str, recipients: list[str]) -> None:
        smtp = self._client(use_tls=False)
        await smtp.connect()
        try:
            await self._transmit(smtp, message, sender, recipients)
        finally:
            await self._close(smtp)

    async def _transmit(self, smtp: aiosmtplib.SMTP, message: EmailMessage, sender: str, recipients: list[str]) -> None:
        if self.config.username and self.config.password:
            await smtp.login(self.config.username, self.config.password)
        await smtp.send_message(message, sender=sender, recipients=recipients)

    async def _close(self, smtp: aiosmtplib.SMTP) -> None:
        if not smtp.is_connected:
            return
        try:
            await smtp.quit()
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError):
            smtp.close()
