import logging
from types import SimpleNamespace

import aiosmtplib
import pytest

from conftest import make_email
from mail_dispatch.config import SMTPConfig
from mail_dispatch.errors import DeliveryError, EmailValidationError, TransportError
from mail_dispatch.models import Attachment, DeliveryStatus
from mail_dispatch.providers import EmailProvider, SMTPProvider
from mail_dispatch.providers.smtp import html_to_text


class DummySMTP:
    def __init__(self, server, hostname, port, use_tls=False, start_tls=None, validate_certs=True, timeout=None):
        self.server = server
        self.hostname = hostname
        self.port = port
        self.use_tls = use_tls
        self.start_tls = start_tls
        self.timeout = timeout
        self.is_connected = False
        self.upgraded = False
        self.login_credentials = None
        self.messages = []

    async def connect(self):
        if self.use_tls and self.server.fail_tls:
            raise aiosmtplib.SMTPConnectError("TLS handshake failed")
        if not self.use_tls and self.server.refuse_plain:
            raise ConnectionRefusedError("connection refused")
        self.is_connected = True

    async def ehlo(self):
        return 250, b"OK"

    def supports_extension(self, name):
        return name == "starttls" and self.server.starttls_supported

    async def starttls(self):
        self.upgraded = True

    async def login(self, user, password):
        self.login_credentials = (user, password)

    async def send_message(self, message, sender=None, recipients=None):
        self.messages.append((message, sender, recipients))
        self.server.delivered.append((message, sender, recipients))

    async def quit(self):
        self.is_connected = False

    def close(self):
        self.is_connected = False


@pytest.fixture
def smtp_server(monkeypatch):
    server = SimpleNamespace(
        fail_tls=False,
        refuse_plain=False,
        starttls_supported=True,
        created=[],
        delivered=[],
    )

    def factory(**kwargs):
        smtp = DummySMTP(server, **kwargs)
        server.created.append(smtp)
        return smtp

    monkeypatch.setattr("mail_dispatch.providers.smtp.aiosmtplib.SMTP", factory)
    return server


@pytest.fixture
def provider():
    return SMTPProvider(SMTPConfig(host="smtp.example.com", port=587, from_email="no-reply@example.com"))


def test_provider_implements_interface(provider):
    assert isinstance(provider, EmailProvider)
    assert provider.name == "smtp"
    assert provider.sender_email == "no-reply@example.com"


@pytest.mark.asyncio
async def test_implicit_tls_success_skips_other_methods(smtp_server, provider):
    result = await provider.send(make_email())

    assert len(smtp_server.created) == 1
    assert smtp_server.created[0].use_tls is True
    assert smtp_server.created[0].start_tls is False
    message, sender, recipients = smtp_server.delivered[0]
    assert result.status == DeliveryStatus.SENT
    assert result.message_id == message["Message-ID"]
    assert "smtp.example.com" in result.message_id
    assert sender == "no-reply@example.com"
    assert recipients == ["user@example.com"]
    assert smtp_server.created[0].is_connected is False


@pytest.mark.asyncio
async def test_falls_back_to_starttls(smtp_server, provider, caplog):
    caplog.set_level(logging.WARNING)
    smtp_server.fail_tls = True

    await provider.send(make_email())

    assert [smtp.use_tls for smtp in smtp_server.created] == [True, False]
    assert smtp_server.created[1].upgraded is True
    assert len(smtp_server.delivered) == 1
    assert "method TLS failed" in caplog.text


@pytest.mark.asyncio
async def test_falls_back_to_plain_when_starttls_unsupported(smtp_server, provider, caplog):
    caplog.set_level(logging.WARNING)
    smtp_server.fail_tls = True
    smtp_server.starttls_supported = False

    await provider.send(make_email())

    assert [smtp.use_tls for smtp in smtp_server.created] == [True, False, False]
    assert smtp_server.created[1].messages == []
    assert smtp_server.created[2].upgraded is False
    assert len(smtp_server.created[2].messages) == 1
    assert "method STARTTLS failed" in caplog.text
    assert "does not support STARTTLS" in caplog.text


@pytest.mark.asyncio
async def test_method_order_is_tls_starttls_plain(monkeypatch, provider):
    attempted = []

    def failing(name):
        async def method(message, sender, recipients):
            attempted.append(name)
            raise OSError(f"{name} unavailable")

        return method

    monkeypatch.setattr(provider, "_send_with_tls", failing("TLS"))
    monkeypatch.setattr(provider, "_send_with_starttls", failing("STARTTLS"))
    monkeypatch.setattr(provider, "_send_plain", failing("PLAIN"))

    with pytest.raises(DeliveryError) as excinfo:
        await provider.send(make_email())

    assert attempted == ["TLS", "STARTTLS", "PLAIN"]
    assert isinstance(excinfo.value.last_error, TransportError)
    assert excinfo.value.last_error.method == "PLAIN"
    assert "PLAIN unavailable" in str(excinfo.value)


@pytest.mark.asyncio
async def test_all_methods_failing_raises_delivery_error(smtp_server, provider):
    smtp_server.fail_tls = True
    smtp_server.refuse_plain = True

    with pytest.raises(DeliveryError, match="all SMTP connection methods failed"):
        await provider.send(make_email())
    assert len(smtp_server.created) == 3
    assert smtp_server.delivered == []


@pytest.mark.asyncio
async def test_invalid_email_opens_no_connection(smtp_server, provider):
    with pytest.raises(EmailValidationError):
        await provider.send(make_email(to=["broken"]))
    assert smtp_server.created == []


@pytest.mark.asyncio
async def test_login_only_with_credentials(smtp_server):
    config = SMTPConfig(
        host="smtp.example.com",
        port=465,
        username="mailer",
        password="secret",
        from_email="no-reply@example.com",
    )
    await SMTPProvider(config).send(make_email())
    assert smtp_server.created[0].login_credentials == ("mailer", "secret")


@pytest.mark.asyncio
async def test_bcc_only_in_envelope(smtp_server, provider):
    email = make_email(cc=["cc@example.com"], bcc=["hidden@example.com"])
    await provider.send(email)

    message, _, recipients = smtp_server.delivered[0]
    assert recipients == ["user@example.com", "cc@example.com", "hidden@example.com"]
    assert message["Cc"] == "cc@example.com"
    assert message["Bcc"] is None


@pytest.mark.asyncio
async def test_batch_send_isolates_failures(smtp_server, provider):
    emails = [
        make_email(to=["first@example.com"]),
        make_email(to=["not-valid"]),
        make_email(to=["third@example.com"]),
    ]

    results = await provider.batch_send(emails)

    assert [result.status for result in results] == [
        DeliveryStatus.SENT,
        DeliveryStatus.FAILED,
        DeliveryStatus.SENT,
    ]
    assert "invalid recipient" in results[1].error
    assert len(smtp_server.delivered) == 2


@pytest.mark.asyncio
async def test_health_check(smtp_server, provider):
    await provider.health_check()
    assert smtp_server.created[0].use_tls is False

    smtp_server.refuse_plain = True
    with pytest.raises(TransportError) as excinfo:
        await provider.health_check()
    assert excinfo.value.method == "HEALTH"


def test_build_message_headers(provider):
    message = provider.build_message(make_email(sender=""))

    assert message["From"] == "Budget Planner <no-reply@example.com>"
    assert message["To"] == "user@example.com"
    assert message["Reply-To"] == "no-reply@example.com"
    assert message["Return-Path"] == "<no-reply@example.com>"
    assert message["List-Unsubscribe"] == "<mailto:no-reply@example.com?subject=unsubscribe>"
    assert message["X-Mailer"]
    assert message["Date"]
    assert message["MIME-Version"] == "1.0"
    assert message.get_content_type() == "multipart/alternative"

    plain, rich = message.iter_parts()
    assert plain.get_content_type() == "text/plain"
    assert plain.get_content().strip() == "Your report is ready."
    assert rich.get_content_type() == "text/html"


def test_build_message_with_attachment(provider):
    pdf = Attachment(filename="report.pdf", content_type="application/pdf", content=b"%PDF-1.4" * 40)
    message = provider.build_message(make_email(attachments=[pdf]))

    assert message.get_content_type() == "multipart/mixed"
    alternative, attachment = message.iter_parts()
    assert alternative.get_content_type() == "multipart/alternative"
    assert attachment.get_filename() == "report.pdf"
    assert attachment["Content-Transfer-Encoding"] == "base64"
    assert attachment.get_content() == pdf.content
    encoded_lines = attachment.get_payload().strip().splitlines()
    assert max(len(line) for line in encoded_lines) <= 76


def test_html_to_text():
    html = "<h1>Budget</h1><p>Line one<br/>Line two</p><ul><li>Food</li><li>Rent</li></ul>\n\n\n<p>End</p>"
    text = html_to_text(html)
    assert "<" not in text
    assert "Line one\nLine two" in text
    assert "- Food" in text
    assert "- Rent" in text
    assert "\n\n\n" not in text
