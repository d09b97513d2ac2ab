import asyncio

import pytest

from mail_dispatch.config import EmailConfig, RetryConfig, SMTPConfig, WorkerConfig
from mail_dispatch.errors import DeliveryError, EmailValidationError, TransportError
from mail_dispatch.models import DeliveryResult, DeliveryStatus, Email


class StubProvider:
    """In-memory provider recording every send attempt."""

    def __init__(self, name="smtp", fail_times=0, fail_for=(), healthy=True):
        self.name = name
        self.fail_times = fail_times
        self.fail_for = set(fail_for)
        self.healthy = healthy
        self.calls: list[Email] = []
        self.sent: list[Email] = []

    def attempts_for(self, recipient: str) -> int:
        return sum(1 for email in self.calls if recipient in email.to)

    async def send(self, email):
        email.validate_for_send()
        self.calls.append(email)
        if self.fail_times < 0 or len(self.calls) <= self.fail_times or self.fail_for & set(email.to):
            raise DeliveryError("stub delivery failed")
        self.sent.append(email)
        return DeliveryResult(message_id=f"<stub-{len(self.calls)}@test>")

    async def batch_send(self, emails):
        results = []
        for email in emails:
            try:
                results.append(await self.send(email))
            except (DeliveryError, EmailValidationError) as exc:
                results.append(DeliveryResult(status=DeliveryStatus.FAILED, error=str(exc)))
        return results

    async def health_check(self):
        if not self.healthy:
            raise TransportError("HEALTH", "stub unreachable")


def make_email(**overrides) -> Email:
    data = {
        "to": ["user@example.com"],
        "sender": "no-reply@example.com",
        "subject": "Monthly budget report",
        "body": "<p>Your report is ready.</p>",
    }
    data.update(overrides)
    return Email(**data)


async def wait_until(predicate, timeout=2.0, interval=0.01):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def email_config():
    return EmailConfig(
        sender_email="no-reply@example.com",
        admin_email="admin@example.com",
        smtp=SMTPConfig(host="smtp.example.com", port=587, from_email="no-reply@example.com"),
        retry=RetryConfig(max_retries=3, intervals=(0.01, 0.01, 0.01)),
        worker=WorkerConfig(count=2, poll_interval=0.01),
    )


@pytest.fixture
def stub_provider():
    return StubProvider()
