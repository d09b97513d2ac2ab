import pytest
from pydantic import ValidationError

from conftest import make_email
from mail_dispatch.errors import EmailValidationError
from mail_dispatch.task import DEFAULT_PRIORITY, EmailTask, TaskStatus


def _task(**overrides):
    data = {"email": make_email(), "provider_name": "smtp"}
    data.update(overrides)
    return EmailTask(**data)


def test_defaults():
    task = _task()
    assert task.priority == DEFAULT_PRIORITY
    assert task.status == TaskStatus.QUEUED
    assert task.retry_count == 0
    assert task.max_retries == 3


def test_retry_count_above_max_rejected():
    with pytest.raises(ValidationError):
        _task(retry_count=4, max_retries=3)


def test_prepare_assigns_id_and_stamps():
    task = _task(status=TaskStatus.FAILED)
    task.prepare()
    assert task.task_id
    assert task.status == TaskStatus.QUEUED
    assert task.email.sent_at is not None

    existing = task.task_id
    task.prepare()
    assert task.task_id == existing


def test_increment_retry_reaches_failed_at_max():
    task = _task(max_retries=2)
    task.increment_retry("first")
    assert task.status == TaskStatus.QUEUED
    assert task.is_retry_in_flight
    assert task.can_retry

    task.increment_retry("second")
    assert task.status == TaskStatus.FAILED
    assert task.retry_count == 2
    assert task.last_error == "second"
    assert not task.can_retry


def test_retry_invariant_holds_for_any_sequence():
    task = _task(max_retries=3)
    for _ in range(10):
        task.increment_retry()
        assert task.retry_count <= task.max_retries
        if task.retry_count == task.max_retries:
            assert task.status == TaskStatus.FAILED
    assert task.retry_count == 3


def test_increment_on_sent_task_is_noop():
    task = _task()
    task.mark_sent()
    task.increment_retry("late failure")
    assert task.retry_count == 0
    assert task.status == TaskStatus.SENT


def test_mark_failed_exhausts_retries():
    task = _task(max_retries=5)
    task.mark_failed("gave up")
    assert task.retry_count == 5
    assert task.is_completed
    assert task.last_error == "gave up"


def test_validate_task_requires_provider():
    with pytest.raises(EmailValidationError, match="provider"):
        _task(provider_name="").validate_task()
    _task().validate_task()


def test_is_valid_provider():
    task = _task(provider_name="sendgrid")
    assert task.is_valid_provider(["smtp", "sendgrid"])
    assert not task.is_valid_provider(["smtp"])
