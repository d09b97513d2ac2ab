"""Tests for CLI commands and helper functions."""

import json

import pytest
from click.testing import CliRunner

from conftest import StubProvider
from mail_dispatch.cli import EXIT_CONFIG_ERROR, EXIT_FAILURE, main, run_async
from mail_dispatch.manager import EmailManager

CONFIG_INI = """\
[email]
sender_email = budget@example.com
admin_email = ops@example.com

[smtp]
host = smtp.example.com
port = 587
username = mailer
password = topsecret
"""


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "mail.ini"
    path.write_text(CONFIG_INI)
    return str(path)


@pytest.fixture
def stub_manager(monkeypatch):
    """Replace the CLI's manager factory with one wired to a stub provider."""
    provider = StubProvider()

    def factory(config):
        return EmailManager(config, providers=[provider])

    monkeypatch.setattr("mail_dispatch.cli.EmailManager", factory)
    return provider


class TestHelperFunctions:
    """Tests for CLI helper functions."""

    def test_run_async(self):
        """Test run_async executes coroutine synchronously."""

        async def async_func():
            return 42

        assert run_async(async_func()) == 42


class TestConfigCommand:
    """Tests for the config command."""

    def test_config_json_masks_password(self, runner, config_file):
        result = runner.invoke(main, ["config", "--config", config_file, "--json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["smtp"]["host"] == "smtp.example.com"
        assert data["smtp"]["password"] == "********"
        assert data["admin_email"] == "ops@example.com"
        assert "topsecret" not in result.output

    def test_config_table(self, runner, config_file):
        result = runner.invoke(main, ["config", "--config", config_file])

        assert result.exit_code == 0
        assert "smtp.example.com" in result.output
        assert "topsecret" not in result.output

    def test_missing_config_file_exits_with_config_error(self, runner, tmp_path):
        result = runner.invoke(main, ["config", "--config", str(tmp_path / "missing.ini")])

        assert result.exit_code == EXIT_CONFIG_ERROR
        assert "Config file not found" in result.output


class TestHealthCommand:
    """Tests for the health command."""

    def test_health_ok(self, runner, config_file, stub_manager):
        result = runner.invoke(main, ["health", "--config", config_file])

        assert result.exit_code == 0
        assert "All providers healthy: smtp" in result.output

    def test_health_failure(self, runner, config_file, stub_manager):
        stub_manager.healthy = False
        result = runner.invoke(main, ["health", "--config", config_file])

        assert result.exit_code == EXIT_FAILURE
        assert "Health check failed" in result.output

    def test_no_provider_is_a_config_error(self, runner, tmp_path, monkeypatch):
        monkeypatch.delenv("SMTP_HOST", raising=False)
        monkeypatch.delenv("MAIL_CONFIG", raising=False)
        path = tmp_path / "empty.ini"
        path.write_text("[email]\nsender_email = budget@example.com\n")

        result = runner.invoke(main, ["health", "--config", str(path)])

        assert result.exit_code == EXIT_CONFIG_ERROR
        assert "no valid email provider" in result.output


class TestSendCommand:
    """Tests for the send command."""

    def test_send_prints_delivery_id(self, runner, config_file, stub_manager):
        result = runner.invoke(
            main,
            [
                "send",
                "--config",
                config_file,
                "--to",
                "user@example.com",
                "--to",
                "other@example.com",
                "--subject",
                "Budget alert",
                "--body",
                "<p>You are over budget</p>",
            ],
        )

        assert result.exit_code == 0
        assert "<stub-1@test>" in result.output
        sent = stub_manager.sent[0]
        assert sent.to == ["user@example.com", "other@example.com"]
        assert sent.sender == "budget@example.com"

    def test_send_invalid_email_fails(self, runner, config_file, stub_manager):
        result = runner.invoke(
            main,
            ["send", "--config", config_file, "--to", "broken", "--subject", "Hi", "--body", "<p>Hi</p>"],
        )

        assert result.exit_code == EXIT_FAILURE
        assert "invalid recipient" in result.output
        assert stub_manager.calls == []
