# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration dataclasses and INI/environment loader.

Provides a nested configuration structure for the dispatch pipeline:

- config.smtp.host
- config.retry.intervals
- config.worker.count

Settings are read from an INI file (default: ``config.ini``) with
environment variables as fallbacks. The variable names match the ones
used by the budgeting backend deployment.

Example:
    Configuration file format (config.ini)::

        [email]
        provider = smtp
        sender_email = no-reply@example.com
        sender_name = Budget Planner
        admin_email = admin@example.com

        [smtp]
        host = smtp.example.com
        port = 587
        username = mailer@example.com
        password = secret
        from_email = no-reply@example.com

        [retry]
        max_retries = 3
        intervals = 60, 300, 600

        [worker]
        count = 4
        poll_interval = 1.0

    Loading it::

        config = load_config("/etc/budget/config.ini")
        manager = EmailManager(config)
"""

from __future__ import annotations

import configparser
import os
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ProviderConfigurationError
from .logger import get_logger

DEFAULT_RETRY_INTERVALS: tuple[float, ...] = (60.0, 300.0, 600.0)
"""Built-in backoff schedule: 1, 5 and 10 minutes."""

logger = get_logger("ConfigLoader")


@dataclass
class SMTPConfig:
    """SMTP relay settings."""

    host: str = ""
    """SMTP server hostname."""

    port: int = 587
    """SMTP server port."""

    username: str | None = None
    """Login user; authentication is skipped when empty."""

    password: str | None = None
    """Login password."""

    from_email: str = ""
    """Envelope and header sender used when a message has none."""

    from_name: str = "Budget Planner"
    """Display name placed in the From header."""

    use_tls: bool = False
    """Operator preference for implicit TLS (informational; the fallback chain always tries it first)."""

    use_starttls: bool = True
    """Operator preference for STARTTLS (informational)."""

    enabled: bool = True
    """Disable to keep the provider out of the registry."""

    timeout: float = 10.0
    """Per-connection socket timeout in seconds."""

    validate_certs: bool = True
    """Verify the server certificate on TLS and STARTTLS."""

    @property
    def is_complete(self) -> bool:
        """Check that host, port and sender are all configured."""
        return bool(self.host and self.port and self.from_email)


@dataclass
class RetryConfig:
    """Retry behaviour settings."""

    max_retries: int = 3
    """Default and upper bound for per-task retries."""

    intervals: tuple[float, ...] = DEFAULT_RETRY_INTERVALS
    """Backoff in seconds indexed by retry attempt."""


@dataclass
class WorkerConfig:
    """Worker pool sizing."""

    count: int = 4
    """Number of concurrent queue consumers."""

    poll_interval: float = 1.0
    """Seconds a worker waits on an empty queue before polling again."""


@dataclass
class EmailConfig:
    """Main configuration container for the dispatch pipeline.

    Example:
        config = EmailConfig(
            smtp=SMTPConfig(host="smtp.example.com", from_email="no-reply@example.com"),
            retry=RetryConfig(max_retries=5),
        )
    """

    provider: str = "smtp"
    """Name of the preferred default provider."""

    sender_email: str = "no-reply@example.com"
    """Default sender identity for application emails."""

    sender_name: str = "Budget Planner"
    """Default sender display name."""

    admin_email: str = "admin@example.com"
    """Recipient of failure alerts."""

    enabled: bool = True
    """Master switch; no provider can become default when disabled."""

    default_priority: int = 2
    """Priority assigned when the caller gives none."""

    min_priority: int = 0
    """Lowest accepted priority override (most urgent)."""

    max_priority: int = 5
    """Highest accepted priority override (least urgent)."""

    log_delivery_activity: bool = False
    """Emit an INFO line for every delivery attempt."""

    smtp: SMTPConfig = field(default_factory=SMTPConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)


def _parse_bool(key: str, value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ProviderConfigurationError(f"Invalid boolean for {key}: {value!r}")


def _parse_int(key: str, value: str) -> int:
    try:
        return int(value.strip())
    except ValueError as exc:
        raise ProviderConfigurationError(f"Invalid integer for {key}: {value!r}") from exc


def _parse_float(key: str, value: str) -> float:
    try:
        return float(value.strip())
    except ValueError as exc:
        raise ProviderConfigurationError(f"Invalid number for {key}: {value!r}") from exc


def parse_intervals(value: str | None) -> tuple[float, ...]:
    """Parse a comma-separated list of seconds.

    Empty input yields the built-in 1/5/10 minute schedule.

    Raises:
        ProviderConfigurationError: If an item is not a positive number.
    """
    if value is None or not value.strip():
        logger.warning("No retry intervals provided, falling back to default intervals")
        return DEFAULT_RETRY_INTERVALS
    intervals = []
    for item in value.split(","):
        if not item.strip():
            continue
        seconds = _parse_float("retry intervals", item)
        if seconds < 0:
            raise ProviderConfigurationError(f"Retry interval must not be negative: {item.strip()}")
        intervals.append(seconds)
    if not intervals:
        logger.warning("No retry intervals provided, falling back to default intervals")
        return DEFAULT_RETRY_INTERVALS
    return tuple(intervals)


def _resolve_config_path(path: str | os.PathLike | None) -> Path | None:
    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        return config_path
    env_path = os.getenv("MAIL_CONFIG")
    if env_path:
        config_path = Path(env_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        return config_path
    default = Path("config.ini")
    return default if default.exists() else None


def load_config(path: str | os.PathLike | None = None) -> EmailConfig:
    """Load configuration from an INI file with environment fallbacks.

    The INI value wins over the environment variable; the dataclass default
    applies when neither is set.

    Args:
        path: Optional INI path. When omitted, ``MAIL_CONFIG`` or a
            ``config.ini`` in the working directory is used if present.

    Returns:
        A fully populated ``EmailConfig``.

    Raises:
        FileNotFoundError: If an explicit path does not exist.
        ProviderConfigurationError: If a value cannot be parsed.
    """
    parser = configparser.ConfigParser()
    config_path = _resolve_config_path(path)
    if config_path is not None:
        parser.read(config_path)
        logger.info("Loaded mail configuration from %s", config_path)

    def get(section: str, option: str, env: str) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return os.getenv(env)

    def get_str(section: str, option: str, env: str, default: str) -> str:
        value = get(section, option, env)
        return value.strip() if value is not None else default

    def get_opt(section: str, option: str, env: str) -> str | None:
        value = get(section, option, env)
        if value is None or not value.strip():
            return None
        return value.strip()

    def get_int(section: str, option: str, env: str, default: int) -> int:
        value = get(section, option, env)
        return default if value is None else _parse_int(env, value)

    def get_float(section: str, option: str, env: str, default: float) -> float:
        value = get(section, option, env)
        return default if value is None else _parse_float(env, value)

    def get_bool(section: str, option: str, env: str, default: bool) -> bool:
        value = get(section, option, env)
        return default if value is None else _parse_bool(env, value)

    defaults = EmailConfig()
    smtp = SMTPConfig(
        host=get_str("smtp", "host", "SMTP_HOST", ""),
        port=get_int("smtp", "port", "SMTP_PORT", defaults.smtp.port),
        username=get_opt("smtp", "username", "SMTP_USERNAME"),
        password=get_opt("smtp", "password", "SMTP_PASSWORD"),
        from_email=get_str("smtp", "from_email", "SMTP_FROM_EMAIL", ""),
        from_name=get_str("email", "sender_name", "EMAIL_SENDER_NAME", defaults.sender_name),
        use_tls=get_bool("smtp", "use_tls", "SMTP_USE_TLS", defaults.smtp.use_tls),
        use_starttls=get_bool("smtp", "use_starttls", "SMTP_USE_STARTTLS", defaults.smtp.use_starttls),
        enabled=get_bool("smtp", "enabled", "SMTP_ENABLED", defaults.smtp.enabled),
        timeout=get_float("smtp", "timeout", "SMTP_TIMEOUT", defaults.smtp.timeout),
        validate_certs=get_bool("smtp", "validate_certs", "SMTP_VALIDATE_CERTS", defaults.smtp.validate_certs),
    )
    sender_email = get_str("email", "sender_email", "EMAIL_SENDER", defaults.sender_email)
    if not smtp.from_email:
        smtp.from_email = sender_email

    retry = RetryConfig(
        max_retries=get_int("retry", "max_retries", "EMAIL_MAX_RETRIES", defaults.retry.max_retries),
        intervals=parse_intervals(get("retry", "intervals", "EMAIL_RETRY_INTERVALS")),
    )
    if retry.max_retries < 1:
        raise ProviderConfigurationError(f"EMAIL_MAX_RETRIES must be at least 1, got {retry.max_retries}")

    worker = WorkerConfig(
        count=get_int("worker", "count", "EMAIL_WORKERS", defaults.worker.count),
        poll_interval=get_float("worker", "poll_interval", "EMAIL_POLL_INTERVAL", defaults.worker.poll_interval),
    )
    if worker.count < 1:
        raise ProviderConfigurationError(f"EMAIL_WORKERS must be at least 1, got {worker.count}")

    return EmailConfig(
        provider=get_str("email", "provider", "EMAIL_PROVIDER", defaults.provider),
        sender_email=sender_email,
        sender_name=smtp.from_name,
        admin_email=get_str("email", "admin_email", "EMAIL_ADMIN", defaults.admin_email),
        enabled=get_bool("email", "enabled", "EMAIL_ENABLED", defaults.enabled),
        default_priority=get_int("email", "default_priority", "EMAIL_DEFAULT_PRIORITY", defaults.default_priority),
        log_delivery_activity=get_bool(
            "logging", "delivery_activity", "MAIL_LOG_DELIVERY_ACTIVITY", defaults.log_delivery_activity
        ),
        smtp=smtp,
        retry=retry,
        worker=worker,
    )
