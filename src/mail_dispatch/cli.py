# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for the budget mail dispatcher.

Operator commands to inspect the configuration, check the providers and
send a one-off email without starting the application.

Usage:
    mail-dispatch config [--config PATH] [--json]
    mail-dispatch health [--config PATH]
    mail-dispatch send --to user@example.com --subject "Hello" --body "<p>Hi</p>"

Exit codes:
    0 on success, 1 when a health check or delivery fails, 2 on configuration errors.
"""

from __future__ import annotations

import asyncio
import json
import sys
from dataclasses import asdict
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from .config import EmailConfig, load_config
from .errors import MailDispatchError, ProviderConfigurationError
from .logger import configure_logging
from .manager import EmailManager
from .models import new_email

console = Console()
err_console = Console(stderr=True)

EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def _load_or_exit(config_path: str | None) -> EmailConfig:
    try:
        return load_config(config_path)
    except (FileNotFoundError, ProviderConfigurationError) as exc:
        print_error(str(exc))
        sys.exit(EXIT_CONFIG_ERROR)


def _build_manager(config: EmailConfig) -> EmailManager:
    try:
        return EmailManager(config)
    except ProviderConfigurationError as exc:
        print_error(str(exc))
        sys.exit(EXIT_CONFIG_ERROR)


def _masked(config: EmailConfig) -> dict[str, Any]:
    data = asdict(config)
    if data["smtp"].get("password"):
        data["smtp"]["password"] = "********"
    return data


config_option = click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Path to the INI configuration file (default: $MAIL_CONFIG or ./config.ini).",
)


@click.group()
@click.version_option(package_name="budget-mail-dispatch")
@click.option(
    "--log-level",
    envvar="MAIL_LOG_LEVEL",
    default="INFO",
    show_default=True,
    help="Logging level.",
)
def main(log_level: str) -> None:
    """Budget planner email dispatcher."""
    configure_logging(log_level)


@main.command("config")
@config_option
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def show_config(config_path: str | None, as_json: bool) -> None:
    """Show the resolved configuration (password masked)."""
    config = _load_or_exit(config_path)
    data = _masked(config)

    if as_json:
        console.print_json(json.dumps(data, indent=2, default=str))
        return

    table = Table(title="Mail dispatch configuration")
    table.add_column("Section", style="cyan")
    table.add_column("Key")
    table.add_column("Value", style="green")
    for key, value in data.items():
        if isinstance(value, dict):
            for sub_key, sub_value in value.items():
                table.add_row(key, sub_key, str(sub_value))
        else:
            table.add_row("email", key, str(value))
    console.print(table)


@main.command("health")
@config_option
def health(config_path: str | None) -> None:
    """Check every configured provider."""
    config = _load_or_exit(config_path)
    manager = _build_manager(config)
    try:
        run_async(manager.health_check())
    except MailDispatchError as exc:
        print_error(f"Health check failed: {exc}")
        sys.exit(EXIT_FAILURE)
    print_success(f"All providers healthy: {', '.join(manager.provider_names)}")


@main.command("send")
@config_option
@click.option("--to", "recipients", multiple=True, required=True, help="Recipient address (repeatable).")
@click.option("--cc", multiple=True, help="CC address (repeatable).")
@click.option("--bcc", multiple=True, help="BCC address (repeatable).")
@click.option("--subject", "-s", required=True, help="Subject line.")
@click.option("--body", "-b", required=True, help="HTML body.")
def send(
    config_path: str | None,
    recipients: tuple[str, ...],
    cc: tuple[str, ...],
    bcc: tuple[str, ...],
    subject: str,
    body: str,
) -> None:
    """Send one email now through the default provider."""
    config = _load_or_exit(config_path)
    manager = _build_manager(config)
    email = new_email(
        list(recipients),
        subject,
        body,
        cc=list(cc),
        bcc=list(bcc),
        sender=config.sender_email,
    )
    try:
        message_id = run_async(manager.send(email))
    except MailDispatchError as exc:
        print_error(str(exc))
        sys.exit(EXIT_FAILURE)
    print_success(f"Email sent via {manager.default_provider_name}: {message_id}")


if __name__ == "__main__":
    main()
