# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging utilities for the mail dispatch pipeline.

This module provides a centralized logging helper. Handlers and formatting
are configured once by the entry point through :func:`configure_logging`;
library modules only call :func:`get_logger` so that embedding applications
(the budgeting HTTP backend) keep control over their own logging setup.

Example:
    Typical usage in a module::

        from mail_dispatch.logger import get_logger

        logger = get_logger("EmailManager")
        logger.info("Email sent to %s", recipients)
"""

import logging

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "MailDispatch") -> logging.Logger:
    """Retrieve a logger instance.

    Returns a standard library logger with the specified name. It does not
    configure handlers or formatters; that responsibility lies with the
    application entry point.

    Args:
        name: The logger name. Defaults to "MailDispatch".

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    return logging.getLogger(name)


def configure_logging(level: str | int = "INFO") -> None:
    """Configure root logging for command-line usage.

    Unknown level names fall back to INFO. Reconfiguration is forced so that
    repeated invocations (tests, CLI reruns) do not stack duplicate handlers.

    Args:
        level: Level name (``"DEBUG"``, ``"INFO"``...) or numeric level.
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        force=True,
    )
