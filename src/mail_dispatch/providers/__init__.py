# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Email delivery providers."""

from .base import EmailProvider
from .smtp import SMTPProvider

__all__ = ["EmailProvider", "SMTPProvider"]
