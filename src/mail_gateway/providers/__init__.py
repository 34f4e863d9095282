# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Email backends and the dispatcher routing messages to them."""

from .base import EmailProvider
from .dispatcher import ProviderDispatcher, build_dispatcher, build_gmail_tokens
from .gmail import GmailProvider
from .sendgrid import SendGridProvider

__all__ = [
    "EmailProvider",
    "GmailProvider",
    "ProviderDispatcher",
    "SendGridProvider",
    "build_dispatcher",
    "build_gmail_tokens",
]
