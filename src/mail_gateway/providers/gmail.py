# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Gmail backend: SMTP submission authenticated with an OAuth2 access token.

Messages are built as :class:`email.message.EmailMessage` objects and sent to
``smtp.gmail.com:465`` over implicit TLS. The SMTP session is authenticated
with XOAUTH2 using the current token snapshot of the provider's
:class:`~mail_gateway.tokens.TokenManager`; a rejected token is invalidated
so the next send triggers a refresh.
"""

from __future__ import annotations

import asyncio
import mimetypes
from email.message import EmailMessage
from email.utils import make_msgid

import aiosmtplib

from ..errors import ValidationError
from ..models import NormalizedMessage, Provider
from ..prometheus import GatewayMetrics
from ..smtp_pool import SMTPPool
from ..tokens import TokenManager
from .base import DEFAULT_SEND_TIMEOUT, EmailProvider

GMAIL_SMTP_HOST = "smtp.gmail.com"
GMAIL_SMTP_PORT = 465
MAILBOX_REQUIRED_MESSAGE = "Gmail user email required in message.from or GMAIL_USER_EMAIL config"


def guess_mime(filename: str, content_type: str | None = None) -> tuple[str, str]:
    """Return (maintype, subtype), preferring an explicit ``type/subtype``."""
    if content_type and "/" in content_type:
        maintype, subtype = content_type.split("/", 1)
        return maintype, subtype
    guessed, _ = mimetypes.guess_type(filename)
    if not guessed:
        return "application", "octet-stream"
    maintype, subtype = guessed.split("/", 1)
    return maintype, subtype


class GmailProvider(EmailProvider):
    """Sends through Gmail SMTP with XOAUTH2.

    Attributes:
        tokens: TokenManager owning the Gmail access token.
        mailbox: Mailbox the token authenticates as.
        mailbox_from_message: When True the message ``from`` address, if any,
            takes precedence over ``mailbox`` (delegated Auth0 tokens).
        pool: SMTPPool reusing sessions within a request.
    """

    name = Provider.GMAIL

    def __init__(
        self,
        tokens: TokenManager,
        *,
        mailbox: str | None,
        mailbox_from_message: bool = False,
        pool: SMTPPool | None = None,
        host: str = GMAIL_SMTP_HOST,
        port: int = GMAIL_SMTP_PORT,
        timeout: float = DEFAULT_SEND_TIMEOUT,
        metrics: GatewayMetrics | None = None,
    ):
        super().__init__(timeout=timeout, metrics=metrics)
        self.tokens = tokens
        self.mailbox = mailbox
        self.mailbox_from_message = mailbox_from_message
        self.pool = pool or SMTPPool()
        self.host = host
        self.port = port

    def resolve_mailbox(self, message: NormalizedMessage) -> str:
        """Pick the mailbox to authenticate as for ``message``.

        Raises:
            ValidationError: No mailbox is configured nor given by the message.
        """
        mailbox = self.mailbox
        if self.mailbox_from_message and message.from_addr:
            mailbox = message.from_addr
        if not mailbox:
            raise ValidationError(MAILBOX_REQUIRED_MESSAGE)
        return mailbox

    def build_payload(self, message: NormalizedMessage, mailbox: str | None = None) -> EmailMessage:
        """Build the MIME message; recipients become comma-separated headers."""
        sender = message.from_addr or mailbox or self.mailbox
        msg = EmailMessage()
        if sender:
            msg["From"] = sender
        msg["To"] = ", ".join(message.to or [])
        msg["Subject"] = message.subject or ""
        if message.cc:
            msg["Cc"] = ", ".join(message.cc)
        if message.bcc:
            msg["Bcc"] = ", ".join(message.bcc)
        if message.reply_to:
            msg["Reply-To"] = message.reply_to
        domain = sender.rpartition("@")[2] if sender and "@" in sender else None
        msg["Message-ID"] = make_msgid(domain=domain)

        if message.text and message.html:
            msg.set_content(message.text)
            msg.add_alternative(message.html, subtype="html")
        elif message.html:
            msg.set_content(message.html, subtype="html")
        else:
            msg.set_content(message.text or "")

        for att in message.attachments or []:
            maintype, subtype = guess_mime(att.filename, att.content_type)
            msg.add_attachment(att.decoded(), maintype=maintype, subtype=subtype, filename=att.filename)
        return msg

    async def deliver(self, message: NormalizedMessage) -> str | None:
        mailbox = self.resolve_mailbox(message)
        email = self.build_payload(message, mailbox)
        token = await self.tokens.get_token()
        try:
            smtp = await self.pool.get_connection(
                self.host, self.port, mailbox, token.access_token, use_tls=True
            )
            await asyncio.wait_for(smtp.send_message(email), timeout=self.timeout)
        except aiosmtplib.SMTPAuthenticationError:
            self.tokens.invalidate()
            await self.pool.discard()
            raise
        except Exception:
            await self.pool.discard()
            raise
        return email["Message-ID"]

    async def release(self) -> None:
        # Entries are keyed by task, nothing reuses this one once the request ends
        await self.pool.discard()

    async def cleanup(self) -> None:
        await self.pool.cleanup()

    async def close(self) -> None:
        await self.pool.close()
