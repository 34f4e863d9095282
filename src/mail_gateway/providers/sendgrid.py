# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SendGrid backend: v3 Mail Send API with a static API key."""

from __future__ import annotations

from typing import Any

import aiohttp

from ..errors import ProviderSendError
from ..models import NormalizedMessage, Provider
from ..prometheus import GatewayMetrics
from .base import DEFAULT_SEND_TIMEOUT, EmailProvider
from .gmail import guess_mime

SENDGRID_API_URL = "https://api.sendgrid.com/v3/mail/send"
DEFAULT_FROM = "noreply@example.com"


def _emails(addresses: list[str] | None) -> list[dict[str, str]]:
    return [{"email": addr} for addr in addresses or []]


class SendGridProvider(EmailProvider):
    """Posts messages to the SendGrid Mail Send endpoint.

    Attributes:
        api_key: SendGrid API key, sent as a bearer token.
        default_from: Sender used when the message has no ``from``.
        url: Mail Send endpoint.
    """

    name = Provider.SENDGRID

    def __init__(
        self,
        api_key: str,
        *,
        default_from: str = DEFAULT_FROM,
        url: str = SENDGRID_API_URL,
        timeout: float = DEFAULT_SEND_TIMEOUT,
        metrics: GatewayMetrics | None = None,
    ):
        super().__init__(timeout=timeout, metrics=metrics)
        self.api_key = api_key
        self.default_from = default_from
        self.url = url

    def build_payload(self, message: NormalizedMessage) -> dict[str, Any]:
        """Build the Mail Send JSON body; recipients become ``{"email": ...}`` lists."""
        personalization: dict[str, Any] = {"to": _emails(message.to)}
        if message.cc:
            personalization["cc"] = _emails(message.cc)
        if message.bcc:
            personalization["bcc"] = _emails(message.bcc)

        content = []
        # SendGrid requires text/plain before text/html
        if message.text:
            content.append({"type": "text/plain", "value": message.text})
        if message.html:
            content.append({"type": "text/html", "value": message.html})

        payload: dict[str, Any] = {
            "personalizations": [personalization],
            "from": {"email": message.from_addr or self.default_from},
            "subject": message.subject,
            "content": content,
        }
        if message.reply_to:
            payload["reply_to"] = {"email": message.reply_to}
        if message.attachments:
            payload["attachments"] = [
                {
                    "content": att.content,
                    "filename": att.filename,
                    "type": "/".join(guess_mime(att.filename, att.content_type)),
                    "disposition": "attachment",
                }
                for att in message.attachments
            ]
        return payload

    async def deliver(self, message: NormalizedMessage) -> str | None:
        payload = self.build_payload(message)
        headers = {"Authorization": f"Bearer {self.api_key}"}
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
            async with session.post(self.url, json=payload, headers=headers) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    raise ProviderSendError(f"SendGrid returned {resp.status}: {body[:200]}")
                return resp.headers.get("X-Message-Id")
