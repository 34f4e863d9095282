# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models and value objects shared across the gateway.

Models:
    - Provider / EndpointClass: enumerations used for routing and limits
    - Attachment, NormalizedMessage: provider-agnostic email payload
    - SendRequest, BatchRequest, MaintenanceRequest: HTTP request bodies
    - DispatchResult, BatchResult: normalized send outcomes
    - RequestRecord: immutable audit log entry
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


class Provider(str, Enum):
    """Email backends the gateway can dispatch to."""

    GMAIL = "gmail"
    SENDGRID = "sendgrid"


class EndpointClass(str, Enum):
    """Rate-limit policy category of a route.

    Attributes:
        GENERAL: Read-only and administrative endpoints.
        SEND: Single message send.
        BATCH: Multi-message send.
    """

    GENERAL = "general"
    SEND = "send"
    BATCH = "batch"


def _as_address_list(value: Any) -> list[str] | None:
    if value is None:
        return None
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)) or not all(isinstance(item, str) for item in value):
        raise ValueError("must be an address or a list of addresses")
    return [item.strip() for item in value if item.strip()]


class Attachment(BaseModel):
    """Email attachment carried inline as base64.

    Attributes:
        filename: Name presented to the recipient.
        content: Base64-encoded file content.
        content_type: MIME type; guessed from the filename when omitted.
    """

    model_config = ConfigDict(populate_by_name=True)

    filename: Annotated[str, Field(min_length=1, max_length=255)]
    content: str
    content_type: str | None = Field(default=None, alias="contentType")

    @field_validator("content")
    @classmethod
    def content_must_be_base64(cls, v: str) -> str:
        try:
            base64.b64decode(v, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("attachment content must be base64 encoded") from exc
        return v

    def decoded(self) -> bytes:
        return base64.b64decode(self.content)


class NormalizedMessage(BaseModel):
    """Provider-agnostic email message.

    Recipients accept either a single address string or a list of strings and
    are always stored as lists, so ``"a@x"`` and ``["a@x"]`` are the same
    message. ``to`` and ``subject`` are optional at the model level because
    the gateway reports their absence with its own 400 message.
    """

    model_config = ConfigDict(populate_by_name=True)

    to: list[str] | None = None
    cc: list[str] | None = None
    bcc: list[str] | None = None
    subject: str | None = None
    html: str | None = None
    text: str | None = None
    from_addr: str | None = Field(default=None, alias="from")
    reply_to: str | None = Field(default=None, alias="replyTo")
    attachments: list[Attachment] | None = None

    @field_validator("to", "cc", "bcc", mode="before")
    @classmethod
    def normalize_recipients(cls, v: Any) -> list[str] | None:
        return _as_address_list(v)

    def is_addressable(self) -> bool:
        """True when the message has at least one recipient and a subject."""
        return bool(self.to) and bool(self.subject)


class SendRequest(BaseModel):
    """Body of ``POST /email/send``."""

    provider: str | None = None
    message: NormalizedMessage | None = None


class BatchRequest(BaseModel):
    """Body of ``POST /email/batch``."""

    provider: str | None = None
    messages: list[NormalizedMessage] | None = None


class MaintenanceRequest(BaseModel):
    """Body of ``POST /admin/maintenance``."""

    model_config = ConfigDict(populate_by_name=True)

    action: str | None = None
    days_old: int | None = Field(default=None, alias="daysOld", ge=0)
    client_ip: str | None = Field(default=None, alias="clientIp")


class DispatchResult(BaseModel):
    """Outcome of a single send, whatever the provider."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    provider: Provider
    message_id: str | None = Field(default=None, serialization_alias="messageId")
    error: str | None = None
    timestamp: str = Field(default_factory=utc_now_iso)


class BatchResult(BaseModel):
    """Aggregated outcome of a sequential batch send."""

    total: int
    successful: int
    failed: int
    results: list[DispatchResult]
    timestamp: str = Field(default_factory=utc_now_iso)

    @classmethod
    def from_results(cls, results: list[DispatchResult]) -> BatchResult:
        successful = sum(1 for r in results if r.success)
        return cls(
            total=len(results),
            successful=successful,
            failed=len(results) - successful,
            results=results,
        )


@dataclass(frozen=True)
class RequestRecord:
    """One line of the audit log. Never mutated once built."""

    method: str
    path: str
    status_code: int
    client_ip: str
    request_bytes: int = 0
    response_bytes: int = 0
    duration_ms: float = 0.0
    user_agent: str | None = None
    provider: str | None = None
    error_message: str | None = None
    api_key: str | None = None
    timestamp: str = field(default_factory=utc_now_iso)

    @property
    def success(self) -> bool:
        return 200 <= self.status_code < 400

    def as_row(self) -> dict[str, Any]:
        """Column mapping for the ``request_logs`` table."""
        return {
            "timestamp": self.timestamp,
            "method": self.method,
            "path": self.path,
            "status_code": self.status_code,
            "request_bytes": self.request_bytes,
            "response_bytes": self.response_bytes,
            "duration_ms": self.duration_ms,
            "client_ip": self.client_ip,
            "user_agent": self.user_agent,
            "provider": self.provider,
            "success": 1 if self.success else 0,
            "error_message": self.error_message,
        }
