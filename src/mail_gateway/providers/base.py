# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Common contract of the email backends.

A provider turns a :class:`~mail_gateway.models.NormalizedMessage` into its
own wire payload and delivers it. :meth:`EmailProvider.send` wraps
:meth:`EmailProvider.deliver` so that every backend failure, whatever its
type, becomes a ``DispatchResult(success=False)`` instead of an exception.
Only :class:`~mail_gateway.errors.GatewayError` subclasses escape, because
they describe a problem with the request rather than with the backend.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any

from ..errors import GatewayError
from ..logger import get_logger
from ..models import DispatchResult, NormalizedMessage, Provider
from ..prometheus import GatewayMetrics

DEFAULT_SEND_TIMEOUT = 15.0
MISSING_FIELDS_MESSAGE = 'Message must include "to" and "subject" fields'

logger = get_logger("ProviderDispatcher")


class EmailProvider(ABC):
    """One email backend.

    Attributes:
        name: The Provider this backend serves.
        timeout: Seconds allowed for each outbound call.
        metrics: Optional GatewayMetrics updated after each send.
    """

    name: Provider

    def __init__(self, *, timeout: float = DEFAULT_SEND_TIMEOUT, metrics: GatewayMetrics | None = None):
        self.timeout = timeout
        self.metrics = metrics

    @abstractmethod
    def build_payload(self, message: NormalizedMessage) -> Any:
        """Translate a normalized message into the backend's wire shape."""
        ...

    @abstractmethod
    async def deliver(self, message: NormalizedMessage) -> str | None:
        """Send one message and return the backend's message id, if any.

        Raises:
            ProviderSendError: The backend rejected the message.
            Exception: Any transport error; :meth:`send` converts it.
        """
        ...

    async def send(self, message: NormalizedMessage) -> DispatchResult:
        """Deliver ``message`` and report the outcome as a DispatchResult."""
        if not message.is_addressable():
            return self.failed_result(MISSING_FIELDS_MESSAGE)
        try:
            message_id = await self.deliver(message)
        except GatewayError:
            raise
        except asyncio.TimeoutError:
            return self.failed_result(f"{self.name.value} request timed out after {self.timeout:g}s")
        except Exception as exc:
            logger.error("%s send error: %s", self.name.value, exc)
            return self.failed_result(str(exc) or type(exc).__name__)
        if self.metrics:
            self.metrics.inc_sent(self.name.value)
        logger.debug("Sent message via %s (id=%s)", self.name.value, message_id)
        return DispatchResult(success=True, provider=self.name, message_id=message_id)

    def failed_result(self, error: str) -> DispatchResult:
        """Count and build a failed DispatchResult for this backend."""
        if self.metrics:
            self.metrics.inc_error(self.name.value)
        return DispatchResult(success=False, provider=self.name, error=error)

    async def release(self) -> None:
        """Free resources held for the calling task once its request is done."""
        return None

    async def cleanup(self) -> None:
        """Drop idle or broken pooled resources. Called periodically."""
        return None

    async def close(self) -> None:
        """Release pooled resources. Nothing to do by default."""
        return None
