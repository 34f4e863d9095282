# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""The Gateway: composition root and request handlers.

A Gateway owns one instance of every component and their lifecycle:

    UsageStore -> RateGate, RequestLogger
    AuthGate
    TokenManager -> ProviderDispatcher

It is created once by the entry point, started inside the FastAPI lifespan
and stopped on shutdown. HTTP routing lives in :mod:`mail_gateway.api`; the
methods here take validated models and return JSON-ready dictionaries or
models, raising :class:`~mail_gateway.errors.GatewayError` subclasses for
anything the caller did wrong.

Example:
    Running the gateway without HTTP::

        gateway = Gateway(load_settings())
        await gateway.start()
        result = await gateway.send_email(SendRequest.model_validate(body))
        await gateway.stop()
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import Any

from .auth import AuthGate, fingerprint
from .config import GatewaySettings
from .errors import ValidationError
from .logger import get_logger
from .models import (
    BatchRequest,
    BatchResult,
    DispatchResult,
    MaintenanceRequest,
    SendRequest,
    utc_now_iso,
)
from .prometheus import GatewayMetrics
from .providers import ProviderDispatcher, build_dispatcher
from .providers.base import MISSING_FIELDS_MESSAGE
from .rate_limit import RateGate
from .request_log import RequestLogger
from .sql import create_adapter
from .store import LogFilter, UsageStore

logger = get_logger("MailGateway")

MAX_LOG_PAGE = 500
DEFAULT_LOG_PAGE = 100
DEFAULT_LOG_RETENTION_DAYS = 30
POOL_CLEANUP_INTERVAL = 150.0

MAINTENANCE_CLEANUP_LOGS = "cleanup-logs"
MAINTENANCE_RESET_RATE_LIMIT = "reset-rate-limit"

_LEDGER_FIELDS = {
    "api_key": "apiKey",
    "total_count": "totalCount",
    "success_count": "successCount",
    "failure_count": "failureCount",
    "last_used": "lastUsed",
    "created_at": "createdAt",
}

_LOG_FIELDS = {
    "status_code": "statusCode",
    "request_bytes": "requestBytes",
    "response_bytes": "responseBytes",
    "duration_ms": "durationMs",
    "client_ip": "clientIp",
    "user_agent": "userAgent",
    "error_message": "errorMessage",
}


def _rename(row: dict[str, Any], names: dict[str, str]) -> dict[str, Any]:
    return {names.get(key, key): value for key, value in row.items()}


def _envelope(data: Any, **extra: Any) -> dict[str, Any]:
    return {"success": True, "data": data, **extra, "timestamp": utc_now_iso()}


class Gateway:
    """Composition root of the mail gateway.

    Attributes:
        settings: The GatewaySettings the components were built from.
        metrics: Shared GatewayMetrics.
        store: UsageStore shared by the rate gate and the request logger.
        auth: AuthGate checking the bearer secret.
        rate_gate: RateGate enforcing per-class limits.
        dispatcher: ProviderDispatcher owning the email backends.
        request_logger: RequestLogger persisting the audit trail.
        cleanup_interval: Seconds between sweeps of pooled provider connections.
    """

    def __init__(
        self,
        settings: GatewaySettings,
        *,
        store: UsageStore | None = None,
        dispatcher: ProviderDispatcher | None = None,
        metrics: GatewayMetrics | None = None,
        clock: Callable[[], float] = time.time,
        cleanup_interval: float = POOL_CLEANUP_INTERVAL,
    ):
        if not settings.api_secret:
            raise ValueError("API_SECRET is not configured")
        self.settings = settings
        self.metrics = metrics or GatewayMetrics()
        self.store = store or UsageStore(create_adapter(settings.db_path))
        self.auth = AuthGate(settings.api_secret)
        self.rate_gate = RateGate(
            self.store, enabled=settings.rate_limit_enabled, metrics=self.metrics, clock=clock
        )
        self.dispatcher = dispatcher or build_dispatcher(settings, self.metrics)
        self.request_logger = RequestLogger(self.store, metrics=self.metrics)
        self.cleanup_interval = cleanup_interval
        self._stop = asyncio.Event()
        self._task_cleanup: asyncio.Task | None = None

    async def start(self) -> None:
        await self.store.open()
        purged = await self.rate_gate.purge_expired()
        if purged:
            logger.info("Purged %d expired rate-limit windows", purged)
        await self.request_logger.start()
        self._stop.clear()
        self._task_cleanup = asyncio.create_task(self._cleanup_loop(), name="provider-cleanup-loop")
        configured = ", ".join(name for name, ok in self.dispatcher.configured().items() if ok)
        logger.info("Mail gateway started (providers: %s)", configured or "none")

    async def stop(self) -> None:
        self._stop.set()
        if self._task_cleanup is not None:
            await self._task_cleanup
            self._task_cleanup = None
        await self.request_logger.stop()
        await self.dispatcher.close()
        await self.store.close()
        logger.info("Mail gateway stopped")

    async def _cleanup_loop(self) -> None:
        """Background coroutine that keeps pooled provider connections healthy."""
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.cleanup_interval)
            except asyncio.TimeoutError:
                try:
                    await self.dispatcher.cleanup()
                except Exception:
                    logger.exception("Provider cleanup failed")

    # Email ------------------------------------------------------------------
    async def send_email(self, payload: SendRequest) -> DispatchResult:
        """Validate a send request and dispatch its message.

        Raises:
            ValidationError: Missing provider, message, recipients or subject,
                or an unknown provider.
            ConfigurationError: The provider has no credentials.
        """
        if not payload.provider:
            raise ValidationError("Provider is required (gmail or sendgrid)")
        if payload.message is None:
            raise ValidationError("Message object is required")
        if not payload.message.is_addressable():
            raise ValidationError(MISSING_FIELDS_MESSAGE)
        result = await self.dispatcher.send(payload.provider, payload.message)
        if result.success:
            logger.info("Email sent via %s (id=%s)", result.provider.value, result.message_id)
        else:
            logger.warning("Email via %s failed: %s", result.provider.value, result.error)
        return result

    async def send_batch(self, payload: BatchRequest) -> BatchResult:
        """Dispatch every message of a batch, sequentially."""
        if not payload.provider:
            raise ValidationError("Provider is required")
        if not payload.messages:
            raise ValidationError("Messages array is required and must not be empty")
        return await self.dispatcher.send_batch(payload.provider, payload.messages)

    def health(self) -> dict[str, Any]:
        return {
            "status": "healthy",
            "timestamp": utc_now_iso(),
            "services": {
                name: {"configured": configured}
                for name, configured in self.dispatcher.configured().items()
            },
        }

    # Audit --------------------------------------------------------------------
    async def list_logs(
        self,
        *,
        limit: int = DEFAULT_LOG_PAGE,
        offset: int = 0,
        filters: LogFilter | None = None,
    ) -> dict[str, Any]:
        """Page through the request log, newest first."""
        limit = max(0, min(limit, MAX_LOG_PAGE))
        offset = max(0, offset)
        rows = await self.store.list_request_logs(limit, offset, filters)
        total = await self.store.count_request_logs(filters)
        return _envelope(
            [_rename(row, _LOG_FIELDS) for row in rows],
            pagination={
                "limit": limit,
                "offset": offset,
                "total": total,
                "hasMore": offset + limit < total,
            },
        )

    async def stats(self, start_date: str | None = None, end_date: str | None = None) -> dict[str, Any]:
        stats = await self.store.request_stats(start_date, end_date)
        return _envelope({**stats, "period": {"start": start_date, "end": end_date}})

    async def api_key_stats(self, api_key: str | None = None) -> dict[str, Any]:
        """Ledger row for one key (given in clear, looked up by fingerprint) or the 100 latest."""
        if api_key:
            row = await self.store.get_api_key_usage(fingerprint(api_key))
            data = _rename(row, _LEDGER_FIELDS) if row else {"message": "No stats found for this API key"}
            return _envelope(data)
        rows = await self.store.list_api_key_usage(limit=100)
        return _envelope([_rename(row, _LEDGER_FIELDS) for row in rows], total=len(rows))

    # Administration -----------------------------------------------------------
    async def maintenance(self, payload: MaintenanceRequest) -> dict[str, Any]:
        """Run one administrative action.

        Raises:
            ValidationError: Missing or unknown action, or missing clientIp.
        """
        if not payload.action:
            raise ValidationError("action is required")

        if payload.action == MAINTENANCE_CLEANUP_LOGS:
            days = payload.days_old or DEFAULT_LOG_RETENTION_DAYS
            deleted = await self.cleanup_logs(days)
            result = {
                "action": MAINTENANCE_CLEANUP_LOGS,
                "deletedLogs": deleted,
                "message": f"Deleted {deleted} logs older than {days} days",
            }
        elif payload.action == MAINTENANCE_RESET_RATE_LIMIT:
            if not payload.client_ip:
                raise ValidationError("clientIp is required for reset-rate-limit action")
            await self.rate_gate.reset(payload.client_ip)
            result = {
                "action": MAINTENANCE_RESET_RATE_LIMIT,
                "clientIp": payload.client_ip,
                "message": f"Rate limit reset for IP: {payload.client_ip}",
            }
        else:
            raise ValidationError("Invalid action")
        return _envelope(result)

    async def cleanup_logs(self, days: int = DEFAULT_LOG_RETENTION_DAYS) -> int:
        return await self.store.delete_logs_older_than(days)
