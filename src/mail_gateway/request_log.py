# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Asynchronous request auditing.

Two pieces cooperate:

- :class:`RequestAuditMiddleware`, a pure ASGI middleware wrapping
  ``receive`` and ``send`` of each request to count bytes, capture the final
  status and duration, and emit one access-log line. Handlers enrich the
  per-request :class:`RequestAudit` found in ``request.state.audit`` with the
  provider used, the error message and the caller's key fingerprint.
- :class:`RequestLogger`, which takes the finished :class:`RequestRecord`,
  queues it and persists it from a background task, so the response never
  waits for the database.

Persisting failures are logged and counted, never raised: losing an audit
row must not fail the request that produced it.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Iterable
from dataclasses import dataclass

from .auth import PUBLIC_PATHS
from .logger import get_logger
from .models import RequestRecord
from .prometheus import GatewayMetrics
from .store import UsageStore

logger = get_logger("RequestLogger")
access_logger = get_logger("MailGateway.access")


def client_ip_from_scope(scope) -> str:
    """Resolve the caller address of an ASGI HTTP scope.

    Order: ``cf-connecting-ip``, first hop of ``x-forwarded-for``,
    ``x-real-ip``, socket peer, then ``"unknown"``.
    """
    headers = {}
    for key, value in scope.get("headers") or []:
        headers.setdefault(key.decode("latin-1").lower(), value.decode("latin-1"))
    if ip := headers.get("cf-connecting-ip", "").strip():
        return ip
    if forwarded := headers.get("x-forwarded-for"):
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if ip := headers.get("x-real-ip", "").strip():
        return ip
    client = scope.get("client")
    if client and client[0]:
        return client[0]
    return "unknown"


@dataclass
class RequestAudit:
    """Mutable notes collected while one request is in flight."""

    method: str
    path: str
    client_ip: str
    user_agent: str | None = None
    status_code: int = 500
    request_bytes: int = 0
    response_bytes: int = 0
    provider: str | None = None
    error_message: str | None = None
    api_key: str | None = None

    def to_record(self, duration_ms: float) -> RequestRecord:
        return RequestRecord(
            method=self.method,
            path=self.path,
            status_code=self.status_code,
            client_ip=self.client_ip,
            request_bytes=self.request_bytes,
            response_bytes=self.response_bytes,
            duration_ms=round(duration_ms, 2),
            user_agent=self.user_agent,
            provider=self.provider,
            error_message=self.error_message,
            api_key=self.api_key,
        )


class RequestLogger:
    """Queue of request records drained into the UsageStore by one worker task.

    Records are written in arrival order by a single task; ``stop()`` waits
    until every queued record has been handled.

    Attributes:
        store: Destination UsageStore.
        metrics: Optional GatewayMetrics for queue depth and write failures.
    """

    def __init__(self, store: UsageStore, *, metrics: GatewayMetrics | None = None):
        self.store = store
        self.metrics = metrics
        self._queue: asyncio.Queue[RequestRecord | None] = asyncio.Queue()
        self._worker: asyncio.Task | None = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def record(self, record: RequestRecord) -> None:
        """Enqueue ``record`` and return immediately."""
        self._queue.put_nowait(record)
        self._update_depth()

    async def start(self) -> None:
        if self._worker is None:
            self._worker = asyncio.create_task(self._run(), name="request-logger")

    async def flush(self) -> None:
        """Wait until every record queued so far has been written."""
        if self._worker is None:
            await self._drain()
        else:
            await self._queue.join()

    async def stop(self) -> None:
        """Write every pending record, then stop the worker."""
        if self._worker is not None:
            self._queue.put_nowait(None)
            await self._worker
            self._worker = None
        await self._drain()

    async def _run(self) -> None:
        while True:
            record = await self._queue.get()
            try:
                if record is None:
                    return
                await self._write(record)
            finally:
                self._queue.task_done()
                self._update_depth()

    async def _drain(self) -> None:
        while not self._queue.empty():
            record = self._queue.get_nowait()
            try:
                if record is not None:
                    await self._write(record)
            finally:
                self._queue.task_done()
        self._update_depth()

    async def _write(self, record: RequestRecord) -> None:
        try:
            await self.store.insert_request_log(record.as_row())
            if record.api_key:
                await self.store.record_api_key_usage(record.api_key, record.success, record.timestamp)
        except Exception as exc:
            logger.error("Failed to persist request log for %s %s: %s", record.method, record.path, exc)
            if self.metrics:
                self.metrics.inc_log_failure()

    def _update_depth(self) -> None:
        if self.metrics:
            self.metrics.set_log_queue_depth(self._queue.qsize())


class RequestAuditMiddleware:
    """ASGI middleware measuring every HTTP request and handing it to a RequestLogger.

    Paths in ``skip_paths`` (the health check by default) are neither
    measured nor logged.
    """

    def __init__(self, app, *, request_logger: RequestLogger, skip_paths: Iterable[str] = PUBLIC_PATHS):
        self.app = app
        self.request_logger = request_logger
        self.skip_paths = frozenset(skip_paths)

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http" or scope.get("path") in self.skip_paths:
            await self.app(scope, receive, send)
            return

        user_agent = None
        for key, value in scope.get("headers") or []:
            if key.lower() == b"user-agent":
                user_agent = value.decode("latin-1")
                break
        audit = RequestAudit(
            method=scope.get("method", "GET"),
            path=scope.get("path", ""),
            client_ip=client_ip_from_scope(scope),
            user_agent=user_agent,
        )
        scope.setdefault("state", {})["audit"] = audit
        started = time.perf_counter()

        async def counting_receive():
            message = await receive()
            if message["type"] == "http.request":
                audit.request_bytes += len(message.get("body", b""))
            return message

        async def counting_send(message):
            if message["type"] == "http.response.start":
                audit.status_code = message["status"]
            elif message["type"] == "http.response.body":
                audit.response_bytes += len(message.get("body", b""))
            await send(message)

        try:
            await self.app(scope, counting_receive, counting_send)
        except Exception as exc:
            audit.status_code = 500
            audit.error_message = audit.error_message or str(exc) or type(exc).__name__
            raise
        finally:
            duration_ms = (time.perf_counter() - started) * 1000
            record = audit.to_record(duration_ms)
            access_logger.info(
                "%d %s %s (%.1fms) [%s]%s",
                record.status_code,
                record.method,
                record.path,
                record.duration_ms,
                record.client_ip,
                f" provider={record.provider}" if record.provider else "",
            )
            self.request_logger.record(record)
