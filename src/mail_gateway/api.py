# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""FastAPI application factory for the mail gateway.

This module wires the HTTP surface onto a :class:`~mail_gateway.gateway.Gateway`:

- ``POST /email/send`` and ``POST /email/batch`` dispatch messages
- ``GET /health`` reports provider configuration (no authentication)
- ``GET /logs``, ``GET /stats``, ``GET /api-key-stats`` read the audit trail
- ``POST /admin/maintenance`` prunes logs or resets a client's rate limit
- ``GET /metrics`` exposes Prometheus metrics

Every protected route goes through :func:`guard`: the bearer credential is
checked first, then the caller's quota for the route's endpoint class, taken
from the explicit ``ROUTE_CLASSES`` table. Rate-limit headers are set on
every guarded response, errors included.

Example:
    Creating and running the API application::

        from mail_gateway.gateway import Gateway
        from mail_gateway.api import create_app

        gateway = Gateway(load_settings())
        app = create_app(gateway)

        # Run with uvicorn
        uvicorn.run(app, host="0.0.0.0", port=8000)
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncContextManager, Callable, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from fastapi.security import APIKeyHeader
from prometheus_client import CONTENT_TYPE_LATEST

from .auth import ClientIdentity, bearer_value, fingerprint
from .errors import ConfigurationError, GatewayError, RateLimitExceeded, ValidationError
from .gateway import Gateway
from .logger import get_logger
from .models import BatchRequest, EndpointClass, MaintenanceRequest, SendRequest
from .request_log import RequestAuditMiddleware, client_ip_from_scope
from .store import LogFilter

logger = get_logger("MailGateway.api")

authorization_scheme = APIKeyHeader(name="Authorization", auto_error=False)

# (method, route path) -> rate-limit policy class
ROUTE_CLASSES: dict[tuple[str, str], EndpointClass] = {
    ("POST", "/email/send"): EndpointClass.SEND,
    ("POST", "/email/batch"): EndpointClass.BATCH,
    ("GET", "/logs"): EndpointClass.GENERAL,
    ("GET", "/stats"): EndpointClass.GENERAL,
    ("GET", "/api-key-stats"): EndpointClass.GENERAL,
    ("POST", "/admin/maintenance"): EndpointClass.GENERAL,
    ("GET", "/metrics"): EndpointClass.GENERAL,
}


def _audit(request: Request):
    return getattr(request.state, "audit", None)


def get_gateway(request: Request) -> Gateway:
    return request.app.state.gateway


async def guard(
    request: Request,
    response: Response,
    authorization: Optional[str] = Depends(authorization_scheme),
) -> ClientIdentity:
    """Authenticate the caller, then count the request against its quota.

    The fingerprint of any presented bearer value is attached to the request
    audit before validation, so rejected keys show up in the usage ledger.

    Raises:
        AuthError: Missing or wrong credential.
        RateLimitExceeded: The caller's window for this endpoint class is full.
    """
    gateway = get_gateway(request)
    audit = _audit(request)
    presented = bearer_value(authorization)
    if audit is not None and presented:
        audit.api_key = fingerprint(presented)
    identity = gateway.auth.validate(authorization)

    route = request.scope.get("route")
    route_path = getattr(route, "path", request.url.path)
    endpoint_class = ROUTE_CLASSES[(request.method, route_path)]
    decision = await gateway.rate_gate.check(client_ip_from_scope(request.scope), endpoint_class)
    # error responses are built from scratch, they read the decision from here
    request.state.rate_decision = decision
    if not decision.allowed:
        raise RateLimitExceeded(decision)
    response.headers.update(decision.headers())
    return identity


guard_dependency = Depends(guard)


def _validation_message(exc: RequestValidationError) -> str:
    parts = []
    for error in exc.errors():
        loc = ".".join(str(item) for item in error.get("loc", ()) if item != "body")
        parts.append(f"{loc}: {error.get('msg')}" if loc else str(error.get("msg")))
    return "; ".join(parts) or "Invalid request"


def create_app(
    gateway: Gateway,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        gateway: The Gateway serving every route.
        lifespan: Optional lifespan context manager. By default the gateway
            is started on startup and stopped on shutdown.

    Returns:
        A configured application ready to be served by Uvicorn.
    """

    @asynccontextmanager
    async def default_lifespan(app: FastAPI):
        await gateway.start()
        try:
            yield
        finally:
            await gateway.stop()

    api = FastAPI(title="Mail Gateway", lifespan=lifespan or default_lifespan)
    api.state.gateway = gateway
    api.add_middleware(RequestAuditMiddleware, request_logger=gateway.request_logger)
    router = APIRouter(dependencies=[guard_dependency])

    @api.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        audit = _audit(request)
        if audit is not None:
            audit.error_message = exc.message
        if isinstance(exc, ConfigurationError):
            logger.error("Configuration error on %s %s: %s", request.method, request.url.path, exc.message)
        headers: dict[str, str] = {}
        decision = getattr(request.state, "rate_decision", None)
        if decision is not None:
            headers.update(decision.headers())
        if isinstance(exc, RateLimitExceeded):
            headers["Retry-After"] = str(exc.retry_after)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

    @api.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Render body and query validation failures as 400 in the gateway's error shape."""
        logger.warning("Validation error on %s %s: %s", request.method, request.url.path, exc.errors())
        return await gateway_error_handler(request, ValidationError(_validation_message(exc)))

    @api.get("/health")
    async def health():
        """Service and provider status (no authentication, not rate limited)."""
        return gateway.health()

    @router.post("/email/send")
    async def send_email(request: Request, response: Response, payload: Optional[SendRequest] = None):
        """Send one message through the requested provider.

        Answers 500 with the failed DispatchResult when the provider refused it.
        """
        payload = payload or SendRequest()
        audit = _audit(request)
        if audit is not None:
            audit.provider = payload.provider
        result = await gateway.send_email(payload)
        if not result.success:
            response.status_code = 500
            if audit is not None:
                audit.error_message = result.error
        return result.model_dump(mode="json", by_alias=True, exclude_none=True)

    @router.post("/email/batch")
    async def send_batch(request: Request, payload: Optional[BatchRequest] = None):
        """Send several messages sequentially through one provider."""
        payload = payload or BatchRequest()
        audit = _audit(request)
        if audit is not None:
            audit.provider = payload.provider
        result = await gateway.send_batch(payload)
        return result.model_dump(mode="json", by_alias=True, exclude_none=True)

    @router.get("/logs")
    async def list_logs(
        limit: int = 100,
        offset: int = 0,
        method: Optional[str] = None,
        path: Optional[str] = None,
        status_code: Optional[int] = Query(default=None, alias="statusCode"),
        start_date: Optional[str] = Query(default=None, alias="startDate"),
        end_date: Optional[str] = Query(default=None, alias="endDate"),
    ) -> dict[str, Any]:
        """Page through the request log, newest first (at most 500 rows)."""
        filters = LogFilter(
            method=method,
            path=path,
            status_code=status_code,
            start_date=start_date,
            end_date=end_date,
        )
        return await gateway.list_logs(limit=limit, offset=offset, filters=filters)

    @router.get("/stats")
    async def stats(
        start_date: Optional[str] = Query(default=None, alias="startDate"),
        end_date: Optional[str] = Query(default=None, alias="endDate"),
    ) -> dict[str, Any]:
        return await gateway.stats(start_date, end_date)

    @router.get("/api-key-stats")
    async def api_key_stats(api_key: Optional[str] = Query(default=None, alias="apiKey")) -> dict[str, Any]:
        return await gateway.api_key_stats(api_key)

    @router.post("/admin/maintenance")
    async def maintenance(payload: Optional[MaintenanceRequest] = None) -> dict[str, Any]:
        """Run ``cleanup-logs`` or ``reset-rate-limit``."""
        return await gateway.maintenance(payload or MaintenanceRequest())

    @router.get("/metrics")
    async def metrics():
        """Expose Prometheus metrics collected by the gateway."""
        return Response(content=gateway.metrics.generate_latest(), media_type=CONTENT_TYPE_LATEST)

    api.include_router(router)
    return api
