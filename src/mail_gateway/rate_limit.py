# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Fixed-window rate limiter using persisted window counters.

This module implements per-client rate limiting with one policy per endpoint
class. The window a request falls into is ``floor(now / window_seconds)``,
so counters reset at window boundaries without any expiry job. The price of
that simplicity is the usual fixed-window artifact: a client can spend its
whole quota at the end of one window and again at the start of the next,
i.e. up to twice the limit within ``window_seconds``.

The check and the increment are a single atomic store operation, so two
concurrent requests arriving at ``count = max - 1`` cannot both pass.

Example:
    Gating a request::

        gate = RateGate(store)
        decision = await gate.check("203.0.113.7", EndpointClass.SEND)
        if not decision.allowed:
            raise RateLimitExceeded(decision)
        response.headers.update(decision.headers())
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from .logger import get_logger
from .models import EndpointClass
from .prometheus import GatewayMetrics
from .store import UsageStore

logger = get_logger("RateGate")


@dataclass(frozen=True)
class RateLimitPolicy:
    max_requests: int
    window_seconds: int


RATE_LIMITS: dict[EndpointClass, RateLimitPolicy] = {
    EndpointClass.GENERAL: RateLimitPolicy(max_requests=10, window_seconds=60),
    EndpointClass.SEND: RateLimitPolicy(max_requests=5, window_seconds=60),
    EndpointClass.BATCH: RateLimitPolicy(max_requests=3, window_seconds=60),
}


@dataclass(frozen=True)
class RateDecision:
    """Outcome of a rate-limit check.

    Attributes:
        allowed: Whether the request may proceed.
        remaining: ``limit - count`` after this request (0 when rejected).
        reset_at: Epoch seconds at which the next window starts.
        limit: Maximum requests per window for the endpoint class.
    """

    allowed: bool
    remaining: int
    reset_at: int
    limit: int

    def headers(self) -> dict[str, str]:
        """The ``X-RateLimit-*`` response headers for this decision."""
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }


class RateGate:
    """Per-(client, endpoint class) fixed-window limiter backed by UsageStore.

    Attributes:
        store: The UsageStore holding window counters.
        policies: Limit and window length per endpoint class.
        enabled: When False every request is allowed and nothing is counted.
    """

    def __init__(
        self,
        store: UsageStore,
        *,
        policies: Mapping[EndpointClass, RateLimitPolicy] | None = None,
        enabled: bool = True,
        metrics: GatewayMetrics | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.policies = dict(policies or RATE_LIMITS)
        self.enabled = enabled
        self.metrics = metrics
        self._clock = clock

    async def check(self, client_key: str, endpoint_class: EndpointClass) -> RateDecision:
        """Count one request for ``client_key`` and decide whether it may proceed.

        On allow, the increment is persisted before returning. On reject the
        stored count is left unchanged.

        Args:
            client_key: Identity of the caller, usually its IP address.
            endpoint_class: Policy category of the route being called.

        Returns:
            The RateDecision for this request.
        """
        policy = self.policies[endpoint_class]
        now = self._clock()
        window_index = int(now // policy.window_seconds)
        reset_at = (window_index + 1) * policy.window_seconds

        if not self.enabled:
            return RateDecision(True, policy.max_requests, reset_at, policy.max_requests)

        allowed, count = await self.store.increment_window(
            client_key, endpoint_class.value, window_index, policy.max_requests
        )
        if not allowed:
            logger.warning(
                "Rate limit exceeded for %s on %s (%d/%d)",
                client_key, endpoint_class.value, count, policy.max_requests,
            )
            if self.metrics:
                self.metrics.inc_rate_limited(endpoint_class.value)
            return RateDecision(False, 0, reset_at, policy.max_requests)
        return RateDecision(True, policy.max_requests - count, reset_at, policy.max_requests)

    async def reset(self, client_key: str) -> int:
        """Forget every window of a client. Returns the number of rows removed."""
        removed = await self.store.reset_rate_limits(client_key)
        logger.info("Rate limit reset for %s (%d windows)", client_key, removed)
        return removed

    async def purge_expired(self) -> int:
        """Drop windows that closed before the current one, for every class."""
        now = self._clock()
        removed = 0
        for endpoint_class, policy in self.policies.items():
            current = int(now // policy.window_seconds)
            removed += await self.store.purge_windows_before(endpoint_class.value, current)
        return removed
