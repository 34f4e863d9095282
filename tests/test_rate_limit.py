import asyncio

import pytest

from mail_gateway.errors import RateLimitExceeded
from mail_gateway.models import EndpointClass
from mail_gateway.prometheus import GatewayMetrics
from mail_gateway.rate_limit import RATE_LIMITS, RateDecision, RateGate, RateLimitPolicy


class FakeClock:
    def __init__(self, now: float):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_default_policies():
    assert RATE_LIMITS[EndpointClass.GENERAL] == RateLimitPolicy(10, 60)
    assert RATE_LIMITS[EndpointClass.SEND] == RateLimitPolicy(5, 60)
    assert RATE_LIMITS[EndpointClass.BATCH] == RateLimitPolicy(3, 60)


@pytest.mark.asyncio
async def test_remaining_strictly_decreases_until_rejection(store):
    clock = FakeClock(6000.0)
    gate = RateGate(store, clock=clock)

    decisions = [await gate.check("10.0.0.1", EndpointClass.SEND) for _ in range(6)]

    assert [d.allowed for d in decisions] == [True] * 5 + [False]
    assert [d.remaining for d in decisions] == [4, 3, 2, 1, 0, 0]
    assert all(d.limit == 5 for d in decisions)
    assert all(d.reset_at == 6060 for d in decisions)


@pytest.mark.asyncio
async def test_rejected_request_does_not_increment(store):
    clock = FakeClock(120.0)
    gate = RateGate(store, clock=clock)
    for _ in range(5):
        await gate.check("10.0.0.1", EndpointClass.BATCH)

    assert await store.get_window_count("10.0.0.1", "batch", 2) == 3


@pytest.mark.asyncio
async def test_concurrent_checks_allow_exactly_the_limit(store):
    gate = RateGate(store, clock=FakeClock(600.0))

    decisions = await asyncio.gather(
        *[gate.check("10.0.0.9", EndpointClass.SEND) for _ in range(25)]
    )

    assert sum(1 for d in decisions if d.allowed) == 5
    assert await store.get_window_count("10.0.0.9", "send", 10) == 5
    assert sorted(d.remaining for d in decisions if d.allowed) == [0, 1, 2, 3, 4]


@pytest.mark.asyncio
async def test_new_window_starts_fresh(store):
    clock = FakeClock(59.0)
    gate = RateGate(store, clock=clock)
    for _ in range(3):
        await gate.check("c", EndpointClass.BATCH)
    assert (await gate.check("c", EndpointClass.BATCH)).allowed is False

    clock.now = 60.0
    decision = await gate.check("c", EndpointClass.BATCH)
    assert decision.allowed is True
    assert decision.remaining == 2
    assert decision.reset_at == 120


@pytest.mark.asyncio
async def test_classes_and_clients_are_independent(store):
    gate = RateGate(store, clock=FakeClock(0.0))
    for _ in range(3):
        await gate.check("a", EndpointClass.BATCH)

    assert (await gate.check("a", EndpointClass.BATCH)).allowed is False
    assert (await gate.check("a", EndpointClass.SEND)).allowed is True
    assert (await gate.check("b", EndpointClass.BATCH)).allowed is True


@pytest.mark.asyncio
async def test_disabled_gate_allows_everything_without_counting(store):
    gate = RateGate(store, enabled=False, clock=FakeClock(0.0))

    for _ in range(20):
        decision = await gate.check("a", EndpointClass.BATCH)
        assert decision.allowed is True
        assert decision.remaining == 3

    assert await store.get_window_count("a", "batch", 0) == 0


@pytest.mark.asyncio
async def test_reset_and_purge(store):
    clock = FakeClock(0.0)
    gate = RateGate(store, clock=clock)
    for _ in range(3):
        await gate.check("a", EndpointClass.BATCH)

    assert await gate.reset("a") == 1
    assert (await gate.check("a", EndpointClass.BATCH)).remaining == 2

    clock.now = 3600.0
    assert await gate.purge_expired() == 1


@pytest.mark.asyncio
async def test_rejections_are_counted_in_metrics(store):
    metrics = GatewayMetrics()
    gate = RateGate(store, metrics=metrics, clock=FakeClock(0.0))
    for _ in range(4):
        await gate.check("a", EndpointClass.BATCH)

    assert b'mgw_rate_limited_total{endpoint_class="batch"} 1.0' in metrics.generate_latest()


def test_headers_and_retry_after():
    decision = RateDecision(allowed=False, remaining=0, reset_at=1060, limit=5)
    assert decision.headers() == {
        "X-RateLimit-Limit": "5",
        "X-RateLimit-Remaining": "0",
        "X-RateLimit-Reset": "1060",
    }

    exc = RateLimitExceeded(decision, now=1000.5)
    assert exc.retry_after == 60
    assert exc.status_code == 429
    body = exc.to_dict()
    assert body["data"] == {"message": "Rate limit exceeded", "retryAfter": 60, "remaining": 0}

    assert RateLimitExceeded(decision, now=1070).retry_after == 1
