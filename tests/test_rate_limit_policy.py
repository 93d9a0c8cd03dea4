import asyncio
import time

import pytest

from signal_relay.rate_limit_policy import RateLimitManager, RateLimitQuota, RateLimitState


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_rate_limit_quota_allow_within_limit():
    quota = RateLimitQuota(requests_per_window=3, window_seconds=1)
    state = RateLimitState(quota=quota)

    for _ in range(3):
        assert state.is_allowed()
        state.record_request()
    assert not state.is_allowed()


def test_rate_limit_window_slides():
    clock = FakeClock()
    state = RateLimitState(quota=RateLimitQuota(2, 10), clock=clock)
    state.record_request()
    clock.now += 5
    state.record_request()
    assert not state.is_allowed()
    assert state.time_until_allowed() == pytest.approx(5)

    clock.now += 5.01
    assert state.is_allowed()
    assert len(state.request_times) == 1


def test_rate_limit_manager_per_endpoint_defaults():
    manager = RateLimitManager()

    # order endpoints get 30 req/sec, including sub-paths
    for _ in range(30):
        assert manager.is_allowed("/api/v3/brokerage/orders/historical/batch")
        manager.record_request("/api/v3/brokerage/orders/historical/batch")
    assert not manager.is_allowed("/api/v3/brokerage/orders/historical/batch")

    # other endpoints use default (10 req/sec)
    for _ in range(10):
        assert manager.is_allowed("/api/v3/brokerage/products")
        manager.record_request("/api/v3/brokerage/products")
    assert not manager.is_allowed("/api/v3/brokerage/products")


def test_check_reports_remaining_and_retry_after():
    clock = FakeClock()
    manager = RateLimitManager({"default": RateLimitQuota(2, 60)}, clock=clock)

    first = manager.check("10.0.0.1")
    assert first.allowed and first.limit == 2 and first.remaining == 1
    second = manager.check("10.0.0.1")
    assert second.allowed and second.remaining == 0

    clock.now += 10
    denied = manager.check("10.0.0.1")
    assert not denied.allowed
    assert denied.remaining == 0
    assert denied.retry_after == pytest.approx(50)
    assert denied.reset_at == pytest.approx(1060)

    # keys are independent
    assert manager.check("10.0.0.2").allowed


def test_denied_requests_are_not_recorded():
    clock = FakeClock()
    manager = RateLimitManager({"default": RateLimitQuota(1, 1)}, clock=clock)
    manager.check("a")
    for _ in range(5):
        assert not manager.check("a").allowed
    clock.now += 1.5
    assert manager.check("a").allowed


def test_purge_idle_and_snapshot():
    clock = FakeClock()
    manager = RateLimitManager({"default": RateLimitQuota(5, 1)}, clock=clock)
    manager.check("old")
    clock.now += 2
    manager.check("fresh")

    snap = manager.snapshot()
    assert snap["fresh"]["remaining"] == 4
    assert snap["old"]["remaining"] == 5

    assert manager.purge_idle() == 1
    assert list(manager.states) == ["fresh"]


def test_wait_if_needed_allows_immediately():
    manager = RateLimitManager(quotas={"/test": RateLimitQuota(requests_per_window=5, window_seconds=1)})

    start = time.time()
    assert manager.wait_if_needed("/test")
    assert time.time() - start < 0.05


def test_wait_if_needed_timeout():
    manager = RateLimitManager(quotas={"/test": RateLimitQuota(requests_per_window=1, window_seconds=1.0)})
    manager.record_request("/test")

    start = time.time()
    allowed = manager.wait_if_needed("/test", max_wait=0.05)
    assert not allowed
    assert time.time() - start < 0.2  # didn't wait the full second


@pytest.mark.asyncio
async def test_wait_if_needed_async_waits_for_window():
    manager = RateLimitManager(quotas={"/test": RateLimitQuota(requests_per_window=1, window_seconds=0.1)})
    manager.record_request("/test")

    start = time.time()
    assert await manager.wait_if_needed_async("/test", max_wait=1.0)
    assert time.time() - start >= 0.05
    assert not manager.is_allowed("/test")


@pytest.mark.asyncio
async def test_wait_if_needed_async_timeout():
    manager = RateLimitManager(quotas={"/test": RateLimitQuota(requests_per_window=1, window_seconds=5)})
    manager.record_request("/test")
    assert not await asyncio.wait_for(manager.wait_if_needed_async("/test", max_wait=0.05), timeout=1)
