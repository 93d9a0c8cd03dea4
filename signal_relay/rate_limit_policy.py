"""Rate-limit policy: sliding-window quotas per key.

Used in two directions:
- outbound, keyed by exchange endpoint, to stay under the exchange's limits
- inbound, keyed by client address, to protect the webhook endpoints
"""
import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional


@dataclass
class RateLimitQuota:
    """Per-key rate-limit quota."""
    requests_per_window: int  # max requests allowed in the window
    window_seconds: float     # time window in seconds


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: float  # seconds until a slot frees up, 0 if allowed
    reset_at: float     # unix time at which the oldest request leaves the window


@dataclass
class RateLimitState:
    """Track request history for a single key."""
    quota: RateLimitQuota
    request_times: List[float] = field(default_factory=list)
    clock: Callable[[], float] = time.time

    def _prune(self, now: float) -> None:
        cutoff = now - self.quota.window_seconds
        self.request_times = [t for t in self.request_times if t > cutoff]

    def is_allowed(self) -> bool:
        """Check if a new request is allowed under the quota."""
        self._prune(self.clock())
        return len(self.request_times) < self.quota.requests_per_window

    def record_request(self) -> None:
        self.request_times.append(self.clock())

    def time_until_allowed(self) -> float:
        """Return seconds until next request is allowed. 0 if allowed now."""
        if self.is_allowed():
            return 0.0
        oldest = min(self.request_times)
        return max(0.0, oldest + self.quota.window_seconds - self.clock())

    def decide(self) -> RateLimitDecision:
        now = self.clock()
        self._prune(now)
        used = len(self.request_times)
        reset_at = (min(self.request_times) + self.quota.window_seconds) if self.request_times else now
        if used < self.quota.requests_per_window:
            return RateLimitDecision(True, self.quota.requests_per_window, self.quota.requests_per_window - used, 0.0, reset_at)
        return RateLimitDecision(False, self.quota.requests_per_window, 0, max(0.0, reset_at - now), reset_at)


class RateLimitManager:
    """Enforce rate-limit quotas per key."""

    # Coinbase Advanced Trade: 30 req/s on private endpoints, 10 req/s public
    DEFAULT_QUOTAS = {
        "/api/v3/brokerage/orders": RateLimitQuota(requests_per_window=30, window_seconds=1),
        "/api/v3/brokerage/accounts": RateLimitQuota(requests_per_window=30, window_seconds=1),
        "default": RateLimitQuota(requests_per_window=10, window_seconds=1),
    }

    def __init__(self, quotas: Optional[Dict[str, RateLimitQuota]] = None, *, clock: Callable[[], float] = time.time):
        self.quotas = quotas or self.DEFAULT_QUOTAS.copy()
        self.states: Dict[str, RateLimitState] = {}
        self.clock = clock

    def _quota_for(self, key: str) -> RateLimitQuota:
        if key in self.quotas:
            return self.quotas[key]
        # longest matching prefix, so /orders/historical/x uses the /orders quota
        matches = [k for k in self.quotas if k != "default" and key.startswith(k)]
        if matches:
            return self.quotas[max(matches, key=len)]
        return self.quotas["default"]

    def _get_state(self, key: str) -> RateLimitState:
        if key not in self.states:
            self.states[key] = RateLimitState(quota=self._quota_for(key), clock=self.clock)
        return self.states[key]

    def is_allowed(self, key: str) -> bool:
        return self._get_state(key).is_allowed()

    def record_request(self, key: str) -> None:
        self._get_state(key).record_request()

    def time_until_allowed(self, key: str) -> float:
        return self._get_state(key).time_until_allowed()

    def check(self, key: str) -> RateLimitDecision:
        """Decide and, when allowed, record the request in one step."""
        state = self._get_state(key)
        decision = state.decide()
        if decision.allowed:
            state.record_request()
            decision.remaining -= 1
        return decision

    def wait_if_needed(self, key: str, max_wait: float = 60.0) -> bool:
        """Block until a request is allowed; return False if max_wait would be exceeded."""
        start = time.time()
        while not self.is_allowed(key):
            wait_time = self.time_until_allowed(key)
            if wait_time > 0:
                elapsed = time.time() - start
                if elapsed + wait_time > max_wait:
                    return False
                time.sleep(min(wait_time, max_wait - elapsed))

        self.record_request(key)
        return True

    async def wait_if_needed_async(self, key: str, max_wait: float = 60.0) -> bool:
        """Non-blocking variant of wait_if_needed for the event loop."""
        start = time.time()
        while not self.is_allowed(key):
            wait_time = self.time_until_allowed(key)
            if wait_time > 0:
                elapsed = time.time() - start
                if elapsed + wait_time > max_wait:
                    return False
                await asyncio.sleep(min(wait_time, max_wait - elapsed))

        self.record_request(key)
        return True

    def purge_idle(self) -> int:
        """Drop keys with no requests left in their window; returns count removed."""
        idle = [k for k, s in self.states.items() if s.is_allowed() and not s.request_times]
        for k in idle:
            del self.states[k]
        return len(idle)

    def snapshot(self) -> Dict[str, dict]:
        out = {}
        for key, state in self.states.items():
            decision = state.decide()
            out[key] = {
                "limit": decision.limit,
                "remaining": decision.remaining,
                "reset_at": decision.reset_at,
            }
        return out
