"""Prometheus metrics for the relay service.

Each ``RelayMetrics`` owns its own registry so several servers (or tests)
can coexist in one process.
"""
import time

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, Histogram, generate_latest


class RelayMetrics:
    content_type = CONTENT_TYPE_LATEST

    def __init__(self):
        self.registry = CollectorRegistry()
        self.start_time = time.time()
        self.webhook_requests = Counter(
            "relay_webhook_requests", "Inbound alert requests by source and HTTP status", ["source", "status"], registry=self.registry
        )
        self.orders = Counter("relay_orders", "Order placements by venue and outcome", ["venue", "outcome"], registry=self.registry)
        self.rate_limited = Counter("relay_inbound_rate_limited", "Requests rejected by the inbound rate limit", registry=self.registry)
        self.order_latency = Histogram(
            "relay_order_latency_seconds",
            "Time from alert receipt to exchange response",
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30),
            registry=self.registry,
        )
        self.uptime = Gauge("relay_uptime_seconds", "Server uptime in seconds", registry=self.registry)
        self.uptime.set_function(lambda: time.time() - self.start_time)

    def record_alert(self, source: str, status: int, venue: str, latency: float, placed: bool) -> None:
        self.webhook_requests.labels(source=source, status=str(status)).inc()
        if placed:
            self.orders.labels(venue=venue, outcome="success" if status == 200 else "failed").inc()
            self.order_latency.observe(latency)

    def render(self) -> bytes:
        return generate_latest(self.registry)
