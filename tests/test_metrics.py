from signal_relay.metrics import RelayMetrics


def test_record_alert_counts_requests_and_orders():
    m = RelayMetrics()
    m.record_alert("webhook", 200, "coinbase", 0.2, placed=True)
    m.record_alert("webhook", 502, "coinbase", 1.5, placed=True)
    m.record_alert("test", 200, "coinbase", 0.01, placed=False)

    sample = m.registry.get_sample_value
    assert sample("relay_webhook_requests_total", {"source": "webhook", "status": "200"}) == 1.0
    assert sample("relay_webhook_requests_total", {"source": "test", "status": "200"}) == 1.0
    assert sample("relay_orders_total", {"venue": "coinbase", "outcome": "success"}) == 1.0
    assert sample("relay_orders_total", {"venue": "coinbase", "outcome": "failed"}) == 1.0
    assert sample("relay_order_latency_seconds_count") == 2.0

    text = m.render().decode()
    assert "relay_orders_total{" in text
    assert "relay_uptime_seconds" in text


def test_instances_do_not_share_registry():
    a, b = RelayMetrics(), RelayMetrics()
    a.rate_limited.inc()
    assert a.registry.get_sample_value("relay_inbound_rate_limited_total") == 1.0
    assert b.registry.get_sample_value("relay_inbound_rate_limited_total") == 0.0
