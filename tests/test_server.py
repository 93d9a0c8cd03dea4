import json
from decimal import Decimal
from pathlib import Path

import aiohttp
import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from signal_relay.config import RelayConfig
from signal_relay.exchange import PaperExchangeAdapter
from signal_relay.server import RelayServer
from signal_relay.signing import compute_hmac_signature
from signal_relay.webhook import SIGNATURE_HEADER

SECRET = "relay-webhook-secret"
CREDENTIAL_ENV = ("COINBASE_API_KEY", "COINBASE_API_SECRET", "COINBASE_PRIVATE_KEY", "KRAKEN_API_KEY", "KRAKEN_API_SECRET")


def make_config(tmp_path: Path, venue="paper", rate_limit=60, **server):
    config = RelayConfig()
    config.exchange.venue = venue
    config.webhook.secret = SECRET
    config.webhook.rate_limit_requests = rate_limit
    config.persistence.db_path = str(tmp_path / "relay.db")
    for key, value in server.items():
        setattr(config.server, key, value)
    return config


def paper():
    return PaperExchangeAdapter(
        prices={"BTC-USD": Decimal("50000"), "ETH-USD": Decimal("2000")},
        balances={"USD": Decimal("1000"), "BTC": Decimal("0.5")},
    )


def signed(body):
    raw = json.dumps(body).encode()
    return raw, {SIGNATURE_HEADER: compute_hmac_signature(SECRET, raw), "Content-Type": "application/json"}


@pytest_asyncio.fixture
async def serve():
    clients = []

    async def factory(relay: RelayServer) -> TestClient:
        client = TestClient(TestServer(relay.app))
        await client.start_server()
        clients.append(client)
        return client

    yield factory
    for client in clients:
        await client.close()


@pytest.mark.asyncio
async def test_signed_webhook_places_order_and_logs(tmp_path, serve):
    relay = RelayServer(make_config(tmp_path), adapter=paper())
    client = await serve(relay)

    raw, headers = signed({"ticker": "BTCUSD", "action": "buy", "quantity": "0.01"})
    resp = await client.post("/api/tradingview-webhook", data=raw, headers=headers)
    body = await resp.json()
    assert resp.status == 200
    assert body["success"] is True
    assert body["order"]["product_id"] == "BTC-USD"
    assert resp.headers["X-RateLimit-Limit"] == "60"
    assert resp.headers["X-RateLimit-Remaining"] == "59"

    await relay.fanout.drain()
    logs = (await (await client.get("/api/webhook-logs")).json())["logs"]
    assert len(logs) == 1
    assert logs[0]["ticker"] == "BTC-USD"
    assert logs[0]["source"] == "tradingview"

    metrics = await (await client.get("/metrics")).text()
    assert "relay_webhook_requests_total{" in metrics
    sample = relay.metrics.registry.get_sample_value
    assert sample("relay_webhook_requests_total", {"source": "tradingview", "status": "200"}) == 1.0
    assert sample("relay_orders_total", {"venue": "paper", "outcome": "success"}) == 1.0


@pytest.mark.asyncio
async def test_webhook_rejects_missing_auth(tmp_path, serve):
    relay = RelayServer(make_config(tmp_path), adapter=paper())
    client = await serve(relay)
    resp = await client.post("/api/webhook", json={"ticker": "BTCUSD", "action": "buy"})
    assert resp.status == 401
    assert relay.adapter.orders == {}

    resp = await client.post("/api/webhook", json={"ticker": "BTCUSD", "action": "buy", "passphrase": SECRET})
    assert resp.status == 200


@pytest.mark.asyncio
async def test_inbound_rate_limit(tmp_path, serve):
    relay = RelayServer(make_config(tmp_path, rate_limit=2), adapter=paper())
    client = await serve(relay)

    for _ in range(2):
        resp = await client.post("/api/test-webhook", data=b"{}")
        assert resp.status == 401
    resp = await client.post("/api/test-webhook", data=b"{}")
    body = await resp.json()
    assert resp.status == 429
    assert body["message"] == "Too many requests"
    assert int(resp.headers["Retry-After"]) >= 1
    assert body["retry_after"] == int(resp.headers["Retry-After"])
    assert resp.headers["X-RateLimit-Remaining"] == "0"

    # dashboard routes are unaffected
    assert (await client.get("/health/live")).status == 200
    assert relay.metrics.registry.get_sample_value("relay_inbound_rate_limited_total") == 1.0


@pytest.mark.asyncio
async def test_forwarded_for_ignored_from_untrusted_peer(tmp_path, serve):
    relay = RelayServer(make_config(tmp_path, rate_limit=2), adapter=paper())
    client = await serve(relay)

    statuses = []
    for i in range(6):
        raw, headers = signed({"ticker": "BTCUSD", "action": "buy", "quantity": "0.001"})
        headers["X-Forwarded-For"] = f"10.0.0.{i}"
        statuses.append((await client.post("/api/test-webhook", data=raw, headers=headers)).status)

    assert statuses == [200, 200, 429, 429, 429, 429]
    assert len(relay.inbound_limiter.states) == 1


@pytest.mark.asyncio
async def test_forwarded_for_honoured_from_trusted_proxy(tmp_path, serve):
    relay = RelayServer(make_config(tmp_path, rate_limit=1, trusted_proxies=["127.0.0.0/8"]), adapter=paper())
    client = await serve(relay)

    first = await client.post("/api/test-webhook", data=b"{}", headers={"X-Forwarded-For": "203.0.113.5"})
    assert first.status == 401
    again = await client.post("/api/test-webhook", data=b"{}", headers={"X-Forwarded-For": "203.0.113.5"})
    assert again.status == 429
    other = await client.post("/api/test-webhook", data=b"{}", headers={"X-Forwarded-For": "203.0.113.6"})
    assert other.status == 401
    # a prepended hop cannot replace the address the proxy appended
    spoofed = await client.post("/api/test-webhook", data=b"{}", headers={"X-Forwarded-For": "198.51.100.1, 203.0.113.5"})
    assert spoofed.status == 429


@pytest.mark.asyncio
async def test_test_webhook_is_dry_run(tmp_path, serve):
    relay = RelayServer(make_config(tmp_path), adapter=paper())
    client = await serve(relay)
    raw, headers = signed({"symbol": "ETHUSD", "side": "sell", "size": "1", "price": "2100"})
    resp = await client.post("/api/test-webhook", data=raw, headers=headers)
    body = await resp.json()
    assert resp.status == 200
    assert body["exchange_payload"]["side"] == "SELL"
    assert relay.adapter.orders == {}


@pytest.mark.asyncio
async def test_dashboard_login_and_csrf(tmp_path, serve):
    relay = RelayServer(make_config(tmp_path, dashboard_user="admin", dashboard_password="pw"), adapter=paper())
    client = await serve(relay)

    assert (await client.get("/api/account-balances")).status == 401
    assert (await client.post("/login", json={"user": "admin", "pass": "nope"})).status == 401

    resp = await client.get("/api/account-balances", auth=aiohttp.BasicAuth("admin", "pw"))
    assert resp.status == 200

    login = await client.post("/login", json={"user": "admin", "pass": "pw"})
    csrf = (await login.json())["csrf"]
    assert (await client.get("/api/account-balances")).status == 200

    order = {"ticker": "BTC-USD", "action": "buy", "quantity": "0.01"}
    assert (await client.post("/api/trade", json=order)).status == 403
    assert (await client.post("/api/trade", json=order, headers={"X-CSRF-Token": "wrong"})).status == 403

    resp = await client.post("/api/trade", json={**order, "csrf": csrf})
    assert resp.status == 200
    assert (await resp.json())["order"]["status"] == "FILLED"

    await client.post("/logout")
    assert (await client.get("/api/account-balances")).status == 401


@pytest.mark.asyncio
async def test_cached_reads_and_refresh(tmp_path, serve):
    relay = RelayServer(make_config(tmp_path), adapter=paper())
    client = await serve(relay)

    first = await (await client.get("/api/account-balances")).json()
    assert {b["currency"] for b in first["balances"]} == {"USD", "BTC"}

    relay.adapter.balances["ETH"] = Decimal("2")
    cached = await (await client.get("/api/account-balances")).json()
    assert cached["balances"] == first["balances"]

    fresh = await (await client.get("/api/account-balances?refresh=1")).json()
    assert "ETH" in {b["currency"] for b in fresh["balances"]}


@pytest.mark.asyncio
async def test_trade_cancel_and_order_queries(tmp_path, serve):
    relay = RelayServer(make_config(tmp_path), adapter=paper())
    client = await serve(relay)

    resp = await client.post("/api/trade", json={"ticker": "BTC-USD", "action": "buy", "quantity": "0.1", "price": "40000"})
    order = (await resp.json())["order"]
    assert resp.status == 200
    assert order["status"] == "OPEN"

    open_orders = (await (await client.get("/api/open-orders")).json())["orders"]
    assert [o["order_id"] for o in open_orders] == [order["order_id"]]

    assert (await client.post("/api/cancel-order", json={})).status == 400
    resp = await client.post("/api/cancel-order", json={"order_id": order["order_id"]})
    assert (await resp.json())["success"] is True
    assert (await (await client.get("/api/open-orders")).json())["orders"] == []

    history = await client.get("/api/order-history?limit=5")
    assert (await history.json())["orders"][0]["status"] == "CANCELLED"
    assert (await client.get("/api/order-history?limit=abc")).status == 400

    bad = await client.post("/api/trade", json={"ticker": "BTC-USD", "action": "nope"})
    assert bad.status == 400


@pytest.mark.asyncio
async def test_market_data_endpoints(tmp_path, serve):
    relay = RelayServer(make_config(tmp_path), adapter=paper())
    client = await serve(relay)

    ticker = await (await client.get("/api/product-ticker?product_id=BTC-USD")).json()
    assert ticker["ticker"]["price"] == "50000"
    assert (await client.get("/api/product-ticker")).status == 400
    assert (await client.get("/api/product-ticker?product_id=DOGE-USD")).status == 400

    positions = (await (await client.get("/api/positions")).json())["positions"]
    assert [p["product_id"] for p in positions] == ["BTC-USD"]
    assert positions[0]["mark_price"] == "50000"

    # the paper venue has no candle data
    assert (await client.get("/api/candles?product_id=BTC-USD")).status == 400
    assert (await client.get("/api/candles?product_id=BTC-USD&start=yesterday")).status == 400


@pytest.mark.asyncio
async def test_health_endpoints(tmp_path, serve):
    relay = RelayServer(make_config(tmp_path), adapter=paper())
    client = await serve(relay)

    health = await client.get("/health")
    body = await health.json()
    assert health.status == 200
    assert body["checks"]["database"]["status"] == "up"
    assert body["checks"]["exchange"] == {"venue": "paper", "status": "configured"}
    assert body["checks"]["notifications"]["sinks"] == ["sqlite"]

    assert (await client.get("/health/ready")).status == 200
    conn = await client.get("/api/connection-test")
    assert (await conn.json())["venue"] == "paper"

    status = await (await client.get("/api/rate-limit-status")).json()
    assert status["exchange"] == {}


@pytest.mark.asyncio
async def test_missing_credentials_degrade_to_503(tmp_path, serve, monkeypatch):
    for name in CREDENTIAL_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("CB_CONFIG_PATH", str(tmp_path / "missing.json"))

    relay = RelayServer(make_config(tmp_path, venue="coinbase"))
    assert relay.service is None
    client = await serve(relay)

    raw, headers = signed({"ticker": "BTCUSD", "action": "buy"})
    resp = await client.post("/api/webhook", data=raw, headers=headers)
    assert resp.status == 503
    assert "Missing Coinbase credentials" in (await resp.json())["message"]
    assert (await client.get("/api/account-balances")).status == 503

    assert (await client.get("/health")).status == 200
    ready = await client.get("/health/ready")
    assert ready.status == 503
    assert (await ready.json())["checks"]["exchange"] == "not_configured"

    creds = await (await client.get("/api/check-credentials")).json()
    assert creds["exchange_ready"] is False
    assert creds["venue"] == "coinbase"


@pytest.mark.asyncio
async def test_check_credentials_hides_values(tmp_path, serve, monkeypatch):
    monkeypatch.setenv("COINBASE_API_KEY", "organizations/abc/apiKeys/key-value-xyz")
    monkeypatch.setenv("COINBASE_API_SECRET", "super-secret-value")
    relay = RelayServer(make_config(tmp_path), adapter=paper())
    client = await serve(relay)

    resp = await client.get("/api/check-credentials")
    text = await resp.text()
    assert "key-value-xyz" not in text
    assert "super-secret-value" not in text
    body = json.loads(text)
    assert body["credentials"]["coinbase"]["api_key"] is True
    assert body["credentials"]["coinbase"]["private_key"] is False
    assert body["webhook_auth"] is True
    assert body["dashboard_auth"] is False
