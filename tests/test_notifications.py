import asyncio
import json
from decimal import Decimal
from pathlib import Path

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from signal_relay.errors import ExchangeAPIError, ExchangeErrorType
from signal_relay.notifications import (
    BUY_COLOR,
    FAILED_COLOR,
    SELL_COLOR,
    DiscordNotifier,
    NotificationCenter,
    NotificationError,
    NotificationFanout,
    SQLiteTradeLogger,
    SupabaseTradeLogger,
    TradeEvent,
)
from signal_relay.orders import OrderRequest, OrderResult, OrderSide, OrderType
from signal_relay.persistence_sqlite import TradeLogStore


def event(**overrides):
    base = dict(ticker="BTC-USD", action="BUY", quantity="0.001", price="MARKET", status="FILLED", order_id="ord-1", source="tradingview")
    base.update(overrides)
    return TradeEvent(**base)


class Receiver:
    """Collects JSON posts; answers with ``status``."""

    def __init__(self, status=204):
        self.status = status
        self.posts = []
        self.app = web.Application()
        self.app.router.add_post("/{tail:.*}", self.handle)

    async def handle(self, request: web.Request):
        self.posts.append((request.path, dict(request.headers), await request.json()))
        if self.status < 300:
            return web.Response(status=self.status)
        return web.Response(status=self.status, text="nope")


@pytest_asyncio.fixture
async def receiver():
    recv = Receiver()
    server = TestServer(recv.app)
    await server.start_server()
    recv.url = f"http://{server.host}:{server.port}"
    yield recv
    await server.close()


def test_event_from_order_and_failure():
    req = OrderRequest("ETH-USD", OrderSide.SELL, OrderType.LIMIT, size=Decimal("2"), limit_price=Decimal("3000"))
    result = OrderResult("o-1", "ETH-USD", "SELL", "LIMIT", status="OPEN", size="2", limit_price="3000", venue="kraken")
    ok = TradeEvent.from_order(req, result, source="manual", payload={"a": 1})
    assert (ok.ticker, ok.action, ok.quantity, ok.price, ok.status, ok.venue) == ("ETH-USD", "SELL", "2", "3000", "OPEN", "kraken")
    assert not ok.failed

    failed = TradeEvent.from_failure(
        OrderRequest("BTC-USD", OrderSide.BUY, funds=Decimal("25")),
        ExchangeAPIError("Insufficient funds", ExchangeErrorType.INSUFFICIENT_FUNDS),
    )
    assert failed.failed
    assert failed.status == "FAILED"
    assert failed.quantity == "25"
    assert failed.price == "MARKET"
    assert failed.error == "Insufficient funds"


def test_discord_embed_colors_and_fields():
    notifier = DiscordNotifier("https://discord.invalid/webhook")
    buy = notifier.build_message(event())["embeds"][0]
    assert buy["title"] == "Trade Executed: BUY BTC-USD"
    assert buy["color"] == BUY_COLOR
    assert [f["name"] for f in buy["fields"]] == ["Symbol", "Action", "Quantity", "Price", "Status", "Order ID"]
    assert buy["footer"]["text"] == "tradingview via coinbase"

    sell = notifier.build_message(event(action="SELL"))["embeds"][0]
    assert sell["color"] == SELL_COLOR

    failed = notifier.build_message(event(status="FAILED", error="Rate limit exceeded", order_id=None))["embeds"][0]
    assert failed["title"] == "Trade Failed: BUY BTC-USD"
    assert failed["color"] == FAILED_COLOR
    assert failed["fields"][-1] == {"name": "Error", "value": "Rate limit exceeded", "inline": False}
    assert failed["fields"][5]["value"] == "N/A"


@pytest.mark.asyncio
async def test_discord_send_posts_embed(receiver):
    await DiscordNotifier(f"{receiver.url}/api/webhooks/1/abc").send(event())
    path, _, body = receiver.posts[0]
    assert path == "/api/webhooks/1/abc"
    assert body["embeds"][0]["title"] == "Trade Executed: BUY BTC-USD"


@pytest.mark.asyncio
async def test_discord_send_raises_on_error_status(receiver):
    receiver.status = 400
    with pytest.raises(NotificationError, match="400"):
        await DiscordNotifier(receiver.url).send(event())


@pytest.mark.asyncio
async def test_supabase_insert(receiver):
    sink = SupabaseTradeLogger(receiver.url + "/", "anon-key")
    await sink.send(event(payload={"ticker": "BTCUSD"}))
    path, headers, body = receiver.posts[0]
    assert path == "/rest/v1/trade_logs"
    assert headers["apikey"] == "anon-key"
    assert headers["Authorization"] == "Bearer anon-key"
    assert body["trade_id"] == "ord-1"
    assert json.loads(body["raw_response"]) == {"ticker": "BTCUSD"}


@pytest.mark.asyncio
async def test_sqlite_sink_writes_store(tmp_path: Path):
    store = TradeLogStore(tmp_path / "relay.db")
    await SQLiteTradeLogger(store).send(event(payload={"k": "v"}))
    logs = store.list_trade_logs()
    assert logs[0]["order_id"] == "ord-1"
    assert logs[0]["payload"] == {"k": "v"}
    store.close()


class RecordingSink:
    name = "recording"

    def __init__(self, fail=False, delay=0.0):
        self.fail = fail
        self.delay = delay
        self.events = []

    async def send(self, ev):
        await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("sink down")
        self.events.append(ev)


@pytest.mark.asyncio
async def test_fanout_isolates_failures_and_drains():
    good = RecordingSink(delay=0.01)
    bad = RecordingSink(fail=True)
    fanout = NotificationFanout([bad])
    fanout.add_sink(good)

    task = fanout.publish(event())
    assert task is not None
    assert good.events == []  # publish does not wait

    await fanout.drain()
    assert len(good.events) == 1
    assert fanout.failures == 1


@pytest.mark.asyncio
async def test_fanout_without_sinks():
    fanout = NotificationFanout()
    assert fanout.publish(event()) is None
    await fanout.drain()


def test_notification_center_ring_and_read_state():
    center = NotificationCenter(max_items=3)
    for i in range(5):
        center.info("Trade", f"message {i}")
    assert len(center) == 3
    items = center.list()
    assert [i["message"] for i in items] == ["message 4", "message 3", "message 2"]

    assert center.mark_read(items[0]["id"])
    assert not center.mark_read(999)
    assert [i["message"] for i in center.list(unread_only=True)] == ["message 3", "message 2"]
    assert len(center.list(limit=1)) == 1

    center.error("Trade Failed", "boom", data={"ticker": "BTC-USD"})
    assert center.list()[0]["level"] == "error"
    with pytest.raises(ValueError):
        center.notify("debug", "x", "y")
    center.clear()
    assert len(center) == 0
