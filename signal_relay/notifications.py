"""
Trade event fan-out to Discord, Supabase and the local trade log.

Every sink exposes ``async send(event)``. ``NotificationFanout`` runs all
sinks concurrently in a background task so the webhook response never waits
on a notification; a sink that fails is logged and otherwise ignored.
"""

import asyncio
import itertools
import json
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Iterable, List, Optional, Set

import aiohttp

from .logging_setup import logger
from .persistence_sqlite import TradeLogStore

BUY_COLOR = 5763719
SELL_COLOR = 15548997
FAILED_COLOR = 16753920


class NotificationError(Exception):
    pass


@dataclass
class TradeEvent:
    ticker: str
    action: str
    quantity: Optional[str]
    price: Optional[str]
    status: str
    order_id: Optional[str] = None
    error: Optional[str] = None
    source: str = "webhook"
    venue: str = "coinbase"
    payload: Optional[Dict[str, Any]] = None
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def failed(self) -> bool:
        return self.error is not None

    @classmethod
    def from_order(cls, request, result, source: str = "webhook", payload: Optional[dict] = None) -> "TradeEvent":
        return cls(
            ticker=result.product_id or request.product_id,
            action=result.side or request.side.value,
            quantity=result.size or result.funds,
            price=result.limit_price or result.average_filled_price or "MARKET",
            status=result.status,
            order_id=result.order_id,
            source=source,
            venue=result.venue,
            payload=payload,
        )

    @classmethod
    def from_failure(cls, request, error: Exception, source: str = "webhook", venue: str = "coinbase", payload: Optional[dict] = None) -> "TradeEvent":
        order = request.to_dict()
        return cls(
            ticker=request.product_id,
            action=request.side.value,
            quantity=order["size"] or order["funds"],
            price=order["limit_price"] or "MARKET",
            status="FAILED",
            error=getattr(error, "message", None) or str(error),
            source=source,
            venue=venue,
            payload=payload,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class DiscordNotifier:
    """Post trade embeds to a Discord webhook."""

    name = "discord"

    def __init__(self, webhook_url: str, *, timeout: float = 5.0, username: str = "signal-relay"):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.username = username

    def build_message(self, event: TradeEvent) -> Dict[str, Any]:
        action = event.action.upper()
        if event.failed:
            title = f"Trade Failed: {action} {event.ticker}"
            color = FAILED_COLOR
        else:
            title = f"Trade Executed: {action} {event.ticker}"
            color = BUY_COLOR if action in ("BUY", "LONG") else SELL_COLOR

        fields = [
            {"name": "Symbol", "value": event.ticker, "inline": True},
            {"name": "Action", "value": action, "inline": True},
            {"name": "Quantity", "value": str(event.quantity or "N/A"), "inline": True},
            {"name": "Price", "value": str(event.price or "MARKET"), "inline": True},
            {"name": "Status", "value": event.status, "inline": True},
            {"name": "Order ID", "value": event.order_id or "N/A", "inline": True},
        ]
        if event.error:
            fields.append({"name": "Error", "value": event.error[:1024], "inline": False})

        return {
            "username": self.username,
            "embeds": [
                {
                    "title": title,
                    "color": color,
                    "fields": fields,
                    "footer": {"text": f"{event.source} via {event.venue}"},
                    "timestamp": event.created_at,
                }
            ],
        }

    async def send(self, event: TradeEvent) -> None:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
            async with session.post(self.webhook_url, json=self.build_message(event)) as resp:
                if resp.status >= 300:
                    text = await resp.text()
                    raise NotificationError(f"Discord webhook returned {resp.status}: {text[:200]}")
        logger.info(f"Discord notification sent | {event.action} {event.ticker} status={event.status}")


class SupabaseTradeLogger:
    """Insert trade events into a Supabase (PostgREST) table."""

    name = "supabase"

    def __init__(self, url: str, key: str, *, table: str = "trade_logs", timeout: float = 5.0):
        self.endpoint = f"{url.rstrip('/')}/rest/v1/{table}"
        self._key = key
        self.timeout = timeout

    @staticmethod
    def build_row(event: TradeEvent) -> Dict[str, Any]:
        return {
            "ticker": event.ticker,
            "action": event.action.upper(),
            "price": event.price or "MARKET",
            "quantity": event.quantity,
            "trade_id": event.order_id,
            "status": event.status,
            "error_message": event.error,
            "raw_response": json.dumps(event.payload, default=str) if event.payload is not None else None,
            "created_at": event.created_at,
        }

    async def send(self, event: TradeEvent) -> None:
        headers = {
            "apikey": self._key,
            "Authorization": f"Bearer {self._key}",
            "Content-Type": "application/json",
            "Prefer": "return=minimal",
        }
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
            async with session.post(self.endpoint, json=self.build_row(event), headers=headers) as resp:
                if resp.status >= 300:
                    text = await resp.text()
                    raise NotificationError(f"Supabase insert returned {resp.status}: {text[:200]}")


class SQLiteTradeLogger:
    """Always-on local trade log backing the webhook-logs endpoint."""

    name = "sqlite"

    def __init__(self, store: TradeLogStore):
        self.store = store

    async def send(self, event: TradeEvent) -> None:
        await asyncio.to_thread(self.store.save_trade_log, event.to_dict())


class NotificationFanout:
    def __init__(self, sinks: Optional[Iterable[Any]] = None):
        self.sinks: List[Any] = list(sinks or [])
        self._tasks: Set[asyncio.Task] = set()
        self.failures = 0

    def add_sink(self, sink) -> None:
        self.sinks.append(sink)

    async def _deliver(self, event: TradeEvent) -> None:
        results = await asyncio.gather(*(sink.send(event) for sink in self.sinks), return_exceptions=True)
        for sink, result in zip(self.sinks, results):
            if isinstance(result, Exception):
                self.failures += 1
                logger.error(f"Notification sink failed | sink={getattr(sink, 'name', type(sink).__name__)} error={result}")

    def publish(self, event: TradeEvent) -> Optional[asyncio.Task]:
        """Schedule delivery to every sink without waiting for it."""
        if not self.sinks:
            return None
        task = asyncio.get_running_loop().create_task(self._deliver(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for all in-flight deliveries."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class NotificationCenter:
    """In-memory list of the latest dashboard notifications, newest first."""

    LEVELS = ("info", "warning", "error", "success")

    def __init__(self, max_items: int = 100):
        self._items: Deque[Dict[str, Any]] = deque(maxlen=max_items)
        self._ids = itertools.count(1)

    def notify(self, level: str, title: str, message: str, data: Any = None) -> Dict[str, Any]:
        if level not in self.LEVELS:
            raise ValueError(f"Unknown notification level {level!r}")
        item = {
            "id": next(self._ids),
            "level": level,
            "title": title,
            "message": message,
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "read": False,
        }
        self._items.appendleft(item)
        return item

    def info(self, title: str, message: str, data: Any = None):
        return self.notify("info", title, message, data)

    def success(self, title: str, message: str, data: Any = None):
        return self.notify("success", title, message, data)

    def warning(self, title: str, message: str, data: Any = None):
        return self.notify("warning", title, message, data)

    def error(self, title: str, message: str, data: Any = None):
        return self.notify("error", title, message, data)

    def list(self, limit: Optional[int] = None, unread_only: bool = False) -> List[Dict[str, Any]]:
        items = [i for i in self._items if not (unread_only and i["read"])]
        return items[:limit] if limit is not None else items

    def mark_read(self, notification_id: int) -> bool:
        for item in self._items:
            if item["id"] == notification_id:
                item["read"] = True
                return True
        return False

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)
