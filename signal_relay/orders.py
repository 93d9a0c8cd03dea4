"""
Order intents, normalized results, and exchange payload mapping.

An ``OrderRequest`` is exchange-neutral. ``build_coinbase_order_payload`` and
``build_kraken_order_payload`` turn it into the JSON / form body each venue
expects; ``parse_coinbase_order`` and ``OrderResult`` bring responses back to
one shape.

Examples:
    >>> from decimal import Decimal
    >>> req = OrderRequest("BTC-USD", OrderSide.BUY, OrderType.LIMIT,
    ...                    size=Decimal("0.01"), limit_price=Decimal("50000"))
    >>> build_coinbase_order_payload(req)["order_configuration"]
    {'limit_limit_gtc': {'base_size': '0.01', 'limit_price': '50000', 'post_only': False}}
"""

import random
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional


class OrderSide(Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderType(Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"
    STOP = "STOP"
    STOP_LIMIT = "STOP_LIMIT"


class TimeInForce(Enum):
    GOOD_TILL_CANCELLED = "GTC"
    GOOD_TILL_TIME = "GTD"
    IMMEDIATE_OR_CANCEL = "IOC"
    FILL_OR_KILL = "FOK"


class OrderValidationError(ValueError):
    pass


def to_decimal(value: Any, name: str) -> Optional[Decimal]:
    """Parse user-provided numbers (str, int, float, Decimal) into Decimal."""
    if value is None or value == "":
        return None
    if isinstance(value, Decimal):
        d = value
    else:
        try:
            d = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise OrderValidationError(f"{name} must be a number, got {value!r}")
    if not d.is_finite():
        raise OrderValidationError(f"{name} must be a finite number, got {value!r}")
    return d


def decimal_str(value: Optional[Decimal]) -> Optional[str]:
    """Plain (non-scientific) string for exchange payloads."""
    if value is None:
        return None
    return format(value.normalize(), "f") if value == value.to_integral() else format(value, "f")


def generate_client_order_id(prefix: str = "relay") -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{random.randint(0, 999)}"


@dataclass
class OrderRequest:
    """Exchange-neutral order intent.

    Attributes:
        product_id: Product in BASE-QUOTE form, e.g. BTC-USD
        side: BUY or SELL
        order_type: MARKET, LIMIT, STOP or STOP_LIMIT
        size: Base currency amount
        funds: Quote currency amount (market orders only)
        limit_price: Required for LIMIT and STOP_LIMIT
        stop_price: Required for STOP and STOP_LIMIT
        end_time: Expiry for GTD orders
    """

    product_id: str
    side: OrderSide
    order_type: OrderType = OrderType.MARKET
    size: Optional[Decimal] = None
    funds: Optional[Decimal] = None
    limit_price: Optional[Decimal] = None
    stop_price: Optional[Decimal] = None
    time_in_force: TimeInForce = TimeInForce.GOOD_TILL_CANCELLED
    client_order_id: Optional[str] = None
    post_only: bool = False
    end_time: Optional[datetime] = None

    def validate(self) -> None:
        if not self.product_id:
            raise OrderValidationError("product_id is required")
        for name in ("size", "funds", "limit_price", "stop_price"):
            value = getattr(self, name)
            if value is not None and (not value.is_finite() or value <= 0):
                raise OrderValidationError(f"{name} must be positive")

        if self.order_type is OrderType.MARKET:
            if self.size is None and self.funds is None:
                raise OrderValidationError("Either size or funds must be specified for market orders")
            return

        if self.size is None:
            raise OrderValidationError(f"size is required for {self.order_type.value} orders")
        if self.funds is not None:
            raise OrderValidationError("funds is only supported for market orders")
        if self.order_type in (OrderType.LIMIT, OrderType.STOP_LIMIT) and self.limit_price is None:
            raise OrderValidationError(f"limit_price is required for {self.order_type.value} orders")
        if self.order_type in (OrderType.STOP, OrderType.STOP_LIMIT) and self.stop_price is None:
            raise OrderValidationError(f"stop_price is required for {self.order_type.value} orders")
        if self.time_in_force is TimeInForce.GOOD_TILL_TIME and self.end_time is None:
            raise OrderValidationError("end_time is required for GTD orders")

    def ensure_client_order_id(self) -> str:
        if not self.client_order_id:
            self.client_order_id = generate_client_order_id()
        return self.client_order_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product_id": self.product_id,
            "side": self.side.value,
            "order_type": self.order_type.value,
            "size": decimal_str(self.size),
            "funds": decimal_str(self.funds),
            "limit_price": decimal_str(self.limit_price),
            "stop_price": decimal_str(self.stop_price),
            "time_in_force": self.time_in_force.value,
            "client_order_id": self.client_order_id,
            "post_only": self.post_only,
        }


@dataclass
class OrderResult:
    """Normalized order as returned to callers regardless of venue."""

    order_id: str
    product_id: str
    side: str
    order_type: str
    status: str = "PENDING"
    size: Optional[str] = None
    funds: Optional[str] = None
    limit_price: Optional[str] = None
    stop_price: Optional[str] = None
    filled_size: str = "0"
    filled_value: str = "0"
    average_filled_price: Optional[str] = None
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    completed_at: Optional[str] = None
    client_order_id: Optional[str] = None
    venue: str = "coinbase"
    raw: Optional[Dict[str, Any]] = None

    def to_dict(self, include_raw: bool = False) -> Dict[str, Any]:
        d = asdict(self)
        if not include_raw:
            d.pop("raw", None)
        return d


@dataclass
class Position:
    product_id: str
    size: Decimal
    mark_price: Decimal
    value: Decimal
    entry_price: Optional[Decimal] = None
    pnl: Optional[Decimal] = None
    pnl_percentage: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product_id": self.product_id,
            "size": str(self.size),
            "mark_price": str(self.mark_price),
            "value": str(self.value),
            "entry_price": str(self.entry_price) if self.entry_price is not None else None,
            "pnl": str(self.pnl) if self.pnl is not None else None,
            "pnl_percentage": str(self.pnl_percentage) if self.pnl_percentage is not None else None,
        }


# --- Coinbase -----------------------------------------------------------

def _stop_direction(side: OrderSide) -> str:
    return "STOP_DIRECTION_STOP_DOWN" if side is OrderSide.SELL else "STOP_DIRECTION_STOP_UP"


def _end_time_str(end_time: datetime) -> str:
    if end_time.tzinfo is None:
        end_time = end_time.replace(tzinfo=timezone.utc)
    return end_time.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def build_coinbase_order_configuration(req: OrderRequest) -> Dict[str, Any]:
    size = decimal_str(req.size)
    tif = req.time_in_force

    if req.order_type is OrderType.MARKET:
        if req.size is not None:
            return {"market_market_ioc": {"base_size": size}}
        return {"market_market_ioc": {"quote_size": decimal_str(req.funds)}}

    if req.order_type is OrderType.LIMIT:
        limit = decimal_str(req.limit_price)
        if tif is TimeInForce.GOOD_TILL_TIME:
            return {"limit_limit_gtd": {"base_size": size, "limit_price": limit, "end_time": _end_time_str(req.end_time), "post_only": req.post_only}}
        if tif is TimeInForce.IMMEDIATE_OR_CANCEL:
            return {"sor_limit_ioc": {"base_size": size, "limit_price": limit}}
        if tif is TimeInForce.FILL_OR_KILL:
            return {"limit_limit_fok": {"base_size": size, "limit_price": limit}}
        return {"limit_limit_gtc": {"base_size": size, "limit_price": limit, "post_only": req.post_only}}

    # STOP uses the stop price as its limit price
    limit_price = req.limit_price if req.order_type is OrderType.STOP_LIMIT else req.stop_price
    body = {
        "base_size": size,
        "limit_price": decimal_str(limit_price),
        "stop_price": decimal_str(req.stop_price),
        "stop_direction": _stop_direction(req.side),
    }
    if tif is TimeInForce.GOOD_TILL_TIME:
        body["end_time"] = _end_time_str(req.end_time)
        return {"stop_limit_stop_limit_gtd": body}
    return {"stop_limit_stop_limit_gtc": body}


def build_coinbase_order_payload(req: OrderRequest) -> Dict[str, Any]:
    req.validate()
    return {
        "client_order_id": req.ensure_client_order_id(),
        "product_id": req.product_id,
        "side": req.side.value,
        "order_configuration": build_coinbase_order_configuration(req),
    }


def _first_config_value(order_configuration: Dict[str, Any], key: str) -> Optional[str]:
    for conf in (order_configuration or {}).values():
        if isinstance(conf, dict) and conf.get(key) is not None:
            return str(conf[key])
    return None


def parse_coinbase_order(order: Dict[str, Any]) -> OrderResult:
    """Normalize a Coinbase historical order object."""
    conf = order.get("order_configuration") or {}
    return OrderResult(
        order_id=order.get("order_id") or order.get("id") or "",
        product_id=order.get("product_id", ""),
        side=str(order.get("side", "")).upper(),
        order_type=str(order.get("order_type", "")).upper(),
        status=order.get("status", "UNKNOWN"),
        size=_first_config_value(conf, "base_size") or order.get("base_size"),
        funds=_first_config_value(conf, "quote_size") or order.get("quote_size"),
        limit_price=_first_config_value(conf, "limit_price") or order.get("limit_price"),
        stop_price=_first_config_value(conf, "stop_price") or order.get("stop_price"),
        filled_size=order.get("filled_size") or "0",
        filled_value=order.get("filled_value") or "0",
        average_filled_price=order.get("average_filled_price"),
        created_at=order.get("created_time") or datetime.now(timezone.utc).isoformat(),
        completed_at=order.get("last_fill_time") or order.get("completion_time"),
        client_order_id=order.get("client_order_id"),
        venue="coinbase",
        raw=order,
    )


def coinbase_result_from_create(req: OrderRequest, response: Dict[str, Any]) -> OrderResult:
    """Build an OrderResult from a successful create-order response."""
    success = response.get("success_response") or {}
    return OrderResult(
        order_id=success.get("order_id") or response.get("order_id") or response.get("id") or "",
        product_id=req.product_id,
        side=req.side.value,
        order_type=req.order_type.value,
        status=response.get("status") or "PENDING",
        size=decimal_str(req.size),
        funds=decimal_str(req.funds),
        limit_price=decimal_str(req.limit_price),
        stop_price=decimal_str(req.stop_price),
        client_order_id=success.get("client_order_id") or req.client_order_id,
        venue="coinbase",
        raw=response,
    )


# --- Kraken -------------------------------------------------------------

_KRAKEN_ORDER_TYPES = {
    OrderType.MARKET: "market",
    OrderType.LIMIT: "limit",
    OrderType.STOP: "stop-loss",
    OrderType.STOP_LIMIT: "stop-loss-limit",
}

# Kraken still uses legacy asset codes for a few currencies
_KRAKEN_ASSET_ALIASES = {"BTC": "XBT", "DOGE": "XDG"}
_KRAKEN_ASSET_ALIASES_REVERSE = {v: k for k, v in _KRAKEN_ASSET_ALIASES.items()}

# X/Z-prefixed codes Kraken reports in balances and legacy pair names
KRAKEN_LEGACY_ASSETS = {
    "XXBT": "BTC",
    "XETH": "ETH",
    "XETC": "ETC",
    "XLTC": "LTC",
    "XXRP": "XRP",
    "XXLM": "XLM",
    "XXMR": "XMR",
    "XZEC": "ZEC",
    "XREP": "REP",
    "XMLN": "MLN",
    "XXDG": "DOGE",
    "ZUSD": "USD",
    "ZEUR": "EUR",
    "ZGBP": "GBP",
    "ZCAD": "CAD",
    "ZJPY": "JPY",
    "ZAUD": "AUD",
    "ZCHF": "CHF",
}

# AddOrder accepts a UUID or free text of at most 18 characters as cl_ord_id
KRAKEN_CLIENT_ID_MAX_LEN = 18


def kraken_client_order_id(client_order_id: str) -> str:
    """Client order id in a form Kraken accepts.

    Short ids and UUIDs pass through; longer ids map to a UUID5 of the id.
    """
    if len(client_order_id) <= KRAKEN_CLIENT_ID_MAX_LEN:
        return client_order_id
    try:
        return str(uuid.UUID(client_order_id))
    except ValueError:
        return str(uuid.uuid5(uuid.NAMESPACE_OID, client_order_id))


def to_kraken_pair(product_id: str) -> str:
    """BTC-USD -> XBTUSD"""
    if "-" not in product_id:
        return product_id.upper()
    base, quote = product_id.upper().split("-", 1)
    return f"{_KRAKEN_ASSET_ALIASES.get(base, base)}{_KRAKEN_ASSET_ALIASES.get(quote, quote)}"


def from_kraken_pair(pair: str) -> str:
    """XBTUSD -> BTC-USD, XXBTZUSD -> BTC-USD"""
    pair = pair.upper()
    if len(pair) == 8 and pair[:4] in KRAKEN_LEGACY_ASSETS and pair[4:] in KRAKEN_LEGACY_ASSETS:
        return f"{KRAKEN_LEGACY_ASSETS[pair[:4]]}-{KRAKEN_LEGACY_ASSETS[pair[4:]]}"
    for quote_len in (4, 3):
        quote = pair[-quote_len:]
        if quote in ("USDT", "USDC") or quote_len == 3:
            base = pair[:-quote_len]
            break
    base = _KRAKEN_ASSET_ALIASES_REVERSE.get(base, base)
    quote = _KRAKEN_ASSET_ALIASES_REVERSE.get(quote, quote)
    return f"{base}-{quote}"


def build_kraken_order_payload(req: OrderRequest) -> Dict[str, str]:
    req.validate()
    if req.order_type is OrderType.MARKET and req.size is None:
        raise OrderValidationError("Kraken market orders require a base size")
    data = {
        "pair": to_kraken_pair(req.product_id),
        "type": req.side.value.lower(),
        "ordertype": _KRAKEN_ORDER_TYPES[req.order_type],
        "volume": decimal_str(req.size),
    }
    if req.order_type is OrderType.LIMIT:
        data["price"] = decimal_str(req.limit_price)
    elif req.order_type is OrderType.STOP:
        data["price"] = decimal_str(req.stop_price)
    elif req.order_type is OrderType.STOP_LIMIT:
        data["price"] = decimal_str(req.stop_price)
        data["price2"] = decimal_str(req.limit_price)

    if req.time_in_force is TimeInForce.IMMEDIATE_OR_CANCEL and req.order_type is not OrderType.MARKET:
        data["timeinforce"] = "IOC"
    elif req.time_in_force is TimeInForce.GOOD_TILL_TIME:
        end = req.end_time if req.end_time.tzinfo else req.end_time.replace(tzinfo=timezone.utc)
        data["timeinforce"] = "GTD"
        data["expiretm"] = str(int(end.timestamp()))
    if req.post_only:
        data["oflags"] = "post"
    if req.client_order_id:
        data["cl_ord_id"] = kraken_client_order_id(req.client_order_id)
    return data
