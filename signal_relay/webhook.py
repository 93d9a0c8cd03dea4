"""
Inbound alert handling: authentication, normalization and order dispatch.

TradingView and hand-written alerts disagree on field names, so the payload
model accepts several aliases for each field and ``normalize_alert`` turns
any of them into one ``OrderRequest``.

Examples:
    >>> format_ticker("COINBASE:BTCUSD")
    'BTC-USD'
    >>> format_ticker("eth/usdt")
    'ETH-USDT'
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .logging_setup import logger
from .notifications import NotificationCenter, NotificationFanout, TradeEvent
from .orders import (
    OrderRequest,
    OrderSide,
    OrderType,
    OrderValidationError,
    TimeInForce,
    build_coinbase_order_payload,
    build_kraken_order_payload,
    to_decimal,
)
from .signing import constant_time_equals, verify_hmac_signature
from .trading_service import TradingError, TradingErrorType, TradingService

SIGNATURE_HEADER = "X-TradingView-Webhook-Signature"
DEFAULT_QUANTITY = Decimal("0.001")

# longest first so USDT wins over USD
KNOWN_QUOTES = ("USDT", "USDC", "USD", "EUR", "GBP", "BTC", "ETH")

_BUY_ACTIONS = {"buy", "long"}
_SELL_ACTIONS = {"sell", "short", "close", "exit"}

_ORDER_TYPES = {
    "market": OrderType.MARKET,
    "limit": OrderType.LIMIT,
    "stop": OrderType.STOP,
    "stop_loss": OrderType.STOP,
    "stop_limit": OrderType.STOP_LIMIT,
    "stoplimit": OrderType.STOP_LIMIT,
}


class WebhookAuthError(Exception):
    pass


class AlertValidationError(ValueError):
    pass


class AlertPayload(BaseModel):
    """Alert body as sent by TradingView or a manual client."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    ticker: Optional[str] = Field(None, validation_alias=AliasChoices("ticker", "symbol", "product_id", "productId"))
    action: Optional[str] = Field(None, validation_alias=AliasChoices("action", "side", "order_action", "order"))
    quantity: Optional[str] = Field(None, validation_alias=AliasChoices("quantity", "size", "position_size", "qty"))
    funds: Optional[str] = Field(None, validation_alias=AliasChoices("funds", "quote_size"))
    price: Optional[str] = Field(None, validation_alias=AliasChoices("price", "limit_price"))
    stop_price: Optional[str] = Field(None, validation_alias=AliasChoices("stop_price", "stopPrice"))
    order_type: Optional[str] = Field(None, validation_alias=AliasChoices("type", "order_type"))
    time_in_force: Optional[str] = Field(None, validation_alias=AliasChoices("time_in_force", "timeInForce"))
    client_order_id: Optional[str] = Field(None, validation_alias=AliasChoices("client_order_id", "clientOrderId"))
    passphrase: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _flatten(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        # empty values fall through to the next alias
        data = {k: v for k, v in data.items() if v is not None and v != ""}

        strategy = data.get("strategy") if isinstance(data.get("strategy"), dict) else {}
        order = strategy.get("order") if isinstance(strategy.get("order"), dict) else {}
        action = data.get("strategy.order.action") or order.get("action")
        contracts = data.get("strategy.order.contracts") or order.get("contracts")
        position_size = data.get("strategy.position_size") or strategy.get("position_size")

        if action and not any(k in data for k in ("action", "side", "order_action", "order")):
            data["action"] = action
        if not any(k in data for k in ("quantity", "size", "position_size", "qty")):
            if contracts:
                data["quantity"] = contracts
            elif position_size:
                try:
                    size = abs(Decimal(str(position_size)))
                except InvalidOperation:
                    raise ValueError(f"invalid strategy.position_size {position_size!r}")
                if size:
                    data["quantity"] = size
        return data

    @field_validator("*", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        if isinstance(value, bool):
            raise ValueError("boolean is not a valid value")
        if isinstance(value, (int, float, Decimal)):
            return str(value)
        return value


def format_ticker(raw: str) -> str:
    """Coerce exchange-prefixed, slash or concatenated symbols to BASE-QUOTE."""
    ticker = raw.strip().upper()
    if ":" in ticker:
        ticker = ticker.split(":", 1)[1]
    ticker = ticker.replace("/", "-")
    if "-" in ticker:
        return ticker
    for quote in KNOWN_QUOTES:
        if ticker.endswith(quote) and len(ticker) > len(quote):
            return f"{ticker[:-len(quote)]}-{quote}"
    if len(ticker) > 3:
        return f"{ticker[:-3]}-{ticker[-3:]}"
    return ticker


def parse_side(action: str) -> OrderSide:
    normalized = action.strip().lower()
    if normalized in _BUY_ACTIONS:
        return OrderSide.BUY
    if normalized in _SELL_ACTIONS:
        return OrderSide.SELL
    raise AlertValidationError(f"Invalid action {action!r}. Must be one of buy, long, sell, short, close, exit")


def parse_order_type(value: str) -> OrderType:
    key = value.strip().lower().replace("-", "_").replace(" ", "_")
    if key not in _ORDER_TYPES:
        raise AlertValidationError(f"Unsupported order type {value!r}")
    return _ORDER_TYPES[key]


def parse_time_in_force(value: str) -> TimeInForce:
    try:
        return TimeInForce(value.strip().upper())
    except ValueError:
        raise AlertValidationError(f"Unsupported time_in_force {value!r}")


def normalize_alert(body: Dict[str, Any], *, default_quantity: Decimal = DEFAULT_QUANTITY) -> OrderRequest:
    """Turn an alert body into a validated OrderRequest.

    Raises:
        AlertValidationError: missing/invalid fields or an order that would be
            rejected by ``OrderRequest.validate``
    """
    try:
        alert = AlertPayload.model_validate(body)
    except ValidationError as e:
        raise AlertValidationError(f"Invalid alert payload: {e.errors()[0]['msg']}")

    if not alert.ticker or not alert.action:
        raise AlertValidationError("Missing required parameters: ticker and action")

    try:
        size = to_decimal(alert.quantity, "quantity")
        funds = to_decimal(alert.funds, "funds")
        price = to_decimal(alert.price, "price")
        stop_price = to_decimal(alert.stop_price, "stop_price")
    except OrderValidationError as e:
        raise AlertValidationError(str(e))

    if size is None and funds is None:
        size = default_quantity
    if size is not None:
        funds = None

    if alert.order_type:
        order_type = parse_order_type(alert.order_type)
    else:
        order_type = OrderType.LIMIT if price is not None else OrderType.MARKET

    tif = parse_time_in_force(alert.time_in_force) if alert.time_in_force else TimeInForce.GOOD_TILL_CANCELLED
    if order_type is OrderType.MARKET:
        price = None
        tif = TimeInForce.GOOD_TILL_CANCELLED
    elif order_type is OrderType.STOP:
        price = None

    request = OrderRequest(
        product_id=format_ticker(alert.ticker),
        side=parse_side(alert.action),
        order_type=order_type,
        size=size,
        funds=funds,
        limit_price=price,
        stop_price=stop_price,
        time_in_force=tif,
        client_order_id=alert.client_order_id,
    )
    try:
        request.validate()
    except OrderValidationError as e:
        raise AlertValidationError(str(e))
    return request


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, val in headers.items():
        if key.lower() == lowered:
            return val
    return None


class WebhookAuthenticator:
    """Check the shared secret on an inbound alert.

    Any one proof is enough: HMAC-SHA256 signature header over the raw body,
    a ``passphrase`` body field, or ``Authorization: Bearer <secret>``.
    With no secret configured every request is accepted.
    """

    def __init__(self, secret: Optional[str]):
        self.secret = secret or None
        self._warned = False

    @property
    def enabled(self) -> bool:
        return self.secret is not None

    def authenticate(self, raw_body: bytes, headers: Mapping[str, str], body: Optional[Dict[str, Any]] = None) -> str:
        """Return the proof that matched; raise WebhookAuthError otherwise."""
        if not self.enabled:
            if not self._warned:
                logger.warning("Webhook secret not configured; accepting unauthenticated alerts")
                self._warned = True
            return "none"

        signature = _header(headers, SIGNATURE_HEADER)
        if signature and verify_hmac_signature(self.secret, raw_body, signature):
            return "signature"

        auth = _header(headers, "Authorization") or ""
        scheme, _, token = auth.partition(" ")
        if scheme.lower() == "bearer" and constant_time_equals(token.strip(), self.secret):
            return "bearer"

        passphrase = body.get("passphrase") if isinstance(body, dict) else None
        if isinstance(passphrase, str) and constant_time_equals(passphrase, self.secret):
            return "passphrase"

        logger.warning(
            f"Webhook authentication failed | has_signature={bool(signature)} "
            f"has_bearer={scheme.lower() == 'bearer'} has_passphrase={passphrase is not None}"
        )
        raise WebhookAuthError("Unauthorized")


@dataclass
class WebhookResult:
    status: int
    body: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


_TRADING_ERROR_STATUS = {
    TradingErrorType.INVALID_ORDER: 400,
    TradingErrorType.RATE_LIMIT: 429,
}


class WebhookProcessor:
    """authenticate -> parse -> normalize -> place order -> notify."""

    def __init__(
        self,
        service: TradingService,
        authenticator: WebhookAuthenticator,
        *,
        fanout: Optional[NotificationFanout] = None,
        notifications: Optional[NotificationCenter] = None,
        default_quantity: Decimal = DEFAULT_QUANTITY,
    ):
        self.service = service
        self.authenticator = authenticator
        self.fanout = fanout or NotificationFanout()
        self.notifications = notifications or NotificationCenter()
        self.default_quantity = default_quantity

    def _exchange_payload(self, request: OrderRequest) -> Dict[str, Any]:
        if self.service.venue == "kraken":
            return build_kraken_order_payload(request)
        return build_coinbase_order_payload(request)

    async def process(self, raw_body: bytes, headers: Mapping[str, str], source: str = "webhook", *, dry_run: bool = False) -> WebhookResult:
        try:
            body = json.loads(raw_body.decode("utf-8")) if raw_body else None
        except (UnicodeDecodeError, ValueError):
            body = None

        try:
            method = self.authenticator.authenticate(raw_body, headers, body if isinstance(body, dict) else None)
        except WebhookAuthError as e:
            return WebhookResult(401, {"success": False, "message": str(e), "timestamp": _now()})

        if not isinstance(body, dict):
            logger.warning(f"Rejected alert with invalid JSON payload | source={source}")
            return WebhookResult(400, {"success": False, "message": "Invalid JSON payload", "timestamp": _now()})

        return await self.execute(body, source, auth_method=method, dry_run=dry_run)

    async def execute(self, body: Dict[str, Any], source: str = "manual", *, auth_method: str = "session", dry_run: bool = False) -> WebhookResult:
        """Normalize an already-authenticated order body and place (or preview) it."""
        try:
            request = normalize_alert(body, default_quantity=self.default_quantity)
        except AlertValidationError as e:
            logger.warning(f"Rejected alert | source={source} reason={e}")
            self.notifications.warning("Invalid Alert", str(e))
            return WebhookResult(400, {"success": False, "message": str(e), "timestamp": _now()})

        # the passphrase must not end up in logs or trade records
        safe_body = {k: v for k, v in body.items() if k != "passphrase"}
        logger.info(
            f"Processing alert | source={source} auth={auth_method} {request.side.value} {request.order_type.value} "
            f"{request.product_id} size={request.size} funds={request.funds} price={request.limit_price}"
        )

        if dry_run:
            request.ensure_client_order_id()
            try:
                exchange_payload = self._exchange_payload(request)
            except OrderValidationError as e:
                return WebhookResult(400, {"success": False, "message": str(e), "timestamp": _now()})
            return WebhookResult(200, {
                "success": True,
                "message": "Dry run: alert validated, no order placed",
                "order": request.to_dict(),
                "exchange_payload": exchange_payload,
                "timestamp": _now(),
            })

        try:
            result = await self.service.create_order(request)
        except TradingError as e:
            status = _TRADING_ERROR_STATUS.get(e.error_type, 502)
            logger.error(f"Alert order failed | source={source} {request.product_id} error_type={e.error_type.value} error={e.message}")
            self.fanout.publish(TradeEvent.from_failure(request, e, source=source, venue=self.service.venue, payload=safe_body))
            self.notifications.error("Trade Failed", f"{request.side.value} {request.product_id}: {e.message}")
            return WebhookResult(status, {
                "success": False,
                "message": e.message,
                "error_type": e.error_type.value,
                "timestamp": _now(),
            })

        self.fanout.publish(TradeEvent.from_order(request, result, source=source, payload=safe_body))
        self.notifications.success(
            "Trade Executed",
            f"Successfully executed {request.side.value.lower()} order for {result.size or result.funds} {request.product_id}",
            {"order_id": result.order_id},
        )
        return WebhookResult(200, {
            "success": True,
            "message": f"Order {request.side.value.lower()} for {request.product_id} processed successfully",
            "order": result.to_dict(),
            "timestamp": _now(),
        })
