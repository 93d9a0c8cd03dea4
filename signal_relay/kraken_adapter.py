"""Async Kraken REST adapter (secondary venue).

Private endpoints are POSTed form-encoded to ``/0/private/<Method>`` with an
``API-Sign`` header; public endpoints are plain GETs. Kraken reports most
failures as HTTP 200 with a non-empty ``error`` array, so errors are
classified from that array first and from the status code second.
"""
import asyncio
import json
import random
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import aiohttp

from .errors import ExchangeAPIError, ExchangeErrorType, KrakenAPIError, classify_http_error, classify_kraken_errors
from .logging_setup import logger
from .orders import (
    KRAKEN_LEGACY_ASSETS,
    OrderRequest,
    OrderResult,
    build_kraken_order_payload,
    decimal_str,
    from_kraken_pair,
    to_kraken_pair,
)
from .secrets import KrakenCredentials
from .signing import KrakenSigner

DEFAULT_KRAKEN_URL = "https://api.kraken.com"

_STATUS_MAP = {
    "pending": "PENDING",
    "open": "OPEN",
    "closed": "FILLED",
    "canceled": "CANCELLED",
    "expired": "EXPIRED",
}

_ASSET_ALIASES = {"XBT": "BTC", "XDG": "DOGE"}


def normalize_kraken_asset(code: str) -> str:
    """XXBT -> BTC, ZUSD -> USD, USDT -> USDT"""
    code = code.upper()
    code = KRAKEN_LEGACY_ASSETS.get(code, code)
    return _ASSET_ALIASES.get(code, code)


def _ts_iso(value: Any) -> Optional[str]:
    if not value:
        return None
    return datetime.fromtimestamp(float(value), tz=timezone.utc).isoformat()


def parse_kraken_order(order_id: str, order: Dict[str, Any]) -> OrderResult:
    descr = order.get("descr") or {}
    ordertype = (descr.get("ordertype") or "").lower()
    order_type = {"market": "MARKET", "limit": "LIMIT", "stop-loss": "STOP", "stop-loss-limit": "STOP_LIMIT"}.get(ordertype, ordertype.upper())
    status = _STATUS_MAP.get(order.get("status", ""), str(order.get("status", "UNKNOWN")).upper())
    avg_price = order.get("price")
    return OrderResult(
        order_id=order_id,
        product_id=from_kraken_pair(descr.get("pair", "")) if descr.get("pair") else "",
        side=(descr.get("type") or "").upper(),
        order_type=order_type,
        status=status,
        size=order.get("vol"),
        limit_price=descr.get("price2") if order_type == "STOP_LIMIT" else (descr.get("price") if order_type == "LIMIT" else None),
        stop_price=descr.get("price") if order_type in ("STOP", "STOP_LIMIT") else None,
        filled_size=order.get("vol_exec") or "0",
        filled_value=order.get("cost") or "0",
        average_filled_price=avg_price if avg_price and avg_price != "0.00000" else None,
        created_at=_ts_iso(order.get("opentm")) or datetime.now(timezone.utc).isoformat(),
        completed_at=_ts_iso(order.get("closetm")),
        client_order_id=order.get("cl_ord_id") or order.get("userref"),
        venue="kraken",
        raw=order,
    )


class KrakenAdapter:
    """Async Kraken adapter with nonce signing and bounded retry.

    Usage:
        async with KrakenAdapter(credentials) as kraken:
            await kraken.get_balances()
    """

    venue = "kraken"

    def __init__(
        self,
        credentials: Optional[KrakenCredentials] = None,
        *,
        base_url: str = DEFAULT_KRAKEN_URL,
        timeout: float = 10,
        max_retries: int = 3,
        backoff_base_seconds: float = 1.0,
        max_backoff_seconds: float = 30.0,
    ):
        self.signer = KrakenSigner(credentials) if credentials else None
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_base_seconds = backoff_base_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        self.session = aiohttp.ClientSession()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        if self.session:
            await self.session.close()
            self.session = None

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()
        return self.session

    @staticmethod
    def _jittered_backoff(attempt: int, base: float = 1.0, max_backoff: float = 60.0) -> float:
        delay = min(base * (2 ** attempt), max_backoff)
        jitter = delay * 0.25 * (2 * random.random() - 1)
        return max(0, delay + jitter)

    @staticmethod
    def _error_from_response(status: int, payload: Any, text: str) -> Optional[KrakenAPIError]:
        errors = payload.get("error") if isinstance(payload, dict) else None
        if errors:
            return KrakenAPIError(", ".join(errors), classify_kraken_errors(errors), status, errors)
        if 200 <= status < 300:
            return None
        return KrakenAPIError(text or f"Kraken API error: {status}", classify_http_error(status, payload), status, payload)

    async def _request(self, method: str, endpoint: str, data: Optional[dict] = None, *, private: bool = True):
        if private and self.signer is None:
            raise KrakenAPIError("Missing Kraken API credentials", ExchangeErrorType.AUTHENTICATION)
        session = self._ensure_session()
        visibility = "private" if private else "public"
        url_path = f"/0/{visibility}/{endpoint}"
        url = f"{self.base_url}{url_path}"

        attempt = 0
        while True:
            kwargs: Dict[str, Any] = {"timeout": aiohttp.ClientTimeout(total=self.timeout)}
            if private:
                # fresh nonce per attempt; Kraken rejects reused nonces
                headers, postdata = self.signer.sign(url_path, data)
                kwargs.update(headers=headers, data=postdata)
            else:
                kwargs["params"] = data
            try:
                async with session.request(method, url, **kwargs) as resp:
                    text = await resp.text()
                    try:
                        payload = json.loads(text) if text else {}
                    except ValueError:
                        payload = text
                    error = self._error_from_response(resp.status, payload, text)
                    if error is None:
                        return payload.get("result", {}) if isinstance(payload, dict) else payload
            except asyncio.TimeoutError as e:
                error = KrakenAPIError(f"Request timeout: {e}", ExchangeErrorType.NETWORK)
            except aiohttp.ClientError as e:
                error = KrakenAPIError(f"Request failed: {e}", ExchangeErrorType.NETWORK)

            if not error.retryable or attempt >= self.max_retries:
                raise error
            delay = self._jittered_backoff(attempt, base=self.backoff_base_seconds, max_backoff=self.max_backoff_seconds)
            logger.warning(
                f"Kraken request retry | {endpoint} attempt={attempt + 1}/{self.max_retries} "
                f"error_type={error.error_type.value} delay={delay:.2f}s"
            )
            await asyncio.sleep(delay)
            attempt += 1

    async def place_order(self, request: OrderRequest) -> OrderResult:
        data = build_kraken_order_payload(request)
        logger.info(f"Placing Kraken order | {data['type']} {data['ordertype']} {data['pair']} volume={data['volume']}")
        res = await self._request("POST", "AddOrder", data)
        txids = res.get("txid") or []
        if not txids:
            raise KrakenAPIError("Kraken did not return an order id", ExchangeErrorType.UNKNOWN, details=res)
        return OrderResult(
            order_id=txids[0],
            product_id=request.product_id,
            side=request.side.value,
            order_type=request.order_type.value,
            status="OPEN",
            size=decimal_str(request.size),
            limit_price=decimal_str(request.limit_price),
            stop_price=decimal_str(request.stop_price),
            client_order_id=data.get("cl_ord_id", request.client_order_id),
            venue=self.venue,
            raw=res,
        )

    async def cancel_order(self, order_id: str) -> bool:
        res = await self._request("POST", "CancelOrder", {"txid": order_id})
        return int(res.get("count", 0)) > 0

    async def get_order(self, order_id: str) -> OrderResult:
        res = await self._request("POST", "QueryOrders", {"txid": order_id})
        if order_id not in res:
            raise KrakenAPIError(f"Order {order_id} not found", ExchangeErrorType.NOT_FOUND, 404)
        return parse_kraken_order(order_id, res[order_id])

    async def get_open_orders(self, product_id: Optional[str] = None) -> List[OrderResult]:
        res = await self._request("POST", "OpenOrders")
        orders = [parse_kraken_order(oid, o) for oid, o in (res.get("open") or {}).items()]
        if product_id:
            orders = [o for o in orders if o.product_id == product_id]
        return orders

    async def get_closed_orders(self, product_id: Optional[str] = None, limit: int = 100) -> List[OrderResult]:
        res = await self._request("POST", "ClosedOrders")
        orders = [parse_kraken_order(oid, o) for oid, o in (res.get("closed") or {}).items()]
        if product_id:
            orders = [o for o in orders if o.product_id == product_id]
        return orders[:limit]

    list_open_orders = get_open_orders
    list_order_history = get_closed_orders

    async def get_balances(self) -> List[Dict[str, Any]]:
        res = await self._request("POST", "Balance")
        return [
            {"currency": normalize_kraken_asset(code), "available": str(amount), "hold": "0", "total": str(amount)}
            for code, amount in res.items()
        ]

    async def get_ticker(self, product_id: str) -> Dict[str, Any]:
        res = await self._request("GET", "Ticker", {"pair": to_kraken_pair(product_id)}, private=False)
        if not res:
            raise KrakenAPIError(f"No ticker for {product_id}", ExchangeErrorType.INVALID_REQUEST)
        data = next(iter(res.values()))
        return {
            "product_id": product_id,
            "price": data["c"][0],
            "bid": data["b"][0],
            "ask": data["a"][0],
            "volume": data["v"][1],
            "time": datetime.now(timezone.utc).isoformat(),
        }

    async def test_connection(self) -> Dict[str, Any]:
        try:
            res = await self._request("POST", "Balance")
        except ExchangeAPIError as e:
            return {"success": False, "message": str(e), "error_type": e.error_type.value}
        return {"success": True, "message": "Successfully connected to Kraken API", "balances_count": len(res)}
