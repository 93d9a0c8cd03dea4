import asyncio
from typing import Any, Dict, List, Optional

import aiohttp

from .coinbase_adapter import CoinbaseClientBase
from .errors import CoinbaseAPIError, ExchangeAPIError, ExchangeErrorType
from .logging_setup import logger
from .orders import OrderRequest, OrderResult, build_coinbase_order_payload, coinbase_result_from_create, parse_coinbase_order


class AsyncCoinbaseAdapter(CoinbaseClientBase):
    """Async Coinbase Advanced Trade adapter using aiohttp with non-blocking backoff.

    Features:
    - Non-blocking async/await using aiohttp.
    - Same signing, retry and error classification as ``CoinbaseAdapter``.
    - Rate-limit-aware backoff: respects ``CB-RateLimit-Reset`` header.
    - Connection pooling and session reuse.

    Usage:
        async with AsyncCoinbaseAdapter(credentials=creds) as adapter:
            order = await adapter.place_order(request)

    A session is created lazily on first request when the adapter is used
    outside a context manager; call ``close()`` when done.
    """

    def __init__(self, signer=None, **kwargs):
        super().__init__(signer, **kwargs)
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

    async def _request(self, method: str, path: str, body: Optional[dict] = None, params: Optional[dict] = None):
        """Execute a request with async rate-limit backoff and retry."""
        session = self._ensure_session()
        endpoint = self._request_path(path)
        attempt = 0
        while True:
            if not await self.rate_limiter.wait_if_needed_async(endpoint, max_wait=self.max_backoff_seconds):
                raise self._throttled(endpoint)
            url, body_str, headers = self._prepare(method, path, body)
            resp_headers = None
            try:
                async with session.request(
                    method,
                    url,
                    headers=headers,
                    data=body_str if body is not None else None,
                    params=params,
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as resp:
                    text = await resp.text()
                    if 200 <= resp.status < 300:
                        return self._parse_text(text)
                    error = self._error_for_status(resp.status, text)
                    resp_headers = resp.headers
            except asyncio.TimeoutError as e:
                error = CoinbaseAPIError(f"Request timeout: {e}", ExchangeErrorType.NETWORK)
            except aiohttp.ClientError as e:
                error = CoinbaseAPIError(f"Request failed: {e}", ExchangeErrorType.NETWORK)

            if self._give_up(attempt, error):
                raise self._final_error(error)
            delay = self._retry_delay(attempt, error, resp_headers)
            logger.warning(
                f"Coinbase request retry | {method} {endpoint} attempt={attempt + 1}/{self.max_retries} "
                f"error_type={error.error_type.value} delay={delay:.2f}s"
            )
            await asyncio.sleep(delay)
            attempt += 1

    async def get_accounts(self) -> List[Dict[str, Any]]:
        accounts: List[Dict[str, Any]] = []
        params: Dict[str, Any] = {"limit": 250}
        while True:
            res = await self._request("GET", "/accounts", params=params) or {}
            accounts.extend(res.get("accounts", []))
            if not res.get("has_next") or not res.get("cursor"):
                return accounts
            params = {"limit": 250, "cursor": res["cursor"]}

    async def list_products(self, product_type: str = "SPOT") -> List[Dict[str, Any]]:
        res = await self._request("GET", "/products", params={"product_type": product_type}) or {}
        return res.get("products", [])

    async def get_product(self, product_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/products/{product_id}")

    async def get_product_ticker(self, product_id: str) -> Dict[str, Any]:
        res = await self._request("GET", f"/products/{product_id}/ticker", params={"limit": 1}) or {}
        return self._normalize_ticker(product_id, res)

    async def get_candles(self, product_id: str, granularity: str = "ONE_HOUR", start: Optional[int] = None, end: Optional[int] = None) -> List[Dict[str, Any]]:
        params = self._candles_params(granularity, start, end)
        res = await self._request("GET", f"/products/{product_id}/candles", params=params) or {}
        return res.get("candles", [])

    async def create_order(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        res = await self._request("POST", "/orders", body=payload) or {}
        self._check_create_response(res)
        return res

    async def cancel_orders(self, order_ids: List[str]) -> Dict[str, Any]:
        return await self._request("POST", "/orders/batch_cancel", body={"order_ids": list(order_ids)}) or {}

    async def list_orders(self, status: Optional[str] = None, product_id: Optional[str] = None, limit: int = 100) -> List[OrderResult]:
        res = await self._request("GET", "/orders/historical/batch", params=self._orders_params(status, product_id, limit)) or {}
        return [parse_coinbase_order(o) for o in res.get("orders", [])]

    async def place_order(self, request: OrderRequest) -> OrderResult:
        """Place an order asynchronously."""
        payload = build_coinbase_order_payload(request)
        logger.info(f"Placing Coinbase order | {payload['side']} {payload['product_id']} client_order_id={payload['client_order_id']}")
        res = await self.create_order(payload)
        return coinbase_result_from_create(request, res)

    async def cancel_order(self, order_id: str) -> bool:
        """Cancel an order asynchronously."""
        return self._cancel_succeeded(await self.cancel_orders([order_id]), order_id)

    async def get_order(self, order_id: str) -> OrderResult:
        res = await self._request("GET", f"/orders/historical/{order_id}") or {}
        return parse_coinbase_order(res.get("order", res))

    async def list_open_orders(self, product_id: Optional[str] = None) -> List[OrderResult]:
        return await self.list_orders(status="OPEN", product_id=product_id)

    async def list_order_history(self, product_id: Optional[str] = None, limit: int = 100) -> List[OrderResult]:
        return await self.list_orders(product_id=product_id, limit=limit)

    async def get_balances(self) -> List[Dict[str, Any]]:
        return self._normalize_accounts(await self.get_accounts())

    async def get_ticker(self, product_id: str) -> Dict[str, Any]:
        return await self.get_product_ticker(product_id)

    async def test_connection(self) -> Dict[str, Any]:
        try:
            products = await self.list_products()
        except ExchangeAPIError as e:
            return {"success": False, "message": str(e), "error_type": e.error_type.value}
        return {"success": True, "message": "Successfully connected to Coinbase API", "products_count": len(products)}
