import json
import random
import time
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .errors import (
    CoinbaseAPIError,
    ExchangeAPIError,
    ExchangeErrorType,
    RateLimitError,
    classify_coinbase_order_failure,
    classify_http_error,
)
from .exchange import ExchangeAdapter, balance_entry
from .logging_setup import logger
from .orders import OrderRequest, OrderResult, build_coinbase_order_payload, coinbase_result_from_create, parse_coinbase_order
from .rate_limit_policy import RateLimitManager
from .secrets import CoinbaseCredentials
from .signing import signer_from_credentials

DEFAULT_BASE_URL = "https://api.coinbase.com"
API_PREFIX = "/api/v3/brokerage"

GRANULARITY_SECONDS = {
    "ONE_MINUTE": 60,
    "FIVE_MINUTE": 300,
    "FIFTEEN_MINUTE": 900,
    "THIRTY_MINUTE": 1800,
    "ONE_HOUR": 3600,
    "TWO_HOUR": 7200,
    "SIX_HOUR": 21600,
    "ONE_DAY": 86400,
}
MAX_CANDLES = 300


class CoinbaseClientBase:
    """Transport-independent parts of the Coinbase Advanced Trade client.

    Covers request preparation and signing, retry decisions, error
    classification and response normalization. ``CoinbaseAdapter`` (requests)
    and ``AsyncCoinbaseAdapter`` (aiohttp) supply the transport.
    """

    venue = "coinbase"

    def __init__(
        self,
        signer=None,
        *,
        credentials: Optional[CoinbaseCredentials] = None,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 10,
        max_retries: int = 3,
        backoff_base_seconds: float = 1.0,
        max_backoff_seconds: float = 30.0,
        rate_limiter: Optional[RateLimitManager] = None,
    ):
        self.base_url = base_url.rstrip("/")
        if signer is None:
            if credentials is None:
                raise CoinbaseAPIError("Missing Coinbase API credentials", ExchangeErrorType.AUTHENTICATION)
            signer = signer_from_credentials(credentials, host=urlsplit(self.base_url).netloc)
        self.signer = signer
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_base_seconds = backoff_base_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.rate_limiter = rate_limiter or RateLimitManager()

    @classmethod
    def from_credentials(cls, credentials: CoinbaseCredentials, **kwargs):
        """Create an adapter from CoinbaseCredentials (loaded via secrets module)."""
        return cls(credentials=credentials, **kwargs)

    # --- request preparation --------------------------------------------

    @staticmethod
    def _request_path(path: str) -> str:
        path = path if path.startswith("/") else f"/{path}"
        if not path.startswith("/api/"):
            path = f"{API_PREFIX}{path}"
        return path

    def _prepare(self, method: str, path: str, body: Optional[dict]) -> Tuple[str, str, Dict[str, str]]:
        """Return (url, body string, signed headers).

        The body string is signed and sent verbatim; query strings are not
        part of the signed path.
        """
        request_path = self._request_path(path)
        body_str = json.dumps(body) if body is not None else ""
        headers = self.signer.headers(method.upper(), request_path, body_str)
        return f"{self.base_url}{request_path}", body_str, headers

    # --- retry policy -----------------------------------------------------

    @staticmethod
    def _jittered_backoff(attempt: int, base: float = 1.0, max_backoff: float = 60.0) -> float:
        """Compute jittered exponential backoff in seconds.

        base * 2^attempt, capped at max_backoff, then +-25% jitter.
        """
        delay = min(base * (2 ** attempt), max_backoff)
        jitter = delay * 0.25 * (2 * random.random() - 1)
        return max(0, delay + jitter)

    @staticmethod
    def _get_rate_limit_reset(headers) -> Optional[float]:
        """Unix timestamp at which the rate limit resets, from response headers."""
        if "CB-RateLimit-Reset" in headers:
            try:
                return float(headers["CB-RateLimit-Reset"])
            except (ValueError, TypeError):
                return None
        if "Retry-After" in headers:
            try:
                return time.time() + float(headers["Retry-After"])
            except (ValueError, TypeError):
                return None
        return None

    def _retry_delay(self, attempt: int, error: ExchangeAPIError, headers=None) -> float:
        if error.error_type is ExchangeErrorType.RATE_LIMIT and headers is not None:
            reset_ts = self._get_rate_limit_reset(headers)
            if reset_ts is not None:
                # small epsilon so we don't wake just before the reset
                return min(max(0.0, reset_ts - time.time()) + 0.01, self.max_backoff_seconds)
        return self._jittered_backoff(attempt, base=self.backoff_base_seconds, max_backoff=self.max_backoff_seconds)

    def _throttled(self, endpoint: str) -> RateLimitError:
        wait = self.rate_limiter.time_until_allowed(endpoint)
        logger.warning(f"Client-side rate limit exhausted | endpoint={endpoint} retry_after={wait:.2f}s")
        return RateLimitError(
            f"Client-side rate limit for {endpoint} exceeded; retry in {wait:.2f}s",
            status_code=None,
            details={"retry_after": wait},
        )

    def _give_up(self, attempt: int, error: ExchangeAPIError) -> bool:
        return not error.retryable or attempt >= self.max_retries

    def _final_error(self, error: ExchangeAPIError) -> ExchangeAPIError:
        if error.error_type is ExchangeErrorType.RATE_LIMIT and error.retryable and not isinstance(error, RateLimitError):
            return RateLimitError(
                f"Rate limited and max backoff attempts exceeded: {error.message}",
                status_code=error.status_code,
                details=error.details,
            )
        return error

    # --- response handling ------------------------------------------------

    @staticmethod
    def _parse_text(text: str) -> Any:
        if not text:
            return None
        try:
            return json.loads(text)
        except ValueError:
            return text

    @classmethod
    def _error_for_status(cls, status: int, text: str) -> CoinbaseAPIError:
        details = cls._parse_text(text)
        error_type = classify_http_error(status, details)
        message = ""
        if isinstance(details, dict):
            message = details.get("message") or details.get("error") or ""
        if not message:
            message = text or f"Coinbase API error: {status}"
        return CoinbaseAPIError(message, error_type, status, details)

    @staticmethod
    def _check_create_response(response: Dict[str, Any]) -> None:
        if response.get("success", True):
            return
        failure = response.get("error_response") or {}
        code = failure.get("error") or response.get("failure_reason")
        message = failure.get("message") or failure.get("error_details") or code or "Order rejected"
        raise CoinbaseAPIError(message, classify_coinbase_order_failure(code), 400, response)

    @staticmethod
    def _candles_params(granularity: str, start: Optional[int], end: Optional[int]) -> Dict[str, Any]:
        granularity = granularity.upper()
        if granularity not in GRANULARITY_SECONDS:
            raise CoinbaseAPIError(f"Unsupported granularity {granularity}", ExchangeErrorType.INVALID_REQUEST)
        end = int(end if end is not None else time.time())
        if start is None:
            start = end - GRANULARITY_SECONDS[granularity] * MAX_CANDLES
        return {"start": str(int(start)), "end": str(end), "granularity": granularity}

    @staticmethod
    def _orders_params(status: Optional[str], product_id: Optional[str], limit: int) -> Dict[str, Any]:
        params: Dict[str, Any] = {"limit": limit}
        if status:
            params["order_status"] = status
        if product_id:
            params["product_ids"] = product_id
        return params

    @staticmethod
    def _normalize_ticker(product_id: str, response: Dict[str, Any]) -> Dict[str, Any]:
        trades = (response or {}).get("trades") or []
        last = trades[0] if trades else {}
        return {
            "product_id": product_id,
            "price": last.get("price"),
            "bid": response.get("best_bid") or None,
            "ask": response.get("best_ask") or None,
            "time": last.get("time"),
        }

    @staticmethod
    def _normalize_accounts(accounts: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        out = []
        for acct in accounts:
            out.append(balance_entry(
                acct.get("currency", ""),
                (acct.get("available_balance") or {}).get("value"),
                (acct.get("hold") or {}).get("value"),
            ))
        return out

    @staticmethod
    def _cancel_succeeded(response: Dict[str, Any], order_id: str) -> bool:
        for result in (response or {}).get("results", []):
            if result.get("order_id") == order_id:
                return bool(result.get("success"))
        return False


class CoinbaseAdapter(CoinbaseClientBase, ExchangeAdapter):
    """Coinbase Advanced Trade adapter with request signing, retries, and rate-limit backoff.

    Features:
    - HMAC (legacy key) or ES256 JWT (CDP key) request signing.
    - Connection-level retries via urllib3.Retry (nothing has been sent yet).
    - Bounded retry of 429/5xx/network failures with jittered exponential backoff.
    - Respects ``CB-RateLimit-Reset`` / ``Retry-After`` on 429 responses.
    - Client-side sliding-window throttling per endpoint.
    """

    def __init__(self, signer=None, **kwargs):
        super().__init__(signer, **kwargs)
        self.session = requests.Session()
        retries = Retry(total=self.max_retries, connect=self.max_retries, read=0, status=0, backoff_factor=0.5)
        self.session.mount("https://", HTTPAdapter(max_retries=retries))
        self.session.mount("http://", HTTPAdapter(max_retries=retries))

    def close(self) -> None:
        self.session.close()

    def _request(self, method: str, path: str, body: Optional[dict] = None, params: Optional[dict] = None):
        endpoint = self._request_path(path)
        attempt = 0
        while True:
            if not self.rate_limiter.wait_if_needed(endpoint, max_wait=self.max_backoff_seconds):
                raise self._throttled(endpoint)
            # re-sign each attempt: timestamps and JWTs are time-bound
            url, body_str, headers = self._prepare(method, path, body)
            resp_headers = None
            try:
                resp = self.session.request(
                    method, url, headers=headers, data=body_str if body is not None else None, params=params, timeout=self.timeout
                )
            except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
                error = CoinbaseAPIError(f"Request failed: {e}", ExchangeErrorType.NETWORK)
            except requests.exceptions.RequestException as e:
                raise CoinbaseAPIError(f"Request failed: {e}", ExchangeErrorType.UNKNOWN)
            else:
                if resp.ok:
                    return self._parse_text(resp.text)
                error = self._error_for_status(resp.status_code, resp.text)
                resp_headers = resp.headers

            if self._give_up(attempt, error):
                raise self._final_error(error)
            delay = self._retry_delay(attempt, error, resp_headers)
            logger.warning(
                f"Coinbase request retry | {method} {endpoint} attempt={attempt + 1}/{self.max_retries} "
                f"error_type={error.error_type.value} delay={delay:.2f}s"
            )
            time.sleep(delay)
            attempt += 1

    # --- raw endpoints ----------------------------------------------------

    def get_accounts(self) -> List[Dict[str, Any]]:
        accounts: List[Dict[str, Any]] = []
        params: Dict[str, Any] = {"limit": 250}
        while True:
            res = self._request("GET", "/accounts", params=params) or {}
            accounts.extend(res.get("accounts", []))
            if not res.get("has_next") or not res.get("cursor"):
                return accounts
            params = {"limit": 250, "cursor": res["cursor"]}

    def list_products(self, product_type: str = "SPOT") -> List[Dict[str, Any]]:
        res = self._request("GET", "/products", params={"product_type": product_type}) or {}
        return res.get("products", [])

    def get_product(self, product_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/products/{product_id}")

    def get_product_ticker(self, product_id: str) -> Dict[str, Any]:
        res = self._request("GET", f"/products/{product_id}/ticker", params={"limit": 1}) or {}
        return self._normalize_ticker(product_id, res)

    def get_candles(self, product_id: str, granularity: str = "ONE_HOUR", start: Optional[int] = None, end: Optional[int] = None) -> List[Dict[str, Any]]:
        params = self._candles_params(granularity, start, end)
        res = self._request("GET", f"/products/{product_id}/candles", params=params) or {}
        return res.get("candles", [])

    def create_order(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        res = self._request("POST", "/orders", body=payload) or {}
        self._check_create_response(res)
        return res

    def cancel_orders(self, order_ids: List[str]) -> Dict[str, Any]:
        return self._request("POST", "/orders/batch_cancel", body={"order_ids": list(order_ids)}) or {}

    def list_orders(self, status: Optional[str] = None, product_id: Optional[str] = None, limit: int = 100) -> List[OrderResult]:
        res = self._request("GET", "/orders/historical/batch", params=self._orders_params(status, product_id, limit)) or {}
        return [parse_coinbase_order(o) for o in res.get("orders", [])]

    # --- ExchangeAdapter --------------------------------------------------

    def place_order(self, request: OrderRequest) -> OrderResult:
        payload = build_coinbase_order_payload(request)
        logger.info(f"Placing Coinbase order | {payload['side']} {payload['product_id']} client_order_id={payload['client_order_id']}")
        res = self.create_order(payload)
        return coinbase_result_from_create(request, res)

    def cancel_order(self, order_id: str) -> bool:
        return self._cancel_succeeded(self.cancel_orders([order_id]), order_id)

    def get_order(self, order_id: str) -> OrderResult:
        res = self._request("GET", f"/orders/historical/{order_id}") or {}
        return parse_coinbase_order(res.get("order", res))

    def list_open_orders(self, product_id: Optional[str] = None) -> List[OrderResult]:
        return self.list_orders(status="OPEN", product_id=product_id)

    def list_order_history(self, product_id: Optional[str] = None, limit: int = 100) -> List[OrderResult]:
        return self.list_orders(product_id=product_id, limit=limit)

    def get_balances(self) -> List[Dict[str, Any]]:
        return self._normalize_accounts(self.get_accounts())

    def get_ticker(self, product_id: str) -> Dict[str, Any]:
        return self.get_product_ticker(product_id)

    def test_connection(self) -> Dict[str, Any]:
        try:
            products = self.list_products()
        except ExchangeAPIError as e:
            return {"success": False, "message": str(e), "error_type": e.error_type.value}
        return {"success": True, "message": "Successfully connected to Coinbase API", "products_count": len(products)}
