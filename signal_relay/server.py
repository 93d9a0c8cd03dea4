"""aiohttp service exposing the webhook endpoints and the dashboard JSON API.

Webhook routes are authenticated with the shared webhook secret; dashboard
routes use a session (``POST /login``) or Basic auth when
``DASHBOARD_USER``/``DASHBOARD_PASS`` are configured, and state-changing
dashboard routes also require the session's CSRF token. Health checks and
Prometheus metrics are always public.
"""

import asyncio
import base64
import binascii
import functools
import inspect
import ipaddress
import json
import math
import os
import secrets
import time
from pathlib import Path
from typing import Any, Dict, Optional

from aiohttp import web
from aiohttp_session import get_session, new_session
from aiohttp_session import setup as session_setup
from aiohttp_session.cookie_storage import EncryptedCookieStorage
from cryptography import fernet

from .async_coinbase_adapter import AsyncCoinbaseAdapter
from .cache import TTLCache
from .config import RelayConfig
from .errors import ExchangeAPIError
from .exchange import PaperExchangeAdapter
from .kraken_adapter import KrakenAdapter
from .logging_setup import logger
from .metrics import RelayMetrics
from .notifications import DiscordNotifier, NotificationCenter, NotificationFanout, SQLiteTradeLogger, SupabaseTradeLogger
from .persistence_sqlite import TradeLogStore
from .rate_limit_policy import RateLimitDecision, RateLimitManager, RateLimitQuota
from .secrets import credentials_status, load_credentials, load_kraken_credentials
from .signing import constant_time_equals
from .trading_service import TradingError, TradingErrorType, TradingService
from .webhook import WebhookAuthenticator, WebhookProcessor

WEBHOOK_PATHS = frozenset({"/api/webhook", "/api/tradingview-webhook", "/api/test-webhook"})

_dumps = functools.partial(json.dumps, default=str)


def build_adapter(config: RelayConfig, paper_prices: Optional[Dict[str, Any]] = None):
    """Create the exchange adapter for the configured venue.

    Raises ValueError / ExchangeAPIError when credentials are missing or unusable.
    """
    ex = config.exchange
    if ex.venue == "paper":
        return PaperExchangeAdapter(prices=paper_prices)
    if ex.venue == "kraken":
        return KrakenAdapter(
            load_kraken_credentials(),
            timeout=ex.timeout,
            max_retries=ex.max_retries,
            backoff_base_seconds=ex.backoff_base_seconds,
            max_backoff_seconds=ex.max_backoff_seconds,
        )
    return AsyncCoinbaseAdapter(
        credentials=load_credentials(),
        base_url=ex.base_url,
        timeout=ex.timeout,
        max_retries=ex.max_retries,
        backoff_base_seconds=ex.backoff_base_seconds,
        max_backoff_seconds=ex.max_backoff_seconds,
    )


def parse_trusted_proxies(values) -> list:
    return [ipaddress.ip_network(v, strict=False) for v in values or ()]


def _is_trusted(address: Optional[str], trusted) -> bool:
    if not address or not trusted:
        return False
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    return any(ip in net for net in trusted)


def client_address(request: web.Request, trusted_proxies=()) -> str:
    """Peer address, or the X-Forwarded-For client when the peer is a trusted proxy.

    Hops are read right to left, skipping trusted proxies.
    """
    peer = request.remote or "unknown"
    forwarded = request.headers.get("X-Forwarded-For", "")
    if not forwarded or not _is_trusted(peer, trusted_proxies):
        return peer
    hops = [h.strip() for h in forwarded.split(",") if h.strip()]
    for hop in reversed(hops):
        if not _is_trusted(hop, trusted_proxies):
            return hop
    return hops[0] if hops else peer


def rate_limit_headers(decision: RateLimitDecision) -> Dict[str, str]:
    headers = {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(max(0, decision.remaining)),
        "X-RateLimit-Reset": str(math.ceil(decision.reset_at)),
    }
    if not decision.allowed:
        headers["Retry-After"] = str(max(1, math.ceil(decision.retry_after)))
    return headers


def inbound_rate_limit_middleware(
    limiter: RateLimitManager, metrics: Optional[RelayMetrics] = None, paths=WEBHOOK_PATHS, trusted_proxies=()
):
    """Per-client sliding-window limit on the webhook routes."""

    @web.middleware
    async def middleware(request: web.Request, handler):
        if request.path not in paths:
            return await handler(request)
        if len(limiter.states) > 10000:
            limiter.purge_idle()
        ip = client_address(request, trusted_proxies)
        decision = limiter.check(ip)
        headers = rate_limit_headers(decision)
        if not decision.allowed:
            logger.warning(f"Inbound rate limit exceeded | ip={ip} path={request.path} retry_after={headers['Retry-After']}s")
            if metrics is not None:
                metrics.rate_limited.inc()
            return web.json_response(
                {"success": False, "message": "Too many requests", "retry_after": int(headers["Retry-After"])},
                status=429,
                headers=headers,
            )
        response = await handler(request)
        response.headers.update(headers)
        return response

    return middleware


class RelayServer:
    def __init__(
        self,
        config: Optional[RelayConfig] = None,
        *,
        adapter=None,
        store: Optional[TradeLogStore] = None,
        paper_prices: Optional[Dict[str, Any]] = None,
        session_key: Optional[str] = None,
    ):
        self.config = config or RelayConfig()
        self.credentials_error: Optional[str] = None
        if adapter is None:
            try:
                adapter = build_adapter(self.config, paper_prices)
            except (ValueError, ExchangeAPIError) as e:
                self.credentials_error = str(e)
                logger.warning(f"Exchange adapter unavailable | venue={self.config.exchange.venue} reason={e}")
        self.adapter = adapter
        self.service = TradingService(adapter) if adapter is not None else None

        self.store = store or TradeLogStore(Path(self.config.persistence.db_path), self.config.persistence.encryption_password)
        self.notifications = NotificationCenter()
        self.fanout = NotificationFanout([SQLiteTradeLogger(self.store)])
        n = self.config.notifications
        if n.discord_webhook_url:
            self.fanout.add_sink(DiscordNotifier(n.discord_webhook_url))
        if n.supabase_url and n.supabase_key:
            self.fanout.add_sink(SupabaseTradeLogger(n.supabase_url, n.supabase_key))

        self.cache = TTLCache(self.config.server.cache_ttl_seconds)
        self.metrics = RelayMetrics()
        self.inbound_limiter = RateLimitManager(
            {"default": RateLimitQuota(self.config.webhook.rate_limit_requests, self.config.webhook.rate_limit_window_seconds)}
        )
        self.authenticator = WebhookAuthenticator(self.config.webhook.secret)
        self.processor = (
            WebhookProcessor(
                self.service,
                self.authenticator,
                fanout=self.fanout,
                notifications=self.notifications,
                default_quantity=self.config.webhook.default_quantity,
            )
            if self.service is not None
            else None
        )

        self.trusted_proxies = parse_trusted_proxies(self.config.server.trusted_proxies)
        self.app = web.Application(
            middlewares=[inbound_rate_limit_middleware(self.inbound_limiter, self.metrics, trusted_proxies=self.trusted_proxies)]
        )
        self._setup_routes(session_key or os.environ.get("RELAY_SESSION_KEY"))

    @property
    def venue(self) -> str:
        return self.service.venue if self.service else self.config.exchange.venue

    @property
    def dashboard_auth_enabled(self) -> bool:
        return bool(self.config.server.dashboard_user and self.config.server.dashboard_password)

    def _setup_routes(self, session_key: Optional[str]):
        r = self.app.router
        r.add_post("/api/webhook", self.handle_webhook)
        r.add_post("/api/tradingview-webhook", self.handle_tradingview_webhook)
        r.add_post("/api/test-webhook", self.handle_test_webhook)
        r.add_post("/api/trade", self.handle_trade)
        r.add_post("/api/cancel-order", self.handle_cancel_order)
        r.add_post("/api/test-trade", self.handle_test_trade)
        r.add_get("/api/account-balances", self.handle_account_balances)
        r.add_get("/api/positions", self.handle_positions)
        r.add_get("/api/open-orders", self.handle_open_orders)
        r.add_get("/api/order-history", self.handle_order_history)
        r.add_get("/api/product-ticker", self.handle_product_ticker)
        r.add_get("/api/candles", self.handle_candles)
        r.add_get("/api/webhook-logs", self.handle_webhook_logs)
        r.add_get("/api/notifications", self.handle_notifications)
        r.add_get("/api/check-credentials", self.handle_check_credentials)
        r.add_get("/api/connection-test", self.handle_connection_test)
        r.add_get("/api/rate-limit-status", self.handle_rate_limit_status)
        r.add_get("/health", self.handle_health)
        r.add_get("/health/live", self.handle_liveness)
        r.add_get("/health/ready", self.handle_readiness)
        r.add_get("/metrics", self.handle_metrics)
        r.add_post("/login", self.handle_login)
        r.add_post("/logout", self.handle_logout)
        self.app.on_startup.append(self._on_startup)
        self.app.on_cleanup.append(self._on_cleanup)
        # sessions live in encrypted cookies; a generated key means logins end on restart
        key = session_key.encode() if session_key else fernet.Fernet.generate_key()
        session_setup(self.app, EncryptedCookieStorage(fernet.Fernet(key), cookie_name="RELAY_SESSION"))

    # --- helpers ------------------------------------------------------------

    @staticmethod
    def _json(data: Dict[str, Any], status: int = 200, headers: Optional[Dict[str, str]] = None) -> web.Response:
        return web.json_response(data, status=status, headers=headers, dumps=_dumps)

    def _service_unavailable(self) -> web.Response:
        message = f"Exchange credentials are not configured for {self.config.exchange.venue}"
        if self.credentials_error:
            message = f"{message}: {self.credentials_error}"
        return self._json({"success": False, "message": message}, status=503)

    def _trading_error(self, e: TradingError) -> web.Response:
        status = {TradingErrorType.INVALID_ORDER: 400, TradingErrorType.RATE_LIMIT: 429}.get(e.error_type, 502)
        return self._json({"success": False, "message": e.message, "error_type": e.error_type.value}, status=status)

    async def _check_auth(self, request: web.Request) -> bool:
        # session first, then Basic auth; open when no dashboard credentials are set
        if not self.dashboard_auth_enabled:
            return True
        session = await get_session(request)
        if session.get("user"):
            return True
        auth = request.headers.get("Authorization", "")
        if not auth.startswith("Basic "):
            return False
        try:
            user, _, pw = base64.b64decode(auth.split(" ", 1)[1]).decode().partition(":")
        except (binascii.Error, UnicodeDecodeError):
            return False
        return self._credentials_match(user, pw)

    def _credentials_match(self, user: Optional[str], pw: Optional[str]) -> bool:
        return constant_time_equals(user, self.config.server.dashboard_user) & constant_time_equals(
            pw, self.config.server.dashboard_password
        )

    async def _validate_csrf(self, request: web.Request) -> bool:
        if not self.dashboard_auth_enabled:
            return True
        session = await get_session(request)
        server_csrf = session.get("csrf")
        if not server_csrf:
            return False
        token = request.headers.get("X-CSRF-Token")
        if token is None and request.can_read_body:
            try:
                body = await request.json()
            except ValueError:
                body = None
            token = body.get("csrf") if isinstance(body, dict) else None
        return constant_time_equals(token, server_csrf)

    async def _guard(self, request: web.Request, *, csrf: bool = False) -> Optional[web.Response]:
        if not await self._check_auth(request):
            return self._json({"success": False, "message": "unauthorized"}, status=401)
        if csrf and not await self._validate_csrf(request):
            return self._json({"success": False, "message": "invalid csrf"}, status=403)
        if self.service is None:
            return self._service_unavailable()
        return None

    async def _read_json(self, request: web.Request) -> Optional[Dict[str, Any]]:
        try:
            data = await request.json()
        except ValueError:
            return None
        return data if isinstance(data, dict) else None

    # --- webhooks -----------------------------------------------------------

    async def _handle_alert(self, request: web.Request, source: str, dry_run: bool = False) -> web.Response:
        if self.processor is None:
            self.metrics.record_alert(source, 503, self.venue, 0.0, placed=False)
            return self._service_unavailable()
        raw = await request.read()
        started = time.perf_counter()
        result = await self.processor.process(raw, request.headers, source, dry_run=dry_run)
        placed = not dry_run and result.status not in (400, 401)
        self.metrics.record_alert(source, result.status, self.venue, time.perf_counter() - started, placed)
        if placed:
            self.cache.clear()
        return self._json(result.body, status=result.status, headers=result.headers)

    async def handle_webhook(self, request: web.Request):
        return await self._handle_alert(request, "webhook")

    async def handle_tradingview_webhook(self, request: web.Request):
        return await self._handle_alert(request, "tradingview")

    async def handle_test_webhook(self, request: web.Request):
        """Validate and normalize an alert without placing an order."""
        return await self._handle_alert(request, "test", dry_run=True)

    # --- manual trading -----------------------------------------------------

    async def handle_trade(self, request: web.Request):
        denied = await self._guard(request, csrf=True)
        if denied:
            return denied
        data = await self._read_json(request)
        if data is None:
            return self._json({"success": False, "message": "Invalid JSON payload"}, status=400)
        data.pop("csrf", None)
        result = await self.processor.execute(data, "manual")
        if result.status != 400:
            self.cache.clear()
        return self._json(result.body, status=result.status)

    async def handle_test_trade(self, request: web.Request):
        denied = await self._guard(request)
        if denied:
            return denied
        data = await self._read_json(request)
        if data is None:
            return self._json({"success": False, "message": "Invalid JSON payload"}, status=400)
        result = await self.processor.execute(data, "manual", dry_run=True)
        return self._json(result.body, status=result.status)

    async def handle_cancel_order(self, request: web.Request):
        denied = await self._guard(request, csrf=True)
        if denied:
            return denied
        data = await self._read_json(request) or {}
        order_id = data.get("order_id")
        if not order_id:
            return self._json({"success": False, "message": "order_id required"}, status=400)
        try:
            cancelled = await self.service.cancel_order(str(order_id))
        except TradingError as e:
            return self._trading_error(e)
        self.cache.clear()
        if cancelled:
            self.notifications.info("Order Cancelled", f"Order {order_id} cancelled")
        message = "Order cancelled" if cancelled else "Order could not be cancelled"
        return self._json({"success": cancelled, "order_id": order_id, "message": message})

    # --- cached reads -------------------------------------------------------

    async def _cached(self, request: web.Request, key, loader) -> web.Response:
        denied = await self._guard(request)
        if denied:
            return denied
        refresh = request.query.get("refresh", "").lower() in ("1", "true", "yes")
        try:
            data = await self.cache.get_or_load(key, loader, refresh=refresh)
        except TradingError as e:
            return self._trading_error(e)
        return self._json({"success": True, **data})

    async def handle_account_balances(self, request: web.Request):
        async def load():
            return {"balances": await self.service.get_account_balances()}

        return await self._cached(request, ("balances",), load)

    async def handle_positions(self, request: web.Request):
        async def load():
            return {"positions": [p.to_dict() for p in await self.service.get_positions()]}

        return await self._cached(request, ("positions",), load)

    async def handle_open_orders(self, request: web.Request):
        product_id = request.query.get("product_id") or None

        async def load():
            return {"orders": [o.to_dict() for o in await self.service.get_open_orders(product_id)]}

        return await self._cached(request, ("open-orders", product_id), load)

    async def handle_order_history(self, request: web.Request):
        product_id = request.query.get("product_id") or None
        try:
            limit = min(max(int(request.query.get("limit", "100")), 1), 1000)
        except ValueError:
            return self._json({"success": False, "message": "limit must be an integer"}, status=400)

        async def load():
            return {"orders": [o.to_dict() for o in await self.service.get_order_history(product_id, limit)]}

        return await self._cached(request, ("order-history", product_id, limit), load)

    async def handle_product_ticker(self, request: web.Request):
        product_id = request.query.get("product_id")
        if not product_id:
            return self._json({"success": False, "message": "product_id required"}, status=400)

        async def load():
            return {"ticker": await self.service.get_ticker(product_id)}

        return await self._cached(request, ("ticker", product_id), load)

    async def handle_candles(self, request: web.Request):
        q = request.query
        product_id = q.get("product_id")
        if not product_id:
            return self._json({"success": False, "message": "product_id required"}, status=400)
        granularity = q.get("granularity", "ONE_HOUR").upper()
        try:
            start = int(q["start"]) if q.get("start") else None
            end = int(q["end"]) if q.get("end") else None
        except ValueError:
            return self._json({"success": False, "message": "start and end must be unix timestamps"}, status=400)

        async def load():
            return {"candles": await self.service.get_candles(product_id, granularity, start, end)}

        return await self._cached(request, ("candles", product_id, granularity, start, end), load)

    # --- logs, notifications, credentials ------------------------------------

    async def handle_webhook_logs(self, request: web.Request):
        if not await self._check_auth(request):
            return self._json({"success": False, "message": "unauthorized"}, status=401)
        try:
            limit = min(max(int(request.query.get("limit", "50")), 1), 500)
        except ValueError:
            return self._json({"success": False, "message": "limit must be an integer"}, status=400)
        logs = await asyncio.to_thread(
            self.store.list_trade_logs, limit, request.query.get("ticker") or None, request.query.get("status") or None
        )
        return self._json({"success": True, "logs": logs})

    async def handle_notifications(self, request: web.Request):
        if not await self._check_auth(request):
            return self._json({"success": False, "message": "unauthorized"}, status=401)
        unread = request.query.get("unread", "").lower() in ("1", "true", "yes")
        return self._json({"success": True, "notifications": self.notifications.list(unread_only=unread)})

    async def handle_check_credentials(self, request: web.Request):
        if not await self._check_auth(request):
            return self._json({"success": False, "message": "unauthorized"}, status=401)
        return self._json({
            "success": True,
            "venue": self.config.exchange.venue,
            "exchange_ready": self.service is not None,
            "credentials": credentials_status(),
            "webhook_auth": self.authenticator.enabled,
            "dashboard_auth": self.dashboard_auth_enabled,
            "error": self.credentials_error,
        })

    async def handle_connection_test(self, request: web.Request):
        denied = await self._guard(request)
        if denied:
            return denied
        try:
            result = await self.service.test_connection()
        except TradingError as e:
            return self._trading_error(e)
        return self._json(result, status=200 if result.get("success") else 502)

    async def handle_rate_limit_status(self, request: web.Request):
        """Quota usage per inbound client and per exchange endpoint."""
        if not await self._check_auth(request):
            return self._json({"success": False, "message": "unauthorized"}, status=401)
        limiter = getattr(self.adapter, "rate_limiter", None)
        return self._json({
            "success": True,
            "inbound": self.inbound_limiter.snapshot(),
            "exchange": limiter.snapshot() if limiter is not None else {},
        })

    # --- health & metrics ---------------------------------------------------

    async def handle_health(self, request: web.Request):
        """Comprehensive health check.

        Returns 200 if the trade log database is reachable, 503 otherwise. A
        missing exchange configuration is reported but does not fail the check.
        """
        checks = {
            "status": "healthy",
            "timestamp": int(time.time()),
            "uptime_seconds": time.time() - self.metrics.start_time,
            "checks": {},
        }
        try:
            summary = await asyncio.to_thread(self.store.summarize)
            checks["checks"]["database"] = {"status": "up", "trade_logs": summary["total"]}
        except Exception as e:
            checks["checks"]["database"] = {"status": "down", "error": str(e)}
            checks["status"] = "unhealthy"
        checks["checks"]["exchange"] = {
            "venue": self.venue,
            "status": "configured" if self.service else "not_configured",
        }
        checks["checks"]["notifications"] = {
            "sinks": [getattr(s, "name", type(s).__name__) for s in self.fanout.sinks],
            "failures": self.fanout.failures,
        }
        return self._json(checks, status=200 if checks["status"] == "healthy" else 503)

    async def handle_liveness(self, request: web.Request):
        return self._json({"status": "alive", "timestamp": int(time.time())})

    async def handle_readiness(self, request: web.Request):
        """Ready when the database answers and an exchange adapter exists."""
        ready = True
        checks = {}
        try:
            await asyncio.to_thread(self.store.list_trade_logs, 1)
            checks["database"] = "ready"
        except Exception as e:
            checks["database"] = f"not_ready: {e}"
            ready = False
        if self.service is not None:
            checks["exchange"] = "ready"
        else:
            checks["exchange"] = "not_configured"
            ready = False
        return self._json({"ready": ready, "checks": checks, "timestamp": int(time.time())}, status=200 if ready else 503)

    async def handle_metrics(self, request: web.Request):
        return web.Response(body=self.metrics.render(), headers={"Content-Type": self.metrics.content_type})

    # --- sessions -----------------------------------------------------------

    async def handle_login(self, request: web.Request):
        data = await self._read_json(request) or {}
        user = str(data["user"]) if data.get("user") is not None else None
        pw = str(data["pass"]) if data.get("pass") is not None else None
        if self.dashboard_auth_enabled and not self._credentials_match(user, pw):
            logger.warning(f"Dashboard login failed | ip={client_address(request, self.trusted_proxies)}")
            return self._json({"success": False, "message": "invalid credentials"}, status=401)
        session = await new_session(request)
        session["user"] = user or "anon"
        token = secrets.token_urlsafe(32)
        session["csrf"] = token
        return self._json({"success": True, "csrf": token})

    async def handle_logout(self, request: web.Request):
        session = await get_session(request)
        session.invalidate()
        return self._json({"success": True})

    # --- lifecycle ----------------------------------------------------------

    async def _on_startup(self, app):
        logger.info(
            f"Relay server starting | venue={self.venue} exchange_ready={self.service is not None} "
            f"webhook_auth={self.authenticator.enabled} sinks={len(self.fanout.sinks)}"
        )

    async def _on_cleanup(self, app):
        await self.fanout.drain()
        close = getattr(self.adapter, "close", None)
        if close is not None:
            if inspect.iscoroutinefunction(close):
                await close()
            else:
                close()
        self.store.close()
        logger.info("Relay server stopped")

    def run(self):
        web.run_app(self.app, host=self.config.server.host, port=self.config.server.port)
