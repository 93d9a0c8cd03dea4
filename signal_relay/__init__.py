"""
TradingView / manual signal relay.

Turns authenticated alerts into exchange orders on Coinbase Advanced Trade
(primary) or Kraken (secondary), and fans each outcome out to Discord,
Supabase and a local trade log database.

Features:
- HMAC and ES256 JWT request signing for Coinbase, HMAC-SHA512 for Kraken
- Retry with jittered exponential backoff, honoring exchange reset headers
- Error classification into a small, venue-neutral taxonomy
- Webhook authentication (HMAC signature, bearer token or passphrase)
- Alert normalization for TradingView and hand-written payloads
- Per-client inbound rate limiting and per-endpoint outbound quotas
- Optional encryption at rest via sqlcipher
- Structured logging via loguru, Prometheus metrics
- Configuration-driven (YAML or environment)

Core Modules:
    signing: request signers for Coinbase and Kraken
    coinbase_adapter: synchronous Coinbase client
    async_coinbase_adapter: asyncio Coinbase client
    kraken_adapter: asyncio Kraken client
    trading_service: venue-neutral orders, balances and positions
    webhook: alert authentication, normalization and execution
    notifications: Discord / Supabase / SQLite fan-out
    server: aiohttp service with the webhook and dashboard APIs
    config: configuration loading and validation
    secrets: credential management

Example:
    >>> from signal_relay.coinbase_adapter import CoinbaseAdapter
    >>> from signal_relay.secrets import load_credentials
    >>> from signal_relay.trading_service import TradingService
    >>>
    >>> adapter = CoinbaseAdapter.from_credentials(load_credentials())
    >>> service = TradingService(adapter)
    >>> result = await service.create_market_order("BTC-USD", "BUY", size="0.001")
"""

__version__ = "0.1.0"
__all__ = [
    "errors",
    "signing",
    "orders",
    "exchange",
    "coinbase_adapter",
    "async_coinbase_adapter",
    "kraken_adapter",
    "trading_service",
    "webhook",
    "notifications",
    "persistence_sqlite",
    "rate_limit_policy",
    "cache",
    "config",
    "secrets",
    "server",
]
