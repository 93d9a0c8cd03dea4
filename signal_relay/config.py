"""Configuration loader for the signal relay.

Supports YAML format with environment variable interpolation, or plain
environment variables via ``RelayConfig.from_env``.
"""
import ipaddress
import os
import re
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import List, Mapping, Optional

import yaml

_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

VENUES = ("coinbase", "kraken", "paper")


@dataclass
class ExchangeConfig:
    """Exchange connection settings."""
    venue: str = "coinbase"
    base_url: str = "https://api.coinbase.com"
    timeout: int = 10
    max_retries: int = 3
    backoff_base_seconds: float = 1.0
    max_backoff_seconds: float = 30.0


@dataclass
class WebhookConfig:
    """Inbound alert settings."""
    secret: Optional[str] = None
    default_quantity: Decimal = Decimal("0.001")
    rate_limit_requests: int = 60
    rate_limit_window_seconds: float = 60.0


@dataclass
class NotificationsConfig:
    discord_webhook_url: Optional[str] = None
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8080
    cache_ttl_seconds: float = 30.0
    dashboard_user: Optional[str] = None
    dashboard_password: Optional[str] = None
    # peers allowed to set X-Forwarded-For (IPs or CIDR blocks)
    trusted_proxies: List[str] = field(default_factory=list)


@dataclass
class PersistenceConfig:
    """Database and persistence settings."""
    db_path: str = "relay.db"
    encryption_password: Optional[str] = None
    log_file: str = "relay.log"
    log_level: str = "INFO"


def _present(section: Optional[dict]) -> dict:
    # blank or missing values fall back to the dataclass default
    return {k: v for k, v in (section or {}).items() if v not in (None, "")}


@dataclass
class RelayConfig:
    """Complete relay configuration."""
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)

    def validate(self) -> None:
        if self.exchange.venue not in VENUES:
            raise ValueError(f"Unknown venue {self.exchange.venue!r}; expected one of {', '.join(VENUES)}")
        if self.webhook.default_quantity <= 0:
            raise ValueError("webhook.default_quantity must be positive")
        if self.webhook.rate_limit_requests <= 0 or self.webhook.rate_limit_window_seconds <= 0:
            raise ValueError("webhook rate limit must be positive")
        for proxy in self.server.trusted_proxies:
            try:
                ipaddress.ip_network(proxy, strict=False)
            except ValueError:
                raise ValueError(f"server.trusted_proxies entry {proxy!r} is not an IP address or network")

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "RelayConfig":
        data = data or {}
        exchange = ExchangeConfig(**_present(data.get("exchange", {})))
        webhook_raw = _present(data.get("webhook", {}))
        if webhook_raw.get("default_quantity") is not None:
            webhook_raw["default_quantity"] = Decimal(str(webhook_raw["default_quantity"]))
        if webhook_raw.get("secret") is not None:
            webhook_raw["secret"] = str(webhook_raw["secret"])
        webhook = WebhookConfig(**webhook_raw)
        notifications = NotificationsConfig(**_present(data.get("notifications", {})))
        server_raw = _present(data.get("server", {}))
        if isinstance(server_raw.get("trusted_proxies"), str):
            server_raw["trusted_proxies"] = [p.strip() for p in server_raw["trusted_proxies"].split(",") if p.strip()]
        server = ServerConfig(**server_raw)
        persistence = PersistenceConfig(**_present(data.get("persistence", {})))
        config = cls(exchange=exchange, webhook=webhook, notifications=notifications, server=server, persistence=persistence)
        config.validate()
        return config

    @classmethod
    def from_yaml(cls, config_path: str) -> "RelayConfig":
        """Load configuration from YAML file with env var interpolation.

        Args:
            config_path: Path to YAML config file

        Returns:
            RelayConfig instance

        Example YAML:
            exchange:
              venue: coinbase
              max_retries: 3
            webhook:
              secret: "${WEBHOOK_SECRET}"
              default_quantity: 0.001
            persistence:
              db_path: "${STATE_DIR}/relay.db"

        Unset variables interpolate to an empty value, which is read as unset.
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with config_file.open("r") as f:
            raw = f.read()

        raw = _ENV_PATTERN.sub(lambda m: os.environ.get(m.group(1), ""), raw)
        return cls.from_dict(yaml.safe_load(raw))

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "RelayConfig":
        """Build a configuration from the relay's well-known environment variables."""
        env = os.environ if environ is None else environ
        data = {
            "exchange": {
                "venue": env.get("RELAY_VENUE"),
                "base_url": env.get("COINBASE_BASE_URL"),
                "max_retries": int(env["RELAY_MAX_RETRIES"]) if env.get("RELAY_MAX_RETRIES") else None,
            },
            "webhook": {
                "secret": env.get("WEBHOOK_SECRET"),
                "default_quantity": env.get("DEFAULT_QUANTITY"),
            },
            "notifications": {
                "discord_webhook_url": env.get("DISCORD_WEBHOOK_URL"),
                "supabase_url": env.get("SUPABASE_URL"),
                "supabase_key": env.get("SUPABASE_KEY") or env.get("SUPABASE_ANON_KEY"),
            },
            "server": {
                "host": env.get("HOST"),
                "port": int(env["PORT"]) if env.get("PORT") else None,
                "dashboard_user": env.get("DASHBOARD_USER"),
                "dashboard_password": env.get("DASHBOARD_PASS"),
                "trusted_proxies": env.get("TRUSTED_PROXIES"),
            },
            "persistence": {
                "db_path": env.get("RELAY_DB_PATH"),
                "encryption_password": env.get("RELAY_DB_PASSWORD"),
                "log_file": env.get("RELAY_LOG_FILE"),
                "log_level": env.get("RELAY_LOG_LEVEL"),
            },
        }
        return cls.from_dict(data)

    def to_yaml(self, output_path: str) -> None:
        """Save configuration to YAML file."""
        data = asdict(self)
        data["webhook"]["default_quantity"] = str(self.webhook.default_quantity)

        output_file = Path(output_path)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        with output_file.open("w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


def load_config(config_path: Optional[str] = None) -> RelayConfig:
    """YAML file when a path is given (or RELAY_CONFIG is set), else the environment."""
    path = config_path or os.environ.get("RELAY_CONFIG")
    if path:
        return RelayConfig.from_yaml(path)
    return RelayConfig.from_env()
