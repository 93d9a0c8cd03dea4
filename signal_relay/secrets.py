"""Secrets management: load exchange credentials from environment or config file.

Priority order:
1. Environment variables: COINBASE_API_KEY plus COINBASE_API_SECRET and/or
   COINBASE_PRIVATE_KEY
2. Config file: ~/.coinbase_config.json or custom path via ENV CB_CONFIG_PATH

Kraken credentials come from KRAKEN_API_KEY / KRAKEN_API_SECRET only.
"""
import json
import os
from pathlib import Path
from typing import NamedTuple, Optional


class CoinbaseCredentials(NamedTuple):
    api_key: str
    api_secret: Optional[str] = None
    private_key: Optional[str] = None

    @property
    def has_hmac(self) -> bool:
        return bool(self.api_secret)

    @property
    def has_jwt(self) -> bool:
        return bool(self.private_key)


class KrakenCredentials(NamedTuple):
    api_key: str
    api_secret: str


def normalize_pem(value: Optional[str]) -> Optional[str]:
    """Convert literal ``\\n`` sequences (common in env vars) to real newlines."""
    if value and "\\n" in value:
        return value.replace("\\n", "\n")
    return value


def load_credentials(
    config_path: Optional[str] = None,
) -> CoinbaseCredentials:
    """Load Coinbase credentials from env or config file.

    Args:
        config_path: Optional override path to config file. If not provided,
                     checks CB_CONFIG_PATH env var, then ~/.coinbase_config.json

    Returns:
        CoinbaseCredentials with api_key and at least one of api_secret / private_key

    Raises:
        ValueError: If credentials are not found or incomplete
    """
    api_key = os.getenv("COINBASE_API_KEY")
    api_secret = os.getenv("COINBASE_API_SECRET")
    private_key = normalize_pem(os.getenv("COINBASE_PRIVATE_KEY"))

    if api_key and (api_secret or private_key):
        return CoinbaseCredentials(api_key=api_key, api_secret=api_secret, private_key=private_key)

    if config_path is None:
        config_path = os.getenv("CB_CONFIG_PATH")
    if config_path is None:
        config_path = str(Path.home() / ".coinbase_config.json")

    config_file = Path(config_path)
    if config_file.exists():
        try:
            with config_file.open("r") as f:
                cfg = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ValueError(f"Failed to load config from {config_path}: {e}")
        api_key = cfg.get("api_key") or api_key
        api_secret = cfg.get("api_secret") or api_secret
        private_key = normalize_pem(cfg.get("private_key")) or private_key

    if not api_key or not (api_secret or private_key):
        raise ValueError(
            "Missing Coinbase credentials. Provide via:\n"
            "  - Environment: COINBASE_API_KEY with COINBASE_API_SECRET or COINBASE_PRIVATE_KEY\n"
            f"  - Config file: {config_path}\n"
            "  - CB_CONFIG_PATH env var to override config location"
        )

    return CoinbaseCredentials(api_key=api_key, api_secret=api_secret, private_key=private_key)


def load_kraken_credentials() -> KrakenCredentials:
    api_key = os.getenv("KRAKEN_API_KEY")
    api_secret = os.getenv("KRAKEN_API_SECRET")
    if not api_key or not api_secret:
        raise ValueError("Missing Kraken credentials. Set KRAKEN_API_KEY and KRAKEN_API_SECRET")
    return KrakenCredentials(api_key=api_key, api_secret=api_secret)


def credentials_status() -> dict:
    """Report which credentials are configured without exposing their values."""
    private_key = normalize_pem(os.getenv("COINBASE_PRIVATE_KEY")) or ""
    return {
        "coinbase": {
            "api_key": bool(os.getenv("COINBASE_API_KEY")),
            "api_secret": bool(os.getenv("COINBASE_API_SECRET")),
            "private_key": bool(private_key),
            "private_key_is_pem": private_key.startswith("-----BEGIN"),
        },
        "kraken": {
            "api_key": bool(os.getenv("KRAKEN_API_KEY")),
            "api_secret": bool(os.getenv("KRAKEN_API_SECRET")),
        },
        "webhook_secret": bool(os.getenv("WEBHOOK_SECRET")),
        "discord": bool(os.getenv("DISCORD_WEBHOOK_URL")),
        "supabase": bool(os.getenv("SUPABASE_URL") and (os.getenv("SUPABASE_KEY") or os.getenv("SUPABASE_ANON_KEY"))),
    }


def save_config(
    config_path: str,
    api_key: str,
    api_secret: Optional[str] = None,
    private_key: Optional[str] = None,
) -> None:
    """Save credentials to a config file for later use.

    WARNING: Stores secrets in plaintext. File permissions are set to 600.
    """
    config = {"api_key": api_key}
    if api_secret:
        config["api_secret"] = api_secret
    if private_key:
        config["private_key"] = private_key
    cfg_file = Path(config_path)
    cfg_file.parent.mkdir(parents=True, exist_ok=True)

    with cfg_file.open("w") as f:
        json.dump(config, f, indent=2)

    try:
        cfg_file.chmod(0o600)
    except OSError:
        pass  # Windows doesn't support chmod
