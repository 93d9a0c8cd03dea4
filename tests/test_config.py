from decimal import Decimal

import pytest

from signal_relay.config import RelayConfig, load_config


def test_defaults():
    config = RelayConfig()
    assert config.exchange.venue == "coinbase"
    assert config.exchange.max_retries == 3
    assert config.webhook.default_quantity == Decimal("0.001")
    assert config.webhook.secret is None
    assert config.server.port == 8080


def test_from_yaml_with_env_interpolation(tmp_path, monkeypatch):
    monkeypatch.setenv("WEBHOOK_SECRET", "s3cret-value")
    monkeypatch.delenv("DISCORD_WEBHOOK_URL", raising=False)
    path = tmp_path / "config.yaml"
    path.write_text(
        """
exchange:
  venue: kraken
  max_retries: 5
webhook:
  secret: "${WEBHOOK_SECRET}"
  default_quantity: 0.01
notifications:
  discord_webhook_url: "${DISCORD_WEBHOOK_URL}"
server:
  port: 9000
persistence:
  db_path: "%s/relay.db"
""" % tmp_path
    )

    config = RelayConfig.from_yaml(str(path))

    assert config.exchange.venue == "kraken"
    assert config.exchange.max_retries == 5
    assert config.exchange.timeout == 10
    assert config.webhook.secret == "s3cret-value"
    assert config.webhook.default_quantity == Decimal("0.01")
    # unset variable reads as unset
    assert config.notifications.discord_webhook_url is None
    assert config.server.port == 9000
    assert config.persistence.db_path == f"{tmp_path}/relay.db"


def test_from_yaml_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        RelayConfig.from_yaml(str(tmp_path / "nope.yaml"))


def test_from_env():
    config = RelayConfig.from_env({
        "RELAY_VENUE": "paper",
        "WEBHOOK_SECRET": "abc",
        "DEFAULT_QUANTITY": "0.5",
        "SUPABASE_URL": "https://x.supabase.co",
        "SUPABASE_ANON_KEY": "anon",
        "PORT": "3000",
        "DASHBOARD_USER": "admin",
        "DASHBOARD_PASS": "pw",
        "RELAY_DB_PATH": "/tmp/r.db",
    })
    assert config.exchange.venue == "paper"
    assert config.webhook.secret == "abc"
    assert config.webhook.default_quantity == Decimal("0.5")
    assert config.notifications.supabase_key == "anon"
    assert config.server.port == 3000
    assert config.server.dashboard_user == "admin"
    assert config.persistence.db_path == "/tmp/r.db"
    assert config.persistence.log_level == "INFO"
    assert config.server.trusted_proxies == []


def test_trusted_proxies_from_env_and_dict():
    config = RelayConfig.from_env({"TRUSTED_PROXIES": "127.0.0.1, 10.0.0.0/8"})
    assert config.server.trusted_proxies == ["127.0.0.1", "10.0.0.0/8"]

    config = RelayConfig.from_dict({"server": {"trusted_proxies": ["::1", "192.168.1.0/24"]}})
    assert config.server.trusted_proxies == ["::1", "192.168.1.0/24"]


@pytest.mark.parametrize(
    "data",
    [
        {"exchange": {"venue": "binance"}},
        {"webhook": {"default_quantity": "0"}},
        {"webhook": {"rate_limit_requests": 0}},
        {"server": {"trusted_proxies": ["not-an-ip"]}},
    ],
)
def test_validation(data):
    with pytest.raises(ValueError):
        RelayConfig.from_dict(data)


def test_yaml_round_trip(tmp_path):
    config = RelayConfig.from_env({"RELAY_VENUE": "paper", "DEFAULT_QUANTITY": "0.25"})
    out = tmp_path / "nested" / "out.yaml"
    config.to_yaml(str(out))
    loaded = RelayConfig.from_yaml(str(out))
    assert loaded == config


def test_load_config_prefers_path(tmp_path, monkeypatch):
    path = tmp_path / "c.yaml"
    path.write_text("exchange:\n  venue: paper\n")
    monkeypatch.setenv("RELAY_VENUE", "kraken")
    assert load_config(str(path)).exchange.venue == "paper"
    monkeypatch.delenv("RELAY_CONFIG", raising=False)
    assert load_config().exchange.venue == "kraken"
