#!/usr/bin/env python
"""Start the relay HTTP service.

Usage:
    python scripts/run_server.py                       # settings from the environment
    python scripts/run_server.py --config config.yaml
    python scripts/run_server.py --venue paper --paper-price BTC-USD=65000
"""
import argparse
import os
import sys
from decimal import Decimal
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from signal_relay.config import VENUES, load_config
from signal_relay.logging_setup import logger, register_secrets, setup_logging
from signal_relay.server import RelayServer


def parse_prices(values):
    prices = {}
    for item in values or []:
        product, sep, price = item.partition("=")
        if not sep:
            raise argparse.ArgumentTypeError(f"expected PRODUCT=PRICE, got {item!r}")
        prices[product.strip().upper()] = Decimal(price)
    return prices


def main(argv=None):
    parser = argparse.ArgumentParser(description="TradingView / manual signal relay")
    parser.add_argument("--config", help="YAML config file (default: $RELAY_CONFIG or environment)")
    parser.add_argument("--host", help="Bind address")
    parser.add_argument("--port", type=int, help="Bind port")
    parser.add_argument("--venue", choices=VENUES, help="Override the configured venue")
    parser.add_argument("--paper-price", action="append", metavar="PRODUCT=PRICE", help="Seed a paper venue price (repeatable)")
    parser.add_argument("--log-level", help="Override the configured log level")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    args = parser.parse_args(argv)

    config = load_config(args.config)
    if args.host:
        config.server.host = args.host
    if args.port:
        config.server.port = args.port
    if args.venue:
        config.exchange.venue = args.venue

    setup_logging(
        log_file=config.persistence.log_file,
        level=args.log_level or config.persistence.log_level,
        serialize=args.json_logs,
    )
    register_secrets([
        config.webhook.secret,
        config.notifications.supabase_key,
        config.notifications.discord_webhook_url,
        config.server.dashboard_password,
        config.persistence.encryption_password,
        os.getenv("COINBASE_API_SECRET"),
        os.getenv("COINBASE_PRIVATE_KEY"),
        os.getenv("KRAKEN_API_SECRET"),
    ])

    server = RelayServer(config, paper_prices=parse_prices(args.paper_price))
    logger.info(f"Listening | host={config.server.host} port={config.server.port} venue={server.venue}")
    server.run()


if __name__ == "__main__":
    main()
