#!/usr/bin/env python
"""Report which credentials are configured and optionally test the exchange connection.

Usage:
    python scripts/check_credentials.py
    python scripts/check_credentials.py --test
    python scripts/check_credentials.py --test --venue kraken
"""
import argparse
import asyncio
import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from signal_relay.coinbase_adapter import CoinbaseAdapter
from signal_relay.config import VENUES, load_config
from signal_relay.errors import ExchangeAPIError
from signal_relay.secrets import credentials_status, load_credentials
from signal_relay.server import build_adapter


def coinbase_connection(config) -> dict:
    ex = config.exchange
    adapter = CoinbaseAdapter.from_credentials(
        load_credentials(), base_url=ex.base_url, timeout=ex.timeout, max_retries=ex.max_retries
    )
    try:
        return adapter.test_connection()
    finally:
        adapter.close()


async def async_connection(config) -> dict:
    adapter = build_adapter(config)
    try:
        result = adapter.test_connection()
        return await result if asyncio.iscoroutine(result) else result
    finally:
        close = getattr(adapter, "close", None)
        if close is not None and asyncio.iscoroutinefunction(close):
            await close()


def connection_report(config) -> dict:
    try:
        if config.exchange.venue == "coinbase":
            result = coinbase_connection(config)
        else:
            result = asyncio.run(async_connection(config))
    except (ValueError, ExchangeAPIError) as e:
        return {"success": False, "message": str(e)}
    return {"venue": config.exchange.venue, **result}


def main(argv=None):
    parser = argparse.ArgumentParser(description="Check relay credentials")
    parser.add_argument("--config", help="YAML config file")
    parser.add_argument("--venue", choices=VENUES, help="Venue to test (default: configured venue)")
    parser.add_argument("--test", action="store_true", help="Also call the exchange to verify the credentials")
    args = parser.parse_args(argv)

    report = {"credentials": credentials_status()}
    if args.test:
        config = load_config(args.config)
        if args.venue:
            config.exchange.venue = args.venue
        report["connection"] = connection_report(config)
    print(json.dumps(report, indent=2, default=str))
    if args.test and not report["connection"].get("success"):
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
