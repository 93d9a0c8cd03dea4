#!/usr/bin/env python
"""Inspect the trade log database.

Usage:
    python scripts/trade_logs.py --db relay.db summary
    python scripts/trade_logs.py --db relay.db list --limit 20 --status FAILED
    python scripts/trade_logs.py --db relay.db show 42
"""
import argparse
import json
import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from signal_relay.persistence_sqlite import TradeLogStore


def summary(store):
    stats = store.summarize()
    if not stats["total"]:
        print("No trade logs found")
        return
    print(f"Total trade logs: {stats['total']}")
    print("By status:")
    for status, n in stats["by_status"].items():
        print(f"  {status:<10} {n}")
    print("By ticker:")
    for ticker, n in stats["by_ticker"].items():
        print(f"  {ticker:<12} {n}")


def list_logs(store, limit, ticker=None, status=None):
    logs = store.list_trade_logs(limit, ticker, status)
    if not logs:
        print("No trade logs found")
        return
    print(f"{'ID':>5}  {'Created':<26} {'Ticker':<10} {'Action':<6} {'Qty':>12} {'Status':<10} Order / Error")
    for log in logs:
        detail = log.get("order_id") or log.get("error") or "-"
        print(
            f"{log['id']:>5}  {log['created_at']:<26} {log['ticker']:<10} {log['action']:<6} "
            f"{log.get('quantity') or '-':>12} {log['status']:<10} {detail}"
        )


def show(store, log_id):
    log = store.get_trade_log(log_id)
    if log is None:
        print(f"Trade log {log_id} not found")
        return 1
    print(json.dumps(log, indent=2, default=str))
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(description="Trade log reporter")
    parser.add_argument("--db", required=True, help="Path to the trade log database")
    parser.add_argument("--password", default=os.environ.get("RELAY_DB_PASSWORD"), help="sqlcipher password")
    sub = parser.add_subparsers(dest="cmd")
    sub.add_parser("summary")
    lp = sub.add_parser("list")
    lp.add_argument("--limit", type=int, default=50)
    lp.add_argument("--ticker")
    lp.add_argument("--status")
    sp = sub.add_parser("show")
    sp.add_argument("log_id", type=int)
    args = parser.parse_args(argv)

    if args.cmd is None:
        parser.print_help()
        return 1

    store = TradeLogStore(Path(args.db), args.password)
    try:
        if args.cmd == "summary":
            summary(store)
        elif args.cmd == "list":
            list_logs(store, args.limit, args.ticker, args.status)
        else:
            return show(store, args.log_id)
    finally:
        store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
