import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .db_encryption import get_connection

_COLUMNS = ("ticker", "action", "quantity", "price", "status", "order_id", "error", "source", "venue", "payload", "created_at")


def _dict_row(cursor, row) -> Dict[str, Any]:
    # works for both sqlite3 and sqlcipher3 connections
    return {col[0]: row[i] for i, col in enumerate(cursor.description)}


class TradeLogStore:
    """SQLite-backed log of every trade attempt (successful or failed).

    APIs:
    - `save_trade_log(record)` -> row id
    - `list_trade_logs(limit, ticker, status)` newest first
    - `get_trade_log(log_id)`
    - `summarize()` counts by status and ticker

    Writes are serialized with a lock so the store can be used from
    ``asyncio.to_thread`` workers.
    """

    def __init__(self, path: Path, password: Optional[str] = None):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = get_connection(str(self.path), password)
        self._lock = threading.Lock()
        self._init_db()
        self.conn.row_factory = _dict_row

    def _init_db(self):
        from .db_migrations import apply_migrations

        apply_migrations(self.conn)

    def save_trade_log(self, record: Dict[str, Any]) -> int:
        values = []
        for col in _COLUMNS:
            value = record.get(col)
            if col == "payload" and value is not None and not isinstance(value, str):
                value = json.dumps(value, default=str)
            elif col == "created_at" and not value:
                value = datetime.now(timezone.utc).isoformat()
            elif value is not None and col != "payload":
                value = str(value)
            values.append(value)
        if values[0] is None or values[1] is None or values[4] is None:
            raise ValueError("trade log requires ticker, action and status")

        placeholders = ", ".join("?" for _ in _COLUMNS)
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                cur.execute(f"INSERT INTO trade_logs({', '.join(_COLUMNS)}) VALUES({placeholders})", values)
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise
            return cur.lastrowid

    @staticmethod
    def _row_to_dict(row) -> Dict[str, Any]:
        d = dict(row)
        if d.get("payload"):
            try:
                d["payload"] = json.loads(d["payload"])
            except ValueError:
                pass
        return d

    def get_trade_log(self, log_id: int) -> Optional[Dict[str, Any]]:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("SELECT * FROM trade_logs WHERE id = ?", (log_id,))
            row = cur.fetchone()
        return self._row_to_dict(row) if row else None

    def list_trade_logs(self, limit: int = 50, ticker: Optional[str] = None, status: Optional[str] = None) -> List[Dict[str, Any]]:
        clauses, params = [], []
        if ticker:
            clauses.append("ticker = ?")
            params.append(ticker)
        if status:
            clauses.append("status = ?")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(int(limit))
        with self._lock:
            cur = self.conn.cursor()
            cur.execute(f"SELECT * FROM trade_logs {where} ORDER BY created_at DESC, id DESC LIMIT ?", params)
            rows = cur.fetchall()
        return [self._row_to_dict(r) for r in rows]

    def summarize(self) -> Dict[str, Any]:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("SELECT COUNT(*) AS n FROM trade_logs")
            total = cur.fetchone()["n"]
            cur.execute("SELECT status, COUNT(*) AS n FROM trade_logs GROUP BY status ORDER BY status")
            by_status = {r["status"]: r["n"] for r in cur.fetchall()}
            cur.execute("SELECT ticker, COUNT(*) AS n FROM trade_logs GROUP BY ticker ORDER BY ticker")
            by_ticker = {r["ticker"]: r["n"] for r in cur.fetchall()}
        return {"total": total, "by_status": by_status, "by_ticker": by_ticker}

    def close(self):
        with self._lock:
            self.conn.close()
