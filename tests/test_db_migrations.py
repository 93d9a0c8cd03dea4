import sqlite3
from pathlib import Path

import pytest

from signal_relay.db_migrations import MIGRATIONS, applied_versions, apply_migrations, rollback_last, rollback_migration


def _names(conn, kind):
    cur = conn.cursor()
    cur.execute("SELECT name FROM sqlite_master WHERE type=?", (kind,))
    return {row[0] for row in cur.fetchall()}


def test_apply_migrations_creates_schema(tmp_path: Path):
    conn = sqlite3.connect(str(tmp_path / "migs.db"))
    applied = apply_migrations(conn)

    assert applied == sorted(MIGRATIONS)
    assert "trade_logs" in _names(conn, "table")
    assert {"idx_trade_logs_created_at", "idx_trade_logs_ticker", "idx_trade_logs_status"} <= _names(conn, "index")
    assert applied_versions(conn) == applied
    conn.close()


def test_apply_migrations_idempotent(tmp_path: Path):
    conn = sqlite3.connect(str(tmp_path / "migs.db"))
    apply_migrations(conn)
    assert apply_migrations(conn) == []
    conn.close()


def test_applied_versions_on_fresh_db(tmp_path: Path):
    conn = sqlite3.connect(str(tmp_path / "fresh.db"))
    assert applied_versions(conn) == []
    conn.close()


def test_rollback_chain(tmp_path: Path):
    """Roll back v2 then v1, then re-apply both."""
    conn = sqlite3.connect(str(tmp_path / "chain.db"))
    apply_migrations(conn)

    assert rollback_last(conn) == 2
    assert "idx_trade_logs_ticker" not in _names(conn, "index")
    assert "trade_logs" in _names(conn, "table")

    assert rollback_last(conn) == 1
    assert "trade_logs" not in _names(conn, "table")
    assert rollback_last(conn) is None

    assert apply_migrations(conn) == [1, 2]
    conn.close()


def test_rollback_unknown_version(tmp_path: Path):
    conn = sqlite3.connect(str(tmp_path / "x.db"))
    apply_migrations(conn)
    with pytest.raises(RuntimeError):
        rollback_migration(conn, 99)
    conn.close()
