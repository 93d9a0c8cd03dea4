"""Versioned schema migrations for the trade log database.

Each version has an up step in ``MIGRATIONS`` and a down step in
``MIGRATION_DOWNS``. Applied versions are recorded in ``schema_migrations``,
so ``apply_migrations`` can run on every start-up. A step and its version
record commit together.
"""
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from .logging_setup import logger

# index name -> column
TRADE_LOG_INDEXES = {
    "idx_trade_logs_created_at": "created_at",
    "idx_trade_logs_ticker": "ticker",
    "idx_trade_logs_status": "status",
}


def _create_trade_logs(conn):
    """Create the trade_logs table."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS trade_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            ticker TEXT NOT NULL,
            action TEXT NOT NULL,
            quantity TEXT,
            price TEXT,
            status TEXT NOT NULL,
            order_id TEXT,
            error TEXT,
            source TEXT,
            venue TEXT,
            payload TEXT,
            created_at TEXT NOT NULL
        )
        """
    )


def _drop_trade_logs(conn):
    conn.execute("DROP TABLE IF EXISTS trade_logs")


def _create_trade_log_indexes(conn):
    """Index trade_logs for the webhook-logs listing and summaries."""
    for name, column in TRADE_LOG_INDEXES.items():
        conn.execute(f"CREATE INDEX IF NOT EXISTS {name} ON trade_logs({column})")


def _drop_trade_log_indexes(conn):
    for name in TRADE_LOG_INDEXES:
        conn.execute(f"DROP INDEX IF EXISTS {name}")


MIGRATIONS: Dict[int, Callable] = {
    1: _create_trade_logs,
    2: _create_trade_log_indexes,
}

MIGRATION_DOWNS: Dict[int, Callable] = {
    1: _drop_trade_logs,
    2: _drop_trade_log_indexes,
}


def _run_step(conn, step: Callable, sql: str, params: tuple) -> None:
    try:
        conn.execute("BEGIN IMMEDIATE")
        step(conn)
        conn.execute(sql, params)
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def applied_versions(conn) -> List[int]:
    """Versions recorded in schema_migrations, ascending; [] on a fresh database."""
    cur = conn.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='schema_migrations'")
    if cur.fetchone() is None:
        return []
    return [row[0] for row in conn.execute("SELECT version FROM schema_migrations ORDER BY version").fetchall()]


def apply_migrations(conn) -> List[int]:
    """Apply pending migrations to the given sqlite3 / sqlcipher3 connection.

    Returns the list of versions applied by this call.
    """
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    conn.commit()

    done = set(applied_versions(conn))
    applied_now = []
    for v in sorted(set(MIGRATIONS) - done):
        _run_step(
            conn,
            MIGRATIONS[v],
            "INSERT INTO schema_migrations(version, applied_at) VALUES(?, ?)",
            (v, datetime.now(timezone.utc).isoformat()),
        )
        applied_now.append(v)
    if applied_now:
        logger.info(f"Schema migrations applied | versions={applied_now}")
    return applied_now


def rollback_migration(conn, version: int) -> None:
    """Run the down step for ``version`` and forget that it was applied."""
    if version not in MIGRATION_DOWNS:
        raise RuntimeError(f"No down migration registered for version {version}")
    _run_step(conn, MIGRATION_DOWNS[version], "DELETE FROM schema_migrations WHERE version = ?", (version,))
    logger.warning(f"Schema migration rolled back | version={version}")


def rollback_last(conn) -> Optional[int]:
    """Rollback the latest applied migration; returns its version, or None if nothing is applied."""
    versions = applied_versions(conn)
    if not versions:
        return None
    rollback_migration(conn, versions[-1])
    return versions[-1]
