from __future__ import annotations

import sqlite3
from datetime import UTC, datetime


def create_sqlite_connection(db_path: str, *, busy_timeout_ms: int = 5000) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30.0, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)}")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def to_db_ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def parse_db_ts(raw: object) -> datetime:
    parsed = datetime.fromisoformat(str(raw))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def ensure_lease_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS leases (
            resource_key TEXT PRIMARY KEY,
            holder TEXT NOT NULL,
            last_refreshed TEXT NOT NULL
        )
        """
    )


def ensure_history_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS execution_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            resource_key TEXT NOT NULL,
            symbol TEXT NOT NULL,
            side TEXT NOT NULL,
            stage INTEGER NOT NULL,
            status TEXT NOT NULL,
            ts TEXT NOT NULL,
            trigger_price TEXT NOT NULL,
            original_stop_price TEXT,
            new_stop_price TEXT,
            closed_quantity TEXT,
            caller TEXT,
            message TEXT
        )
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_execution_history_resource_stage
        ON execution_history(resource_key, stage, status, ts)
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_execution_history_symbol ON execution_history(symbol)")
    history_columns = {str(row["name"]) for row in conn.execute("PRAGMA table_info(execution_history)")}
    if "original_stop_price" not in history_columns:
        conn.execute("ALTER TABLE execution_history ADD COLUMN original_stop_price TEXT")
    if "caller" not in history_columns:
        conn.execute("ALTER TABLE execution_history ADD COLUMN caller TEXT")


def ensure_ledger_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS positions (
            symbol TEXT NOT NULL,
            side TEXT NOT NULL,
            quantity TEXT NOT NULL,
            entry_price TEXT NOT NULL,
            stop_price TEXT,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (symbol, side)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS conditional_orders (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            order_id TEXT NOT NULL,
            symbol TEXT NOT NULL,
            side TEXT NOT NULL,
            kind TEXT NOT NULL,
            trigger_price TEXT NOT NULL,
            quantity TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'active',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_conditional_orders_order_id_unique
        ON conditional_orders(order_id)
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_conditional_orders_status ON conditional_orders(status)"
    )


def ensure_min_schema(conn: sqlite3.Connection) -> None:
    ensure_lease_schema(conn)
    ensure_history_schema(conn)
    ensure_ledger_schema(conn)
