from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from decimal import Decimal

from stagelock.domain.history import ExecutionHistoryEntry, HistoryStatus
from stagelock.domain.ledger import Side
from stagelock.persistence.sqlite.sqlite_connection import parse_db_ts, to_db_ts

logger = logging.getLogger(__name__)


def _dec_or_none(value: object) -> Decimal | None:
    if value is None or value == "":
        return None
    return Decimal(str(value))


def _str_or_none(value: Decimal | None) -> str | None:
    return str(value) if value is not None else None


class SqliteHistoryRepo:
    """Append-only access to execution_history; rows are never updated or deleted here."""

    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "history"}})
            raise PermissionError("UnitOfWork is read-only; history writes are blocked")

    def append(self, entry: ExecutionHistoryEntry) -> int:
        self._ensure_writable()
        cur = self._conn.execute(
            """
            INSERT INTO execution_history(
                resource_key, symbol, side, stage, status, ts, trigger_price,
                original_stop_price, new_stop_price, closed_quantity, caller, message
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.resource_key,
                entry.symbol,
                entry.side.value,
                int(entry.stage),
                entry.status.value,
                to_db_ts(entry.ts),
                str(entry.trigger_price),
                _str_or_none(entry.original_stop_price),
                _str_or_none(entry.new_stop_price),
                _str_or_none(entry.closed_quantity),
                entry.caller,
                entry.message,
            ),
        )
        return int(cur.lastrowid or 0)

    def count_completed(
        self, *, resource_key: str, stage: int, since: datetime | None = None
    ) -> int:
        if since is None:
            row = self._conn.execute(
                """
                SELECT COUNT(*) AS n FROM execution_history
                WHERE resource_key = ? AND stage = ? AND status = ?
                """,
                (resource_key, int(stage), HistoryStatus.COMPLETED.value),
            ).fetchone()
        else:
            row = self._conn.execute(
                """
                SELECT COUNT(*) AS n FROM execution_history
                WHERE resource_key = ? AND stage = ? AND status = ? AND ts > ?
                """,
                (resource_key, int(stage), HistoryStatus.COMPLETED.value, to_db_ts(since)),
            ).fetchone()
        return int(row["n"]) if row is not None else 0

    def first_completed(self, resource_key: str) -> ExecutionHistoryEntry | None:
        row = self._conn.execute(
            """
            SELECT * FROM execution_history
            WHERE resource_key = ? AND status = ?
            ORDER BY stage ASC, ts ASC, id ASC
            LIMIT 1
            """,
            (resource_key, HistoryStatus.COMPLETED.value),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_entry(row)

    def list_for_symbol(self, symbol: str, *, limit: int = 100) -> list[ExecutionHistoryEntry]:
        rows = self._conn.execute(
            """
            SELECT * FROM execution_history
            WHERE symbol = ?
            ORDER BY ts DESC, id DESC
            LIMIT ?
            """,
            (symbol, max(1, int(limit))),
        ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> ExecutionHistoryEntry:
        return ExecutionHistoryEntry(
            entry_id=int(row["id"]),
            resource_key=str(row["resource_key"]),
            symbol=str(row["symbol"]),
            side=Side(str(row["side"])),
            stage=int(row["stage"]),
            status=HistoryStatus(str(row["status"])),
            ts=parse_db_ts(row["ts"]),
            trigger_price=Decimal(str(row["trigger_price"])),
            original_stop_price=_dec_or_none(row["original_stop_price"]),
            new_stop_price=_dec_or_none(row["new_stop_price"]),
            closed_quantity=_dec_or_none(row["closed_quantity"]),
            caller=str(row["caller"]) if row["caller"] is not None else None,
            message=str(row["message"]) if row["message"] is not None else None,
        )
