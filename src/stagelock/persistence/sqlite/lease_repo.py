from __future__ import annotations

import logging
import sqlite3
from datetime import datetime

from stagelock.domain.leases import Lease
from stagelock.persistence.sqlite.sqlite_connection import parse_db_ts, to_db_ts

logger = logging.getLogger(__name__)


class SqliteLeaseRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "leases"}})
            raise PermissionError("UnitOfWork is read-only; lease writes are blocked")

    def delete_expired(self, *, resource_key: str, cutoff: datetime) -> int:
        self._ensure_writable()
        cur = self._conn.execute(
            "DELETE FROM leases WHERE resource_key = ? AND last_refreshed <= ?",
            (resource_key, to_db_ts(cutoff)),
        )
        return int(cur.rowcount or 0)

    def get(self, resource_key: str) -> Lease | None:
        row = self._conn.execute(
            "SELECT resource_key, holder, last_refreshed FROM leases WHERE resource_key = ?",
            (resource_key,),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_lease(row)

    def refresh(self, *, resource_key: str, holder: str, now: datetime) -> bool:
        self._ensure_writable()
        cur = self._conn.execute(
            "UPDATE leases SET last_refreshed = ? WHERE resource_key = ? AND holder = ?",
            (to_db_ts(now), resource_key, holder),
        )
        return bool(cur.rowcount)

    def insert_if_absent(self, *, resource_key: str, holder: str, now: datetime) -> bool:
        """Insert only when no row exists; the primary key rejects a racing insert."""
        self._ensure_writable()
        try:
            cur = self._conn.execute(
                """
                INSERT INTO leases(resource_key, holder, last_refreshed)
                SELECT ?, ?, ?
                WHERE NOT EXISTS (SELECT 1 FROM leases WHERE resource_key = ?)
                """,
                (resource_key, holder, to_db_ts(now), resource_key),
            )
        except sqlite3.IntegrityError:
            return False
        return bool(cur.rowcount)

    def delete_if_holder(self, *, resource_key: str, holder: str) -> bool:
        self._ensure_writable()
        cur = self._conn.execute(
            "DELETE FROM leases WHERE resource_key = ? AND holder = ?",
            (resource_key, holder),
        )
        return bool(cur.rowcount)

    def list_all(self) -> list[Lease]:
        rows = self._conn.execute(
            "SELECT resource_key, holder, last_refreshed FROM leases ORDER BY resource_key"
        ).fetchall()
        return [self._row_to_lease(row) for row in rows]

    @staticmethod
    def _row_to_lease(row: sqlite3.Row) -> Lease:
        return Lease(
            resource_key=str(row["resource_key"]),
            holder=str(row["holder"]),
            last_refreshed=parse_db_ts(row["last_refreshed"]),
        )
