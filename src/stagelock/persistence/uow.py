from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass

from stagelock.persistence.interfaces import HistoryRepoProtocol, LeaseRepoProtocol, LedgerRepoProtocol
from stagelock.persistence.sqlite.history_repo import SqliteHistoryRepo
from stagelock.persistence.sqlite.lease_repo import SqliteLeaseRepo
from stagelock.persistence.sqlite.ledger_repo import SqliteLedgerRepo
from stagelock.persistence.sqlite.sqlite_connection import create_sqlite_connection, ensure_min_schema

logger = logging.getLogger(__name__)


class UnitOfWork:
    """One SQLite transaction; writers take the database write lock up front."""

    def __init__(self, db_path: str, *, read_only: bool = False) -> None:
        self._db_path = db_path
        self.read_only = read_only
        self._conn: sqlite3.Connection | None = None
        self.leases: LeaseRepoProtocol
        self.history: HistoryRepoProtocol
        self.ledger: LedgerRepoProtocol

    def __enter__(self) -> UnitOfWork:
        conn = create_sqlite_connection(self._db_path)
        try:
            ensure_min_schema(conn)
            if self.read_only:
                conn.execute("BEGIN")
            else:
                conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error:
            conn.close()
            raise
        self._conn = conn
        self.leases = SqliteLeaseRepo(conn, read_only=self.read_only)
        self.history = SqliteHistoryRepo(conn, read_only=self.read_only)
        self.ledger = SqliteLedgerRepo(conn, read_only=self.read_only)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._conn is None:
            return
        try:
            if exc_type is None:
                self._conn.commit()
            else:
                self._conn.rollback()
        finally:
            self._conn.close()
            self._conn = None


@dataclass(frozen=True)
class UnitOfWorkFactory:
    db_path: str
    read_only: bool = False

    def __call__(self) -> UnitOfWork:
        return UnitOfWork(self.db_path, read_only=self.read_only)

    def reader(self) -> UnitOfWork:
        return UnitOfWork(self.db_path, read_only=True)
