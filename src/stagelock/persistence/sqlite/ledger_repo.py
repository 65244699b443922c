from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from decimal import Decimal

from stagelock.domain.ledger import (
    ConditionalOrder,
    ConditionalOrderStatus,
    OrderKind,
    Position,
    Side,
    risk_reference_from_price,
    risk_reference_to_price,
)
from stagelock.persistence.sqlite.sqlite_connection import parse_db_ts, to_db_ts

logger = logging.getLogger(__name__)


class SqliteLedgerRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "ledger"}})
            raise PermissionError("UnitOfWork is read-only; ledger writes are blocked")

    def list_positions(self) -> list[Position]:
        rows = self._conn.execute("SELECT * FROM positions ORDER BY symbol, side").fetchall()
        return [self._row_to_position(row) for row in rows]

    def list_open_positions(self) -> list[Position]:
        return [position for position in self.list_positions() if position.quantity != 0]

    def get_position(self, symbol: str, side: Side) -> Position | None:
        row = self._conn.execute(
            "SELECT * FROM positions WHERE symbol = ? AND side = ?",
            (symbol, side.value),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_position(row)

    def upsert_position(self, position: Position, *, now: datetime) -> None:
        self._ensure_writable()
        stop_price = risk_reference_to_price(position.risk_reference)
        self._conn.execute(
            """
            INSERT INTO positions(symbol, side, quantity, entry_price, stop_price, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(symbol, side) DO UPDATE SET
                quantity=excluded.quantity,
                entry_price=excluded.entry_price,
                stop_price=excluded.stop_price,
                updated_at=excluded.updated_at
            """,
            (
                position.symbol,
                position.side.value,
                str(position.quantity),
                str(position.entry_price),
                str(stop_price) if stop_price is not None else None,
                to_db_ts(now),
            ),
        )

    def apply_stage_result(
        self,
        *,
        symbol: str,
        side: Side,
        new_stop_price: Decimal | None,
        closed_quantity: Decimal | None,
        now: datetime,
    ) -> Position | None:
        """Move the stop and shrink the position; a fully closed position is deleted."""
        self._ensure_writable()
        position = self.get_position(symbol, side)
        if position is None:
            return None
        quantity = position.quantity
        if closed_quantity is not None and closed_quantity > 0:
            remaining = max(Decimal("0"), position.abs_quantity - closed_quantity)
            quantity = remaining if position.quantity >= 0 else -remaining
        if quantity == 0:
            self.delete_position(symbol, side)
            return None
        reference = position.risk_reference
        if new_stop_price is not None:
            reference = risk_reference_from_price(new_stop_price)
        updated = Position(
            symbol=position.symbol,
            side=position.side,
            quantity=quantity,
            entry_price=position.entry_price,
            risk_reference=reference,
            updated_at=now,
        )
        self.upsert_position(updated, now=now)
        return updated

    def delete_position(self, symbol: str, side: Side) -> bool:
        self._ensure_writable()
        cur = self._conn.execute(
            "DELETE FROM positions WHERE symbol = ? AND side = ?",
            (symbol, side.value),
        )
        return bool(cur.rowcount)

    def upsert_conditional_order(self, order: ConditionalOrder, *, now: datetime) -> None:
        self._ensure_writable()
        created_at = order.created_at or now
        self._conn.execute(
            """
            INSERT INTO conditional_orders(
                order_id, symbol, side, kind, trigger_price, quantity, status, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(order_id) DO UPDATE SET
                symbol=excluded.symbol,
                side=excluded.side,
                kind=excluded.kind,
                trigger_price=excluded.trigger_price,
                quantity=excluded.quantity,
                status=excluded.status,
                updated_at=excluded.updated_at
            """,
            (
                order.order_id,
                order.symbol,
                order.side.value,
                order.kind.value,
                str(order.trigger_price),
                str(order.quantity),
                order.status.value,
                to_db_ts(created_at),
                to_db_ts(now),
            ),
        )

    def list_active_orders(
        self, *, symbol: str | None = None, side: Side | None = None
    ) -> list[ConditionalOrder]:
        query = "SELECT * FROM conditional_orders WHERE status = ?"
        params: list[object] = [ConditionalOrderStatus.ACTIVE.value]
        if symbol is not None:
            query += " AND symbol = ?"
            params.append(symbol)
        if side is not None:
            query += " AND side = ?"
            params.append(side.value)
        query += " ORDER BY id"
        rows = self._conn.execute(query, tuple(params)).fetchall()
        return [self._row_to_order(row) for row in rows]

    def get_order(self, order_id: str) -> ConditionalOrder | None:
        row = self._conn.execute(
            "SELECT * FROM conditional_orders WHERE order_id = ?", (order_id,)
        ).fetchone()
        if row is None:
            return None
        return self._row_to_order(row)

    def set_order_status(
        self, order_id: str, status: ConditionalOrderStatus, *, now: datetime
    ) -> bool:
        self._ensure_writable()
        cur = self._conn.execute(
            "UPDATE conditional_orders SET status = ?, updated_at = ? WHERE order_id = ?",
            (status.value, to_db_ts(now), order_id),
        )
        return bool(cur.rowcount)

    @staticmethod
    def _row_to_position(row: sqlite3.Row) -> Position:
        stop_raw = row["stop_price"]
        stop_price = Decimal(str(stop_raw)) if stop_raw not in (None, "") else None
        return Position(
            symbol=str(row["symbol"]),
            side=Side(str(row["side"])),
            quantity=Decimal(str(row["quantity"])),
            entry_price=Decimal(str(row["entry_price"])),
            risk_reference=risk_reference_from_price(stop_price),
            updated_at=parse_db_ts(row["updated_at"]),
        )

    @staticmethod
    def _row_to_order(row: sqlite3.Row) -> ConditionalOrder:
        return ConditionalOrder(
            order_id=str(row["order_id"]),
            symbol=str(row["symbol"]),
            side=Side(str(row["side"])),
            kind=OrderKind(str(row["kind"])),
            trigger_price=Decimal(str(row["trigger_price"])),
            quantity=Decimal(str(row["quantity"])),
            status=ConditionalOrderStatus(str(row["status"])),
            created_at=parse_db_ts(row["created_at"]),
            updated_at=parse_db_ts(row["updated_at"]),
        )
