from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Protocol

from stagelock.domain.ledger import ConditionalOrder, ConditionalOrderStatus, Position, Side


class LedgerRepoProtocol(Protocol):
    def list_positions(self) -> list[Position]: ...

    def list_open_positions(self) -> list[Position]: ...

    def get_position(self, symbol: str, side: Side) -> Position | None: ...

    def upsert_position(self, position: Position, *, now: datetime) -> None: ...

    def apply_stage_result(
        self,
        *,
        symbol: str,
        side: Side,
        new_stop_price: Decimal | None,
        closed_quantity: Decimal | None,
        now: datetime,
    ) -> Position | None: ...

    def delete_position(self, symbol: str, side: Side) -> bool: ...

    def upsert_conditional_order(self, order: ConditionalOrder, *, now: datetime) -> None: ...

    def list_active_orders(
        self, *, symbol: str | None = None, side: Side | None = None
    ) -> list[ConditionalOrder]: ...

    def get_order(self, order_id: str) -> ConditionalOrder | None: ...

    def set_order_status(
        self, order_id: str, status: ConditionalOrderStatus, *, now: datetime
    ) -> bool: ...
