from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import StrEnum

from stagelock.domain.ledger import Side


class HistoryStatus(StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class ExecutionHistoryEntry:
    """Immutable record of one staged action attempt that reached the executor."""

    resource_key: str
    symbol: str
    side: Side
    stage: int
    status: HistoryStatus
    ts: datetime
    trigger_price: Decimal
    original_stop_price: Decimal | None = None
    new_stop_price: Decimal | None = None
    closed_quantity: Decimal | None = None
    caller: str | None = None
    message: str | None = None
    entry_id: int | None = None
