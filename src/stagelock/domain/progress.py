from __future__ import annotations

from collections.abc import Mapping
from decimal import Decimal

from stagelock.domain.history import ExecutionHistoryEntry
from stagelock.domain.ledger import Side


def r_multiple(*, entry_price: Decimal, current_price: Decimal, stop_price: Decimal, side: Side) -> Decimal:
    """Return how many units of initial risk the position has moved in its favour.

    Raises ValueError when entry and stop coincide, since no risk unit exists.
    """
    risk = abs(entry_price - stop_price)
    if risk == 0:
        raise ValueError("risk distance is zero")
    if side is Side.LONG:
        return (current_price - entry_price) / risk
    return (entry_price - current_price) / risk


def recover_original_stop(
    *,
    entry_price: Decimal,
    current_stop: Decimal,
    first_completed: ExecutionHistoryEntry | None,
    stage_multiples: Mapping[int, Decimal],
) -> Decimal:
    """Return the stop price the position carried before any stage moved it.

    The earliest completed stage records the stop it measured against. Older
    rows without that column are inverted from their trigger price:
    trigger = entry + m * (entry - stop) for longs and the mirror for shorts,
    which both reduce to stop = entry - (trigger - entry) / m.
    """
    if first_completed is None:
        return current_stop
    if first_completed.original_stop_price is not None and first_completed.original_stop_price > 0:
        return first_completed.original_stop_price
    multiple = stage_multiples.get(first_completed.stage)
    if multiple is None or multiple <= 0 or first_completed.trigger_price <= 0:
        return current_stop
    derived = entry_price - (first_completed.trigger_price - entry_price) / multiple
    if derived <= 0:
        return current_stop
    return derived
