from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import StrEnum


class Side(StrEnum):
    LONG = "long"
    SHORT = "short"


class OrderKind(StrEnum):
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"


class ConditionalOrderStatus(StrEnum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    TRIGGERED = "triggered"


@dataclass(frozen=True)
class StopReference:
    """A usable risk reference: the stop price the position's risk is measured from."""

    price: Decimal


@dataclass(frozen=True)
class NoRiskReference:
    """The position carries no stop, so no progress metric can be computed."""


RiskReference = StopReference | NoRiskReference


def risk_reference_from_price(price: Decimal | None) -> RiskReference:
    if price is None or price <= 0:
        return NoRiskReference()
    return StopReference(price=price)


def risk_reference_to_price(reference: RiskReference) -> Decimal | None:
    if isinstance(reference, StopReference):
        return reference.price
    return None


@dataclass(frozen=True)
class Position:
    symbol: str
    side: Side
    quantity: Decimal
    entry_price: Decimal
    risk_reference: RiskReference
    updated_at: datetime | None = None

    @property
    def abs_quantity(self) -> Decimal:
        return abs(self.quantity)


@dataclass(frozen=True)
class ConditionalOrder:
    order_id: str
    symbol: str
    side: Side
    kind: OrderKind
    trigger_price: Decimal
    quantity: Decimal
    status: ConditionalOrderStatus
    created_at: datetime | None = None
    updated_at: datetime | None = None
