from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from stagelock.domain.stages import StageRequest, StageResult


@dataclass(frozen=True)
class RemotePosition:
    contract: str
    size: Decimal


class RemoteStateReader(Protocol):
    async def list_positions(self) -> list[RemotePosition]: ...

    def normalize_contract(self, symbol: str) -> str: ...


class RemoteStateWriter(Protocol):
    async def cancel_order(self, order_id: str) -> bool:
        """Cancel a remote order; unknown or already-cancelled ids may raise or return False."""
        ...


class PriceReader(Protocol):
    async def get_last_price(self, contract: str) -> Decimal: ...


class StageExecutor(Protocol):
    async def execute(self, request: StageRequest) -> StageResult: ...


class ThresholdPolicy(Protocol):
    def adjust(self, *, symbol: str, stage: int, base_multiple: Decimal) -> Decimal: ...


class FixedThresholdPolicy:
    def adjust(self, *, symbol: str, stage: int, base_multiple: Decimal) -> Decimal:
        del symbol, stage
        return base_multiple
