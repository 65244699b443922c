from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import StrEnum

from stagelock.domain.ledger import Side


class StageOutcome(StrEnum):
    SUCCESS = "success"
    FAILED = "failed"
    RECENTLY_EXECUTED = "recently_executed"
    LOCK_BUSY = "lock_busy"
    ALREADY_EXECUTED = "already_executed"
    POSITION_CLOSED = "position_closed"
    UNRECORDED = "unrecorded"
    ERROR = "error"


SKIP_OUTCOMES = frozenset(
    {
        StageOutcome.RECENTLY_EXECUTED,
        StageOutcome.LOCK_BUSY,
        StageOutcome.ALREADY_EXECUTED,
        StageOutcome.POSITION_CLOSED,
    }
)


@dataclass(frozen=True)
class StageConfig:
    stage: int
    r_multiple: Decimal


def stages_from_multiples(multiples: list[Decimal]) -> tuple[StageConfig, ...]:
    return tuple(
        StageConfig(stage=index, r_multiple=multiple)
        for index, multiple in enumerate(multiples, start=1)
    )


def position_resource_key(symbol: str, side: Side | str) -> str:
    return f"{symbol}:{Side(side).value}"


def stage_lease_key(resource_key: str, stage: int) -> str:
    return f"{resource_key}:stage{stage}"


@dataclass(frozen=True)
class StageRequest:
    resource_key: str
    symbol: str
    side: Side
    stage: int
    entry_price: Decimal
    quantity: Decimal
    current_price: Decimal
    r_multiple: Decimal
    caller: str


@dataclass(frozen=True)
class StageResult:
    success: bool
    message: str = ""
    new_stop_price: Decimal | None = None
    closed_quantity: Decimal | None = None


@dataclass(frozen=True)
class StageOutcomeRecord:
    resource_key: str
    symbol: str
    stage: int | None
    outcome: StageOutcome
    message: str | None = None


@dataclass
class CheckSummary:
    caller: str
    executed_count: int = 0
    skipped_count: int = 0
    outcomes: list[StageOutcomeRecord] = field(default_factory=list)

    def record(self, item: StageOutcomeRecord) -> None:
        self.outcomes.append(item)
        if item.outcome is StageOutcome.SUCCESS:
            self.executed_count += 1
        elif item.outcome in SKIP_OUTCOMES:
            self.skipped_count += 1

    def outcomes_for(self, resource_key: str) -> list[StageOutcomeRecord]:
        return [item for item in self.outcomes if item.resource_key == resource_key]

    def as_dict(self) -> dict[str, object]:
        return {
            "caller": self.caller,
            "executed": self.executed_count,
            "skipped": self.skipped_count,
            "outcomes": [
                {
                    "resource_key": item.resource_key,
                    "symbol": item.symbol,
                    "stage": item.stage,
                    "result": item.outcome.value,
                    "message": item.message,
                }
                for item in self.outcomes
            ],
        }
