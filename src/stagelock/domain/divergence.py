from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from decimal import Decimal

from stagelock.domain.ledger import Side


@dataclass(frozen=True)
class OrphanPosition:
    symbol: str
    side: Side
    local_size: Decimal
    remote_size: Decimal

    @property
    def remote_is_flat(self) -> bool:
        return self.remote_size == 0


@dataclass(frozen=True)
class OrphanConditionalOrder:
    order_id: str
    symbol: str
    side: Side
    kind: str


@dataclass(frozen=True)
class StaleArtifact:
    symbol: str
    side: Side


@dataclass(frozen=True)
class MissingLocalPosition:
    contract: str
    size: Decimal


@dataclass
class DivergenceReport:
    orphan_positions: list[OrphanPosition] = field(default_factory=list)
    orphan_orders: list[OrphanConditionalOrder] = field(default_factory=list)
    stale_artifacts: list[StaleArtifact] = field(default_factory=list)
    missing_positions: list[MissingLocalPosition] = field(default_factory=list)

    def counts(self) -> dict[str, int]:
        return {
            "orphan_positions": len(self.orphan_positions),
            "orphan_orders": len(self.orphan_orders),
            "stale_artifacts": len(self.stale_artifacts),
            "missing_positions": len(self.missing_positions),
        }

    def has_divergences(self) -> bool:
        return any(self.counts().values())


def is_test_artifact(symbol: str, markers: Iterable[str]) -> bool:
    return any(marker and marker in symbol for marker in markers)
