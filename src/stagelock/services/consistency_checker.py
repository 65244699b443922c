from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from decimal import Decimal
from uuid import uuid4

from stagelock.domain.divergence import (
    DivergenceReport,
    MissingLocalPosition,
    OrphanConditionalOrder,
    OrphanPosition,
    StaleArtifact,
    is_test_artifact,
)
from stagelock.domain.ledger import ConditionalOrder, Position
from stagelock.logging_context import with_logging_context
from stagelock.observability import get_instrumentation
from stagelock.persistence.uow import UnitOfWorkFactory
from stagelock.ports import RemotePosition, RemoteStateReader
from stagelock.services.errors import RemoteStateError
from stagelock.services.repair_engine import RepairEngine, RepairResult

logger = logging.getLogger(__name__)

DEFAULT_SIZE_EPSILON = Decimal("0.0001")
DEFAULT_TEST_SYMBOL_MARKERS = ("_TEST", "test", "TEST")


@dataclass(frozen=True)
class ConsistencyCheckResult:
    cycle_id: str
    report: DivergenceReport | None
    repair: RepairResult | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def as_dict(self) -> dict[str, object]:
        return {
            "cycle_id": self.cycle_id,
            "ok": self.ok,
            "error": self.error,
            "counts": self.report.counts() if self.report is not None else None,
            "repair": self.repair.as_dict() if self.repair is not None else None,
        }


def classify_divergences(
    *,
    local_positions: Sequence[Position],
    remote_positions: Sequence[RemotePosition],
    active_orders: Iterable[ConditionalOrder],
    normalize_contract: Callable[[str], str],
    size_epsilon: Decimal = DEFAULT_SIZE_EPSILON,
    test_markers: Iterable[str] = DEFAULT_TEST_SYMBOL_MARKERS,
) -> DivergenceReport:
    markers = tuple(test_markers)
    report = DivergenceReport()
    remote_by_contract: dict[str, Decimal] = {}
    for remote in remote_positions:
        # first entry wins, matching a lookup by contract
        remote_by_contract.setdefault(remote.contract, abs(Decimal(str(remote.size))))

    local_contracts: set[str] = set()
    for position in local_positions:
        contract = normalize_contract(position.symbol)
        local_contracts.add(contract)
        if is_test_artifact(position.symbol, markers):
            report.stale_artifacts.append(StaleArtifact(symbol=position.symbol, side=position.side))
            continue
        local_size = position.abs_quantity
        remote_size = remote_by_contract.get(contract, Decimal("0"))
        if remote_size == 0 or abs(remote_size - local_size) > size_epsilon:
            report.orphan_positions.append(
                OrphanPosition(
                    symbol=position.symbol,
                    side=position.side,
                    local_size=local_size,
                    remote_size=remote_size,
                )
            )

    for remote in remote_positions:
        size = abs(Decimal(str(remote.size)))
        if size < size_epsilon:
            continue
        if remote.contract not in local_contracts:
            report.missing_positions.append(MissingLocalPosition(contract=remote.contract, size=size))

    local_keys = {(position.symbol, position.side) for position in local_positions}
    for order in active_orders:
        if (order.symbol, order.side) not in local_keys:
            report.orphan_orders.append(
                OrphanConditionalOrder(
                    order_id=order.order_id,
                    symbol=order.symbol,
                    side=order.side,
                    kind=order.kind.value,
                )
            )
    return report


class ConsistencyChecker:
    """One reconciliation pass between the local ledger and the remote book."""

    def __init__(
        self,
        *,
        uow_factory: UnitOfWorkFactory,
        remote: RemoteStateReader,
        repair_engine: RepairEngine,
        size_epsilon: Decimal = DEFAULT_SIZE_EPSILON,
        test_markers: Iterable[str] = DEFAULT_TEST_SYMBOL_MARKERS,
        call_timeout_seconds: float = 10.0,
    ) -> None:
        self._uow_factory = uow_factory
        self._remote = remote
        self._repair_engine = repair_engine
        self._size_epsilon = Decimal(str(size_epsilon))
        self._test_markers = tuple(test_markers)
        self._call_timeout_seconds = call_timeout_seconds

    async def run_once(self) -> ConsistencyCheckResult:
        cycle_id = f"consistency-{uuid4().hex[:12]}"
        with with_logging_context(cycle_id=cycle_id):
            logger.info("consistency_check_started", extra={"extra": {"cycle_id": cycle_id}})
            try:
                with get_instrumentation().trace("consistency_check", attrs={"cycle_id": cycle_id}):
                    report = await self.check()
            except RemoteStateError as exc:
                get_instrumentation().counter("consistency_check_failures_total", attrs={"reason": "remote"})
                logger.error(
                    "consistency_check_remote_unavailable",
                    extra={"extra": {"cycle_id": cycle_id, "operation": exc.operation, "reason": exc.reason}},
                )
                return ConsistencyCheckResult(cycle_id=cycle_id, report=None, error=str(exc))
            except Exception as exc:  # noqa: BLE001
                get_instrumentation().counter("consistency_check_failures_total", attrs={"reason": "internal"})
                logger.exception("consistency_check_failed", extra={"extra": {"cycle_id": cycle_id}})
                return ConsistencyCheckResult(cycle_id=cycle_id, report=None, error=str(exc))

            if not report.has_divergences():
                logger.info("consistency_check_clean", extra={"extra": {"cycle_id": cycle_id}})
                return ConsistencyCheckResult(cycle_id=cycle_id, report=report)

            logger.warning(
                "consistency_check_repair_started",
                extra={"extra": {"cycle_id": cycle_id, **report.counts()}},
            )
            repair = await self._repair_engine.repair(report)
            logger.info(
                "consistency_check_repair_completed",
                extra={"extra": {"cycle_id": cycle_id, **repair.as_dict()}},
            )
            return ConsistencyCheckResult(cycle_id=cycle_id, report=report, repair=repair)

    async def check(self) -> DivergenceReport:
        remote_positions = await self._fetch_remote_positions()
        local_positions, active_orders = await asyncio.to_thread(self._load_local)
        logger.info(
            "consistency_snapshot_loaded",
            extra={
                "extra": {
                    "remote_positions": len(remote_positions),
                    "local_positions": len(local_positions),
                    "active_orders": len(active_orders),
                }
            },
        )
        report = classify_divergences(
            local_positions=local_positions,
            remote_positions=remote_positions,
            active_orders=active_orders,
            normalize_contract=self._remote.normalize_contract,
            size_epsilon=self._size_epsilon,
            test_markers=self._test_markers,
        )
        instrumentation = get_instrumentation()
        for kind, count in report.counts().items():
            if count:
                instrumentation.counter("consistency_divergences_total", count, attrs={"kind": kind})
        logger.info("consistency_check_summary", extra={"extra": report.counts()})
        return report

    async def _fetch_remote_positions(self) -> list[RemotePosition]:
        try:
            return list(
                await asyncio.wait_for(
                    self._remote.list_positions(), timeout=self._call_timeout_seconds
                )
            )
        except TimeoutError as exc:
            raise RemoteStateError(
                "list_positions", f"timed out after {self._call_timeout_seconds}s"
            ) from exc
        except Exception as exc:  # noqa: BLE001
            raise RemoteStateError("list_positions", f"{type(exc).__name__}: {exc}") from exc

    def _load_local(self) -> tuple[list[Position], list[ConditionalOrder]]:
        with self._uow_factory.reader() as uow:
            return uow.ledger.list_positions(), uow.ledger.list_active_orders()
