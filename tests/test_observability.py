from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from decimal import Decimal

from stagelock import observability
from stagelock.adapters.paper_remote import PaperRemoteState
from stagelock.domain.ledger import Position, Side, StopReference
from stagelock.domain.stages import StageConfig, StageRequest, StageResult
from stagelock.persistence.uow import UnitOfWorkFactory
from stagelock.services import consistency_checker as consistency_checker_module
from stagelock.services import staged_action_coordinator as coordinator_module
from stagelock.services.consistency_checker import ConsistencyChecker
from stagelock.services.duplicate_guard import DuplicateExecutionGuard
from stagelock.services.lease_coordinator import LeaseCoordinator
from stagelock.services.repair_engine import RepairEngine


class _RecordingInstrumentation(observability.Instrumentation):
    def __init__(self) -> None:
        self.counters: list[tuple[str, int, dict]] = []
        self.histograms: list[str] = []

    def counter(self, name: str, value: int = 1, *, attrs=None) -> None:
        self.counters.append((name, value, dict(attrs or {})))

    def histogram(self, name: str, value: float, *, attrs=None) -> None:
        del value, attrs
        self.histograms.append(name)


class _Executor:
    async def execute(self, request: StageRequest) -> StageResult:
        return StageResult(success=True, new_stop_price=request.entry_price)


def test_disabled_configuration_installs_noop() -> None:
    installed = observability.configure_instrumentation(enabled=False)

    assert isinstance(installed, observability.NoopInstrumentation)
    assert observability.get_instrumentation() is installed
    with installed.trace("anything", attrs={"a": 1}):
        installed.counter("x")


def test_coordinator_counts_stage_outcomes(monkeypatch, db_path: str) -> None:
    inst = _RecordingInstrumentation()
    monkeypatch.setattr(coordinator_module, "get_instrumentation", lambda: inst)
    factory = UnitOfWorkFactory(db_path)
    with factory() as uow:
        uow.ledger.upsert_position(
            Position(
                symbol="BTC",
                side=Side.LONG,
                quantity=Decimal("1"),
                entry_price=Decimal("100"),
                risk_reference=StopReference(price=Decimal("90")),
            ),
            now=datetime.now(UTC),
        )
    remote = PaperRemoteState(prices={"BTC_USDT": Decimal("111")})
    coordinator = coordinator_module.StagedActionCoordinator(
        uow_factory=factory,
        leases=LeaseCoordinator(factory),
        guard=DuplicateExecutionGuard(factory),
        executor=_Executor(),
        remote=remote,
        prices=remote,
        stages=[StageConfig(stage=1, r_multiple=Decimal("1"))],
    )

    asyncio.run(coordinator.run_check("tp-monitor"))

    assert ("partial_exit_stage_outcomes_total", 1, {"outcome": "success"}) in inst.counters
    assert inst.histograms == ["partial_exit_check_ms"]


def test_checker_counts_divergences_by_kind(monkeypatch, db_path: str) -> None:
    inst = _RecordingInstrumentation()
    monkeypatch.setattr(consistency_checker_module, "get_instrumentation", lambda: inst)
    factory = UnitOfWorkFactory(db_path)
    remote = PaperRemoteState(positions={"SOL_USDT": Decimal("10"), "ADA_USDT": Decimal("5")})
    checker = ConsistencyChecker(
        uow_factory=factory,
        remote=remote,
        repair_engine=RepairEngine(uow_factory=factory, remote=remote),
    )

    asyncio.run(checker.run_once())

    assert inst.counters == [("consistency_divergences_total", 2, {"kind": "missing_positions"})]


def test_metric_names_are_prefixed_and_sanitized() -> None:
    assert observability.metric_name("lease store errors/total") == "stagelock.lease_store_errors_total"
    assert observability.metric_name("///") == "stagelock.unnamed"


def test_shutdown_restores_noop_sink() -> None:
    observability.shutdown_instrumentation()

    assert isinstance(observability.get_instrumentation(), observability.NoopInstrumentation)
