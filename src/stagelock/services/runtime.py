from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from stagelock.config import Settings
from stagelock.domain.stages import stages_from_multiples
from stagelock.persistence.uow import UnitOfWorkFactory
from stagelock.ports import PriceReader, RemoteStateReader, RemoteStateWriter, StageExecutor, ThresholdPolicy
from stagelock.services.consistency_checker import ConsistencyChecker
from stagelock.services.duplicate_guard import DuplicateExecutionGuard
from stagelock.services.lease_coordinator import LeaseCoordinator
from stagelock.services.periodic_runner import PeriodicRunner
from stagelock.services.repair_engine import RepairEngine
from stagelock.services.staged_action_coordinator import StagedActionCoordinator

logger = logging.getLogger(__name__)

MONITOR_CALLER_ID = "tp-monitor"


@dataclass
class Runtime:
    """The wired component graph. The owner starts and stops the runners it holds."""

    leases: LeaseCoordinator
    guard: DuplicateExecutionGuard
    coordinator: StagedActionCoordinator
    checker: ConsistencyChecker
    consistency_runner: PeriodicRunner
    partial_exit_runner: PeriodicRunner | None

    def start(self) -> None:
        self.consistency_runner.start()
        if self.partial_exit_runner is not None:
            self.partial_exit_runner.start()

    async def stop(self) -> None:
        if self.partial_exit_runner is not None:
            await self.partial_exit_runner.stop()
        await self.consistency_runner.stop()


class RemoteState(RemoteStateReader, RemoteStateWriter, PriceReader, Protocol):
    """A remote client that serves all three remote ports."""


def build_runtime(
    settings: Settings,
    *,
    remote: RemoteState,
    executor: StageExecutor,
    threshold_policy: ThresholdPolicy | None = None,
    monitor_caller_id: str = MONITOR_CALLER_ID,
) -> Runtime:
    uow_factory = UnitOfWorkFactory(settings.state_db_path)
    leases = LeaseCoordinator(uow_factory, lease_timeout_seconds=settings.lease_timeout_seconds)
    guard = DuplicateExecutionGuard(uow_factory, window_seconds=settings.duplicate_window_seconds)
    coordinator = StagedActionCoordinator(
        uow_factory=uow_factory,
        leases=leases,
        guard=guard,
        executor=executor,
        remote=remote,
        prices=remote,
        stages=stages_from_multiples(settings.partial_exit_stage_multiples),
        threshold_policy=threshold_policy,
        call_timeout_seconds=settings.remote_call_timeout_seconds,
    )
    repair_engine = RepairEngine(
        uow_factory=uow_factory,
        remote=remote,
        call_timeout_seconds=settings.remote_call_timeout_seconds,
    )
    checker = ConsistencyChecker(
        uow_factory=uow_factory,
        remote=remote,
        repair_engine=repair_engine,
        size_epsilon=settings.size_epsilon,
        test_markers=settings.test_symbol_markers,
        call_timeout_seconds=settings.remote_call_timeout_seconds,
    )
    consistency_runner = PeriodicRunner(
        name="consistency-check",
        interval_seconds=settings.consistency_check_interval_seconds,
        task=checker.run_once,
    )

    partial_exit_runner: PeriodicRunner | None = None
    if settings.partial_exit_monitor_enabled:

        async def _monitor_pass() -> object:
            return await coordinator.run_check(monitor_caller_id)

        partial_exit_runner = PeriodicRunner(
            name="partial-exit-monitor",
            interval_seconds=settings.partial_exit_check_interval_seconds,
            task=_monitor_pass,
        )
    else:
        logger.info("partial_exit_monitor_disabled")

    return Runtime(
        leases=leases,
        guard=guard,
        coordinator=coordinator,
        checker=checker,
        consistency_runner=consistency_runner,
        partial_exit_runner=partial_exit_runner,
    )
