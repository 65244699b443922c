from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from decimal import Decimal

from stagelock.domain.history import ExecutionHistoryEntry, HistoryStatus
from stagelock.domain.ledger import Position, StopReference
from stagelock.domain.progress import r_multiple, recover_original_stop
from stagelock.domain.stages import (
    CheckSummary,
    StageConfig,
    StageOutcome,
    StageOutcomeRecord,
    StageRequest,
    StageResult,
    position_resource_key,
    stage_lease_key,
)
from stagelock.logging_context import with_logging_context
from stagelock.observability import get_instrumentation
from stagelock.persistence.uow import UnitOfWorkFactory
from stagelock.ports import FixedThresholdPolicy, PriceReader, RemoteStateReader, StageExecutor, ThresholdPolicy
from stagelock.services.duplicate_guard import DuplicateExecutionGuard
from stagelock.services.lease_coordinator import LeaseCoordinator

logger = logging.getLogger(__name__)

# After one of these outcomes later stages for the resource wait for the next
# pass: another caller is acting on it, the position is gone, or the ledger no
# longer reflects what the executor did.
_STOP_RESOURCE_OUTCOMES = frozenset(
    {
        StageOutcome.RECENTLY_EXECUTED,
        StageOutcome.LOCK_BUSY,
        StageOutcome.POSITION_CLOSED,
        StageOutcome.UNRECORDED,
    }
)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class StagedActionCoordinator:
    """Runs partial-exit stages at most once per resource across concurrent callers.

    Every stage goes through the recency guard, then the store lease, then the
    permanent history check under the lease. Only after all three pass is the
    injected executor invoked; its result is appended to history and applied
    to the ledger in one transaction before the lease is released.
    """

    def __init__(
        self,
        *,
        uow_factory: UnitOfWorkFactory,
        leases: LeaseCoordinator,
        guard: DuplicateExecutionGuard,
        executor: StageExecutor,
        remote: RemoteStateReader,
        prices: PriceReader,
        stages: Sequence[StageConfig],
        threshold_policy: ThresholdPolicy | None = None,
        call_timeout_seconds: float = 10.0,
        now_fn: Callable[[], datetime] = _utc_now,
    ) -> None:
        if not stages:
            raise ValueError("at least one stage must be configured")
        self._uow_factory = uow_factory
        self._leases = leases
        self._guard = guard
        self._executor = executor
        self._remote = remote
        self._prices = prices
        self._stages = tuple(sorted(stages, key=lambda item: item.stage))
        self._stage_multiples = {item.stage: item.r_multiple for item in self._stages}
        self._threshold_policy = threshold_policy or FixedThresholdPolicy()
        self._call_timeout_seconds = call_timeout_seconds
        self._now = now_fn

    async def run_once(self, caller_id: str) -> CheckSummary:
        return await self.run_check(caller_id)

    async def run_check(self, caller_id: str) -> CheckSummary:
        summary = CheckSummary(caller=caller_id)
        started = time.monotonic()
        try:
            positions = await asyncio.to_thread(self._load_candidates)
        except Exception:  # noqa: BLE001
            logger.exception("partial_exit_positions_load_failed", extra={"extra": {"caller": caller_id}})
            return summary

        for position in positions:
            resource_key = position_resource_key(position.symbol, position.side)
            with with_logging_context(caller=caller_id, resource_key=resource_key, symbol=position.symbol):
                try:
                    await self._evaluate_position(caller_id, position, resource_key, summary)
                except Exception as exc:  # noqa: BLE001
                    logger.exception(
                        "partial_exit_resource_failed",
                        extra={"extra": {"caller": caller_id, "resource_key": resource_key}},
                    )
                    summary.record(
                        StageOutcomeRecord(
                            resource_key=resource_key,
                            symbol=position.symbol,
                            stage=None,
                            outcome=StageOutcome.ERROR,
                            message=str(exc),
                        )
                    )

        instrumentation = get_instrumentation()
        for item in summary.outcomes:
            instrumentation.counter(
                "partial_exit_stage_outcomes_total", attrs={"outcome": item.outcome.value}
            )
        instrumentation.histogram(
            "partial_exit_check_ms", (time.monotonic() - started) * 1000, attrs={"caller": caller_id}
        )
        if summary.executed_count > 0:
            logger.info(
                "partial_exit_check_executed",
                extra={
                    "extra": {
                        "caller": caller_id,
                        "executed": summary.executed_count,
                        "skipped": summary.skipped_count,
                    }
                },
            )
        return summary

    def _load_candidates(self) -> list[Position]:
        with self._uow_factory.reader() as uow:
            positions = uow.ledger.list_open_positions()
        return [item for item in positions if isinstance(item.risk_reference, StopReference)]

    def _fresh_position(self, position: Position) -> Position | None:
        with self._uow_factory.reader() as uow:
            return uow.ledger.get_position(position.symbol, position.side)

    def _first_completed(self, resource_key: str) -> ExecutionHistoryEntry | None:
        with self._uow_factory.reader() as uow:
            return uow.history.first_completed(resource_key)

    async def _current_price(self, symbol: str) -> Decimal | None:
        contract = self._remote.normalize_contract(symbol)
        try:
            price = await asyncio.wait_for(
                self._prices.get_last_price(contract), timeout=self._call_timeout_seconds
            )
        except Exception as exc:  # noqa: BLE001
            logger.debug(
                "partial_exit_price_unavailable",
                extra={"extra": {"symbol": symbol, "contract": contract, "error": str(exc)}},
            )
            return None
        price = Decimal(str(price))
        return price if price > 0 else None

    async def _evaluate_position(
        self,
        caller_id: str,
        position: Position,
        resource_key: str,
        summary: CheckSummary,
    ) -> None:
        reference = position.risk_reference
        if not isinstance(reference, StopReference):
            return
        current_price = await self._current_price(position.symbol)
        if current_price is None:
            return

        first_completed = await asyncio.to_thread(self._first_completed, resource_key)
        original_stop = recover_original_stop(
            entry_price=position.entry_price,
            current_stop=reference.price,
            first_completed=first_completed,
            stage_multiples=self._stage_multiples,
        )
        try:
            progress = r_multiple(
                entry_price=position.entry_price,
                current_price=current_price,
                stop_price=original_stop,
                side=position.side,
            )
        except ValueError:
            logger.debug(
                "partial_exit_zero_risk_distance",
                extra={"extra": {"resource_key": resource_key, "entry_price": str(position.entry_price)}},
            )
            return

        for stage in self._stages:
            threshold = self._threshold_policy.adjust(
                symbol=position.symbol, stage=stage.stage, base_multiple=stage.r_multiple
            )
            if progress < threshold:
                continue
            record = await self._run_stage(
                caller_id=caller_id,
                position=position,
                resource_key=resource_key,
                stage=stage,
                current_price=current_price,
                progress=progress,
                original_stop=original_stop,
            )
            summary.record(record)
            if record.outcome in _STOP_RESOURCE_OUTCOMES:
                break

    async def _run_stage(
        self,
        *,
        caller_id: str,
        position: Position,
        resource_key: str,
        stage: StageConfig,
        current_price: Decimal,
        progress: Decimal,
        original_stop: Decimal,
    ) -> StageOutcomeRecord:
        def _record(outcome: StageOutcome, message: str | None = None) -> StageOutcomeRecord:
            return StageOutcomeRecord(
                resource_key=resource_key,
                symbol=position.symbol,
                stage=stage.stage,
                outcome=outcome,
                message=message,
            )

        if await asyncio.to_thread(self._guard.has_recent_completion, resource_key, stage.stage):
            logger.debug(
                "partial_exit_recently_executed",
                extra={"extra": {"resource_key": resource_key, "stage": stage.stage}},
            )
            return _record(StageOutcome.RECENTLY_EXECUTED)

        lease_key = stage_lease_key(resource_key, stage.stage)
        if not await asyncio.to_thread(self._leases.acquire, lease_key, caller_id):
            logger.debug(
                "partial_exit_lock_busy",
                extra={"extra": {"resource_key": resource_key, "stage": stage.stage}},
            )
            return _record(StageOutcome.LOCK_BUSY)

        keep_lease = False
        try:
            if await asyncio.to_thread(self._guard.has_ever_completed, resource_key, stage.stage):
                return _record(StageOutcome.ALREADY_EXECUTED)

            # An earlier stage in this pass may have shrunk or closed the row.
            current = await asyncio.to_thread(self._fresh_position, position)
            if current is None or current.quantity == 0:
                logger.info(
                    "partial_exit_position_closed",
                    extra={"extra": {"resource_key": resource_key, "stage": stage.stage}},
                )
                return _record(StageOutcome.POSITION_CLOSED)

            logger.info(
                "partial_exit_stage_triggered",
                extra={
                    "extra": {
                        "caller": caller_id,
                        "resource_key": resource_key,
                        "stage": stage.stage,
                        "r_multiple": str(progress),
                        "current_price": str(current_price),
                    }
                },
            )
            request = StageRequest(
                resource_key=resource_key,
                symbol=current.symbol,
                side=current.side,
                stage=stage.stage,
                entry_price=current.entry_price,
                quantity=current.abs_quantity,
                current_price=current_price,
                r_multiple=progress,
                caller=caller_id,
            )
            result = await self._execute(request)
            try:
                await asyncio.to_thread(
                    self._record_attempt,
                    request=request,
                    result=result,
                    original_stop=original_stop,
                )
            except Exception as exc:  # noqa: BLE001
                # Without a history row the next pass would run the stage again;
                # the held lease blocks that until it expires.
                keep_lease = result.success
                return _record(StageOutcome.UNRECORDED, f"{type(exc).__name__}: {exc}")
            if result.success:
                logger.info(
                    "partial_exit_stage_succeeded",
                    extra={
                        "extra": {
                            "caller": caller_id,
                            "resource_key": resource_key,
                            "stage": stage.stage,
                            "detail": result.message,
                        }
                    },
                )
                return _record(StageOutcome.SUCCESS, result.message)
            logger.warning(
                "partial_exit_stage_failed",
                extra={
                    "extra": {
                        "caller": caller_id,
                        "resource_key": resource_key,
                        "stage": stage.stage,
                        "detail": result.message,
                    }
                },
            )
            return _record(StageOutcome.FAILED, result.message)
        finally:
            # Released inline rather than via to_thread so cancellation of the
            # pass cannot interrupt it.
            if not keep_lease:
                self._leases.release(lease_key, caller_id)

    async def _execute(self, request: StageRequest) -> StageResult:
        try:
            return await asyncio.wait_for(
                self._executor.execute(request), timeout=self._call_timeout_seconds
            )
        except TimeoutError:
            return StageResult(
                success=False,
                message=f"executor timed out after {self._call_timeout_seconds}s",
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "partial_exit_executor_raised",
                extra={"extra": {"resource_key": request.resource_key, "stage": request.stage}},
            )
            return StageResult(success=False, message=f"{type(exc).__name__}: {exc}")

    def _record_attempt(
        self,
        *,
        request: StageRequest,
        result: StageResult,
        original_stop: Decimal,
    ) -> None:
        now = self._now()
        entry = ExecutionHistoryEntry(
            resource_key=request.resource_key,
            symbol=request.symbol,
            side=request.side,
            stage=request.stage,
            status=HistoryStatus.COMPLETED if result.success else HistoryStatus.FAILED,
            ts=now,
            trigger_price=request.current_price,
            original_stop_price=original_stop,
            new_stop_price=result.new_stop_price,
            closed_quantity=result.closed_quantity,
            caller=request.caller,
            message=result.message or None,
        )
        try:
            with self._uow_factory() as uow:
                uow.history.append(entry)
                if result.success:
                    uow.ledger.apply_stage_result(
                        symbol=request.symbol,
                        side=request.side,
                        new_stop_price=result.new_stop_price,
                        closed_quantity=result.closed_quantity,
                        now=now,
                    )
        except Exception:
            logger.critical(
                "partial_exit_history_write_failed",
                extra={
                    "extra": {
                        "resource_key": request.resource_key,
                        "stage": request.stage,
                        "executor_success": result.success,
                    }
                },
            )
            raise
