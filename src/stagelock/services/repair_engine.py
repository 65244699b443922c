from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from stagelock.domain.divergence import DivergenceReport
from stagelock.domain.ledger import ConditionalOrderStatus, Side
from stagelock.observability import get_instrumentation
from stagelock.persistence.uow import UnitOfWorkFactory
from stagelock.ports import RemoteStateWriter

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass
class RepairResult:
    positions_removed: list[str] = field(default_factory=list)
    orders_cancelled: list[str] = field(default_factory=list)
    remote_cancel_failures: list[str] = field(default_factory=list)
    manual_review: list[str] = field(default_factory=list)
    item_errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "positions_removed": list(self.positions_removed),
            "orders_cancelled": list(self.orders_cancelled),
            "remote_cancel_failures": list(self.remote_cancel_failures),
            "manual_review": list(self.manual_review),
            "item_errors": list(self.item_errors),
        }


class RepairEngine:
    """Applies the local and remote fixes for one divergence report.

    Every step is safe to repeat: deleting a missing row and cancelling an
    already-cancelled order are no-ops. Ambiguous divergences are only logged.
    """

    def __init__(
        self,
        *,
        uow_factory: UnitOfWorkFactory,
        remote: RemoteStateWriter,
        call_timeout_seconds: float = 10.0,
        now_fn: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._uow_factory = uow_factory
        self._remote = remote
        self._call_timeout_seconds = call_timeout_seconds
        self._now = now_fn

    async def repair(self, report: DivergenceReport) -> RepairResult:
        result = RepairResult()

        for orphan in report.orphan_positions:
            label = f"{orphan.symbol}:{orphan.side.value}"
            if not orphan.remote_is_flat:
                logger.warning(
                    "repair_size_mismatch_manual_review",
                    extra={
                        "extra": {
                            "symbol": orphan.symbol,
                            "side": orphan.side.value,
                            "local_size": str(orphan.local_size),
                            "remote_size": str(orphan.remote_size),
                        }
                    },
                )
                result.manual_review.append(label)
                continue
            logger.info(
                "repair_orphan_position",
                extra={"extra": {"symbol": orphan.symbol, "side": orphan.side.value}},
            )
            await self._remove_position_guarded(orphan.symbol, orphan.side, result)

        for order in report.orphan_orders:
            logger.info(
                "repair_orphan_conditional_order",
                extra={
                    "extra": {
                        "order_id": order.order_id,
                        "symbol": order.symbol,
                        "side": order.side.value,
                        "kind": order.kind,
                    }
                },
            )
            try:
                await self._cancel_order(order.order_id, result)
            except Exception as exc:  # noqa: BLE001
                logger.exception("repair_item_failed", extra={"extra": {"order_id": order.order_id}})
                result.item_errors.append(f"{order.order_id}: {exc}")

        for artifact in report.stale_artifacts:
            logger.info(
                "repair_stale_artifact",
                extra={"extra": {"symbol": artifact.symbol, "side": artifact.side.value}},
            )
            await self._remove_position_guarded(artifact.symbol, artifact.side, result)

        if report.missing_positions:
            for missing in report.missing_positions:
                result.manual_review.append(missing.contract)
            logger.warning(
                "repair_missing_local_positions_manual_review",
                extra={
                    "extra": {
                        "count": len(report.missing_positions),
                        "positions": [
                            {"contract": item.contract, "size": str(item.size)}
                            for item in report.missing_positions
                        ],
                    }
                },
            )

        return result

    async def _remove_position_guarded(self, symbol: str, side: Side, result: RepairResult) -> None:
        try:
            await self._remove_position(symbol, side, result)
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "repair_item_failed", extra={"extra": {"symbol": symbol, "side": side.value}}
            )
            result.item_errors.append(f"{symbol}:{side.value}: {exc}")

    async def _remove_position(self, symbol: str, side: Side, result: RepairResult) -> None:
        removed = await asyncio.to_thread(self._delete_position, symbol, side)
        if removed:
            result.positions_removed.append(f"{symbol}:{side.value}")
            get_instrumentation().counter("repair_positions_removed_total")
        related = await asyncio.to_thread(self._active_order_ids, symbol, side)
        for order_id in related:
            await self._cancel_order(order_id, result)

    async def _cancel_order(self, order_id: str, result: RepairResult) -> None:
        if not await self._cancel_remote(order_id):
            get_instrumentation().counter("repair_remote_cancel_failures_total")
            result.remote_cancel_failures.append(order_id)
        if await asyncio.to_thread(self._mark_cancelled, order_id):
            result.orders_cancelled.append(order_id)

    async def _cancel_remote(self, order_id: str) -> bool:
        try:
            cancelled = await asyncio.wait_for(
                self._remote.cancel_order(order_id), timeout=self._call_timeout_seconds
            )
        except Exception as exc:  # noqa: BLE001
            logger.debug(
                "repair_remote_cancel_failed",
                extra={"extra": {"order_id": order_id, "error": f"{type(exc).__name__}: {exc}"}},
            )
            return False
        if not cancelled:
            logger.debug("repair_remote_cancel_rejected", extra={"extra": {"order_id": order_id}})
        return bool(cancelled)

    def _delete_position(self, symbol: str, side: Side) -> bool:
        with self._uow_factory() as uow:
            return uow.ledger.delete_position(symbol, side)

    def _active_order_ids(self, symbol: str, side: Side) -> list[str]:
        with self._uow_factory.reader() as uow:
            return [order.order_id for order in uow.ledger.list_active_orders(symbol=symbol, side=side)]

    def _mark_cancelled(self, order_id: str) -> bool:
        with self._uow_factory() as uow:
            order = uow.ledger.get_order(order_id)
            if order is None or order.status is ConditionalOrderStatus.CANCELLED:
                return False
            return uow.ledger.set_order_status(
                order_id, ConditionalOrderStatus.CANCELLED, now=self._now()
            )
