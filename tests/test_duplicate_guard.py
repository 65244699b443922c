from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

from stagelock.domain.history import ExecutionHistoryEntry, HistoryStatus
from stagelock.domain.ledger import Side
from stagelock.persistence.uow import UnitOfWorkFactory
from stagelock.services.duplicate_guard import DuplicateExecutionGuard

NOW = datetime(2025, 3, 1, 9, 30, tzinfo=UTC)


def _append(factory: UnitOfWorkFactory, *, stage: int, ts: datetime, status: HistoryStatus) -> None:
    with factory() as uow:
        uow.history.append(
            ExecutionHistoryEntry(
                resource_key="BTC:long",
                symbol="BTC",
                side=Side.LONG,
                stage=stage,
                status=status,
                ts=ts,
                trigger_price=Decimal("105"),
            )
        )


def test_recent_completion_inside_window(db_path: str) -> None:
    factory = UnitOfWorkFactory(db_path)
    guard = DuplicateExecutionGuard(factory, now_fn=lambda: NOW)
    _append(factory, stage=1, ts=NOW - timedelta(seconds=10), status=HistoryStatus.COMPLETED)

    assert guard.has_recent_completion("BTC:long", 1) is True
    assert guard.has_recent_completion("BTC:long", 2) is False
    assert guard.has_recent_completion("BTC:short", 1) is False


def test_completion_outside_window_is_not_recent_but_is_permanent(db_path: str) -> None:
    factory = UnitOfWorkFactory(db_path)
    guard = DuplicateExecutionGuard(factory, now_fn=lambda: NOW)
    _append(factory, stage=1, ts=NOW - timedelta(seconds=31), status=HistoryStatus.COMPLETED)

    assert guard.has_recent_completion("BTC:long", 1) is False
    assert guard.has_recent_completion("BTC:long", 1, window_seconds=60) is True
    assert guard.has_ever_completed("BTC:long", 1) is True


def test_failed_attempts_never_count(db_path: str) -> None:
    factory = UnitOfWorkFactory(db_path)
    guard = DuplicateExecutionGuard(factory, now_fn=lambda: NOW)
    _append(factory, stage=1, ts=NOW, status=HistoryStatus.FAILED)

    assert guard.has_recent_completion("BTC:long", 1) is False
    assert guard.has_ever_completed("BTC:long", 1) is False


def test_store_error_reports_no_recent_completion(tmp_path) -> None:
    guard = DuplicateExecutionGuard(UnitOfWorkFactory(str(tmp_path / "nope" / "db.sqlite")))
    assert guard.has_recent_completion("BTC:long", 1) is False
