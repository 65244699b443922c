from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path

import pytest

from stagelock import cli
from stagelock.domain.ledger import Position, Side, StopReference
from stagelock.persistence.uow import UnitOfWorkFactory
from stagelock.services.lease_coordinator import LeaseCoordinator


@pytest.fixture(autouse=True)
def restore_root_logging():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def _snapshot(tmp_path: Path, *, positions=None, prices=None, open_orders=None) -> str:
    path = tmp_path / "remote.json"
    path.write_text(
        json.dumps(
            {
                "positions": positions or [],
                "prices": prices or {},
                "open_orders": open_orders or [],
            }
        ),
        encoding="utf-8",
    )
    return str(path)


def _seed(db_path: str, symbol: str, quantity: str = "1") -> None:
    with UnitOfWorkFactory(db_path)() as uow:
        uow.ledger.upsert_position(
            Position(
                symbol=symbol,
                side=Side.LONG,
                quantity=Decimal(quantity),
                entry_price=Decimal("100"),
                risk_reference=StopReference(price=Decimal("90")),
            ),
            now=datetime.now(UTC),
        )


def _last_json(capsys) -> dict:
    out = capsys.readouterr().out.strip().splitlines()
    return json.loads(out[-1])


def test_reconcile_dry_run_reports_without_repairing(tmp_path, db_path, capsys) -> None:
    _seed(db_path, "BTC_TEST")
    snapshot = _snapshot(tmp_path)

    assert cli.main(["reconcile", "--db", db_path, "--snapshot", snapshot, "--dry-run"]) == 0

    payload = _last_json(capsys)
    assert payload["dry_run"] is True
    assert payload["counts"]["stale_artifacts"] == 1
    with UnitOfWorkFactory(db_path).reader() as uow:
        assert uow.ledger.get_position("BTC_TEST", Side.LONG) is not None


def test_reconcile_repairs_and_prints_result(tmp_path, db_path, capsys) -> None:
    _seed(db_path, "BTC_TEST")
    _seed(db_path, "ETH")
    snapshot = _snapshot(tmp_path, positions=[{"contract": "ETH_USDT", "size": "1"}])

    assert cli.main(["reconcile", "--db", db_path, "--snapshot", snapshot]) == 0

    payload = _last_json(capsys)
    assert payload["ok"] is True
    assert payload["repair"]["positions_removed"] == ["BTC_TEST:long"]
    with UnitOfWorkFactory(db_path).reader() as uow:
        assert [position.symbol for position in uow.ledger.list_positions()] == ["ETH"]


def test_partial_exit_then_history(tmp_path, db_path, capsys) -> None:
    _seed(db_path, "BTC")
    snapshot = _snapshot(tmp_path, prices={"BTC_USDT": "112"})

    assert cli.main(["partial-exit", "--db", db_path, "--snapshot", snapshot, "--caller", "ops"]) == 0
    summary = _last_json(capsys)
    assert summary["executed"] == 1
    assert summary["outcomes"][0]["result"] == "success"

    assert cli.main(["history", "--db", db_path, "--symbol", "BTC"]) == 0
    history = _last_json(capsys)
    [entry] = history["entries"]
    assert entry["status"] == "completed"
    assert entry["caller"] == "ops"
    assert entry["stage"] == 1


def test_leases_list_and_release(db_path, capsys) -> None:
    leases = LeaseCoordinator(UnitOfWorkFactory(db_path))
    assert leases.acquire("BTC:long:stage1", "ai-agent")

    assert cli.main(["leases", "list", "--db", db_path]) == 0
    listed = _last_json(capsys)
    [row] = listed["leases"]
    assert row["holder"] == "ai-agent"
    assert row["expired"] is False

    assert cli.main(["leases", "release", "--db", db_path, "--key", "BTC:long:stage1", "--holder", "ops"]) == 2
    assert _last_json(capsys)["released"] is False

    assert (
        cli.main(["leases", "release", "--db", db_path, "--key", "BTC:long:stage1", "--holder", "ai-agent"])
        == 0
    )
    assert _last_json(capsys)["released"] is True
    assert leases.get("BTC:long:stage1") is None


def test_monitor_runs_both_loops_for_duration(tmp_path, db_path) -> None:
    _seed(db_path, "BTC")
    snapshot = _snapshot(
        tmp_path,
        positions=[{"contract": "BTC_USDT", "size": "1"}],
        prices={"BTC_USDT": "112"},
    )

    assert cli.main(["monitor", "--db", db_path, "--snapshot", snapshot, "--duration-seconds", "0.3"]) == 0

    with UnitOfWorkFactory(db_path).reader() as uow:
        entries = uow.history.list_for_symbol("BTC")
        position = uow.ledger.get_position("BTC", Side.LONG)
    assert [entry.caller for entry in entries] == ["tp-monitor"]
    assert position is not None


def test_uses_state_db_path_from_environment(monkeypatch, tmp_path, capsys) -> None:
    env_db = str(tmp_path / "env.sqlite")
    monkeypatch.setenv("STATE_DB_PATH", env_db)

    assert cli.main(["leases", "list"]) == 0

    assert _last_json(capsys)["db_path"] == env_db
