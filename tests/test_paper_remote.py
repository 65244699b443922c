from __future__ import annotations

import asyncio
import json
from decimal import Decimal

import pytest

from stagelock.adapters.paper_remote import PaperRemoteState, PaperStageExecutor, normalize_usdt_contract
from stagelock.domain.ledger import Side
from stagelock.domain.stages import StageRequest


@pytest.mark.parametrize(
    ("symbol", "expected"),
    [
        ("BTC", "BTC_USDT"),
        ("btcusdt", "BTC_USDT"),
        ("BTC_USDT", "BTC_USDT"),
        ("eth-usdt", "ETH_USDT"),
        ("SOL/USDT", "SOL_USDT"),
    ],
)
def test_normalize_usdt_contract(symbol: str, expected: str) -> None:
    assert normalize_usdt_contract(symbol) == expected


def test_snapshot_file_loads_positions_prices_and_orders(tmp_path) -> None:
    snapshot = tmp_path / "remote.json"
    snapshot.write_text(
        json.dumps(
            {
                "positions": [{"contract": "BTC_USDT", "size": "-0.5"}],
                "prices": {"BTC_USDT": "65000.5"},
                "open_orders": [123, "abc"],
            }
        ),
        encoding="utf-8",
    )

    remote = PaperRemoteState.from_snapshot_file(snapshot)

    [position] = asyncio.run(remote.list_positions())
    assert position.contract == "BTC_USDT"
    assert position.size == Decimal("-0.5")
    assert asyncio.run(remote.get_last_price("BTC_USDT")) == Decimal("65000.5")
    assert remote.open_order_ids == {"123", "abc"}


def test_snapshot_must_be_an_object(tmp_path) -> None:
    snapshot = tmp_path / "remote.json"
    snapshot.write_text("[]", encoding="utf-8")
    with pytest.raises(ValueError):
        PaperRemoteState.from_snapshot_file(snapshot)


def test_cancel_unknown_order_returns_false() -> None:
    remote = PaperRemoteState(open_order_ids=["1"])

    assert asyncio.run(remote.cancel_order("1")) is True
    assert asyncio.run(remote.cancel_order("1")) is False
    assert asyncio.run(remote.cancel_order("2")) is False
    assert remote.cancel_calls == ["1", "1", "2"]


def test_missing_price_raises_lookup_error() -> None:
    with pytest.raises(LookupError):
        asyncio.run(PaperRemoteState().get_last_price("DOGE_USDT"))


def test_paper_executor_moves_stop_to_entry_on_first_stage() -> None:
    executor = PaperStageExecutor(close_fraction=Decimal("0.5"))
    request = StageRequest(
        resource_key="BTC:long",
        symbol="BTC",
        side=Side.LONG,
        stage=1,
        entry_price=Decimal("100"),
        quantity=Decimal("2"),
        current_price=Decimal("110"),
        r_multiple=Decimal("1"),
        caller="cli",
    )

    result = asyncio.run(executor.execute(request))
    later = asyncio.run(executor.execute(StageRequest(**{**request.__dict__, "stage": 2})))

    assert result.success is True
    assert result.new_stop_price == Decimal("100")
    assert result.closed_quantity == Decimal("1.0")
    assert later.new_stop_price is None
    assert len(executor.requests) == 2
