from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from decimal import Decimal

from stagelock.adapters.paper_remote import PaperRemoteState
from stagelock.domain.divergence import DivergenceReport, OrphanConditionalOrder, OrphanPosition
from stagelock.domain.ledger import (
    ConditionalOrder,
    ConditionalOrderStatus,
    OrderKind,
    Position,
    Side,
    StopReference,
)
from stagelock.persistence.uow import UnitOfWorkFactory
from stagelock.services.consistency_checker import ConsistencyChecker
from stagelock.services.repair_engine import RepairEngine


class _RejectingRemote(PaperRemoteState):
    async def cancel_order(self, order_id: str) -> bool:
        self.cancel_calls.append(order_id)
        raise RuntimeError("order not found")


def _seed(db_path: str) -> None:
    now = datetime.now(UTC)
    with UnitOfWorkFactory(db_path)() as uow:
        uow.ledger.upsert_position(
            Position(
                symbol="BTC",
                side=Side.LONG,
                quantity=Decimal("0.5"),
                entry_price=Decimal("100"),
                risk_reference=StopReference(price=Decimal("90")),
            ),
            now=now,
        )
        uow.ledger.upsert_conditional_order(
            ConditionalOrder(
                order_id="sl-btc",
                symbol="BTC",
                side=Side.LONG,
                kind=OrderKind.STOP_LOSS,
                trigger_price=Decimal("90"),
                quantity=Decimal("0.5"),
                status=ConditionalOrderStatus.ACTIVE,
            ),
            now=now,
        )
        uow.ledger.upsert_conditional_order(
            ConditionalOrder(
                order_id="tp-xrp",
                symbol="XRP",
                side=Side.SHORT,
                kind=OrderKind.TAKE_PROFIT,
                trigger_price=Decimal("0.4"),
                quantity=Decimal("100"),
                status=ConditionalOrderStatus.ACTIVE,
            ),
            now=now,
        )


def test_second_pass_finds_nothing_to_repair(db_path: str) -> None:
    _seed(db_path)
    remote = PaperRemoteState(positions={"BTC_USDT": Decimal("0")}, open_order_ids=["sl-btc", "tp-xrp"])
    factory = UnitOfWorkFactory(db_path)
    checker = ConsistencyChecker(
        uow_factory=factory,
        remote=remote,
        repair_engine=RepairEngine(uow_factory=factory, remote=remote),
    )

    first = asyncio.run(checker.run_once())
    second = asyncio.run(checker.run_once())

    assert first.report is not None and first.report.has_divergences()
    assert second.report is not None
    assert second.report.has_divergences() is False
    assert second.repair is None
    assert sorted(remote.cancel_calls) == ["sl-btc", "tp-xrp"]


def test_repeating_the_same_report_is_a_noop(db_path: str) -> None:
    _seed(db_path)
    remote = PaperRemoteState(open_order_ids=["sl-btc", "tp-xrp"])
    engine = RepairEngine(uow_factory=UnitOfWorkFactory(db_path), remote=remote)
    report = DivergenceReport(
        orphan_positions=[
            OrphanPosition(
                symbol="BTC", side=Side.LONG, local_size=Decimal("0.5"), remote_size=Decimal("0")
            )
        ],
        orphan_orders=[OrphanConditionalOrder(order_id="tp-xrp", symbol="XRP", side=Side.SHORT, kind="take_profit")],
    )

    first = asyncio.run(engine.repair(report))
    second = asyncio.run(engine.repair(report))

    assert first.positions_removed == ["BTC:long"]
    assert sorted(first.orders_cancelled) == ["sl-btc", "tp-xrp"]
    assert second.positions_removed == []
    assert second.orders_cancelled == []
    assert second.remote_cancel_failures == ["tp-xrp"]
    assert second.item_errors == []


def test_remote_cancel_failure_still_cancels_locally(db_path: str) -> None:
    _seed(db_path)
    remote = _RejectingRemote()
    engine = RepairEngine(uow_factory=UnitOfWorkFactory(db_path), remote=remote)
    report = DivergenceReport(
        orphan_orders=[OrphanConditionalOrder(order_id="tp-xrp", symbol="XRP", side=Side.SHORT, kind="take_profit")],
    )

    result = asyncio.run(engine.repair(report))

    assert remote.cancel_calls == ["tp-xrp"]
    assert result.remote_cancel_failures == ["tp-xrp"]
    assert result.orders_cancelled == ["tp-xrp"]
    with UnitOfWorkFactory(db_path).reader() as uow:
        order = uow.ledger.get_order("tp-xrp")
    assert order is not None and order.status is ConditionalOrderStatus.CANCELLED


def test_store_failure_on_one_item_does_not_stop_the_rest(tmp_path) -> None:
    remote = PaperRemoteState(open_order_ids=["tp-xrp"])
    engine = RepairEngine(uow_factory=UnitOfWorkFactory(str(tmp_path / "missing" / "db.sqlite")), remote=remote)
    report = DivergenceReport(
        orphan_positions=[
            OrphanPosition(symbol="BTC", side=Side.LONG, local_size=Decimal("1"), remote_size=Decimal("0"))
        ],
        orphan_orders=[OrphanConditionalOrder(order_id="tp-xrp", symbol="XRP", side=Side.SHORT, kind="take_profit")],
    )

    result = asyncio.run(engine.repair(report))

    assert len(result.item_errors) == 2
    assert remote.cancel_calls == ["tp-xrp"]
