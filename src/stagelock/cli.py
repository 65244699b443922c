from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
from datetime import UTC, datetime
from decimal import Decimal

from stagelock.adapters.paper_remote import PaperRemoteState, PaperStageExecutor
from stagelock.config import Settings
from stagelock.domain.divergence import DivergenceReport
from stagelock.logging_context import with_logging_context
from stagelock.logging_utils import setup_logging
from stagelock.observability import configure_instrumentation, shutdown_instrumentation
from stagelock.persistence.uow import UnitOfWorkFactory
from stagelock.services.lease_coordinator import LeaseCoordinator
from stagelock.services.runtime import build_runtime

logger = logging.getLogger(__name__)


def _db_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--db",
        default=None,
        help="State sqlite DB path (defaults to env STATE_DB_PATH)",
    )


def _settings_for(settings: Settings, db_path: str | None) -> Settings:
    if db_path is None:
        return settings
    return settings.model_copy(update={"state_db_path": db_path})


def _print_json(payload: object) -> None:
    print(json.dumps(payload, sort_keys=True, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stagelock",
        epilog=(
            "Remote snapshots are JSON objects: "
            '{"positions": [{"contract": "BTC_USDT", "size": "0.5"}], '
            '"prices": {"BTC_USDT": "65000"}, "open_orders": ["123"]}'
        ),
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    reconcile_parser = subparsers.add_parser(
        "reconcile", help="Run one consistency pass against a remote snapshot"
    )
    _db_arg(reconcile_parser)
    reconcile_parser.add_argument("--snapshot", required=True, help="Remote snapshot JSON path")
    reconcile_parser.add_argument(
        "--dry-run", action="store_true", help="Classify divergences without repairing"
    )

    partial_exit_parser = subparsers.add_parser(
        "partial-exit", help="Run one partial-exit check with the paper executor"
    )
    _db_arg(partial_exit_parser)
    partial_exit_parser.add_argument("--snapshot", required=True, help="Remote snapshot JSON path")
    partial_exit_parser.add_argument("--caller", default="cli", help="Caller identity used for leases")
    partial_exit_parser.add_argument(
        "--close-fraction",
        type=Decimal,
        default=Decimal("0"),
        help="Fraction of the position the paper executor reports as closed per stage",
    )

    monitor_parser = subparsers.add_parser(
        "monitor", help="Run both periodic loops against a remote snapshot"
    )
    _db_arg(monitor_parser)
    monitor_parser.add_argument("--snapshot", required=True, help="Remote snapshot JSON path")
    monitor_parser.add_argument(
        "--duration-seconds",
        type=float,
        default=None,
        help="Stop after this many seconds (default: run until interrupted)",
    )

    leases_parser = subparsers.add_parser("leases", help="Inspect or release stage leases")
    leases_subparsers = leases_parser.add_subparsers(dest="leases_command", required=True)
    leases_list_parser = leases_subparsers.add_parser("list", help="List lease rows with age")
    _db_arg(leases_list_parser)
    leases_release_parser = leases_subparsers.add_parser(
        "release", help="Release a lease held by the given holder"
    )
    _db_arg(leases_release_parser)
    leases_release_parser.add_argument("--key", required=True, help="Lease resource key")
    leases_release_parser.add_argument("--holder", required=True, help="Holder that owns the lease")

    history_parser = subparsers.add_parser("history", help="Show execution history for a symbol")
    _db_arg(history_parser)
    history_parser.add_argument("--symbol", required=True)
    history_parser.add_argument("--last", type=int, default=50)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = _settings_for(Settings(), getattr(args, "db", None))
    setup_logging(settings.log_level)
    configure_instrumentation(
        enabled=settings.observability_enabled,
        metrics_exporter=settings.observability_metrics_exporter,
        otlp_endpoint=settings.observability_otlp_endpoint,
        prometheus_port=settings.observability_prometheus_port,
    )
    try:
        return _dispatch(parser, args, settings)
    finally:
        shutdown_instrumentation()


def _dispatch(parser: argparse.ArgumentParser, args: argparse.Namespace, settings: Settings) -> int:
    with with_logging_context(run_id=f"cli-{os.getpid()}"):
        if args.command == "reconcile":
            return run_reconcile(settings=settings, snapshot=args.snapshot, dry_run=args.dry_run)
        if args.command == "partial-exit":
            return run_partial_exit(
                settings=settings,
                snapshot=args.snapshot,
                caller=args.caller,
                close_fraction=args.close_fraction,
            )
        if args.command == "monitor":
            return run_monitor(
                settings=settings,
                snapshot=args.snapshot,
                duration_seconds=args.duration_seconds,
            )
        if args.command == "leases":
            if args.leases_command == "list":
                return run_leases_list(settings=settings)
            return run_leases_release(settings=settings, key=args.key, holder=args.holder)
        if args.command == "history":
            return run_history(settings=settings, symbol=args.symbol, last=args.last)
    parser.error(f"unknown command {args.command}")
    return 2


def run_reconcile(*, settings: Settings, snapshot: str, dry_run: bool) -> int:
    remote = PaperRemoteState.from_snapshot_file(snapshot)
    runtime = build_runtime(settings, remote=remote, executor=PaperStageExecutor())
    if dry_run:
        report: DivergenceReport = asyncio.run(runtime.checker.check())
        _print_json({"dry_run": True, "counts": report.counts()})
        return 0
    result = asyncio.run(runtime.checker.run_once())
    _print_json(result.as_dict())
    return 0 if result.ok else 1


def run_partial_exit(
    *, settings: Settings, snapshot: str, caller: str, close_fraction: Decimal
) -> int:
    remote = PaperRemoteState.from_snapshot_file(snapshot)
    executor = PaperStageExecutor(close_fraction=close_fraction)
    runtime = build_runtime(settings, remote=remote, executor=executor)
    summary = asyncio.run(runtime.coordinator.run_check(caller))
    _print_json(summary.as_dict())
    return 0


def run_monitor(*, settings: Settings, snapshot: str, duration_seconds: float | None) -> int:
    remote = PaperRemoteState.from_snapshot_file(snapshot)
    runtime = build_runtime(settings, remote=remote, executor=PaperStageExecutor())

    async def _run() -> None:
        runtime.start()
        try:
            if duration_seconds is None:
                await asyncio.Event().wait()
            else:
                await asyncio.sleep(duration_seconds)
        finally:
            await runtime.stop()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        logger.info("monitor_interrupted")
    return 0


def run_leases_list(*, settings: Settings) -> int:
    leases = LeaseCoordinator(
        UnitOfWorkFactory(settings.state_db_path),
        lease_timeout_seconds=settings.lease_timeout_seconds,
    )
    now = datetime.now(UTC)
    rows = [
        {
            "resource_key": lease.resource_key,
            "holder": lease.holder,
            "last_refreshed": lease.last_refreshed.isoformat(),
            "age_seconds": round(lease.age_seconds(now), 3),
            "expired": leases.is_expired(lease),
        }
        for lease in leases.list_leases()
    ]
    _print_json({"db_path": settings.state_db_path, "leases": rows})
    return 0


def run_leases_release(*, settings: Settings, key: str, holder: str) -> int:
    leases = LeaseCoordinator(
        UnitOfWorkFactory(settings.state_db_path),
        lease_timeout_seconds=settings.lease_timeout_seconds,
    )
    released = leases.release(key, holder)
    logger.warning(
        "lease_release_audit",
        extra={"extra": {"resource_key": key, "holder": holder, "released": released}},
    )
    _print_json({"released": released, "resource_key": key, "holder": holder})
    return 0 if released else 2


def run_history(*, settings: Settings, symbol: str, last: int) -> int:
    with UnitOfWorkFactory(settings.state_db_path).reader() as uow:
        entries = uow.history.list_for_symbol(symbol, limit=last)
    _print_json(
        {
            "symbol": symbol,
            "entries": [
                {
                    "id": entry.entry_id,
                    "resource_key": entry.resource_key,
                    "stage": entry.stage,
                    "status": entry.status.value,
                    "ts": entry.ts.isoformat(),
                    "trigger_price": entry.trigger_price,
                    "original_stop_price": entry.original_stop_price,
                    "new_stop_price": entry.new_stop_price,
                    "closed_quantity": entry.closed_quantity,
                    "caller": entry.caller,
                    "message": entry.message,
                }
                for entry in entries
            ],
        }
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
