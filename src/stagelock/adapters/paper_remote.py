from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from decimal import Decimal
from pathlib import Path

from stagelock.domain.stages import StageRequest, StageResult
from stagelock.ports import RemotePosition

logger = logging.getLogger(__name__)


def normalize_usdt_contract(symbol: str) -> str:
    """Map ledger symbols (BTC, BTCUSDT, BTC_USDT, btc) onto the BASE_USDT contract form."""
    cleaned = str(symbol).strip().upper().replace("-", "_").replace("/", "_")
    if cleaned.endswith("_USDT"):
        return cleaned
    if cleaned.endswith("USDT"):
        cleaned = cleaned[: -len("USDT")]
    return f"{cleaned.rstrip('_')}_USDT"


class PaperRemoteState:
    """In-memory remote book used for dry runs and operator tooling.

    Implements the remote reader, writer and price reader ports. Cancelling an
    unknown order returns False, the same as an exchange answering "not found".
    """

    def __init__(
        self,
        *,
        positions: Mapping[str, Decimal] | None = None,
        prices: Mapping[str, Decimal] | None = None,
        open_order_ids: Iterable[str] = (),
    ) -> None:
        self.positions: dict[str, Decimal] = {
            contract: Decimal(str(size)) for contract, size in (positions or {}).items()
        }
        self.prices: dict[str, Decimal] = {
            contract: Decimal(str(price)) for contract, price in (prices or {}).items()
        }
        self.open_order_ids: set[str] = set(open_order_ids)
        self.cancel_calls: list[str] = []

    @classmethod
    def from_snapshot_file(cls, path: str | Path) -> PaperRemoteState:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            raise ValueError("remote snapshot must be a JSON object")
        positions = {
            str(item["contract"]): Decimal(str(item.get("size", "0")))
            for item in payload.get("positions", [])
        }
        prices = {str(key): Decimal(str(value)) for key, value in payload.get("prices", {}).items()}
        return cls(
            positions=positions,
            prices=prices,
            open_order_ids=[str(item) for item in payload.get("open_orders", [])],
        )

    def normalize_contract(self, symbol: str) -> str:
        return normalize_usdt_contract(symbol)

    async def list_positions(self) -> list[RemotePosition]:
        return [
            RemotePosition(contract=contract, size=size)
            for contract, size in sorted(self.positions.items())
        ]

    async def cancel_order(self, order_id: str) -> bool:
        self.cancel_calls.append(order_id)
        if order_id not in self.open_order_ids:
            return False
        self.open_order_ids.discard(order_id)
        return True

    async def get_last_price(self, contract: str) -> Decimal:
        try:
            return self.prices[contract]
        except KeyError:
            raise LookupError(f"no paper price for {contract}") from None


class PaperStageExecutor:
    """Logs the stage instead of trading; the first stage moves the stop to entry."""

    def __init__(self, *, close_fraction: Decimal = Decimal("0")) -> None:
        self.close_fraction = close_fraction
        self.requests: list[StageRequest] = []

    async def execute(self, request: StageRequest) -> StageResult:
        self.requests.append(request)
        closed = (request.quantity * self.close_fraction) if self.close_fraction > 0 else None
        logger.info(
            "paper_stage_executed",
            extra={
                "extra": {
                    "resource_key": request.resource_key,
                    "stage": request.stage,
                    "price": str(request.current_price),
                    "closed_quantity": str(closed) if closed is not None else None,
                }
            },
        )
        return StageResult(
            success=True,
            message=f"paper stage {request.stage} at {request.current_price}",
            new_stop_price=request.entry_price if request.stage == 1 else None,
            closed_quantity=closed,
        )
