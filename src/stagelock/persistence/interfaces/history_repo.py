from __future__ import annotations

from datetime import datetime
from typing import Protocol

from stagelock.domain.history import ExecutionHistoryEntry


class HistoryRepoProtocol(Protocol):
    def append(self, entry: ExecutionHistoryEntry) -> int: ...

    def count_completed(
        self, *, resource_key: str, stage: int, since: datetime | None = None
    ) -> int: ...

    def first_completed(self, resource_key: str) -> ExecutionHistoryEntry | None: ...

    def list_for_symbol(self, symbol: str, *, limit: int = 100) -> list[ExecutionHistoryEntry]: ...
