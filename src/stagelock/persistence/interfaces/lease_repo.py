from __future__ import annotations

from datetime import datetime
from typing import Protocol

from stagelock.domain.leases import Lease


class LeaseRepoProtocol(Protocol):
    def delete_expired(self, *, resource_key: str, cutoff: datetime) -> int: ...

    def get(self, resource_key: str) -> Lease | None: ...

    def refresh(self, *, resource_key: str, holder: str, now: datetime) -> bool: ...

    def insert_if_absent(self, *, resource_key: str, holder: str, now: datetime) -> bool: ...

    def delete_if_holder(self, *, resource_key: str, holder: str) -> bool: ...

    def list_all(self) -> list[Lease]: ...
