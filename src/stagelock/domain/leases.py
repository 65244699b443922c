from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta


@dataclass(frozen=True)
class Lease:
    resource_key: str
    holder: str
    last_refreshed: datetime

    def age_seconds(self, now: datetime) -> float:
        return (now - self.last_refreshed).total_seconds()

    def is_expired(self, now: datetime, timeout: timedelta) -> bool:
        return now - self.last_refreshed >= timeout
