from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from stagelock.persistence.uow import UnitOfWorkFactory

logger = logging.getLogger(__name__)

DEFAULT_DUPLICATE_WINDOW_SECONDS = 30.0


def _utc_now() -> datetime:
    return datetime.now(UTC)


class DuplicateExecutionGuard:
    """Reads the execution history to short-circuit repeats of an action that just completed.

    The recency check runs before lease acquisition and only saves work; a
    store failure there reports "no recent completion" and leaves the lease
    and the permanent check as the gates. The permanent check runs under the
    lease and propagates store errors so the caller never executes blind.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        *,
        window_seconds: float = DEFAULT_DUPLICATE_WINDOW_SECONDS,
        now_fn: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._uow_factory = uow_factory
        self.window_seconds = window_seconds
        self._now = now_fn

    def has_recent_completion(
        self, resource_key: str, stage: int, window_seconds: float | None = None
    ) -> bool:
        window = self.window_seconds if window_seconds is None else window_seconds
        cutoff = self._now() - timedelta(seconds=window)
        try:
            with self._uow_factory.reader() as uow:
                count = uow.history.count_completed(
                    resource_key=resource_key, stage=stage, since=cutoff
                )
        except sqlite3.Error as exc:
            logger.error(
                "recent_completion_check_failed",
                extra={
                    "extra": {
                        "resource_key": resource_key,
                        "stage": stage,
                        "error_type": type(exc).__name__,
                        "error_message": str(exc),
                    }
                },
            )
            return False
        return count > 0

    def has_ever_completed(self, resource_key: str, stage: int) -> bool:
        with self._uow_factory.reader() as uow:
            return uow.history.count_completed(resource_key=resource_key, stage=stage) > 0
