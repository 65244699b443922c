from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from stagelock.domain.leases import Lease
from stagelock.observability import get_instrumentation
from stagelock.persistence.uow import UnitOfWorkFactory

logger = logging.getLogger(__name__)

DEFAULT_LEASE_TIMEOUT_SECONDS = 30.0


def _utc_now() -> datetime:
    return datetime.now(UTC)


class LeaseCoordinator:
    """Store-backed leases keyed by resource; the primary key on resource_key is the exclusion."""

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        *,
        lease_timeout_seconds: float = DEFAULT_LEASE_TIMEOUT_SECONDS,
        now_fn: Callable[[], datetime] = _utc_now,
    ) -> None:
        if lease_timeout_seconds <= 0:
            raise ValueError("lease_timeout_seconds must be > 0")
        self._uow_factory = uow_factory
        self.lease_timeout = timedelta(seconds=lease_timeout_seconds)
        self._now = now_fn

    def acquire(self, resource_key: str, holder: str) -> bool:
        now = self._now()
        try:
            with self._uow_factory() as uow:
                reclaimed = uow.leases.delete_expired(
                    resource_key=resource_key, cutoff=now - self.lease_timeout
                )
                if reclaimed:
                    get_instrumentation().counter("lease_expired_reclaimed_total", reclaimed)
                    logger.info(
                        "lease_expired_reclaimed",
                        extra={"extra": {"resource_key": resource_key, "holder": holder}},
                    )

                current = uow.leases.get(resource_key)
                if current is not None:
                    if current.holder == holder:
                        uow.leases.refresh(resource_key=resource_key, holder=holder, now=now)
                        logger.debug(
                            "lease_refreshed",
                            extra={"extra": {"resource_key": resource_key, "holder": holder}},
                        )
                        return True
                    remaining = (self.lease_timeout - (now - current.last_refreshed)).total_seconds()
                    logger.debug(
                        "lease_busy",
                        extra={
                            "extra": {
                                "resource_key": resource_key,
                                "holder": holder,
                                "current_holder": current.holder,
                                "remaining_seconds": max(0.0, remaining),
                            }
                        },
                    )
                    return False

                if not uow.leases.insert_if_absent(resource_key=resource_key, holder=holder, now=now):
                    logger.debug(
                        "lease_insert_lost_race",
                        extra={"extra": {"resource_key": resource_key, "holder": holder}},
                    )
                    return False

                stored = uow.leases.get(resource_key)
                granted = stored is not None and stored.holder == holder
        except sqlite3.Error as exc:
            get_instrumentation().counter("lease_store_errors_total", attrs={"operation": "acquire"})
            logger.error(
                "lease_acquire_failed",
                extra={
                    "extra": {
                        "resource_key": resource_key,
                        "holder": holder,
                        "error_type": type(exc).__name__,
                        "error_message": str(exc),
                    }
                },
            )
            return False

        if granted:
            logger.debug(
                "lease_acquired", extra={"extra": {"resource_key": resource_key, "holder": holder}}
            )
        else:
            logger.warning(
                "lease_verify_mismatch",
                extra={"extra": {"resource_key": resource_key, "holder": holder}},
            )
        return granted

    def release(self, resource_key: str, holder: str) -> bool:
        """Delete the lease only when the caller holds it; returns whether a row was removed."""
        try:
            with self._uow_factory() as uow:
                released = uow.leases.delete_if_holder(resource_key=resource_key, holder=holder)
        except sqlite3.Error as exc:
            logger.error(
                "lease_release_failed",
                extra={
                    "extra": {
                        "resource_key": resource_key,
                        "holder": holder,
                        "error_type": type(exc).__name__,
                        "error_message": str(exc),
                    }
                },
            )
            return False
        if released:
            logger.debug(
                "lease_released", extra={"extra": {"resource_key": resource_key, "holder": holder}}
            )
        return released

    def get(self, resource_key: str) -> Lease | None:
        with self._uow_factory.reader() as uow:
            return uow.leases.get(resource_key)

    def list_leases(self) -> list[Lease]:
        with self._uow_factory.reader() as uow:
            return uow.leases.list_all()

    def is_expired(self, lease: Lease) -> bool:
        return lease.is_expired(self._now(), self.lease_timeout)
