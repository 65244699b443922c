from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from stagelock.observability import get_instrumentation

logger = logging.getLogger(__name__)


class PeriodicRunner:
    """Fixed-interval driver with an immediate first tick.

    A tick that fires while the previous pass is still running is skipped,
    never queued. stop() ends the timer but lets an in-flight pass finish.
    """

    def __init__(
        self,
        *,
        name: str,
        interval_seconds: float,
        task: Callable[[], Awaitable[object]],
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.name = name
        self.interval_seconds = interval_seconds
        self._task_fn = task
        self._loop_task: asyncio.Task[None] | None = None
        self._in_flight: asyncio.Task[object | None] | None = None
        self.completed_runs = 0
        self.skipped_ticks = 0

    @property
    def started(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def busy(self) -> bool:
        return self._in_flight is not None and not self._in_flight.done()

    def start(self) -> None:
        if self.started:
            logger.warning("periodic_runner_already_started", extra={"extra": {"runner": self.name}})
            return
        logger.info(
            "periodic_runner_started",
            extra={"extra": {"runner": self.name, "interval_seconds": self.interval_seconds}},
        )
        self._loop_task = asyncio.create_task(self._loop(), name=f"{self.name}-timer")

    async def stop(self) -> None:
        loop_task = self._loop_task
        self._loop_task = None
        if loop_task is not None:
            loop_task.cancel()
            try:
                await loop_task
            except asyncio.CancelledError:
                pass
        in_flight = self._in_flight
        if in_flight is not None and not in_flight.done():
            await asyncio.shield(in_flight)
        logger.info("periodic_runner_stopped", extra={"extra": {"runner": self.name}})

    async def run_once(self) -> object | None:
        """Run one pass now and return its result, or None when a pass is already running."""
        task = self._tick()
        if task is None:
            return None
        return await task

    def _tick(self) -> asyncio.Task[object | None] | None:
        if self.busy:
            self.skipped_ticks += 1
            get_instrumentation().counter("periodic_runner_skipped_ticks_total", attrs={"runner": self.name})
            logger.debug("periodic_runner_tick_skipped", extra={"extra": {"runner": self.name}})
            return None
        self._in_flight = asyncio.create_task(self._guarded(), name=f"{self.name}-pass")
        return self._in_flight

    async def _guarded(self) -> object | None:
        started = time.monotonic()
        try:
            return await self._task_fn()
        except Exception:  # noqa: BLE001
            logger.exception("periodic_runner_pass_failed", extra={"extra": {"runner": self.name}})
            return None
        finally:
            self.completed_runs += 1
            logger.debug(
                "periodic_runner_pass_finished",
                extra={
                    "extra": {
                        "runner": self.name,
                        "elapsed_ms": int((time.monotonic() - started) * 1000),
                    }
                },
            )

    async def _loop(self) -> None:
        while True:
            self._tick()
            await asyncio.sleep(self.interval_seconds)
