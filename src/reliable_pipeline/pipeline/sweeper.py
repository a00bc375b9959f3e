"""SweeperWorker — periodic expiration of idempotency records and assemblies."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING

from ..ports.background_worker import IBackgroundWorker

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from ..models import SweepReport

logger = logging.getLogger("reliable_pipeline.sweeper")


class SweeperWorker(IBackgroundWorker):
    """Calls ``sweep`` every ``interval`` seconds until stopped.

    :meth:`trigger` runs a cycle right away. A failing cycle is logged and
    counted in :attr:`consecutive_failures`; the next tick tries again.
    ``stop`` lets a cycle in progress finish (bounded by ``stop_timeout``).
    """

    def __init__(
        self,
        sweep: Callable[[], Awaitable[SweepReport]],
        interval: float = 60.0,
        *,
        stop_timeout: float = 5.0,
    ) -> None:
        self._sweep = sweep
        self._interval = interval
        self._stop_timeout = stop_timeout
        self._wake = asyncio.Event()
        self._stopping = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self.last_report: SweepReport | None = None
        self.consecutive_failures = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._stopping.is_set()

    def trigger(self) -> None:
        self._wake.set()

    async def start(self) -> None:
        if self._task is not None:
            return
        self._stopping.clear()
        self._wake.clear()
        self._task = asyncio.create_task(self._loop(), name="reliable-pipeline-sweeper")
        logger.info("SweeperWorker started (interval=%.1fs)", self._interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        self._stopping.set()
        self._wake.set()
        try:
            await asyncio.wait_for(task, timeout=self._stop_timeout)
        except asyncio.TimeoutError:
            logger.warning("SweeperWorker did not finish its cycle in time")
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.info("SweeperWorker stopped")

    async def run_once(self) -> SweepReport:
        """Run a single cycle now, outside the schedule."""
        report = await self._sweep()
        self.last_report = report
        return report

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._wake.wait(), timeout=self._interval)
            self._wake.clear()
            if self._stopping.is_set():
                break
            try:
                report = await self.run_once()
            except Exception:
                self.consecutive_failures += 1
                logger.exception(
                    "SweeperWorker cycle failed (%d in a row)",
                    self.consecutive_failures,
                )
                continue
            self.consecutive_failures = 0
            if report.expired_records or report.evicted_assemblies:
                logger.info(
                    "Swept %d expired records, evicted %d assemblies",
                    report.expired_records,
                    len(report.evicted_assemblies),
                )
