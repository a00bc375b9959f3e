"""Tests for SweeperWorker."""

from __future__ import annotations

import asyncio

from reliable_pipeline.models import SweepReport
from reliable_pipeline.pipeline import SweeperWorker


class CountingSweep:
    def __init__(self, *errors: Exception) -> None:
        self.calls = 0
        self.swept = asyncio.Event()
        self._errors = list(errors)

    async def __call__(self) -> SweepReport:
        self.calls += 1
        self.swept.set()
        if self._errors:
            raise self._errors.pop(0)
        return SweepReport(expired_records=1, evicted_assemblies=["doc-1"])


async def test_run_once_returns_report() -> None:
    worker = SweeperWorker(CountingSweep())
    report = await worker.run_once()
    assert report.expired_records == 1
    assert not worker.is_running


async def test_trigger_sweeps_immediately() -> None:
    sweep = CountingSweep()
    worker = SweeperWorker(sweep, interval=60.0)
    await worker.start()
    try:
        worker.trigger()
        await asyncio.wait_for(sweep.swept.wait(), 1.0)
        assert sweep.calls == 1
    finally:
        await worker.stop()
    assert not worker.is_running


async def test_sweeps_periodically_and_survives_errors(caplog) -> None:
    sweep = CountingSweep(RuntimeError("store down"))
    worker = SweeperWorker(sweep, interval=0.01)

    await worker.start()
    for _ in range(200):
        if sweep.calls >= 2:
            break
        await asyncio.sleep(0.01)
    await worker.stop()

    assert sweep.calls >= 2
    assert "SweeperWorker cycle failed (1 in a row)" in caplog.text
    assert worker.consecutive_failures == 0
    assert worker.last_report.evicted_assemblies == ["doc-1"]


async def test_start_and_stop_are_idempotent() -> None:
    worker = SweeperWorker(CountingSweep(), interval=60.0)
    await worker.stop()
    await worker.start()
    await worker.start()
    assert worker.is_running
    await worker.stop()
    await worker.stop()
    assert not worker.is_running
