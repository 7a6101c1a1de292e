"""Tests for the timer schedulers."""

from __future__ import annotations

import asyncio

import pytest

from collab_notify.scheduler import LoopScheduler, ManualScheduler


@pytest.mark.unit
def test_manual_scheduler_fires_in_order() -> None:
    scheduler = ManualScheduler()
    fired: list[str] = []
    scheduler.schedule(200, lambda: fired.append("b"))
    scheduler.schedule(100, lambda: fired.append("a"))
    assert scheduler.advance(150) == 1
    assert fired == ["a"]
    assert scheduler.now_ms() == 150
    scheduler.advance(50)
    assert fired == ["a", "b"]


@pytest.mark.unit
def test_manual_scheduler_cancel() -> None:
    scheduler = ManualScheduler()
    fired: list[int] = []
    handle = scheduler.schedule(10, lambda: fired.append(1))
    handle.cancel()
    assert scheduler.pending == 0
    assert scheduler.advance(100) == 0
    assert fired == []


@pytest.mark.unit
def test_manual_scheduler_runs_timers_scheduled_during_advance() -> None:
    scheduler = ManualScheduler(start_ms=1000)
    times: list[float] = []

    def first() -> None:
        times.append(scheduler.now_ms())
        scheduler.schedule(10, lambda: times.append(scheduler.now_ms()))

    scheduler.schedule(5, first)
    scheduler.advance(100)
    assert times == [1005, 1015]
    assert scheduler.now_ms() == 1100


@pytest.mark.unit
def test_manual_scheduler_survives_failing_callback() -> None:
    scheduler = ManualScheduler()
    fired: list[int] = []

    def boom() -> None:
        raise RuntimeError("boom")

    scheduler.schedule(1, boom)
    scheduler.schedule(2, lambda: fired.append(2))
    scheduler.advance(5)
    assert fired == [2]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_loop_scheduler_runs_on_event_loop() -> None:
    scheduler = LoopScheduler()
    done = asyncio.Event()
    scheduler.schedule(1, done.set)
    await asyncio.wait_for(done.wait(), timeout=0.5)
    assert scheduler.now_ms() > 0
