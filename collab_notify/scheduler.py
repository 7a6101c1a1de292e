"""Timer scheduling behind a small interface so time can be driven by tests.

``LoopScheduler`` runs callbacks on the asyncio event loop. ``ManualScheduler``
keeps a logical clock that only moves when ``advance()`` is called.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from dataclasses import dataclass, field
from typing import Callable, Protocol

from collab_notify.logs import get_logger

logger = get_logger(__name__)


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def now_ms(self) -> float: ...

    def schedule(self, delay_ms: float, fn: Callable[[], None]) -> TimerHandle: ...


def _safe_call(fn: Callable[[], None]) -> None:
    try:
        fn()
    except Exception:  # pylint: disable=broad-exception-caught
        logger.exception("scheduled callback failed", callback=getattr(fn, "__qualname__", repr(fn)))


class LoopScheduler:
    """Schedules callbacks with ``loop.call_later`` on the running event loop."""

    def now_ms(self) -> float:
        return time.time() * 1000

    def schedule(self, delay_ms: float, fn: Callable[[], None]) -> TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(max(0.0, delay_ms) / 1000, _safe_call, fn)


@dataclass(order=True)
class _ManualTimer:
    when: float
    seq: int
    fn: Callable[[], None] = field(compare=False)
    cancelled: bool = field(default=False, compare=False)

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Logical clock; timers fire only inside ``advance``."""

    def __init__(self, start_ms: float = 0.0) -> None:
        self._now = start_ms
        self._timers: list[_ManualTimer] = []
        self._seq = itertools.count()

    def now_ms(self) -> float:
        return self._now

    def schedule(self, delay_ms: float, fn: Callable[[], None]) -> TimerHandle:
        timer = _ManualTimer(self._now + max(0.0, delay_ms), next(self._seq), fn)
        heapq.heappush(self._timers, timer)
        return timer

    @property
    def pending(self) -> int:
        return sum(1 for t in self._timers if not t.cancelled)

    def advance(self, delta_ms: float) -> int:
        """Move the clock forward, firing due timers in order. Returns the number fired."""
        target = self._now + delta_ms
        fired = 0
        while self._timers and self._timers[0].when <= target:
            timer = heapq.heappop(self._timers)
            if timer.cancelled:
                continue
            self._now = max(self._now, timer.when)
            _safe_call(timer.fn)
            fired += 1
        self._now = target
        return fired
