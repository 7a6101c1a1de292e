"""Creation deduplicator: one in-flight creation per key, short-TTL result reuse."""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

from collab_notify.logs import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_TTL_MS = 10_000
DEFAULT_WAIT_MS = 3_000


@dataclass(frozen=True)
class _CachedResult(Generic[T]):
    timestamp: float
    result: T


class CreationDeduplicator:
    """Suppresses duplicate creation calls for the same logical event within one process.

    Concurrent callers for a key wait for the running peer (up to ``wait_ms``)
    and receive its result. A caller whose peer outlives the wait proceeds under
    a secondary lock so it is never starved.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] | None = None,
        wait_ms: float = DEFAULT_WAIT_MS,
        eviction_rate: float = 0.02,
        rng: random.Random | None = None,
    ) -> None:
        self._clock = clock or (lambda: time.time() * 1000)
        self._wait_ms = wait_ms
        self._eviction_rate = eviction_rate
        self._rng = rng or random.Random()
        self._results: dict[str, _CachedResult[Any]] = {}
        self._in_flight: dict[str, asyncio.Event] = {}

    def _fresh(self, key: str, ttl_ms: float) -> _CachedResult[Any] | None:
        cached = self._results.get(key)
        if cached is not None and self._clock() - cached.timestamp < ttl_ms:
            return cached
        return None

    async def create_once(self, key: str, factory: Callable[[], Awaitable[T]], ttl_ms: float = DEFAULT_TTL_MS) -> T:
        cached = self._fresh(key, ttl_ms)
        if cached is not None:
            logger.debug("dedup: reusing recent result", key=key)
            return cached.result  # type: ignore[no-any-return]

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._wait_ms / 1000
        held: list[str]
        while True:
            peer = self._in_flight.get(key)
            if peer is None:
                held = [key]
                break
            remaining = deadline - loop.time()
            if remaining <= 0:
                # Peer is stuck; proceed under a salted lock instead of waiting forever.
                lock_key = f"{key}:{int(self._clock())}"
                logger.warning("dedup: in-flight peer exceeded wait; proceeding", key=key, lock_key=lock_key)
                held = [lock_key]
                break
            try:
                await asyncio.wait_for(peer.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                pass
            cached = self._fresh(key, ttl_ms)
            if cached is not None:
                return cached.result  # type: ignore[no-any-return]

        done = asyncio.Event()
        for k in held:
            self._in_flight[k] = done
        try:
            result = await factory()
            self._results[key] = _CachedResult(timestamp=self._clock(), result=result)
            return result
        finally:
            for k in held:
                if self._in_flight.get(k) is done:
                    del self._in_flight[k]
            done.set()
            if self._rng.random() < self._eviction_rate:
                self.evict(ttl_ms)

    def is_in_flight(self, key: str) -> bool:
        return key in self._in_flight

    def discard(self, key: str) -> None:
        """Forget a cached result so the next call runs the factory again."""
        self._results.pop(key, None)

    def evict(self, max_age_ms: float) -> int:
        now = self._clock()
        stale = [k for k, v in self._results.items() if now - v.timestamp > max_age_ms]
        for k in stale:
            del self._results[k]
        if stale:
            logger.debug("dedup: evicted stale results", count=len(stale))
        return len(stale)

    def clear(self) -> None:
        self._results.clear()
        for event in self._in_flight.values():
            event.set()
        self._in_flight.clear()

    def __len__(self) -> int:
        return len(self._results)
