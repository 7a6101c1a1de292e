"""Per-recipient cache of recently delivered records.

New subscribers are served from here while their live feed warms up.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

from collab_notify.logs import get_logger
from collab_notify.record import NotificationRecord

logger = get_logger(__name__)

DEFAULT_TTL_MS = 60_000
SWEEP_MAX_AGE_MS = 1_800_000


class CachedItem:
    """Cached records with the time they were stored."""

    def __init__(self, records: list[NotificationRecord], cached_at: float) -> None:
        self.records = records
        self.cached_at = cached_at

    def age(self, now: float) -> float:
        return now - self.cached_at

    def is_stale(self, now: float, ttl_ms: float) -> bool:
        """Check if the entry has reached its TTL.

        Args:
            now: Current time in ms
            ttl_ms: Time-to-live in ms (0 = always stale, <0 = never stale)
        """
        if ttl_ms == 0:
            return True
        if ttl_ms < 0:
            return False
        return self.age(now) >= ttl_ms


@dataclass(frozen=True)
class CachedRecords:
    records: list[NotificationRecord]
    age_ms: float


class ReadCache:
    def __init__(self, *, clock: Callable[[], float] | None = None, ttl_ms: float = DEFAULT_TTL_MS) -> None:
        self._clock = clock or (lambda: time.time() * 1000)
        self._ttl_ms = ttl_ms
        # key = user_id
        self._entries: dict[str, CachedItem] = {}

    def get(self, user_id: str) -> CachedRecords | None:
        """Return the cached records if younger than the TTL."""
        item = self._entries.get(user_id)
        if item is None:
            return None
        now = self._clock()
        if item.is_stale(now, self._ttl_ms):
            return None
        return CachedRecords(records=list(item.records), age_ms=item.age(now))

    def put(self, user_id: str, records: list[NotificationRecord]) -> None:
        self._entries[user_id] = CachedItem(list(records), self._clock())

    def invalidate(self, user_id: str) -> None:
        self._entries.pop(user_id, None)

    def sweep(self, max_age_ms: float = SWEEP_MAX_AGE_MS) -> int:
        """Evict entries older than ``max_age_ms``. Returns the eviction count."""
        now = self._clock()
        stale = [k for k, v in self._entries.items() if v.age(now) > max_age_ms]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.debug("read cache: evicted old entries", count=len(stale))
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
