"""Snapshot throttler. Coalesces raw feed events into rate-limited deliveries.

Every raw snapshot restarts a debounce timer; only the last snapshot of a quiet
window is processed. A processed snapshot is delivered when its ``(id, read)``
state differs from the last delivery (or on the first delivery, or when an
unseen unread record appeared), no sooner than the minimum interval after the
previous delivery.
"""

from __future__ import annotations

from typing import Callable

from collab_notify.cache import ReadCache
from collab_notify.catalog import CategoryCatalog
from collab_notify.config import ThrottleConfig
from collab_notify.logs import get_logger
from collab_notify.record import NotificationRecord, sort_newest_first
from collab_notify.scheduler import Scheduler, TimerHandle
from collab_notify.store.base import StoreDocument

logger = get_logger(__name__)

DeliverFn = Callable[[list[NotificationRecord]], None]


class SnapshotThrottler:
    """Debounce and throttle state for one recipient's feed."""

    def __init__(
        self,
        user_id: str,
        *,
        scheduler: Scheduler,
        catalog: CategoryCatalog,
        read_cache: ReadCache,
        deliver: DeliverFn,
        config: ThrottleConfig | None = None,
    ) -> None:
        self.user_id = user_id
        self._scheduler = scheduler
        self._catalog = catalog
        self._read_cache = read_cache
        self._deliver = deliver
        self._config = config or ThrottleConfig()

        self._pending: list[StoreDocument] | None = None
        self._timer: TimerHandle | None = None
        self._first = True
        self._last_delivered_at: float | None = None
        self._delivered_state: frozenset[tuple[str, bool]] | None = None
        self._seen_ids: set[str] = set()
        self.last_delivered: list[NotificationRecord] | None = None

    def _has_urgent_unread(self, docs: list[StoreDocument]) -> bool:
        for doc in docs:
            data = doc.data
            category = data.get("category") or data.get("iconType") or ""
            if data.get("read") is False and self._catalog.is_urgent(category):
                return True
        return False

    def on_raw_event(self, snapshot: list[StoreDocument]) -> None:
        """Buffer the latest snapshot and restart the debounce timer."""
        self._pending = snapshot
        if self._timer is not None:
            self._timer.cancel()
        urgent = self._has_urgent_unread(snapshot)
        delay = self._config.urgent_debounce_ms if (self._first or urgent) else self._config.routine_debounce_ms
        self._timer = self._scheduler.schedule(delay, self._fire)

    def _records(self, snapshot: list[StoreDocument]) -> list[NotificationRecord]:
        records = []
        for doc in snapshot:
            record = NotificationRecord.from_document(doc.id, doc.data)
            if record.user_id == self.user_id:
                records.append(record)
        return sort_newest_first(records)

    def _fire(self) -> None:
        self._timer = None
        snapshot = self._pending
        if snapshot is None:
            return
        self._pending = None

        records = self._records(snapshot)
        state = frozenset((r.id, r.read) for r in records)
        has_new_unread = any(not r.read and r.id not in self._seen_ids for r in records)
        changed = state != self._delivered_state

        if not (self._first or changed or has_new_unread):
            logger.debug("throttle: no changes, skipping delivery", user_id=self.user_id)
            return

        if not self._first and not has_new_unread and self._last_delivered_at is not None:
            urgent = self._has_urgent_unread(snapshot)
            interval = self._config.urgent_interval_ms if urgent else self._config.routine_interval_ms
            elapsed = self._scheduler.now_ms() - self._last_delivered_at
            if elapsed < interval:
                # Deferred, not dropped: the latest state lands when the window closes.
                logger.debug("throttle: deferring delivery", user_id=self.user_id, wait_ms=interval - elapsed)
                self._pending = snapshot
                self._timer = self._scheduler.schedule(interval - elapsed, self._fire)
                return

        self._first = False
        self._last_delivered_at = self._scheduler.now_ms()
        self._delivered_state = state
        # Only ids still in the feed matter for "new unread" detection.
        self._seen_ids = {r.id for r in records}
        self.last_delivered = records
        self._read_cache.put(self.user_id, records)
        logger.debug("throttle: delivering", user_id=self.user_id, count=len(records))
        self._deliver(records)

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._pending = None
