"""Subscription pool: one live change feed per recipient, shared by many subscribers.

Each subscriber is an alias on the recipient's pooled feed. Unsubscribing only
marks the alias unused; the feed stays warm (IDLE) until a sweep finds it
unused for longer than ``max_age_ms``.
"""

from __future__ import annotations

import asyncio
import itertools
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from collab_notify.cache import ReadCache
from collab_notify.catalog import CategoryCatalog
from collab_notify.config import CacheConfig, PoolConfig, ThrottleConfig
from collab_notify.errors import SubscriptionError
from collab_notify.logs import get_logger
from collab_notify.observers import EngineEvent, EngineSignal, ObserverRegistry
from collab_notify.record import NotificationRecord
from collab_notify.scheduler import Scheduler, TimerHandle
from collab_notify.store.base import FeedHandle, NotificationStore, StoreQuery
from collab_notify.throttle import SnapshotThrottler

logger = get_logger(__name__)

SubscriberCallback = Callable[[list[NotificationRecord]], None]
Unsubscribe = Callable[[], None]


class PoolState(str, Enum):
    NONE = "none"
    ACTIVE = "active"
    IDLE = "idle"


@dataclass
class _Alias:
    callback: SubscriberCallback
    last_used: float
    active: bool = True


@dataclass
class _PooledFeed:
    user_id: str
    throttler: SnapshotThrottler
    last_used: float
    aliases: dict[int, _Alias] = field(default_factory=dict)
    handle: FeedHandle | None = None
    opening: asyncio.Task[FeedHandle] | None = None
    closed: bool = False

    @property
    def active_aliases(self) -> list[_Alias]:
        return [a for a in self.aliases.values() if a.active]


def feed_query(user_id: str, limit: int) -> StoreQuery:
    return StoreQuery().where("userId", user_id).ordered("createdAt").limited(limit)


class SubscriptionPool:
    def __init__(
        self,
        store: NotificationStore,
        *,
        scheduler: Scheduler,
        catalog: CategoryCatalog,
        read_cache: ReadCache,
        observers: ObserverRegistry | None = None,
        config: PoolConfig | None = None,
        throttle_config: ThrottleConfig | None = None,
        cache_config: CacheConfig | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._store = store
        self._scheduler = scheduler
        self._catalog = catalog
        self._read_cache = read_cache
        self._observers = observers or ObserverRegistry()
        self._config = config or PoolConfig()
        self._throttle_config = throttle_config or ThrottleConfig()
        self._cache_config = cache_config or CacheConfig()
        self._rng = rng or random.Random()
        self._feeds: dict[str, _PooledFeed] = {}
        self._alias_ids = itertools.count(1)
        self._sweep_timer: TimerHandle | None = None

    # ------------------------------------------------------------------
    # Subscribe / unsubscribe
    # ------------------------------------------------------------------

    async def subscribe(self, user_id: str, callback: SubscriberCallback) -> Unsubscribe:
        """Attach ``callback`` to the recipient's pooled feed, opening it if needed.

        Raises:
            SubscriptionError: If the real feed could not be opened.
        """
        if not user_id:
            logger.warning("subscribe called without user id; delivering empty list")
            self._scheduler.schedule(0, lambda: callback([]))
            return lambda: None

        now = self._scheduler.now_ms()
        entry = self._feeds.get(user_id)
        if entry is None:
            entry = self._new_entry(user_id, now)
            self._feeds[user_id] = entry
            entry.opening = asyncio.ensure_future(self._open(entry))
            logger.debug("pool: opening feed", user_id=user_id)
        else:
            logger.debug("pool: reusing feed", user_id=user_id, aliases=len(entry.active_aliases))

        alias_id = next(self._alias_ids)
        alias = _Alias(callback=callback, last_used=now)
        entry.aliases[alias_id] = alias
        entry.last_used = now
        self._replay(entry, alias)

        if entry.opening is not None:
            try:
                await asyncio.shield(entry.opening)
            except Exception as exc:
                entry.aliases.pop(alias_id, None)
                raise SubscriptionError(f"could not open feed for {user_id}: {exc}") from exc

        return self._make_unsubscribe(user_id, entry, alias_id)

    def _new_entry(self, user_id: str, now: float) -> _PooledFeed:
        entry: _PooledFeed

        def deliver(records: list[NotificationRecord]) -> None:
            self._fan_out(entry, records)

        throttler = SnapshotThrottler(
            user_id,
            scheduler=self._scheduler,
            catalog=self._catalog,
            read_cache=self._read_cache,
            deliver=deliver,
            config=self._throttle_config,
        )
        entry = _PooledFeed(user_id=user_id, throttler=throttler, last_used=now)
        return entry

    async def _open(self, entry: _PooledFeed) -> FeedHandle:
        def on_error(exc: Exception) -> None:
            self._on_feed_error(entry, exc)

        try:
            handle = await self._store.watch(
                feed_query(entry.user_id, self._config.feed_limit),
                entry.throttler.on_raw_event,
                on_error,
            )
        except Exception:
            logger.error("pool: failed to open feed", user_id=entry.user_id, exc_info=True)
            entry.throttler.cancel()
            if self._feeds.get(entry.user_id) is entry:
                del self._feeds[entry.user_id]
            raise
        finally:
            entry.opening = None

        if entry.closed:
            handle.close()
        else:
            entry.handle = handle
            self._observers.emit(EngineSignal(EngineEvent.FEED_OPENED, user_id=entry.user_id))
        return handle

    def _replay(self, entry: _PooledFeed, alias: _Alias) -> None:
        """Hand a joining subscriber the read cache entry, or the feed's last delivery once that expired."""
        cached = self._read_cache.get(entry.user_id)
        if cached is not None:
            records = cached.records
            logger.debug(
                "pool: replaying cached records", user_id=entry.user_id, count=len(records), age_ms=cached.age_ms
            )
        elif entry.throttler.last_delivered is not None:
            records = list(entry.throttler.last_delivered)
            logger.debug("pool: replaying last feed delivery", user_id=entry.user_id, count=len(records))
        else:
            return

        def replay() -> None:
            if alias.active:
                alias.callback(list(records))

        self._scheduler.schedule(0, replay)

    def _make_unsubscribe(self, user_id: str, entry: _PooledFeed, alias_id: int) -> Unsubscribe:
        def unsubscribe() -> None:
            alias = entry.aliases.get(alias_id)
            if alias is None or not alias.active:
                return
            now = self._scheduler.now_ms()
            alias.active = False
            alias.last_used = now
            entry.last_used = now
            del entry.aliases[alias_id]
            if not entry.active_aliases:
                logger.debug("pool: feed idle", user_id=user_id)
                self._schedule_sweep()
            self._sweep(None, keep=entry)

        return unsubscribe

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def _fan_out(self, entry: _PooledFeed, records: list[NotificationRecord]) -> None:
        aliases = entry.active_aliases
        if not aliases:
            logger.debug("pool: delivery with no subscribers", user_id=entry.user_id)
            return
        for alias in aliases:
            try:
                alias.callback(list(records))
            except Exception:  # pylint: disable=broad-exception-caught
                logger.exception("subscriber callback failed", user_id=entry.user_id)
        self._observers.emit(
            EngineSignal(
                EngineEvent.RECORDS_DELIVERED,
                user_id=entry.user_id,
                record_ids=tuple(r.id for r in records),
                count=len(records),
            )
        )

    def _on_feed_error(self, entry: _PooledFeed, exc: Exception) -> None:
        error = SubscriptionError(f"feed for {entry.user_id} failed: {exc}")
        logger.error("pool: feed error; detaching", user_id=entry.user_id, error=str(error))
        self._observers.emit(EngineSignal(EngineEvent.FEED_ERROR, user_id=entry.user_id, error=str(error)))
        self._detach(entry)

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def _schedule_sweep(self) -> None:
        """Arm one timer for the earliest idle feed expiry."""
        if self._sweep_timer is not None:
            self._sweep_timer.cancel()
            self._sweep_timer = None
        idle = [e.last_used for e in self._feeds.values() if not e.active_aliases and e.opening is None]
        if not idle:
            return

        def run() -> None:
            self._sweep_timer = None
            self.sweep()
            self._schedule_sweep()

        delay = min(idle) + self._config.max_age_ms - self._scheduler.now_ms()
        self._sweep_timer = self._scheduler.schedule(max(0.0, delay), run)

    def sweep(self, max_age_ms: float | None = None) -> int:
        """Detach idle feeds unused for at least ``max_age_ms``. Returns the number detached."""
        return self._sweep(max_age_ms, keep=None)

    def _sweep(self, max_age_ms: float | None, keep: _PooledFeed | None) -> int:
        max_age = self._config.max_age_ms if max_age_ms is None else max_age_ms
        now = self._scheduler.now_ms()
        expired = [
            e for e in self._feeds.values()
            if e is not keep and not e.active_aliases and e.opening is None and now - e.last_used >= max_age
        ]
        for entry in expired:
            self._detach(entry)
        if expired:
            logger.debug("pool: detached idle feeds", count=len(expired))
        if self._rng.random() < self._cache_config.sweep_rate:
            self._read_cache.sweep(self._cache_config.sweep_max_age_ms)
        return len(expired)

    def _detach(self, entry: _PooledFeed) -> None:
        entry.closed = True
        entry.throttler.cancel()
        if entry.handle is not None:
            entry.handle.close()
            entry.handle = None
        if self._feeds.get(entry.user_id) is entry:
            del self._feeds[entry.user_id]
        self._observers.emit(EngineSignal(EngineEvent.FEED_CLOSED, user_id=entry.user_id))

    def state(self, user_id: str) -> PoolState:
        entry = self._feeds.get(user_id)
        if entry is None:
            return PoolState.NONE
        return PoolState.ACTIVE if entry.active_aliases else PoolState.IDLE

    @property
    def feed_count(self) -> int:
        return len(self._feeds)

    def subscriber_count(self, user_id: str) -> int:
        entry = self._feeds.get(user_id)
        return len(entry.active_aliases) if entry else 0

    def close(self) -> None:
        """Detach every feed and cancel pending timers."""
        if self._sweep_timer is not None:
            self._sweep_timer.cancel()
            self._sweep_timer = None
        for entry in list(self._feeds.values()):
            self._detach(entry)
