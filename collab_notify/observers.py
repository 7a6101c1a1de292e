"""Typed observer registry for engine lifecycle events."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable

from collab_notify.logs import get_logger

logger = get_logger(__name__)


class EngineEvent(str, Enum):
    RECORD_CREATED = "record_created"
    RECORD_UPDATED = "record_updated"
    RECORD_DELETED = "record_deleted"
    RECORDS_DELIVERED = "records_delivered"
    FEED_OPENED = "feed_opened"
    FEED_CLOSED = "feed_closed"
    FEED_ERROR = "feed_error"
    CACHES_RESET = "caches_reset"


@dataclass(frozen=True)
class EngineSignal:
    event: EngineEvent
    user_id: str | None = None
    record_ids: tuple[str, ...] = ()
    count: int = 0
    error: str | None = None


Observer = Callable[[EngineSignal], None]


class ObserverRegistry:
    def __init__(self) -> None:
        self._observers: dict[EngineEvent, list[Observer]] = {}

    def add(self, event: EngineEvent, callback: Observer) -> Callable[[], None]:
        """Register ``callback`` for ``event``. Returns a function that removes it."""
        self._observers.setdefault(event, []).append(callback)

        def remove() -> None:
            callbacks = self._observers.get(event, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return remove

    def emit(self, signal: EngineSignal) -> None:
        for callback in list(self._observers.get(signal.event, [])):
            try:
                callback(signal)
            except Exception:  # pylint: disable=broad-exception-caught
                logger.exception("observer callback failed", engine_event=signal.event.value)

    def clear(self) -> None:
        self._observers.clear()
