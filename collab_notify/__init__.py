"""collab_notify — notification delivery engine for project collaboration."""

from collab_notify.catalog import CategoryCatalog, CategorySchema, build_default_catalog
from collab_notify.config import EngineConfig, load_config
from collab_notify.engine import NotificationEngine
from collab_notify.errors import (
    FAILED_IDS,
    NotificationError,
    StoreReadError,
    StoreWriteError,
    SubscriptionError,
    ValidationError,
    is_failed_id,
)
from collab_notify.observers import EngineEvent, EngineSignal
from collab_notify.producer import MentionedUser, MentionResult, NotificationProducer
from collab_notify.record import Category, NotificationDraft, NotificationRecord, Severity
from collab_notify.scheduler import LoopScheduler, ManualScheduler
from collab_notify.store import SQLiteNotificationStore

__all__ = [
    "NotificationEngine",
    "NotificationProducer",
    "NotificationDraft",
    "NotificationRecord",
    "Category",
    "Severity",
    "CategoryCatalog",
    "CategorySchema",
    "build_default_catalog",
    "EngineConfig",
    "load_config",
    "EngineEvent",
    "EngineSignal",
    "MentionedUser",
    "MentionResult",
    "LoopScheduler",
    "ManualScheduler",
    "SQLiteNotificationStore",
    "FAILED_IDS",
    "is_failed_id",
    "NotificationError",
    "ValidationError",
    "StoreWriteError",
    "StoreReadError",
    "SubscriptionError",
]
