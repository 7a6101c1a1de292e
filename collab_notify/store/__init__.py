"""Store adapters: persistence and live change feeds for notification records."""

from collab_notify.store.base import FeedHandle, FieldFilter, NotificationStore, StoreDocument, StoreQuery
from collab_notify.store.sqlite import SQLiteNotificationStore

__all__ = [
    "FeedHandle",
    "FieldFilter",
    "NotificationStore",
    "SQLiteNotificationStore",
    "StoreDocument",
    "StoreQuery",
]
