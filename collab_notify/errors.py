"""Error taxonomy for notification creation, reads and live feeds."""

from __future__ import annotations


class NotificationError(Exception):
    """Base class for all notification engine errors."""


class ValidationError(NotificationError):
    """A draft cannot become a record (missing recipient)."""


class StoreWriteError(NotificationError):
    """The store rejected a create/update/delete."""

    def __init__(self, message: str, *, invalid_data: bool = False) -> None:
        super().__init__(message)
        self.invalid_data = invalid_data


class StoreReadError(NotificationError):
    """A store query or document read failed."""


class SubscriptionError(NotificationError):
    """A live change feed failed; the caller must re-subscribe."""


# Sentinel ids returned instead of raising when a create fails.
INVALID_USER_ID = "invalid-user-id"
INVALID_DATA_ERROR = "invalid-data-error"
RETRY_FAILED = "retry-failed"
GENERAL_ERROR = "general-error"
FAILED_IDS = frozenset({INVALID_USER_ID, INVALID_DATA_ERROR, RETRY_FAILED, GENERAL_ERROR})


def is_failed_id(notification_id: str | None) -> bool:
    return not notification_id or notification_id in FAILED_IDS
