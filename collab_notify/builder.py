"""Turns a loose draft into a store-safe record document."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from collab_notify.catalog import COMMON_METADATA_FIELDS, CategoryCatalog
from collab_notify.errors import ValidationError
from collab_notify.logs import get_logger
from collab_notify.record import SERVER_TIMESTAMP, Category, NotificationDraft

logger = get_logger(__name__)

DEFAULT_MESSAGE = "New notification"
DEFAULT_LINK = "/"

# Metadata kept by the minimized retry write.
_MINIMAL_METADATA_FIELDS = COMMON_METADATA_FIELDS + ("commentId", "commentText")


def sanitize_value(value: Any) -> Any:
    """Replace every None (at any depth) with an empty string."""
    if value is None:
        return ""
    if isinstance(value, Mapping):
        return {str(k): sanitize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [sanitize_value(v) for v in value]
    return value


def _coerce_draft(draft: NotificationDraft | Mapping[str, Any]) -> NotificationDraft:
    if isinstance(draft, NotificationDraft):
        return draft
    return NotificationDraft.model_validate(dict(draft))


def build_record(
    draft: NotificationDraft | Mapping[str, Any],
    catalog: CategoryCatalog,
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Validate and normalize a draft into a complete record document.

    Raises:
        ValidationError: If the draft has no recipient.
    """
    draft = _coerce_draft(draft)
    user_id = (draft.user_id or "").strip()
    if not user_id:
        raise ValidationError("Notification must have a userId")

    now = now or datetime.now(timezone.utc)
    now_iso = now.isoformat()
    category = draft.category

    message = draft.message
    if not message:
        logger.warning("notification missing message; using default", user_id=user_id, category=category)
        message = DEFAULT_MESSAGE
    link = draft.link
    if not link:
        logger.warning("notification missing link; using default", user_id=user_id, category=category)
        link = DEFAULT_LINK

    metadata = catalog.skeleton(category, now_iso)
    if draft.metadata is None:
        logger.warning("notification missing metadata; using skeleton", user_id=user_id, category=category)
    else:
        metadata.update(sanitize_value(draft.metadata))
        if not metadata.get("eventDate"):
            metadata["eventDate"] = now_iso

    permitted = catalog.permitted_fields(category)
    if permitted is not None:
        stripped = sorted(k for k in metadata if k not in permitted)
        for key in stripped:
            del metadata[key]
        if stripped:
            logger.debug("stripped metadata fields", category=category, fields=stripped)

    if category == Category.COMMENT_MENTION.value and metadata.get("mentionedUserId") != user_id:
        logger.warning(
            "mention notification has mismatched ids; fixing",
            user_id=user_id,
            mentioned_user_id=metadata.get("mentionedUserId"),
        )
        metadata["mentionedUserId"] = user_id

    return {
        "userId": user_id,
        "category": category,
        "severity": draft.severity.value,
        "message": message,
        "link": link,
        "read": False,
        "createdAt": SERVER_TIMESTAMP,
        "createdAtFallback": now_iso,
        "updatedAt": SERVER_TIMESTAMP,
        "updatedAtFallback": now_iso,
        "raw": {"userId": user_id, "createdTimestamp": int(now.timestamp() * 1000)},
        "metadata": metadata,
    }


def minimal_record(document: Mapping[str, Any]) -> dict[str, Any]:
    """Reduce a built record to the subset every store accepts."""
    metadata = document.get("metadata")
    if not isinstance(metadata, Mapping):
        metadata = {}
    minimal_metadata = {f: str(metadata.get(f) or "") for f in _MINIMAL_METADATA_FIELDS}
    fallback = str(document.get("createdAtFallback") or datetime.now(timezone.utc).isoformat())
    user_id = str(document.get("userId") or "")
    return {
        "userId": user_id,
        "category": str(document.get("category") or Category.INFO.value),
        "severity": str(document.get("severity") or "info"),
        "message": str(document.get("message") or DEFAULT_MESSAGE),
        "link": str(document.get("link") or DEFAULT_LINK),
        "read": False,
        "createdAt": SERVER_TIMESTAMP,
        "createdAtFallback": fallback,
        "updatedAt": SERVER_TIMESTAMP,
        "updatedAtFallback": fallback,
        "raw": {"userId": user_id, "createdTimestamp": (document.get("raw") or {}).get("createdTimestamp", 0)},
        "metadata": minimal_metadata,
    }
