"""The per-recipient notification document persisted in the store."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Placeholder the store replaces with its own clock on write.
SERVER_TIMESTAMP = "__server_timestamp__"


class Severity(str, Enum):
    SUCCESS = "success"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class Category(str, Enum):
    INFO = "info"
    FILE_UPLOAD = "file-upload"
    FOLDER_UPDATE = "folder-update"
    COMMENT = "comment"
    COMMENT_MENTION = "comment-mention"
    INVITE = "invite"
    SHARE = "share"
    TASK_ASSIGNMENT = "task-assignment"
    TASK_SUBTASK = "task-subtask"


# Older documents used these names before the category/severity split.
LEGACY_FIELD_NAMES = {
    "iconType": "category",
    "type": "severity",
    "createdAtISO": "createdAtFallback",
    "updatedAtISO": "updatedAtFallback",
}
LEGACY_METADATA_NAMES = {
    "guestName": "actorName",
    "uploadDate": "eventDate",
}


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp_ms(value: object) -> int:
    """Best-effort conversion of a stored timestamp (epoch ms or ISO string) to epoch ms."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value and value != SERVER_TIMESTAMP:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return 0
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp() * 1000)
    return 0


class NotificationDraft(BaseModel):
    """Loose producer input; only ``userId`` is mandatory once built."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    user_id: str | None = Field(default=None, alias="userId")
    message: str | None = None
    link: str | None = None
    category: str = Category.INFO.value
    severity: Severity = Severity.INFO
    metadata: dict[str, Any] | None = None

    @field_validator("category", mode="before")
    @classmethod
    def coerce_category(cls, v: object) -> object:
        if isinstance(v, Category):
            return v.value
        return v or Category.INFO.value


class NotificationRecord(BaseModel):
    """A stored notification as seen by consumers."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    user_id: str = Field(alias="userId")
    category: str = Category.INFO.value
    severity: Severity = Severity.INFO
    message: str = "Notification"
    link: str = "/"
    read: bool = False
    created_at: int | None = Field(default=None, alias="createdAt")
    created_at_fallback: str = Field(default="", alias="createdAtFallback")
    updated_at: int | None = Field(default=None, alias="updatedAt")
    updated_at_fallback: str = Field(default="", alias="updatedAtFallback")
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("severity", mode="before")
    @classmethod
    def coerce_severity(cls, v: object) -> object:
        if isinstance(v, Severity):
            return v
        try:
            return Severity(v)
        except ValueError:
            return Severity.INFO

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def coerce_timestamp(cls, v: object) -> object:
        if v is None or isinstance(v, int):
            return v
        ms = parse_timestamp_ms(v)
        return ms or None

    @classmethod
    def from_document(cls, doc_id: str, data: dict[str, Any], *, user_id: str | None = None) -> "NotificationRecord":
        """Build a record from raw store data, tolerating legacy field names and gaps."""
        normalized = dict(data)
        for legacy, current in LEGACY_FIELD_NAMES.items():
            if legacy in normalized and current not in normalized:
                normalized[current] = normalized[legacy]
        if not normalized.get("userId"):
            raw = normalized.get("raw")
            raw_user = raw.get("userId") if isinstance(raw, dict) else None
            normalized["userId"] = raw_user or user_id or ""
        if not isinstance(normalized.get("read"), bool):
            normalized["read"] = False
        if not normalized.get("message"):
            normalized["message"] = "Notification"
        if not normalized.get("link"):
            normalized["link"] = "/"
        if not isinstance(normalized.get("metadata"), dict):
            normalized["metadata"] = {}
        normalized["id"] = doc_id
        return cls.model_validate(normalized)

    @property
    def sort_timestamp(self) -> int:
        """Creation time in epoch ms, falling back to the client timestamp."""
        if self.created_at:
            return self.created_at
        fallback = parse_timestamp_ms(self.created_at_fallback)
        if fallback:
            return fallback
        raw = (self.model_extra or {}).get("raw")
        if isinstance(raw, dict):
            return parse_timestamp_ms(raw.get("createdTimestamp"))
        return 0


def sort_newest_first(records: list[NotificationRecord]) -> list[NotificationRecord]:
    return sorted(records, key=lambda r: r.sort_timestamp, reverse=True)
