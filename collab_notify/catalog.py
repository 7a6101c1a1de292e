"""Category catalog — registry of known notification categories."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from collab_notify.record import Category, Severity

COMMON_METADATA_FIELDS = ("contentType", "fileName", "folderId", "folderName", "actorName", "eventDate")


class CategorySchema(BaseModel):
    category: str
    description: str
    content_type: str = "comment"
    default_severity: Severity = Severity.INFO
    # Metadata field that, together with userId, identifies one logical event.
    identity_field: str | None = None
    urgent: bool = False
    allowed_fields: list[str] = []


class CategoryCatalog:
    def __init__(self) -> None:
        self._registry: dict[str, CategorySchema] = {}

    def register(self, schema: CategorySchema) -> None:
        if schema.category in self._registry:
            raise ValueError(f"Category already registered: {schema.category}")
        self._registry[schema.category] = schema

    def get(self, category: str) -> CategorySchema | None:
        return self._registry.get(category)

    def list_all(self) -> list[CategorySchema]:
        return sorted(self._registry.values(), key=lambda s: s.category)

    def is_urgent(self, category: str) -> bool:
        schema = self._registry.get(category)
        return bool(schema and schema.urgent)

    def permitted_fields(self, category: str) -> set[str] | None:
        """Metadata fields a record of this category may carry; None means unrestricted."""
        schema = self._registry.get(category)
        if schema is None:
            return None
        return set(COMMON_METADATA_FIELDS) | set(schema.allowed_fields)

    def skeleton(self, category: str, event_date: str) -> dict[str, Any]:
        schema = self._registry.get(category)
        metadata: dict[str, Any] = {f: "" for f in COMMON_METADATA_FIELDS}
        metadata["contentType"] = schema.content_type if schema else "comment"
        metadata["eventDate"] = event_date
        return metadata

    def build_identity_key(self, category: str, user_id: str, metadata: dict[str, Any]) -> str | None:
        schema = self._registry.get(category)
        if not schema or not schema.identity_field:
            return None
        value = metadata.get(schema.identity_field)
        if not value:
            return None
        return ":".join([category, user_id, str(value)])


def build_default_catalog() -> CategoryCatalog:
    catalog = CategoryCatalog()
    catalog.register(CategorySchema(category=Category.INFO.value, description="Generic notice", content_type="info"))
    catalog.register(
        CategorySchema(
            category=Category.FILE_UPLOAD.value,
            description="A file was uploaded to a folder the recipient follows",
            content_type="file",
            default_severity=Severity.SUCCESS,
            identity_field="fileId",
            urgent=True,
            allowed_fields=["fileId", "projectId", "projectName", "uploaderRole"],
        )
    )
    catalog.register(
        CategorySchema(
            category=Category.FOLDER_UPDATE.value,
            description="Folder contents or permissions changed",
            content_type="folder",
            allowed_fields=["projectId", "projectName"],
        )
    )
    catalog.register(
        CategorySchema(
            category=Category.COMMENT.value,
            description="New comment on a document the recipient collaborates on",
            identity_field="commentId",
            allowed_fields=["commentId", "commentText", "fileId"],
        )
    )
    catalog.register(
        CategorySchema(
            category=Category.COMMENT_MENTION.value,
            description="The recipient was mentioned in a comment",
            identity_field="commentId",
            urgent=True,
            allowed_fields=["commentId", "commentText", "mentionedUserId", "fileId"],
        )
    )
    catalog.register(
        CategorySchema(
            category=Category.INVITE.value,
            description="The recipient was invited to a project",
            content_type="invite",
            allowed_fields=["projectId", "projectName"],
        )
    )
    catalog.register(
        CategorySchema(
            category=Category.SHARE.value,
            description="A file or folder was shared with the recipient",
            content_type="share",
            allowed_fields=["fileId", "projectId", "projectName"],
        )
    )
    catalog.register(
        CategorySchema(
            category=Category.TASK_ASSIGNMENT.value,
            description="The recipient was assigned to a task, or an assigned task changed",
            content_type="task",
            identity_field="taskId",
            allowed_fields=["taskId", "dueDate", "projectId", "projectName"],
        )
    )
    catalog.register(
        CategorySchema(
            category=Category.TASK_SUBTASK.value,
            description="A subtask was added to, or assigned under, a task",
            content_type="subtask",
            identity_field="subtaskId",
            allowed_fields=["taskId", "parentTaskId", "parentTaskTitle", "subtaskId", "projectId", "projectName"],
        )
    )
    return catalog
