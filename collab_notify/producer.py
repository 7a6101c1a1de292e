"""Producer-facing notification functions.

Each function fans out to its recipients, one record per recipient, and
returns the ids of the records that exist afterwards. Failed writes are
logged and left out of the result; nothing here raises for a partial failure.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

from collab_notify.errors import INVALID_USER_ID, is_failed_id
from collab_notify.logs import get_logger
from collab_notify.record import Category, NotificationDraft, Severity, now_iso

if TYPE_CHECKING:
    from collab_notify.engine import NotificationEngine

logger = get_logger(__name__)

ROOT_FOLDER = "_root"
ROOT_FOLDER_DISPLAY = "Project Root"


@dataclass(frozen=True)
class MentionedUser:
    id: str
    username: str


@dataclass
class MentionResult:
    notification_ids: list[str] = field(default_factory=list)
    notified_users: list[str] = field(default_factory=list)


def document_link(folder_id: str, file_id: str) -> str:
    link = "/documents"
    if folder_id:
        link += f"/folders/{folder_id}"
    if file_id:
        link += f"/files/{file_id}"
    return link


def comment_link(folder_id: str, document_id: str, comment_id: str) -> str:
    return f"/documents/folders/{folder_id}/files/{document_id}?comment={comment_id}"


def task_link(project_id: str, task_id: str) -> str:
    return f"/tasks/{project_id}/{task_id}"


def display_folder_name(folder_name: str, project_name: str) -> str:
    if folder_name == ROOT_FOLDER:
        return project_name or ROOT_FOLDER_DISPLAY
    return folder_name


def _unique(ids: Iterable[str | None]) -> list[str]:
    return list(dict.fromkeys(i for i in ids if i is not None))


class NotificationProducer:
    def __init__(self, engine: "NotificationEngine") -> None:
        self._engine = engine

    # ------------------------------------------------------------------
    # Fan-out plumbing
    # ------------------------------------------------------------------

    async def _create_deduped(self, draft: NotificationDraft, variant: str = "") -> str:
        engine = self._engine
        key = engine.catalog.build_identity_key(draft.category, draft.user_id or "", draft.metadata or {})
        if key is None:
            return await engine.create_notification(draft)
        if variant:
            key = f"{key}:{variant}"
        result = await engine.dedup.create_once(
            key, lambda: engine.create_notification(draft), ttl_ms=engine.config.dedup.ttl_ms
        )
        if is_failed_id(result):
            engine.dedup.discard(key)
        return result

    async def _fan_out(
        self,
        kind: str,
        recipients: Sequence[str],
        make_draft: Callable[[str], NotificationDraft],
        *,
        variant: str = "",
    ) -> list[str]:
        if not recipients:
            logger.warning("no recipients for notification", kind=kind)
            return []

        async def one(user_id: str) -> str:
            if not user_id or not user_id.strip():
                logger.warning("skipping blank recipient", kind=kind)
                return INVALID_USER_ID
            return await self._create_deduped(make_draft(user_id), variant)

        results = await asyncio.gather(*(one(u) for u in _unique(recipients)))
        ids = [r for r in results if not is_failed_id(r)]
        if len(ids) < len(results):
            logger.warning("some notifications failed", kind=kind, created=len(ids), attempted=len(results))
        return ids

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------

    def _upload_draft(
        self,
        user_id: str,
        *,
        actor: str,
        file_name: str,
        content_type: str,
        folder_id: str,
        folder_name: str,
        file_id: str,
        project_id: str,
        project_name: str,
        upload_date: str,
        extra: dict[str, Any] | None = None,
    ) -> NotificationDraft:
        metadata = {
            "contentType": content_type or "file",
            "fileName": file_name,
            "folderId": folder_id,
            "folderName": folder_name,
            "fileId": file_id,
            "actorName": actor,
            "eventDate": upload_date,
            "projectId": project_id,
            "projectName": project_name,
            **(extra or {}),
        }
        return NotificationDraft(
            user_id=user_id,
            category=Category.FILE_UPLOAD,
            severity=Severity.SUCCESS,
            message=f'{actor} uploaded "{file_name}" to {display_folder_name(folder_name, project_name)}',
            link=document_link(folder_id, file_id),
            metadata=metadata,
        )

    async def create_file_upload_notification(
        self,
        file_name: str,
        actor_name: str,
        content_type: str,
        folder_id: str,
        folder_name: str,
        file_id: str,
        project_id: str,
        upload_date: str | None = None,
        target_user_ids: Sequence[str] = (),
        project_name: str = "",
    ) -> list[str]:
        """Notify followers of a folder that a file was uploaded to it."""
        actor = actor_name or "Anonymous user"
        date = upload_date or now_iso()
        return await self._fan_out(
            "file-upload",
            target_user_ids,
            lambda uid: self._upload_draft(
                uid,
                actor=actor,
                file_name=file_name,
                content_type=content_type,
                folder_id=folder_id,
                folder_name=folder_name,
                file_id=file_id,
                project_id=project_id,
                project_name=project_name,
                upload_date=date,
            ),
        )

    async def create_admin_file_upload_notification(
        self,
        file_name: str,
        uploader_name: str,
        uploader_role: str,
        content_type: str,
        folder_id: str,
        folder_name: str,
        file_id: str,
        project_id: str,
        upload_date: str | None = None,
        admin_user_ids: Sequence[str] = (),
        project_name: str = "",
    ) -> list[str]:
        """Notify admins that a non-admin user uploaded a file."""
        actor = uploader_name or "Unknown user"
        date = upload_date or now_iso()
        return await self._fan_out(
            "admin-file-upload",
            admin_user_ids,
            lambda uid: self._upload_draft(
                uid,
                actor=actor,
                file_name=file_name,
                content_type=content_type,
                folder_id=folder_id,
                folder_name=folder_name,
                file_id=file_id,
                project_id=project_id,
                project_name=project_name,
                upload_date=date,
                extra={"uploaderRole": uploader_role},
            ),
            variant="admin",
        )

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def create_task_notification(
        self,
        task_id: str,
        title: str,
        project_id: str,
        project_name: str,
        actor_name: str,
        assigned_user_ids: Sequence[str],
        link: str | None = None,
        due_date: str | None = None,
        is_update: bool = False,
    ) -> list[str]:
        message = f'{actor_name} updated task "{title}"' if is_update else f'{actor_name} assigned you to "{title}"'
        target = link or task_link(project_id, task_id)

        def make_draft(uid: str) -> NotificationDraft:
            return NotificationDraft(
                user_id=uid,
                category=Category.TASK_ASSIGNMENT,
                message=message,
                link=target,
                metadata={
                    "contentType": "task",
                    "actorName": actor_name,
                    "eventDate": now_iso(),
                    "projectId": project_id,
                    "projectName": project_name or "",
                    "taskId": task_id,
                    "dueDate": due_date or "",
                },
            )

        return await self._fan_out(
            "task-assignment", assigned_user_ids, make_draft, variant="update" if is_update else "assign"
        )

    def _subtask_draft(
        self,
        user_id: str,
        *,
        message: str,
        content_type: str,
        parent_task_id: str,
        parent_task_title: str,
        subtask_id: str,
        project_id: str,
        project_name: str,
        actor_name: str,
    ) -> NotificationDraft:
        return NotificationDraft(
            user_id=user_id,
            category=Category.TASK_SUBTASK,
            message=message,
            link=task_link(project_id, parent_task_id),
            metadata={
                "contentType": content_type,
                "actorName": actor_name,
                "eventDate": now_iso(),
                "projectId": project_id,
                "projectName": project_name or "",
                "taskId": parent_task_id,
                "parentTaskId": parent_task_id,
                "parentTaskTitle": parent_task_title,
                "subtaskId": subtask_id,
            },
        )

    async def create_subtask_notification(
        self,
        parent_task_id: str,
        parent_task_title: str,
        subtask_id: str,
        subtask_title: str,
        project_id: str,
        project_name: str,
        actor_name: str,
        assigned_user_ids: Sequence[str],
    ) -> list[str]:
        """Tell the parent task's assignees that a subtask was added."""
        message = f'{actor_name} added subtask "{subtask_title}" to "{parent_task_title}"'
        return await self._fan_out(
            "task-subtask",
            assigned_user_ids,
            lambda uid: self._subtask_draft(
                uid,
                message=message,
                content_type="subtask",
                parent_task_id=parent_task_id,
                parent_task_title=parent_task_title,
                subtask_id=subtask_id,
                project_id=project_id,
                project_name=project_name,
                actor_name=actor_name,
            ),
            variant="added",
        )

    async def create_subtask_assignment_notification(
        self,
        parent_task_id: str,
        parent_task_title: str,
        subtask_id: str,
        subtask_title: str,
        project_id: str,
        project_name: str,
        actor_name: str,
        assigned_user_ids: Sequence[str],
    ) -> list[str]:
        message = f'{actor_name} assigned you to subtask "{subtask_title}"'
        return await self._fan_out(
            "task-subtask-assignment",
            assigned_user_ids,
            lambda uid: self._subtask_draft(
                uid,
                message=message,
                content_type="subtask-assignment",
                parent_task_id=parent_task_id,
                parent_task_title=parent_task_title,
                subtask_id=subtask_id,
                project_id=project_id,
                project_name=project_name,
                actor_name=actor_name,
            ),
            variant="assigned",
        )

    # ------------------------------------------------------------------
    # Comments
    # ------------------------------------------------------------------

    async def _create_checked(self, user_id: str, comment_id: str, category: Category, draft: NotificationDraft) -> str:
        """Reuse an existing record for (user, comment) or create one."""
        lookup = self._engine.lookup
        existing = await lookup.find_existing(user_id, comment_id, category=category.value)
        if existing:
            logger.debug("reusing existing comment notification", user_id=user_id, comment_id=comment_id)
            return existing
        new_id = await self._engine.create_notification(draft)
        if not is_failed_id(new_id):
            lookup.remember(user_id, comment_id, new_id)
        return new_id

    async def notify_mentioned_users(
        self,
        comment_text: str,
        document_id: str,
        document_name: str,
        folder_id: str,
        folder_name: str,
        comment_id: str,
        author_id: str,
        author_name: str,
        mentioned_users: Sequence[MentionedUser],
    ) -> MentionResult:
        """Create one mention record per mentioned user (never the author).

        Calling this again for the same comment returns the existing ids.
        """
        result = MentionResult()
        if not mentioned_users or not comment_text.strip():
            logger.debug("no mentions to notify", comment_id=comment_id)
            return result

        seen: set[str] = set()
        targets = []
        for user in mentioned_users:
            if not user.id or user.id == author_id or user.id in seen:
                continue
            seen.add(user.id)
            targets.append(user)
        if not targets:
            logger.debug("no users to notify after removing author", comment_id=comment_id)
            return result

        link = comment_link(folder_id, document_id, comment_id)
        dedup = self._engine.dedup
        for user in targets:
            draft = NotificationDraft(
                user_id=user.id,
                category=Category.COMMENT_MENTION,
                message=f"{author_name} mentioned you in a comment",
                link=link,
                metadata={
                    "contentType": "comment",
                    "fileName": document_name,
                    "folderId": folder_id,
                    "folderName": folder_name,
                    "fileId": document_id,
                    "actorName": author_name,
                    "eventDate": now_iso(),
                    "commentId": comment_id,
                    "commentText": comment_text,
                    "mentionedUserId": user.id,
                },
            )
            key = f"mention:{user.id}:{comment_id}"
            notification_id = await dedup.create_once(
                key,
                lambda uid=user.id, d=draft: self._create_checked(uid, comment_id, Category.COMMENT_MENTION, d),
                ttl_ms=self._engine.config.dedup.ttl_ms,
            )
            if is_failed_id(notification_id):
                dedup.discard(key)
                logger.error("mention notification failed", user_id=user.id, comment_id=comment_id)
                continue
            result.notification_ids.append(notification_id)
            result.notified_users.append(user.username)

        logger.info("mention notifications done", comment_id=comment_id, notified=len(result.notified_users))
        return result

    async def create_comment_notifications(
        self,
        document_id: str,
        document_name: str,
        folder_id: str,
        folder_name: str,
        comment_id: str,
        comment_text: str,
        author_id: str,
        author_name: str,
        collaborator_ids: Sequence[str],
        mentioned_user_ids: Sequence[str] = (),
    ) -> list[str]:
        """Notify a document's collaborators of a new comment.

        The author and anyone mentioned (they get a mention record instead) are
        skipped.
        """
        mentioned = {m for m in mentioned_user_ids if m and m.strip()}
        recipients = [
            uid for uid in _unique(c for c in collaborator_ids if c and c.strip())
            if uid != author_id and uid not in mentioned
        ]
        if not recipients:
            logger.debug("no collaborators to notify", comment_id=comment_id)
            return []

        link = comment_link(folder_id, document_id, comment_id)

        def make_draft(uid: str) -> NotificationDraft:
            return NotificationDraft(
                user_id=uid,
                category=Category.COMMENT,
                message=f'{author_name} commented on "{document_name}"',
                link=link,
                metadata={
                    "contentType": "comment",
                    "fileName": document_name,
                    "folderId": folder_id,
                    "folderName": folder_name,
                    "fileId": document_id,
                    "actorName": author_name,
                    "eventDate": now_iso(),
                    "commentId": comment_id,
                    "commentText": comment_text,
                },
            )

        async def create_all() -> list[str]:
            results = await asyncio.gather(
                *(self._create_checked(uid, comment_id, Category.COMMENT, make_draft(uid)) for uid in recipients)
            )
            return [r for r in results if not is_failed_id(r)]

        key = f"comment:{comment_id}:{','.join(sorted(recipients))}"
        dedup = self._engine.dedup
        ids: list[str] = await dedup.create_once(key, create_all, ttl_ms=self._engine.config.dedup.comment_ttl_ms)
        if len(ids) < len(recipients):
            dedup.discard(key)
        logger.info("comment notifications done", comment_id=comment_id, created=len(ids), recipients=len(recipients))
        return list(ids)
