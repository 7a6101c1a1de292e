"""Notification engine: the create, read, mutate and subscribe surface.

One ``NotificationEngine`` owns every process-local cache (deduplicator,
lookup cache, read cache, subscription pool), so independent instances never
share state.

Usage:
    store = SQLiteNotificationStore("notifications.db")
    engine = NotificationEngine(store)
    await engine.init()
    ids = await engine.producer.create_task_notification(...)
    unsubscribe = await engine.subscribe("u1", on_records)
"""

from __future__ import annotations

import random
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from collab_notify.builder import build_record, minimal_record, sanitize_value
from collab_notify.cache import ReadCache
from collab_notify.catalog import CategoryCatalog, build_default_catalog
from collab_notify.config import EngineConfig
from collab_notify.dedup import CreationDeduplicator
from collab_notify.errors import (
    GENERAL_ERROR,
    INVALID_DATA_ERROR,
    INVALID_USER_ID,
    RETRY_FAILED,
    NotificationError,
    StoreWriteError,
    ValidationError,
)
from collab_notify.logs import get_logger
from collab_notify.lookup import LookupCache
from collab_notify.observers import EngineEvent, EngineSignal, ObserverRegistry
from collab_notify.producer import NotificationProducer
from collab_notify.pool import SubscriberCallback, SubscriptionPool, Unsubscribe
from collab_notify.queries import belongs_to_user, default_strategies, run_strategies
from collab_notify.record import (
    LEGACY_METADATA_NAMES,
    SERVER_TIMESTAMP,
    Category,
    NotificationDraft,
    NotificationRecord,
    Severity,
    parse_timestamp_ms,
    sort_newest_first,
)
from collab_notify.scheduler import LoopScheduler, Scheduler
from collab_notify.store.base import NotificationStore, StoreDocument, StoreQuery

logger = get_logger(__name__)


class NotificationEngine:
    def __init__(
        self,
        store: NotificationStore,
        *,
        config: EngineConfig | None = None,
        catalog: CategoryCatalog | None = None,
        scheduler: Scheduler | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.store = store
        self.config = config or EngineConfig()
        self.catalog = catalog or build_default_catalog()
        self.scheduler = scheduler or LoopScheduler()
        self.observers = ObserverRegistry()
        rng = rng or random.Random()
        clock = self.scheduler.now_ms

        self.dedup = CreationDeduplicator(
            clock=clock,
            wait_ms=self.config.dedup.wait_ms,
            eviction_rate=self.config.dedup.eviction_rate,
            rng=rng,
        )
        self.lookup = LookupCache(
            store,
            clock=clock,
            negative_ttl_ms=self.config.lookup.negative_ttl_ms,
            result_limit=self.config.lookup.result_limit,
        )
        self.read_cache = ReadCache(clock=clock, ttl_ms=self.config.cache.ttl_ms)
        self.pool = SubscriptionPool(
            store,
            scheduler=self.scheduler,
            catalog=self.catalog,
            read_cache=self.read_cache,
            observers=self.observers,
            config=self.config.pool,
            throttle_config=self.config.throttle,
            cache_config=self.config.cache,
            rng=rng,
        )
        self.strategies = default_strategies(self.config.maintenance.scan_limit)
        self.producer = NotificationProducer(self)

        self._last_reset_at: float | None = None
        self._reset_in_progress = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> None:
        await self.store.init()

    async def close(self) -> None:
        self.pool.close()
        self.reset_caches()
        await self.store.close()

    def reset_caches(self) -> None:
        """Clear the deduplicator, lookup and read caches. Live feeds stay attached."""
        self.dedup.clear()
        self.lookup.clear()
        self.read_cache.clear()
        self.observers.emit(EngineSignal(EngineEvent.CACHES_RESET))

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_notification(self, draft: NotificationDraft | Mapping[str, Any]) -> str:
        """Build and persist one record. Returns its id, or a sentinel from ``FAILED_IDS``.

        Never raises: a rejected write is retried once with a minimized record.
        """
        try:
            return await self._create(draft)
        except Exception:  # pylint: disable=broad-exception-caught
            logger.exception("unexpected error creating notification")
            return GENERAL_ERROR

    async def _create(self, draft: NotificationDraft | Mapping[str, Any]) -> str:
        try:
            document = build_record(draft, self.catalog)
        except ValidationError as exc:
            logger.error("cannot create notification", error=str(exc))
            return INVALID_USER_ID
        except PydanticValidationError as exc:
            logger.error("notification draft is malformed", error=str(exc))
            return INVALID_DATA_ERROR

        user_id = document["userId"]
        try:
            doc_id = await self.store.create(document)
        except StoreWriteError as exc:
            if exc.invalid_data:
                logger.error("store rejected notification data", user_id=user_id, error=str(exc))
                return INVALID_DATA_ERROR
            logger.warning("notification write failed; retrying minimized", user_id=user_id, error=str(exc))
            try:
                doc_id = await self.store.create(minimal_record(document))
            except NotificationError as retry_exc:
                logger.error("minimized notification write failed", user_id=user_id, error=str(retry_exc))
                return RETRY_FAILED

        logger.debug("notification created", id=doc_id, user_id=user_id, category=document["category"])
        self.observers.emit(EngineSignal(EngineEvent.RECORD_CREATED, user_id=user_id, record_ids=(doc_id,), count=1))
        return doc_id

    # ------------------------------------------------------------------
    # Subscribe / read
    # ------------------------------------------------------------------

    async def subscribe(self, user_id: str, callback: SubscriberCallback) -> Unsubscribe:
        return await self.pool.subscribe(user_id, callback)

    async def get_recent_notifications(self, user_id: str, limit: int = 10) -> list[NotificationRecord]:
        """Newest-first records for ``user_id``. Tolerates schema drift; never raises."""
        if not user_id:
            return []
        docs = await run_strategies(self.store, self.strategies, user_id, limit)
        records = [NotificationRecord.from_document(d.id, d.data, user_id=user_id) for d in docs]
        return sort_newest_first(records)[:limit]

    async def get_unread_notification_count(self, user_id: str) -> int:
        if not user_id:
            return 0
        try:
            docs = await self.store.query(StoreQuery().where("userId", user_id).where("read", False))
        except NotificationError as exc:
            logger.error("unread count query failed", user_id=user_id, error=str(exc))
            return 0
        return len(docs)

    # ------------------------------------------------------------------
    # Consumer mutations (raise on failure)
    # ------------------------------------------------------------------

    async def mark_notification_as_read(self, notification_id: str) -> bool:
        """Mark one record read. Returns False if it was already read.

        Raises:
            StoreReadError: If the record could not be fetched.
            StoreWriteError: If the record is missing or the update failed.
        """
        doc = await self.store.get(notification_id)
        if doc is None:
            raise StoreWriteError(f"notification not found: {notification_id}")
        if doc.data.get("read") is True:
            return False
        await self._mark_read(doc)
        return True

    async def mark_all_notifications_as_read(self, user_id: str) -> int:
        if not user_id:
            logger.error("cannot mark notifications as read without a user id")
            return 0
        docs = await self.store.query(StoreQuery().where("userId", user_id).where("read", False))
        for doc in docs:
            await self._mark_read(doc)
        return len(docs)

    async def _mark_read(self, doc: StoreDocument) -> None:
        now_iso = datetime.now(timezone.utc).isoformat()
        await self.store.update(doc.id, {"read": True, "updatedAt": SERVER_TIMESTAMP, "updatedAtFallback": now_iso})
        self.observers.emit(
            EngineSignal(EngineEvent.RECORD_UPDATED, user_id=doc.data.get("userId"), record_ids=(doc.id,), count=1)
        )

    async def delete_notification(self, notification_id: str) -> None:
        await self.store.delete(notification_id)
        self.lookup.invalidate_record(notification_id)
        self.observers.emit(EngineSignal(EngineEvent.RECORD_DELETED, record_ids=(notification_id,), count=1))

    async def delete_read_notifications(self, user_id: str) -> int:
        if not user_id:
            return 0
        docs = await self.store.query(StoreQuery().where("userId", user_id).where("read", True))
        for doc in docs:
            await self.store.delete(doc.id)
            self.lookup.invalidate_record(doc.id)
        if docs:
            self.observers.emit(
                EngineSignal(
                    EngineEvent.RECORD_DELETED,
                    user_id=user_id,
                    record_ids=tuple(d.id for d in docs),
                    count=len(docs),
                )
            )
        logger.info("deleted read notifications", user_id=user_id, count=len(docs))
        return len(docs)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def _structure_updates(self, data: dict[str, Any], user_id: str, now: datetime) -> dict[str, Any]:
        """Fields that must change for ``data`` to have the current record shape."""
        now_iso = now.isoformat()
        desired: dict[str, Any] = {"userId": user_id}

        created_ms = parse_timestamp_ms(data.get("createdAt"))
        desired["createdAtFallback"] = (
            data.get("createdAtFallback")
            or data.get("createdAtISO")
            or (datetime.fromtimestamp(created_ms / 1000, timezone.utc).isoformat() if created_ms else now_iso)
        )
        updated_ms = parse_timestamp_ms(data.get("updatedAt"))
        desired["updatedAtFallback"] = (
            data.get("updatedAtFallback")
            or data.get("updatedAtISO")
            or (datetime.fromtimestamp(updated_ms / 1000, timezone.utc).isoformat() if updated_ms else now_iso)
        )

        raw = data.get("raw") if isinstance(data.get("raw"), dict) else {}
        desired["raw"] = {
            "userId": user_id,
            "createdTimestamp": raw.get("createdTimestamp") or created_ms or int(now.timestamp() * 1000),
        }

        category = data.get("category") or data.get("iconType") or Category.INFO.value
        desired["category"] = category
        severity = data.get("severity") or data.get("type")
        desired["severity"] = severity if severity in {s.value for s in Severity} else Severity.INFO.value
        desired["read"] = data["read"] if isinstance(data.get("read"), bool) else False
        desired["message"] = data.get("message") or "Notification"
        desired["link"] = data.get("link") or "/"

        metadata = data.get("metadata")
        if not isinstance(metadata, dict):
            desired["metadata"] = self.catalog.skeleton(category, now_iso)
        else:
            repaired = sanitize_value(metadata)
            for legacy, current in LEGACY_METADATA_NAMES.items():
                if legacy in repaired and not repaired.get(current):
                    repaired[current] = repaired[legacy]
            desired["metadata"] = repaired

        return {k: v for k, v in desired.items() if data.get(k) != v}

    async def fix_notification_structure(self, user_id: str) -> int:
        """Rewrite this user's records into the current shape. Returns the number changed.

        Scans a bounded window of the collection so records whose recipient is
        stored only under a legacy field are found too. Running it twice changes
        nothing the second time.
        """
        if not user_id:
            logger.error("cannot fix notifications without a user id")
            return 0
        try:
            docs = await self.store.query(StoreQuery().limited(self.config.maintenance.scan_limit))
        except NotificationError as exc:
            logger.error("structure scan failed", user_id=user_id, error=str(exc))
            return 0

        now = datetime.now(timezone.utc)
        fixed = 0
        for doc in docs:
            if not belongs_to_user(doc.data, user_id):
                continue
            updates = self._structure_updates(doc.data, user_id, now)
            if not updates:
                continue
            try:
                await self.store.update(doc.id, updates)
            except NotificationError as exc:
                logger.error("failed to fix notification", id=doc.id, error=str(exc))
                continue
            fixed += 1
            logger.debug("fixed notification structure", id=doc.id, fields=sorted(updates))
        logger.info("notification structure repaired", user_id=user_id, fixed=fixed)
        return fixed

    async def reset_notification_system(self) -> int:
        """Clear process-local caches and repair subtask records.

        Runs at most once per cooldown window and never concurrently; a skipped
        call returns 0. Returns the number of records repaired.
        """
        if self._reset_in_progress:
            logger.info("reset already in progress; skipping")
            return 0
        now = self.scheduler.now_ms()
        cooldown = self.config.maintenance.reset_cooldown_ms
        if self._last_reset_at is not None and now - self._last_reset_at < cooldown:
            logger.info("reset performed recently; skipping")
            return 0

        self._reset_in_progress = True
        self._last_reset_at = now
        try:
            self.reset_caches()
            repaired = await self._repair_subtask_records()
        finally:
            self._reset_in_progress = False
        logger.info("notification system reset", repaired=repaired)
        return repaired

    async def _repair_subtask_records(self) -> int:
        docs: dict[str, StoreDocument] = {}
        for field in ("category", "iconType"):
            try:
                for doc in await self.store.query(StoreQuery().where(field, Category.TASK_SUBTASK.value)):
                    docs[doc.id] = doc
            except NotificationError as exc:
                logger.error("subtask record query failed", field=field, error=str(exc))

        repaired = 0
        for doc in docs.values():
            updates = _subtask_repairs(doc)
            if not updates:
                continue
            try:
                await self.store.update(doc.id, updates)
            except NotificationError as exc:
                logger.error("failed to repair subtask notification", id=doc.id, error=str(exc))
                continue
            repaired += 1
        return repaired


def _subtask_repairs(doc: StoreDocument) -> dict[str, Any]:
    metadata = doc.data.get("metadata")
    if not isinstance(metadata, dict):
        return {}
    metadata = dict(metadata)
    changed = False

    if not metadata.get("subtaskId"):
        logger.warning("subtask notification missing subtaskId", id=doc.id)
    if not metadata.get("parentTaskId") and metadata.get("taskId"):
        metadata["parentTaskId"] = metadata["taskId"]
        changed = True
    if not metadata.get("taskId") and metadata.get("parentTaskId"):
        metadata["taskId"] = metadata["parentTaskId"]
        changed = True

    updates: dict[str, Any] = {}
    if changed:
        updates["metadata"] = metadata
    if metadata.get("projectId") and metadata.get("taskId"):
        link = f"/tasks/{metadata['projectId']}/{metadata['taskId']}"
        if doc.data.get("link") != link:
            updates["link"] = link
    return updates
