"""Lookup cache answering "does a record for (recipient, event) already exist in the store?"

The in-memory deduplicator only sees calls made by this process. Records
written by another process, or before a restart, are found here by querying
the store before inserting.
"""

from __future__ import annotations

import time
from typing import Callable

from collab_notify.errors import StoreReadError
from collab_notify.logs import get_logger
from collab_notify.store.base import NotificationStore, StoreQuery

logger = get_logger(__name__)


class LookupCache:
    """Cache of store lookups keyed by ``f"{user_id}:{event_id}"``.

    Hits are cached until cleared. Misses are cached for ``negative_ttl_ms`` so
    a burst of checks for the same event costs one query; ``0`` disables
    negative caching.
    """

    def __init__(
        self,
        store: NotificationStore,
        *,
        clock: Callable[[], float] | None = None,
        negative_ttl_ms: float = 2_000,
        result_limit: int = 5,
    ) -> None:
        self._store = store
        self._clock = clock or (lambda: time.time() * 1000)
        self._negative_ttl_ms = negative_ttl_ms
        self._result_limit = result_limit
        self._hits: dict[str, str] = {}
        self._misses: dict[str, float] = {}

    @staticmethod
    def cache_key(user_id: str, event_id: str) -> str:
        return f"{user_id}:{event_id}"

    def _queries(self, user_id: str, event_id: str, category: str | None, field: str) -> list[StoreQuery]:
        path = f"metadata.{field}"
        queries: list[StoreQuery] = []
        if category:
            queries.append(
                StoreQuery().where("userId", user_id).where(path, event_id).where("category", category)
            )
        queries.append(StoreQuery().where("userId", user_id).where(path, event_id))
        queries.append(StoreQuery().where("raw.userId", user_id).where(path, event_id))
        return [q.limited(self._result_limit) for q in queries]

    async def find_existing(
        self,
        user_id: str,
        event_id: str,
        *,
        category: str | None = None,
        field: str = "commentId",
    ) -> str | None:
        key = self.cache_key(user_id, event_id)
        if key in self._hits:
            logger.debug("lookup: cache hit", key=key)
            return self._hits[key]

        missed_at = self._misses.get(key)
        if missed_at is not None and self._clock() - missed_at < self._negative_ttl_ms:
            logger.debug("lookup: negative cache hit", key=key)
            return None

        for query in self._queries(user_id, event_id, category, field):
            try:
                docs = await self._store.query(query)
            except StoreReadError as exc:
                # Treat as "not found": a possible duplicate beats a missed notification.
                logger.error("lookup: existence query failed", key=key, error=str(exc))
                return None
            if docs:
                self._misses.pop(key, None)
                self._hits[key] = docs[0].id
                return docs[0].id

        if self._negative_ttl_ms > 0:
            self._misses[key] = self._clock()
        return None

    def remember(self, user_id: str, event_id: str, doc_id: str) -> None:
        key = self.cache_key(user_id, event_id)
        self._misses.pop(key, None)
        self._hits[key] = doc_id

    def invalidate_record(self, doc_id: str) -> None:
        """Drop cached hits pointing at a deleted record."""
        for key in [k for k, v in self._hits.items() if v == doc_id]:
            del self._hits[key]

    def clear(self) -> None:
        self._hits.clear()
        self._misses.clear()

    def __len__(self) -> int:
        return len(self._hits)
