"""SQLite store adapter — JSON documents with an in-process change feed."""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from pathlib import Path
from typing import Any, Callable

import aiosqlite

from collab_notify.errors import StoreReadError, StoreWriteError
from collab_notify.logs import get_logger
from collab_notify.record import SERVER_TIMESTAMP
from collab_notify.store.base import ErrorCallback, SnapshotCallback, StoreDocument, StoreQuery

logger = get_logger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS documents (
    id TEXT PRIMARY KEY,
    collection TEXT NOT NULL,
    data TEXT NOT NULL DEFAULT '{}',
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);
"""

_CREATE_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_documents_collection ON documents (collection);",
    "CREATE INDEX IF NOT EXISTS idx_documents_user ON documents (collection, json_extract(data, '$.userId'));",
    "CREATE INDEX IF NOT EXISTS idx_documents_created_at ON documents (collection, created_at DESC);",
]


def _resolve_timestamps(data: dict[str, Any], stamp: int) -> dict[str, Any]:
    return {k: (stamp if v == SERVER_TIMESTAMP else v) for k, v in data.items()}


def _encode(document: dict[str, Any]) -> str:
    try:
        return json.dumps(document)
    except (TypeError, ValueError) as exc:
        raise StoreWriteError(f"invalid data: {exc}", invalid_data=True) from exc


class _Watcher:
    def __init__(
        self,
        store: "SQLiteNotificationStore",
        query: StoreQuery,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> None:
        self.store = store
        self.query = query
        self.on_snapshot = on_snapshot
        self.on_error = on_error
        self.closed = False

    def close(self) -> None:
        self.closed = True
        self.store._watchers.discard(self)


class SQLiteNotificationStore:
    def __init__(
        self,
        db_path: str | Path = "~/.collab_notify/notifications.db",
        *,
        collection: str = "notifications",
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._db_path = str(db_path) if str(db_path) == ":memory:" else str(Path(db_path).expanduser())
        self._collection = collection
        self._clock = clock or (lambda: time.time() * 1000)
        self._last_stamp = 0
        self._conn: aiosqlite.Connection | None = None
        self._watchers: set[_Watcher] = set()
        # Partial updates read, merge and write back; one at a time per store.
        self._update_lock = asyncio.Lock()

    async def init(self) -> None:
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self._db_path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL;")
        await self._conn.execute(_CREATE_TABLE)
        for idx_sql in _CREATE_INDEXES:
            await self._conn.execute(idx_sql)
        await self._conn.commit()

    async def close(self) -> None:
        for watcher in list(self._watchers):
            watcher.close()
        if self._conn:
            await self._conn.close()
            self._conn = None

    def _db(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("SQLiteNotificationStore not initialized. Call init() first.")
        return self._conn

    def _stamp(self) -> int:
        # Server timestamps are strictly increasing so newest-first ordering is total.
        stamp = max(int(self._clock()), self._last_stamp + 1)
        self._last_stamp = stamp
        return stamp

    async def create(self, data: dict[str, Any]) -> str:
        doc_id = uuid.uuid4().hex
        stamp = self._stamp()
        payload = _encode(_resolve_timestamps(data, stamp))
        try:
            await self._db().execute(
                "INSERT INTO documents (id, collection, data, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
                (doc_id, self._collection, payload, stamp, stamp),
            )
            await self._db().commit()
        except aiosqlite.Error as exc:
            raise StoreWriteError(f"create failed: {exc}") from exc
        await self._publish()
        return doc_id

    async def get(self, doc_id: str) -> StoreDocument | None:
        try:
            cursor = await self._db().execute(
                "SELECT id, data FROM documents WHERE id = ? AND collection = ?",
                (doc_id, self._collection),
            )
            row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise StoreReadError(f"get failed: {exc}") from exc
        return StoreDocument(id=row["id"], data=json.loads(row["data"])) if row else None

    async def update(self, doc_id: str, changes: dict[str, Any]) -> None:
        """Merge ``changes`` into the stored document; fields not named are left alone."""
        async with self._update_lock:
            existing = await self.get(doc_id)
            if existing is None:
                raise StoreWriteError(f"no document to update: {doc_id}")
            stamp = self._stamp()
            merged = {**existing.data, **_resolve_timestamps(changes, stamp)}
            payload = _encode(merged)
            try:
                await self._db().execute(
                    "UPDATE documents SET data = ?, updated_at = ? WHERE id = ? AND collection = ?",
                    (payload, stamp, doc_id, self._collection),
                )
                await self._db().commit()
            except aiosqlite.Error as exc:
                raise StoreWriteError(f"update failed: {exc}") from exc
        await self._publish()

    async def delete(self, doc_id: str) -> None:
        try:
            cursor = await self._db().execute(
                "DELETE FROM documents WHERE id = ? AND collection = ?",
                (doc_id, self._collection),
            )
            await self._db().commit()
        except aiosqlite.Error as exc:
            raise StoreWriteError(f"delete failed: {exc}") from exc
        if cursor.rowcount > 0:
            await self._publish()

    async def query(self, query: StoreQuery) -> list[StoreDocument]:
        conditions = ["collection = ?"]
        params: list[Any] = [self._collection]
        for f in query.filters:
            if f.value is None:
                conditions.append("json_extract(data, ?) IS NULL")
                params.append(f"$.{f.field}")
            else:
                conditions.append("json_extract(data, ?) = ?")
                params.extend([f"$.{f.field}", f.value])

        sql = f"SELECT id, data FROM documents WHERE {' AND '.join(conditions)}"
        if query.order_by:
            direction = "DESC" if query.descending else "ASC"
            sql += f" ORDER BY json_extract(data, ?) {direction}, created_at {direction}"
            params.append(f"$.{query.order_by}")
        else:
            sql += " ORDER BY created_at DESC, rowid DESC"
        if query.limit is not None:
            sql += " LIMIT ?"
            params.append(query.limit)

        try:
            cursor = await self._db().execute(sql, params)
            rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise StoreReadError(f"query failed: {exc}") from exc
        return [StoreDocument(id=r["id"], data=json.loads(r["data"])) for r in rows]

    async def watch(self, query: StoreQuery, on_snapshot: SnapshotCallback, on_error: ErrorCallback) -> _Watcher:
        watcher = _Watcher(self, query, on_snapshot, on_error)
        self._watchers.add(watcher)
        await self._push(watcher)
        return watcher

    async def _publish(self) -> None:
        for watcher in list(self._watchers):
            await self._push(watcher)

    async def _push(self, watcher: _Watcher) -> None:
        if watcher.closed:
            return
        try:
            docs = await self.query(watcher.query)
        except StoreReadError as exc:
            try:
                watcher.on_error(exc)
            except Exception:  # pylint: disable=broad-exception-caught
                logger.exception("feed error listener failed")
            return
        if watcher.closed:
            return
        try:
            watcher.on_snapshot(docs)
        except Exception:  # pylint: disable=broad-exception-caught
            logger.exception("feed snapshot listener failed", watched_filters=len(watcher.query.filters))
