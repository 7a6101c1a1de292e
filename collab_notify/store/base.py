"""Store contract: document CRUD, equality queries and a live change feed."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Callable, Protocol


@dataclass(frozen=True)
class StoreDocument:
    id: str
    data: dict[str, Any]


@dataclass(frozen=True)
class FieldFilter:
    field: str  # dotted path, e.g. "metadata.commentId"
    value: Any


def read_path(data: dict[str, Any], path: str) -> Any:
    """Resolve a dotted path against nested dicts; missing segments yield None."""
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


@dataclass(frozen=True)
class StoreQuery:
    filters: tuple[FieldFilter, ...] = ()
    order_by: str | None = None  # None: newest-first by server write time
    descending: bool = True
    limit: int | None = None

    def where(self, field: str, value: Any) -> "StoreQuery":
        return replace(self, filters=self.filters + (FieldFilter(field, value),))

    def ordered(self, field: str, *, descending: bool = True) -> "StoreQuery":
        return replace(self, order_by=field, descending=descending)

    def limited(self, limit: int) -> "StoreQuery":
        return replace(self, limit=limit)


class FeedHandle(Protocol):
    def close(self) -> None: ...


SnapshotCallback = Callable[[list[StoreDocument]], None]
ErrorCallback = Callable[[Exception], None]


class NotificationStore(Protocol):
    """Backing document store.

    Write methods raise ``StoreWriteError``; reads raise ``StoreReadError``.
    ``watch`` pushes the full result of ``query`` to ``on_snapshot`` once on
    open and again whenever the collection changes.
    """

    async def init(self) -> None: ...

    async def close(self) -> None: ...

    async def create(self, data: dict[str, Any]) -> str: ...

    async def get(self, doc_id: str) -> StoreDocument | None: ...

    async def update(self, doc_id: str, changes: dict[str, Any]) -> None: ...

    async def delete(self, doc_id: str) -> None: ...

    async def query(self, query: StoreQuery) -> list[StoreDocument]: ...

    async def watch(self, query: StoreQuery, on_snapshot: SnapshotCallback, on_error: ErrorCallback) -> FeedHandle: ...
