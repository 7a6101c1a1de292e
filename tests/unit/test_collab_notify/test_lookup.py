"""Tests for the store-existence lookup cache."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from collab_notify.errors import StoreReadError
from collab_notify.lookup import LookupCache
from collab_notify.store.base import StoreDocument


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _store(*results: list[StoreDocument]) -> MagicMock:
    store = MagicMock()
    store.query = AsyncMock(side_effect=list(results))
    return store


@pytest.mark.unit
@pytest.mark.asyncio
async def test_hit_is_cached() -> None:
    store = _store([StoreDocument("n1", {})])
    lookup = LookupCache(store, clock=_Clock())
    assert await lookup.find_existing("u1", "c1", category="comment") == "n1"
    assert await lookup.find_existing("u1", "c1", category="comment") == "n1"
    assert store.query.await_count == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_queries_narrow_then_widen() -> None:
    store = _store([], [], [StoreDocument("legacy", {})])
    lookup = LookupCache(store, clock=_Clock())
    assert await lookup.find_existing("u1", "c1", category="comment-mention") == "legacy"

    shapes = [call.args[0] for call in store.query.await_args_list]
    assert [f.field for f in shapes[0].filters] == ["userId", "metadata.commentId", "category"]
    assert [f.field for f in shapes[1].filters] == ["userId", "metadata.commentId"]
    assert [f.field for f in shapes[2].filters] == ["raw.userId", "metadata.commentId"]
    assert all(q.limit == 5 for q in shapes)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_miss_is_negatively_cached_for_ttl() -> None:
    clock = _Clock()
    store = MagicMock()
    store.query = AsyncMock(return_value=[])
    lookup = LookupCache(store, clock=clock, negative_ttl_ms=2000)

    assert await lookup.find_existing("u1", "c1") is None
    assert store.query.await_count == 2

    clock.now = 1999
    assert await lookup.find_existing("u1", "c1") is None
    assert store.query.await_count == 2

    clock.now = 2000
    assert await lookup.find_existing("u1", "c1") is None
    assert store.query.await_count == 4


@pytest.mark.unit
@pytest.mark.asyncio
async def test_negative_cache_disabled_with_zero_ttl() -> None:
    store = MagicMock()
    store.query = AsyncMock(return_value=[])
    lookup = LookupCache(store, clock=_Clock(), negative_ttl_ms=0)
    await lookup.find_existing("u1", "c1")
    await lookup.find_existing("u1", "c1")
    assert store.query.await_count == 4


@pytest.mark.unit
@pytest.mark.asyncio
async def test_read_error_is_treated_as_not_found() -> None:
    store = MagicMock()
    store.query = AsyncMock(side_effect=StoreReadError("offline"))
    lookup = LookupCache(store, clock=_Clock())
    assert await lookup.find_existing("u1", "c1") is None
    # errors are not remembered as misses
    await lookup.find_existing("u1", "c1")
    assert store.query.await_count == 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_remember_and_invalidate() -> None:
    store = MagicMock()
    store.query = AsyncMock(return_value=[])
    lookup = LookupCache(store, clock=_Clock())

    await lookup.find_existing("u1", "c1")
    lookup.remember("u1", "c1", "n9")
    assert await lookup.find_existing("u1", "c1") == "n9"
    assert store.query.await_count == 2

    lookup.invalidate_record("n9")
    assert len(lookup) == 0
    lookup.clear()
    assert await lookup.find_existing("u1", "c1") is None
    assert store.query.await_count == 4
