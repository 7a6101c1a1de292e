"""Tests for the subscription pool."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from collab_notify.cache import ReadCache
from collab_notify.catalog import build_default_catalog
from collab_notify.errors import SubscriptionError
from collab_notify.observers import EngineEvent, EngineSignal, ObserverRegistry
from collab_notify.pool import PoolState, SubscriptionPool
from collab_notify.record import NotificationRecord
from collab_notify.scheduler import ManualScheduler
from collab_notify.store.base import StoreDocument


def _doc(doc_id: str, user_id: str = "u1") -> StoreDocument:
    return StoreDocument(doc_id, {"userId": user_id, "category": "comment", "read": True, "message": "m"})


class _Harness:
    def __init__(self) -> None:
        self.scheduler = ManualScheduler()
        self.read_cache = ReadCache(clock=self.scheduler.now_ms)
        self.handle = MagicMock()
        self.store = MagicMock()
        self.store.watch = AsyncMock(return_value=self.handle)
        self.observers = ObserverRegistry()
        self.signals: list[EngineSignal] = []
        for event in EngineEvent:
            self.observers.add(event, self.signals.append)
        self.pool = SubscriptionPool(
            self.store,
            scheduler=self.scheduler,
            catalog=build_default_catalog(),
            read_cache=self.read_cache,
            observers=self.observers,
        )

    def push(self, docs: list[StoreDocument]) -> None:
        on_snapshot = self.store.watch.await_args.args[1]
        on_snapshot(docs)

    def fail(self, exc: Exception) -> None:
        on_error = self.store.watch.await_args.args[2]
        on_error(exc)


@pytest.fixture
def h() -> _Harness:
    return _Harness()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_concurrent_subscribes_open_one_feed(h: _Harness) -> None:
    await asyncio.gather(h.pool.subscribe("u1", lambda r: None), h.pool.subscribe("u1", lambda r: None))
    assert h.store.watch.await_count == 1
    assert h.pool.state("u1") is PoolState.ACTIVE
    assert h.pool.subscriber_count("u1") == 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_feed_query_is_scoped_and_bounded(h: _Harness) -> None:
    await h.pool.subscribe("u1", lambda r: None)
    query = h.store.watch.await_args.args[0]
    assert [(f.field, f.value) for f in query.filters] == [("userId", "u1")]
    assert query.order_by == "createdAt"
    assert query.descending is True
    assert query.limit == 20


@pytest.mark.unit
@pytest.mark.asyncio
async def test_delivery_fans_out_to_every_alias(h: _Harness) -> None:
    got_a: list[list[NotificationRecord]] = []
    got_b: list[list[NotificationRecord]] = []
    await h.pool.subscribe("u1", got_a.append)
    await h.pool.subscribe("u1", got_b.append)

    h.push([_doc("n1")])
    h.scheduler.advance(100)
    assert [r.id for r in got_a[-1]] == ["n1"]
    assert [r.id for r in got_b[-1]] == ["n1"]
    assert any(s.event is EngineEvent.RECORDS_DELIVERED for s in h.signals)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_failing_callback_does_not_block_others(h: _Harness) -> None:
    got: list[list[NotificationRecord]] = []

    def boom(_records: list[NotificationRecord]) -> None:
        raise RuntimeError("ui crashed")

    await h.pool.subscribe("u1", boom)
    await h.pool.subscribe("u1", got.append)
    h.push([_doc("n1")])
    h.scheduler.advance(100)
    assert len(got) == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unsubscribe_keeps_feed_warm_then_sweeps(h: _Harness) -> None:
    unsubscribe = await h.pool.subscribe("u1", lambda r: None)
    unsubscribe()
    unsubscribe()
    assert h.pool.state("u1") is PoolState.IDLE
    h.handle.close.assert_not_called()

    h.scheduler.advance(179_999)
    assert h.pool.state("u1") is PoolState.IDLE
    h.scheduler.advance(1)
    assert h.pool.state("u1") is PoolState.NONE
    h.handle.close.assert_called_once()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_resubscribe_on_idle_reuses_feed_and_replays_cache(h: _Harness) -> None:
    unsubscribe = await h.pool.subscribe("u1", lambda r: None)
    h.push([_doc("n1")])
    h.scheduler.advance(100)
    unsubscribe()

    got: list[list[NotificationRecord]] = []
    h.scheduler.advance(1_000)
    await h.pool.subscribe("u1", got.append)
    assert h.store.watch.await_count == 1
    assert h.pool.state("u1") is PoolState.ACTIVE
    assert got == []
    h.scheduler.advance(0)
    assert [r.id for r in got[0]] == ["n1"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_resubscribe_after_cache_expiry_replays_last_delivery(h: _Harness) -> None:
    unsubscribe = await h.pool.subscribe("u1", lambda r: None)
    h.push([_doc("n1")])
    h.scheduler.advance(100)
    unsubscribe()

    h.scheduler.advance(61_000)
    assert h.read_cache.get("u1") is None
    assert h.pool.state("u1") is PoolState.IDLE

    got: list[list[NotificationRecord]] = []
    await h.pool.subscribe("u1", got.append)
    h.scheduler.advance(100_000)
    assert h.store.watch.await_count == 1
    assert [[r.id for r in batch] for batch in got] == [["n1"]]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_delivery_with_no_subscribers_is_harmless(h: _Harness) -> None:
    unsubscribe = await h.pool.subscribe("u1", lambda r: None)
    unsubscribe()
    h.push([_doc("n1")])
    h.scheduler.advance(100)
    assert not any(s.event is EngineEvent.RECORDS_DELIVERED for s in h.signals)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_open_failure_raises_subscription_error(h: _Harness) -> None:
    h.store.watch = AsyncMock(side_effect=RuntimeError("quota exceeded"))
    with pytest.raises(SubscriptionError):
        await h.pool.subscribe("u1", lambda r: None)
    assert h.pool.state("u1") is PoolState.NONE


@pytest.mark.unit
@pytest.mark.asyncio
async def test_feed_error_detaches_without_restart(h: _Harness) -> None:
    await h.pool.subscribe("u1", lambda r: None)
    h.fail(RuntimeError("permission denied"))
    assert h.pool.state("u1") is PoolState.NONE
    h.handle.close.assert_called_once()
    assert h.store.watch.await_count == 1
    errors = [s for s in h.signals if s.event is EngineEvent.FEED_ERROR]
    assert errors and "permission denied" in (errors[0].error or "")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_blank_user_gets_empty_list(h: _Harness) -> None:
    got: list[list[NotificationRecord]] = []
    unsubscribe = await h.pool.subscribe("", got.append)
    h.scheduler.advance(0)
    assert got == [[]]
    h.store.watch.assert_not_awaited()
    unsubscribe()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_close_detaches_everything(h: _Harness) -> None:
    await h.pool.subscribe("u1", lambda r: None)
    await h.pool.subscribe("u2", lambda r: None)
    assert h.pool.feed_count == 2
    h.pool.close()
    assert h.pool.feed_count == 0
    assert h.handle.close.call_count == 2
