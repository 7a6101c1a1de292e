"""End-to-end flows: producers, the SQLite change feed and live subscribers together."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from collab_notify.engine import NotificationEngine
from collab_notify.pool import PoolState
from collab_notify.producer import MentionedUser
from collab_notify.record import NotificationRecord
from collab_notify.scheduler import ManualScheduler
from collab_notify.store import SQLiteNotificationStore, StoreQuery


async def _engine(db: Path) -> NotificationEngine:
    engine = NotificationEngine(SQLiteNotificationStore(db), scheduler=ManualScheduler(start_ms=1_000_000))
    await engine.init()
    return engine


@pytest.fixture
async def engine(tmp_path: Path) -> NotificationEngine:  # type: ignore[misc]
    eng = await _engine(tmp_path / "scenarios.db")
    yield eng  # type: ignore[misc]
    await eng.close()


def _advance(engine: NotificationEngine, ms: float) -> None:
    engine.scheduler.advance(ms)  # type: ignore[attr-defined]


async def _mention(engine: NotificationEngine) -> list[str]:
    result = await engine.producer.notify_mentioned_users(
        comment_text="@ann please check",
        document_id="D1",
        document_name="plan.pdf",
        folder_id="F1",
        folder_name="Drawings",
        comment_id="C1",
        author_id="bob",
        author_name="Bob",
        mentioned_users=[MentionedUser("u1", "ann")],
    )
    return result.notification_ids


@pytest.mark.integration
@pytest.mark.asyncio
async def test_upload_reaches_live_subscriber(engine: NotificationEngine) -> None:
    got: list[list[NotificationRecord]] = []
    unsubscribe = await engine.subscribe("u1", got.append)
    _advance(engine, 100)
    assert got == [[]]

    ids = await engine.producer.create_file_upload_notification(
        file_name="site-plan.pdf",
        actor_name="Jane Doe",
        content_type="file",
        folder_id="F1",
        folder_name="Drawings",
        file_id="D1",
        project_id="P1",
        target_user_ids=["u1", "u2"],
    )
    assert len(ids) == 2
    _advance(engine, 100)

    assert len(got) == 2
    [record] = got[-1]
    assert record.message == 'Jane Doe uploaded "site-plan.pdf" to Drawings'
    assert record.link == "/documents/folders/F1/files/D1"
    assert record.read is False
    unsubscribe()
    assert engine.pool.state("u1") is PoolState.IDLE


@pytest.mark.integration
@pytest.mark.asyncio
async def test_concurrent_mentions_create_one_record(engine: NotificationEngine) -> None:
    first, second = await asyncio.gather(_mention(engine), _mention(engine))
    assert first == second
    docs = await engine.store.query(StoreQuery().where("userId", "u1"))
    assert len(docs) == 1
    assert docs[0].data["metadata"]["mentionedUserId"] == "u1"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_second_engine_reuses_existing_mention(tmp_path: Path) -> None:
    db = tmp_path / "shared.db"
    a = await _engine(db)
    b = await _engine(db)
    try:
        first = await _mention(a)
        second = await _mention(b)
        assert first == second
        assert len(await b.store.query(StoreQuery().where("userId", "u1"))) == 1
    finally:
        await a.close()
        await b.close()


@pytest.mark.integration
@pytest.mark.asyncio
async def test_deleting_read_records_updates_subscriber(engine: NotificationEngine) -> None:
    ids = [
        await engine.create_notification({"userId": "u1", "message": f"m{i}", "category": "comment"})
        for i in range(5)
    ]
    for doc_id in ids[:3]:
        await engine.mark_notification_as_read(doc_id)

    got: list[list[NotificationRecord]] = []
    await engine.subscribe("u1", got.append)
    _advance(engine, 100)
    assert len(got[-1]) == 5

    assert await engine.delete_read_notifications("u1") == 3
    _advance(engine, 10_000)
    assert {r.id for r in got[-1]} == set(ids[3:])
    assert all(not r.read for r in got[-1])


@pytest.mark.integration
@pytest.mark.asyncio
async def test_write_burst_converges_to_newest_records(engine: NotificationEngine) -> None:
    got: list[list[NotificationRecord]] = []
    await engine.subscribe("u1", got.append)
    _advance(engine, 100)
    initial_deliveries = len(got)

    created = []
    for i in range(30):
        created.append(await engine.create_notification({"userId": "u1", "message": f"m{i}"}))
        _advance(engine, 1)
    _advance(engine, 20_000)

    bursts = len(got) - initial_deliveries
    assert 1 <= bursts <= 2
    direct = await engine.get_recent_notifications("u1", limit=engine.config.pool.feed_limit)
    assert [r.id for r in got[-1]] == [r.id for r in direct]
    assert [r.id for r in direct] == list(reversed(created))[:20]


@pytest.mark.integration
@pytest.mark.asyncio
async def test_idle_feed_is_closed_after_max_age(engine: NotificationEngine) -> None:
    unsubscribe = await engine.subscribe("u1", lambda records: None)
    unsubscribe()
    _advance(engine, engine.config.pool.max_age_ms)
    assert engine.pool.state("u1") is PoolState.NONE

    # Writes after teardown do not reach anyone and do not fail.
    assert not (await engine.create_notification({"userId": "u1", "message": "late"})).startswith("invalid")
