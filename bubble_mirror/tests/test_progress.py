"""Test progress stores and the reporter."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from bubble_mirror.schemas.sync import ProgressSnapshot
from bubble_mirror.sync.progress import (
    MAX_DETAILS,
    InMemoryProgressStore,
    ProgressReporter,
    SqlProgressStore,
    is_expired,
    new_session_id,
)
from bubble_mirror.sync.upsert import utcnow


@pytest.mark.asyncio
async def test_reporter_lifecycle_in_memory():
    store = InMemoryProgressStore()
    reporter = ProgressReporter(store, "s1")

    await reporter.start(phase="Data", total=3, details=["Starting..."])
    await reporter.update("step one", current=1)
    await reporter.category_done("signatures")
    await reporter.complete("done", current=3)

    snapshot = await store.get("s1")
    assert snapshot.status == "completed"
    assert snapshot.current == 3
    assert snapshot.total == 3
    assert snapshot.details == ["Starting...", "step one", "done"]
    assert snapshot.categories_completed == ["signatures"]
    assert snapshot.completed_at is not None


@pytest.mark.asyncio
async def test_details_are_capped():
    store = InMemoryProgressStore()
    reporter = ProgressReporter(store, "s1")
    await reporter.start()
    for index in range(MAX_DETAILS + 10):
        await reporter.update(f"line {index}")

    snapshot = await store.get("s1")
    assert len(snapshot.details) == MAX_DETAILS
    assert snapshot.details[-1] == f"line {MAX_DETAILS + 9}"


@pytest.mark.asyncio
async def test_restart_reuses_session():
    store = InMemoryProgressStore()
    reporter = ProgressReporter(store, "s1")
    await reporter.start()
    await reporter.fail("boom")
    assert (await store.get("s1")).error_message == "boom"

    await ProgressReporter(store, "s1").start(phase="Again")
    snapshot = await store.get("s1")
    assert snapshot.status == "running"
    assert snapshot.error_message is None
    assert snapshot.phase == "Again"


@pytest.mark.asyncio
async def test_reporter_never_raises():
    store = MagicMock()
    store.get = AsyncMock(side_effect=RuntimeError("db down"))
    store.create = AsyncMock(side_effect=RuntimeError("db down"))
    store.update = AsyncMock(side_effect=RuntimeError("db down"))
    reporter = ProgressReporter(store, "s1")

    await reporter.start(phase="Data")
    await reporter.update("still going")
    await reporter.fail("stopped")


@pytest.mark.asyncio
async def test_slow_store_times_out():
    async def _slow(*args, **kwargs):
        await asyncio.sleep(5)

    store = MagicMock()
    store.update = AsyncMock(side_effect=_slow)
    reporter = ProgressReporter(store, "s1", timeout=0.01)

    await reporter.update("tick")
    store.update.assert_called_once()


@pytest.mark.asyncio
async def test_disabled_reporter_is_noop():
    store = MagicMock()
    store.update = AsyncMock()
    await ProgressReporter(store, None).update("ignored")
    await ProgressReporter(None, "s1").complete("ignored")
    store.update.assert_not_called()


@pytest.mark.asyncio
async def test_in_memory_cleanup():
    store = InMemoryProgressStore()
    await store.create("old")
    await store.create("fresh")
    store._sessions["old"] = store._sessions["old"].model_copy(
        update={"updated_at": utcnow() - timedelta(days=2)}
    )

    removed = await store.cleanup(timedelta(days=1))

    assert removed == 1
    assert await store.sessions() == ["fresh"]


@pytest.mark.asyncio
async def test_sql_store_round_trip(session_factory):
    store = SqlProgressStore(session_factory)
    session_id = new_session_id()
    reporter = ProgressReporter(store, session_id)

    await reporter.start(phase="Fetching", category="Fetching invoices", date_from="2024-01-01T00:00:00+00:00")
    await reporter.update("halfway", current=5, total=10, records_per_second=12.5)
    await reporter.complete("done", phase="Completed")

    snapshot = await store.get(session_id)
    assert snapshot.status == "completed"
    assert snapshot.phase == "Completed"
    assert snapshot.current == 5
    assert snapshot.details == ["halfway", "done"]
    assert snapshot.records_per_second == 12.5
    assert snapshot.started_at.tzinfo is not None
    assert await store.sessions() == [session_id]

    assert await store.cleanup(timedelta(days=1)) == 0
    await store.delete(session_id)
    assert await store.get(session_id) is None


@pytest.mark.asyncio
async def test_sql_store_update_of_unknown_session(session_factory):
    store = SqlProgressStore(session_factory)
    await store.update("missing", status="running")
    assert await store.get("missing") is None


def test_is_expired():
    now = utcnow()
    snapshot = ProgressSnapshot(session_id="x", updated_at=now)
    assert not is_expired(snapshot, timedelta(hours=1), now)
    assert is_expired(snapshot, timedelta(hours=1), now + timedelta(hours=2))
    assert is_expired(ProgressSnapshot(session_id="y"), timedelta(hours=1))
