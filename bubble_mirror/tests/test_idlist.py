"""Test id-list parsing and differential sync."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from bubble_mirror.models import Invoice, Registration
from bubble_mirror.schemas.sync import IdCandidate
from bubble_mirror.sync.errors import CancelToken
from bubble_mirror.sync.field_mapper import AGENT, CUSTOMER, INVOICE, PAYMENT, REGISTRATION
from bubble_mirror.sync.idlist import parse_id_list_csv, sync_by_ids
from bubble_mirror.sync.orchestrator import SyncOrchestrator
from bubble_mirror.sync.upsert import find_local

FEB = datetime(2024, 2, 1, tzinfo=timezone.utc)


def test_parse_skips_header_and_bad_rows():
    text = "\n".join([
        "type,id,modified_date",
        "invoice,i1,2024-01-05T00:00:00Z",
        "seda\ts1\t2024-01-06",
        "invoice,i2,yesterday",
        "widget,w1,2024-01-01",
        "invoice,,2024-01-01",
        "",
        "invoice,i1,2024-03-01T00:00:00Z",
    ])

    candidates = parse_id_list_csv(text)

    assert [(c.type, c.id) for c in candidates] == [(INVOICE, "i1"), (REGISTRATION, "s1")]
    assert candidates[0].remote_modified_at == datetime(2024, 3, 1, tzinfo=timezone.utc)


def test_parse_empty():
    assert parse_id_list_csv("") == []
    assert parse_id_list_csv("type,id,modified") == []


@pytest.mark.asyncio
async def test_only_stale_candidates_are_fetched(db: AsyncSession, remote, progress_store):
    db.add_all([
        Invoice(bubble_id="i_current", modified_date=FEB, last_synced_at=FEB),
        Invoice(bubble_id="i_old", modified_date=FEB, last_synced_at=FEB),
        Registration(bubble_id="s_current", modified_date=FEB, last_synced_at=FEB),
    ])
    await db.commit()

    remote.add(
        INVOICE,
        {"_id": "i_old", "Amount": 900, "Modified Date": "2024-04-01T00:00:00Z",
         "Linked Customer": "c1", "Linked Agent": "a1", "Linked Payment": ["p1"]},
        {"_id": "i_new", "Amount": 100, "Modified Date": "2024-04-01T00:00:00Z"},
    )
    remote.add(CUSTOMER, {"_id": "c1"})
    remote.add(AGENT, {"_id": "a1"})
    remote.add(PAYMENT, {"_id": "p1", "Amount": 900})

    candidates = [
        IdCandidate(type=INVOICE, id="i_current", remote_modified_at=datetime(2024, 1, 1, tzinfo=timezone.utc)),
        IdCandidate(type=INVOICE, id="i_old", remote_modified_at=datetime(2024, 4, 1, tzinfo=timezone.utc)),
        IdCandidate(type=INVOICE, id="i_new", remote_modified_at=datetime(2024, 4, 1, tzinfo=timezone.utc)),
        IdCandidate(type=REGISTRATION, id="s_current", remote_modified_at=FEB),
        IdCandidate(type=INVOICE, id="i_gone", remote_modified_at=FEB),
    ]

    orchestrator = SyncOrchestrator(db, remote, progress=progress_store)
    result = await sync_by_ids(orchestrator, candidates, batch_size=2, session_id="ids")

    assert result.requested == 5
    assert result.skipped == 2
    assert result.fetched == 2
    assert result.synced == 2
    assert result.related_synced == 3
    assert result.success
    assert sorted(remote.fetched_ids(INVOICE)) == ["i_gone", "i_new", "i_old"]
    assert not [call for call in remote.calls if call[0] == "scan" and call[2] is None]

    row = await find_local(db, INVOICE, "i_old")
    await db.refresh(row)
    assert row.total_amount == 900
    assert await find_local(db, CUSTOMER, "c1") is not None
    assert (await progress_store.get("ids")).status == "completed"


@pytest.mark.asyncio
async def test_nothing_to_fetch(db: AsyncSession, remote, progress_store):
    db.add(Invoice(bubble_id="i1", modified_date=FEB, last_synced_at=FEB))
    await db.commit()

    result = await sync_by_ids(
        SyncOrchestrator(db, remote, progress=progress_store),
        [IdCandidate(type=INVOICE, id="i1", remote_modified_at=FEB)],
        session_id="noop",
    )

    assert result.skipped == 1
    assert result.fetched == 0
    assert remote.calls == []
    assert (await progress_store.get("noop")).status == "completed"


@pytest.mark.asyncio
async def test_cancelled_id_sync(db: AsyncSession, remote):
    cancel = CancelToken()
    cancel.cancel()
    remote.add(INVOICE, {"_id": "i1"})

    result = await sync_by_ids(
        SyncOrchestrator(db, remote, cancel=cancel),
        [IdCandidate(type=INVOICE, id="i1", remote_modified_at=FEB)],
    )

    assert result.synced == 0
    assert not result.success
    assert await find_local(db, INVOICE, "i1") is None
