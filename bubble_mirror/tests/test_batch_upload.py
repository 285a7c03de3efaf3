"""Test validated batch uploads."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from bubble_mirror.models import Payment, Registration
from bubble_mirror.schemas.sync import ErrorKind
from bubble_mirror.sync.batch_upload import strategy_for, sync_with_validation
from bubble_mirror.sync.field_mapper import PAYMENT, REGISTRATION
from bubble_mirror.sync.upsert import Strategy, find_local


@pytest.mark.asyncio
async def test_malformed_first_record_rejects_batch(db: AsyncSession):
    records = [{"Amount": 1}, {"_id": "p2", "Amount": 2}]

    result = await sync_with_validation(db, "payment", records)

    assert not result.success
    assert result.processed == 1
    assert result.synced == 0
    assert result.validation_error
    assert result.errors[0].kind == ErrorKind.VALIDATION
    assert await find_local(db, PAYMENT, "p2") is None


@pytest.mark.asyncio
async def test_later_bad_record_is_isolated(db: AsyncSession):
    records = [
        {"_id": "p1", "Amount": "10"},
        {"Amount": "5"},
        {"_id": "p3", "Amount": "7.50"},
    ]

    result = await sync_with_validation(db, PAYMENT, records, patch_schema=False)

    assert result.success
    assert result.processed == 3
    assert result.synced == 2
    assert len(result.errors) == 1
    assert result.errors[0].kind == ErrorKind.MAPPING
    assert await find_local(db, PAYMENT, "p3") is not None


@pytest.mark.asyncio
async def test_older_payment_is_skipped(db: AsyncSession):
    stamp = datetime(2024, 6, 1, tzinfo=timezone.utc)
    db.add(Payment(bubble_id="p1", amount=100, modified_date=stamp, last_synced_at=stamp))
    await db.commit()

    result = await sync_with_validation(
        db, PAYMENT, [{"_id": "p1", "Amount": 1, "Modified Date": "2024-01-01T00:00:00Z"}], patch_schema=False
    )

    assert result.success
    assert result.skipped == 1
    row = await find_local(db, PAYMENT, "p1")
    await db.refresh(row)
    assert row.amount == 100


@pytest.mark.asyncio
async def test_registration_upload_merges(db: AsyncSession):
    db.add(Registration(bubble_id="s1", city="Ipoh"))
    await db.commit()

    result = await sync_with_validation(
        db, "seda", [{"_id": "s1", "City": "Penang", "State": "Perak"}], patch_schema=False
    )

    assert result.entity_type == REGISTRATION
    assert result.synced == 1
    row = await find_local(db, REGISTRATION, "s1")
    await db.refresh(row)
    assert row.city == "Ipoh"
    assert row.state == "Perak"


@pytest.mark.asyncio
async def test_new_fields_get_columns(db: AsyncSession):
    records = [{"_id": "i1", "Amount": 500, "Sales Channel": "roadshow"}]

    result = await sync_with_validation(db, "invoice", records)

    assert result.success
    assert result.schema_patch is not None
    assert "sales_channel" in result.schema_patch.added_columns
    value = (await db.execute(text("SELECT sales_channel FROM invoice WHERE bubble_id = 'i1'"))).scalar()
    assert value == "roadshow"


@pytest.mark.asyncio
async def test_reflected_column_follows_later_uploads(db: AsyncSession):
    await sync_with_validation(db, "invoice", [{"_id": "i1", "Amount": 500, "Sales Channel": "roadshow"}])

    result = await sync_with_validation(db, "invoice", [{"_id": "i1", "Amount": 500, "Sales Channel": "online"}])

    assert result.synced == 1
    assert result.schema_patch.added_columns == []
    row = (
        await db.execute(text("SELECT sales_channel FROM invoice WHERE bubble_id = 'i1'"))
    ).one()
    assert row.sales_channel == "online"


@pytest.mark.asyncio
async def test_merge_upload_only_fills_empty_reflected_columns(db: AsyncSession):
    await sync_with_validation(db, "seda", [{"_id": "s1", "Panel Brand": "Jinko"}])

    result = await sync_with_validation(db, "seda", [{"_id": "s1", "Panel Brand": "Trina", "Roof Count": 4}])

    assert result.synced == 1
    row = (
        await db.execute(text("SELECT panel_brand, roof_count FROM seda_registration WHERE bubble_id = 's1'"))
    ).one()
    assert row.panel_brand == "Jinko"
    assert row.roof_count == 4


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "entity_type, records",
    [
        ("widget", [{"_id": "x"}]),
        ("agent", [{"_id": "a1"}]),
        ("payment", {"_id": "p1"}),
        ("payment", []),
    ],
)
async def test_validation_errors(db: AsyncSession, entity_type, records):
    result = await sync_with_validation(db, entity_type, records)

    assert not result.success
    assert result.validation_error
    assert result.processed == 0


def test_strategy_per_type():
    assert strategy_for(REGISTRATION) == Strategy.MERGE_FILL_EMPTY
    assert strategy_for(PAYMENT) == Strategy.NEWER_WINS
