"""Test best-available invoice total resolution."""

from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from bubble_mirror.models import InvoiceItem
from bubble_mirror.sync.fallback import invoice_total_with_fallback, resolve, sum_item_amounts


async def _items(db: AsyncSession, *amounts):
    for index, amount in enumerate(amounts, start=1):
        db.add(InvoiceItem(bubble_id=f"item{index}", amount=amount))
    await db.commit()


@pytest.mark.asyncio
async def test_remote_value_wins():
    assert await resolve("1200", ["x"], "900") == "1200"


@pytest.mark.asyncio
async def test_previous_value_when_nothing_derivable():
    assert await resolve(None, [], "500") == "500"
    assert await resolve("", None, None) is None


@pytest.mark.asyncio
async def test_sum_of_items_used_when_remote_missing(db: AsyncSession):
    await _items(db, Decimal("100.00"), Decimal("250.50"))
    total = await invoice_total_with_fallback(db, None, ["item1", "item2"], "10")
    assert Decimal(total) == Decimal("350.5")


@pytest.mark.asyncio
async def test_zero_sum_keeps_previous_value(db: AsyncSession):
    await _items(db, Decimal("0"))
    total = await invoice_total_with_fallback(db, None, ["item1"], "500")
    assert total == "500"


@pytest.mark.asyncio
async def test_sum_of_unknown_items_is_none(db: AsyncSession):
    assert await sum_item_amounts(db, ["nope"]) is None
    assert await invoice_total_with_fallback(db, None, ["nope"], None) is None
