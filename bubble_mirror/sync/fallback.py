"""Best-available value resolution for fields a single fetch may omit.

Priority: remote value, then a value derived from related rows (only when it
is a positive amount), then the previously stored local value, then None.
A derived zero falls through so "free" is never confused with "unknown".
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Awaitable, Callable, Iterable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import InvoiceItem

Deriver = Callable[[list[str]], Awaitable[Any]]


def _present(value: Any) -> bool:
    return value is not None and value != ""


def _as_text(value: Any) -> str:
    if isinstance(value, Decimal):
        return format(value.normalize(), "f") if value == value.to_integral() else str(value)
    return str(value)


def _meaningful(value: Any) -> bool:
    if value is None:
        return False
    try:
        return Decimal(str(value)) > 0
    except ArithmeticError:
        return False


async def resolve(
    remote_value: Any,
    related_ids: Iterable[str] | None,
    previous_value: Any,
    derive: Deriver | None = None,
) -> str | None:
    if _present(remote_value):
        return _as_text(remote_value)

    ids = [i for i in (related_ids or []) if i]
    if ids and derive is not None:
        derived = await derive(ids)
        if _meaningful(derived):
            return _as_text(derived)

    if _present(previous_value):
        return _as_text(previous_value)
    return None


async def sum_item_amounts(db: AsyncSession, item_ids: list[str]) -> Decimal | None:
    """Sum local line-item amounts; None when nothing matched."""
    stmt = select(func.count(InvoiceItem.id), func.sum(InvoiceItem.amount)).where(
        InvoiceItem.bubble_id.in_(item_ids)
    )
    count, total = (await db.execute(stmt)).one()
    if not count or total is None:
        return None
    return Decimal(str(total))


async def invoice_total_with_fallback(
    db: AsyncSession,
    remote_value: Any,
    item_ids: Iterable[str] | None,
    previous_value: Any,
) -> str | None:
    async def _derive(ids: list[str]) -> Decimal | None:
        return await sum_item_amounts(db, ids)

    return await resolve(remote_value, item_ids, previous_value, _derive)


async def apply_invoice_totals(db: AsyncSession, mapped: Any, existing: Any | None) -> None:
    """Fill ``amount`` / ``total_amount`` of a mapped invoice in place.

    A fetch that omits the totals must not wipe what the store already knows.
    """
    item_ids = mapped.values.get("linked_invoice_item") or []
    for column in ("total_amount", "amount"):
        previous = getattr(existing, column, None) if existing is not None else None
        resolved = await invoice_total_with_fallback(db, mapped.values.get(column), item_ids, previous)
        mapped.values[column] = Decimal(resolved) if resolved is not None else None
