"""Write disciplines for mapped records.

- overwrite: replace every declared column.
- newer_wins: replace only when the remote timestamp is strictly after the
  local watermark (latest of ``last_synced_at`` / ``modified_date``).
- merge_fill_empty: only fill columns that are empty locally.

No commit is performed here; callers batch commits.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..schemas.sync import UpsertOutcome
from .field_mapper import MappedRecord, get_spec


class Strategy(str, Enum):
    OVERWRITE = "overwrite"
    NEWER_WINS = "newer_wins"
    MERGE_FILL_EMPTY = "merge_fill_empty"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def watermark(row: Any) -> datetime | None:
    """Latest timestamp the local row is known to reflect."""
    stamps = [
        as_utc(getattr(row, "last_synced_at", None)),
        as_utc(getattr(row, "modified_date", None)),
    ]
    stamps = [s for s in stamps if s is not None]
    return max(stamps) if stamps else None


def is_stale(row: Any, remote_modified: datetime | None) -> bool:
    """True when there is no local row or the remote copy is strictly newer."""
    if row is None:
        return True
    local = watermark(row)
    remote = as_utc(remote_modified)
    if local is None or remote is None:
        return local is None
    return remote > local


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict, tuple, set)):
        return len(value) == 0
    return False


async def find_local(db: AsyncSession, entity_type: str, remote_id: str) -> Any | None:
    spec = get_spec(entity_type)
    column = getattr(spec.model, spec.id_column)
    stmt = select(spec.model).where(column == remote_id)
    return (await db.execute(stmt)).scalar_one_or_none()


async def upsert(
    db: AsyncSession,
    mapped: MappedRecord,
    strategy: Strategy = Strategy.OVERWRITE,
    *,
    now: datetime | None = None,
) -> UpsertOutcome:
    """Write one mapped record with the given strategy."""
    spec = get_spec(mapped.entity_type)
    now = now or utcnow()
    existing = await find_local(db, mapped.entity_type, mapped.remote_id)

    if existing is None:
        row = spec.model(**mapped.values)
        row.unmapped_fields = mapped.unmapped or None
        row.last_synced_at = now
        db.add(row)
        await db.flush()
        return UpsertOutcome(action="inserted")

    if strategy == Strategy.MERGE_FILL_EMPTY:
        return await _merge_fill_empty(db, existing, mapped, spec.id_column, now)

    if strategy == Strategy.NEWER_WINS:
        local = watermark(existing)
        remote = as_utc(mapped.modified_at)
        if local is not None and remote is not None:
            if local > remote:
                return UpsertOutcome(action="skipped", reason="existing_is_newer")
            if local == remote:
                return UpsertOutcome(action="skipped", reason="same_timestamp")

    for column, value in mapped.values.items():
        setattr(existing, column, value)
    existing.unmapped_fields = mapped.unmapped or None
    existing.last_synced_at = now
    await db.flush()
    return UpsertOutcome(action="updated")


async def _merge_fill_empty(
    db: AsyncSession,
    existing: Any,
    mapped: MappedRecord,
    id_column: str,
    now: datetime,
) -> UpsertOutcome:
    filled = [
        column
        for column, value in mapped.values.items()
        if column != id_column and is_empty(getattr(existing, column, None)) and not is_empty(value)
    ]
    for column in filled:
        setattr(existing, column, mapped.values[column])

    # The overflow bucket follows the same rule, key by key.
    overflow = dict(existing.unmapped_fields or {})
    new_keys = [k for k, v in mapped.unmapped.items() if is_empty(overflow.get(k)) and not is_empty(v)]
    if new_keys:
        for key in new_keys:
            overflow[key] = mapped.unmapped[key]
        existing.unmapped_fields = overflow

    if filled:
        existing.last_synced_at = now
    if filled or new_keys:
        await db.flush()
    return UpsertOutcome(action="merged", fields_filled=len(filled))
