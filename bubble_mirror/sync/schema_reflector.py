"""Additive schema evolution driven by incoming remote records.

The only place in the engine that knows columns can appear at runtime. It
never drops or retypes a column; every statement is "add if missing", so two
concurrent patchers converge on the same schema.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Iterable

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Integer,
    Numeric,
    String,
    Text,
    column,
    inspect,
    select,
    table,
    text,
    update,
)
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from ..schemas.sync import ErrorKind, MissingColumn, SchemaPatchResult, SyncError
from .field_mapper import ID_KEYS, FieldKind, coerce, get_spec

logger = logging.getLogger(__name__)

PROTECTED_COLUMNS = frozenset({"id", "created_at", "updated_at", "last_synced_at"})

_ISO_TIMESTAMP = re.compile(r"^\d{4}-\d{2}-\d{2}(T\d{2}:\d{2}:\d{2}(\.\d{3})?Z?)?$")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

TEXT = "text"
INTEGER = "integer"
NUMERIC = "numeric"
BOOLEAN = "boolean"
TIMESTAMP = "timestamp with time zone"
JSONB = "jsonb"

# Inferred type -> coercion used when writing values into reflected columns.
_KIND_FOR_TYPE = {
    TEXT: FieldKind.STRING,
    INTEGER: FieldKind.INTEGER,
    NUMERIC: FieldKind.NUMERIC,
    BOOLEAN: FieldKind.BOOLEAN,
    TIMESTAMP: FieldKind.TIMESTAMP,
    JSONB: FieldKind.JSON,
}


def normalize_column_name(key: str) -> str:
    """``"Drawing (SYSTEM) Submitted"`` -> ``"drawing_system_submitted"``."""
    return _NON_ALNUM.sub("_", key.lower()).strip("_")


def infer_column_type(value: Any) -> str:
    """Infer a PostgreSQL column type from one sample value."""
    if isinstance(value, list):
        sample = next((v for v in value if v is not None), None)
        if sample is None:
            return f"{TEXT}[]"
        inner = infer_column_type(sample)
        if inner.endswith("[]") or inner == JSONB:
            return JSONB
        return f"{inner}[]"
    if isinstance(value, bool):
        return BOOLEAN
    if isinstance(value, int):
        return INTEGER
    if isinstance(value, float):
        return NUMERIC
    if isinstance(value, dict):
        return JSONB
    if isinstance(value, str) and _ISO_TIMESTAMP.match(value):
        return TIMESTAMP
    return TEXT


def render_type(inferred: str, dialect_name: str) -> str:
    if dialect_name == "postgresql":
        return inferred
    # SQLite (and friends) have no array or jsonb types.
    if inferred.endswith("[]") or inferred == JSONB:
        return "JSON"
    if inferred == TIMESTAMP:
        return "TIMESTAMP"
    return inferred.upper()


def _dialect_name(db: AsyncSession) -> str:
    bind = db.bind
    return bind.dialect.name if bind is not None else "postgresql"


async def get_table_columns(db: AsyncSession, table_name: str) -> list[str]:
    conn = await db.connection()

    def _columns(sync_conn) -> list[str]:
        return [col["name"] for col in inspect(sync_conn).get_columns(table_name)]

    return await conn.run_sync(_columns)


def collect_json_fields(records: Iterable[Any]) -> dict[str, Any]:
    """Union of keys across a batch with the first non-null sample of each."""
    samples: dict[str, Any] = {}
    for record in records:
        if not isinstance(record, dict):
            continue
        for key, value in record.items():
            if key in ID_KEYS:
                continue
            if key not in samples or (samples[key] is None and value is not None):
                samples[key] = value
    return samples


async def _add_column(db: AsyncSession, table_name: str, column_name: str, sql_type: str) -> bool:
    """Add one column. Returns False when it already existed."""
    dialect = _dialect_name(db)
    preparer = db.bind.dialect.identifier_preparer
    quoted_table = preparer.quote(table_name)
    quoted_column = preparer.quote(column_name)

    if dialect == "postgresql":
        stmt = text(f"ALTER TABLE {quoted_table} ADD COLUMN IF NOT EXISTS {quoted_column} {sql_type}")
        async with db.begin_nested():
            await db.execute(stmt)
        return True

    stmt = text(f"ALTER TABLE {quoted_table} ADD COLUMN {quoted_column} {sql_type}")
    try:
        await db.execute(stmt)
    except DBAPIError as exc:
        if "duplicate column" in str(exc.orig).lower():
            return False
        raise
    return True


async def patch_schema(
    db: AsyncSession,
    entity_type: str,
    records: Iterable[Any],
) -> SchemaPatchResult:
    """Add columns for record keys the target table does not have yet."""
    spec = get_spec(entity_type)
    table_name = spec.table_name
    records = list(records)
    result = SchemaPatchResult(entity_type=spec.entity_type)

    existing = await get_table_columns(db, table_name)
    result.existing_columns = existing
    samples = collect_json_fields(records)
    result.json_fields = list(samples)

    model_columns = set(spec.columns) | PROTECTED_COLUMNS
    reflected: dict[str, MissingColumn] = {}
    for key, sample in samples.items():
        if key in spec.fields or key in spec.unmapped:
            continue
        column_name = normalize_column_name(key)
        if column_name[:1].isdigit():
            column_name = f"f_{column_name}"
        if not column_name or column_name in model_columns or column_name in reflected:
            continue
        reflected[column_name] = MissingColumn(
            column_name=column_name,
            json_field=key,
            inferred_type=infer_column_type(sample) if sample is not None else TEXT,
        )

    result.reflected_columns = list(reflected.values())
    result.missing_columns = [m for m in reflected.values() if m.column_name not in existing]
    dialect = _dialect_name(db)
    for missing in result.missing_columns:
        sql_type = render_type(missing.inferred_type, dialect)
        try:
            added = await _add_column(db, table_name, missing.column_name, sql_type)
        except DBAPIError as exc:
            logger.warning(
                "Could not add column %s.%s (%s): %s", table_name, missing.column_name, sql_type, exc
            )
            result.errors.append(
                SyncError(
                    entity_type=spec.entity_type,
                    kind=ErrorKind.SCHEMA_PATCH,
                    message=f"{missing.column_name}: {exc.orig}",
                )
            )
            continue
        if added:
            result.added_columns.append(missing.column_name)

    if result.added_columns:
        logger.info("Added %s columns to %s: %s", len(result.added_columns), table_name, ", ".join(result.added_columns))
    result.success = not result.errors
    return result


def _column_type(inferred: str):
    if inferred.endswith("[]"):
        return JSON().with_variant(postgresql.ARRAY(_column_type(inferred[:-2])), "postgresql")
    types = {
        TEXT: Text(),
        INTEGER: Integer(),
        NUMERIC: Numeric(),
        BOOLEAN: Boolean(),
        TIMESTAMP: DateTime(timezone=True),
        JSONB: JSON().with_variant(postgresql.JSONB(), "postgresql"),
    }
    return types.get(inferred, Text())


def _coerce_dynamic(inferred: str, raw: Any) -> Any:
    if inferred == JSONB:
        return raw
    if inferred.endswith("[]"):
        kind = _KIND_FOR_TYPE.get(inferred[:-2], FieldKind.STRING)
        items = raw if isinstance(raw, list) else [raw]
        coerced = [coerce(kind, item) for item in items]
        return [item for item in coerced if item is not None]
    return coerce(_KIND_FOR_TYPE.get(inferred, FieldKind.STRING), raw)


async def write_dynamic_fields(
    db: AsyncSession,
    entity_type: str,
    remote_id: str,
    record: dict[str, Any],
    patch: SchemaPatchResult,
    fill_empty: bool = False,
) -> int:
    """Store values for reflected columns of one row. Returns columns written.

    Every live reflected column named by a record key is written, whether it
    was added by this patch or an earlier one. With ``fill_empty`` only
    columns that are currently NULL are touched.
    """
    spec = get_spec(entity_type)
    live = set(patch.existing_columns) | set(patch.added_columns)
    columns = []
    values: dict[str, Any] = {}
    for reflected in patch.reflected_columns:
        if reflected.column_name not in live or reflected.json_field not in record:
            continue
        columns.append(column(reflected.column_name, _column_type(reflected.inferred_type)))
        values[reflected.column_name] = _coerce_dynamic(reflected.inferred_type, record[reflected.json_field])

    if not values:
        return 0

    dynamic = table(spec.table_name, column(spec.id_column, String()), *columns)
    where = dynamic.c[spec.id_column] == remote_id
    if fill_empty:
        current = (
            await db.execute(select(*(dynamic.c[name] for name in values)).where(where))
        ).mappings().one_or_none()
        if current is not None:
            values = {name: value for name, value in values.items() if current[name] is None}
        if not values:
            return 0

    await db.execute(update(dynamic).where(where).values(**values))
    return len(values)
