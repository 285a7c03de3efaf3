"""Validated upload of exported record batches.

The first record acts as a probe: if it cannot be mapped and written, the
batch is rejected before anything else is attempted. After that every record
stands alone, so one bad row never takes its neighbours down with it.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..schemas.sync import BatchUploadResult, ErrorKind, SchemaPatchResult, SyncError, UpsertOutcome
from . import schema_reflector
from .errors import MappingError
from .fallback import apply_invoice_totals
from .field_mapper import (
    INVOICE,
    INVOICE_ITEM,
    PAYMENT,
    REGISTRATION,
    USER,
    map_record,
    resolve_entity_type,
)
from .upsert import Strategy, find_local, upsert

logger = logging.getLogger(__name__)

UPLOADABLE_TYPES = (INVOICE, PAYMENT, REGISTRATION, INVOICE_ITEM, USER)
PROGRESS_LOG_EVERY = 100


def strategy_for(entity_type: str) -> Strategy:
    # Registration exports are partial; never let them blank out local data.
    if entity_type == REGISTRATION:
        return Strategy.MERGE_FILL_EMPTY
    return Strategy.NEWER_WINS


async def _write_one(
    db: AsyncSession,
    entity_type: str,
    record: Any,
    patch: SchemaPatchResult | None,
) -> UpsertOutcome:
    mapped = map_record(entity_type, record)
    if entity_type == INVOICE:
        existing = await find_local(db, INVOICE, mapped.remote_id)
        await apply_invoice_totals(db, mapped, existing)
    strategy = strategy_for(entity_type)
    outcome = await upsert(db, mapped, strategy)
    if patch is not None and outcome.action != "skipped":
        filled = await schema_reflector.write_dynamic_fields(
            db,
            entity_type,
            mapped.remote_id,
            record,
            patch,
            fill_empty=strategy is Strategy.MERGE_FILL_EMPTY,
        )
        if filled and not outcome.written:
            outcome = outcome.model_copy(update={"fields_filled": outcome.fields_filled + filled})
    await db.commit()
    return outcome


def _rejected(result: BatchUploadResult, message: str) -> BatchUploadResult:
    logger.warning("Rejected %s upload: %s", result.entity_type, message)
    result.validation_error = message
    result.success = False
    return result


async def sync_with_validation(
    db: AsyncSession,
    entity_type: str,
    records: Any,
    patch_schema: bool = True,
) -> BatchUploadResult:
    """Upload a batch of records of one entity type."""
    result = BatchUploadResult(entity_type=entity_type)
    try:
        entity_type = resolve_entity_type(entity_type)
    except MappingError as exc:
        return _rejected(result, str(exc))
    result.entity_type = entity_type
    if entity_type not in UPLOADABLE_TYPES:
        return _rejected(result, f"Uploads are not supported for {entity_type}")
    if not isinstance(records, list):
        return _rejected(result, "Records must be a JSON array")
    if not records:
        return _rejected(result, "No records provided")

    patch: SchemaPatchResult | None = None
    if patch_schema:
        try:
            patch = await schema_reflector.patch_schema(db, entity_type, records)
            await db.commit()
        except SQLAlchemyError as exc:
            await db.rollback()
            logger.warning("Schema patch for %s failed, continuing without it: %s", entity_type, exc)
        else:
            result.schema_patch = patch

    total = len(records)
    logger.info("Uploading %s %s records", total, entity_type)

    for index, record in enumerate(records, start=1):
        result.processed = index
        try:
            outcome = await _write_one(db, entity_type, record, patch)
        except (MappingError, SQLAlchemyError) as exc:
            await db.rollback()
            remote_id = record.get("_id") or record.get("unique id") if isinstance(record, dict) else None
            if index == 1:
                result.errors.append(
                    SyncError(entity_type=entity_type, remote_id=remote_id, kind=ErrorKind.VALIDATION, message=str(exc))
                )
                return _rejected(result, f"First record failed validation: {exc}")
            kind = ErrorKind.MAPPING if isinstance(exc, MappingError) else ErrorKind.WRITE
            logger.error("Record %s of %s %s failed: %s", index, total, entity_type, exc)
            result.errors.append(SyncError(entity_type=entity_type, remote_id=remote_id, kind=kind, message=str(exc)))
            continue

        if outcome.written:
            result.synced += 1
        else:
            result.skipped += 1
        if index % PROGRESS_LOG_EVERY == 0:
            logger.info("Uploaded %s/%s %s records", index, total, entity_type)

    result.success = not result.errors or result.synced > 0
    logger.info(
        "Upload of %s finished: %s synced, %s skipped, %s errors",
        entity_type, result.synced, result.skipped, len(result.errors),
    )
    return result
