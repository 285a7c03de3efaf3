"""Deletion reconciliation for entity types whose remote rows disappear.

Submitted payments are removed remotely once verified (they become regular
payments), so local rows whose id is no longer present remotely are deleted.
No other type is reconciled: a row missing from a partial scan must never be
mistaken for a deletion.
"""

from __future__ import annotations

import logging

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..schemas.sync import ErrorKind, ReconcileResult, SyncError
from .field_mapper import SUBMITTED_PAYMENT, get_spec, resolve_entity_type
from .remote_client import RemoteClient

logger = logging.getLogger(__name__)

RECONCILABLE = frozenset({SUBMITTED_PAYMENT})


async def reconcile(db: AsyncSession, remote: RemoteClient, entity_type: str) -> ReconcileResult:
    """Delete local rows of ``entity_type`` that no longer exist remotely.

    Commits when rows were deleted. Raises ``ValueError`` for types that are
    not reconcilable.
    """
    entity_type = resolve_entity_type(entity_type)
    if entity_type not in RECONCILABLE:
        raise ValueError(f"Deletion reconciliation is not supported for {entity_type}")

    spec = get_spec(entity_type)
    result = ReconcileResult(entity_type=entity_type)

    id_scan = await remote.fetch_all_ids(entity_type)
    result.remote_count = len(id_scan.ids)

    id_column = getattr(spec.model, spec.id_column)
    local_ids = [rid for (rid,) in (await db.execute(select(id_column))).all() if rid]
    result.local_count = len(local_ids)

    if not id_scan.complete:
        logger.warning(
            "Remote %s scan incomplete (%s ids); skipping deletion of %s local rows",
            entity_type, result.remote_count, result.local_count,
        )
        result.errors.append(
            SyncError(
                entity_type=entity_type,
                kind=ErrorKind.TRANSIENT_FETCH,
                message="Remote scan incomplete; no rows deleted",
            )
        )
        return result

    stale = sorted(rid for rid in local_ids if rid not in id_scan.ids)
    if stale:
        await db.execute(delete(spec.model).where(id_column.in_(stale)))
        await db.commit()
        logger.info("Deleted %s %s rows no longer present remotely", len(stale), entity_type)

    result.deleted = len(stale)
    result.deleted_ids = stale
    return result
