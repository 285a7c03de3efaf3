"""Targeted sync from a list of (type, id, modified) candidates.

Only candidates with no local row, or strictly newer than the local
watermark, are fetched; no collection is ever scanned in full.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable

from ..config import settings
from ..schemas.sync import ErrorKind, IdCandidate, IdSyncResult, SyncError
from .errors import SyncCancelled
from .field_mapper import INVOICE, REGISTRATION, map_record, parse_timestamp
from .orchestrator import SyncOrchestrator
from .upsert import find_local, is_stale

logger = logging.getLogger(__name__)

CANDIDATE_TYPES = {
    "invoice": INVOICE,
    "seda": REGISTRATION,
    "seda_registration": REGISTRATION,
}

# Relations refreshed for fetched roots.
RELATED_GROUPS = ("customers", "agents", "users", "payments")

_SEPARATOR = re.compile(r"[,\t]")


def parse_id_list_csv(text: str) -> list[IdCandidate]:
    """Parse ``type,id,modified`` lines (comma or tab separated).

    A header line is skipped. Rows with an unknown type, no id, or an
    unparseable modified date are dropped. Duplicate ids keep the latest date.
    """
    lines = [line.strip() for line in (text or "").strip().splitlines()]
    if lines and (lines[0].lower().startswith("type") or "modified" in lines[0].lower()):
        lines = lines[1:]

    candidates: dict[tuple[str, str], IdCandidate] = {}
    for line in lines:
        if not line:
            continue
        parts = [p.strip() for p in _SEPARATOR.split(line)]
        if len(parts) < 2:
            continue
        entity_type = CANDIDATE_TYPES.get(parts[0].lower())
        remote_id = parts[1]
        if entity_type is None or not remote_id:
            continue
        modified = parse_timestamp(parts[2]) if len(parts) > 2 else None
        if modified is None:
            logger.info("Invalid date for %s %s, skipping", parts[0], remote_id)
            continue

        key = (entity_type, remote_id)
        previous = candidates.get(key)
        if previous is None or modified > previous.remote_modified_at:
            candidates[key] = IdCandidate(type=entity_type, id=remote_id, remote_modified_at=modified)

    logger.info("Parsed %s id-list candidates", len(candidates))
    return list(candidates.values())


def _chunks(items: list[str], size: int) -> Iterable[list[str]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


async def sync_by_ids(
    orchestrator: SyncOrchestrator,
    candidates: Iterable[IdCandidate],
    *,
    batch_size: int | None = None,
    session_id: str | None = None,
) -> IdSyncResult:
    candidates = list(candidates)
    batch_size = batch_size or settings.idlist_batch_size
    db = orchestrator.db
    reporter = orchestrator.reporter(session_id)
    result = IdSyncResult(requested=len(candidates))

    to_fetch: dict[str, list[str]] = {}
    for candidate in candidates:
        entity_type = CANDIDATE_TYPES.get(candidate.type, candidate.type)
        local = await find_local(db, entity_type, candidate.id)
        if is_stale(local, candidate.remote_modified_at):
            to_fetch.setdefault(entity_type, []).append(candidate.id)
        else:
            result.skipped += 1

    pending = sum(len(ids) for ids in to_fetch.values())
    logger.info("Id-list sync: %s to fetch, %s up to date", pending, result.skipped)
    await reporter.start(phase="Fetching", total=pending, details=[f"{pending} records to fetch"])
    if not pending:
        await reporter.complete("All records up to date", phase="Completed")
        return result

    roots = []
    try:
        for entity_type, ids in to_fetch.items():
            for index, chunk in enumerate(_chunks(ids, batch_size), start=1):
                orchestrator.cancel.raise_if_cancelled()
                logger.info("Fetching %s batch %s (%s ids)", entity_type, index, len(chunk))
                batch = await orchestrator.remote.fetch_many(entity_type, chunk)
                if batch.cancelled:
                    raise SyncCancelled(f"Cancelled while fetching {entity_type}")
                result.fetched += len(batch.records)
                for remote_id in batch.missing:
                    logger.info("%s %s not found remotely", entity_type, remote_id)
                for remote_id, message in batch.failed.items():
                    result.errors.append(
                        SyncError(
                            entity_type=entity_type,
                            remote_id=remote_id,
                            kind=ErrorKind.TRANSIENT_FETCH,
                            message=message,
                        )
                    )

                for record in batch.records.values():
                    outcome = await orchestrator.write_record(entity_type, record, result.errors)
                    if outcome is None:
                        continue
                    if outcome.written:
                        result.synced += 1
                    roots.append(map_record(entity_type, record))
                await reporter.update(
                    f"{entity_type} batch {index} done",
                    current=result.synced + len(result.errors),
                )

        await reporter.update("Syncing related records...", phase="SyncingRelations")
        counts = await orchestrator.sync_relations(roots, result.errors, include=RELATED_GROUPS)
        result.related_synced = sum(counts.values())
    except SyncCancelled as exc:
        result.errors.append(SyncError(entity_type="idlist", kind=ErrorKind.CANCELLED, message=str(exc)))
        await reporter.fail("Sync cancelled")
        return result

    logger.info(
        "Id-list sync complete: %s synced, %s skipped, %s related, %s errors",
        result.synced, result.skipped, result.related_synced, len(result.errors),
    )
    await reporter.complete("Id-list sync complete", phase="Completed")
    return result
