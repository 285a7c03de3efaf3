"""Dependency-ordered sync flows.

Every flow goes through one ``RemoteClient`` and writes with ``upsert``;
errors are collected as tagged ``SyncError`` objects and never abort a run,
except cancellation, which stops new work and marks the result.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Iterable

import httpx
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..models import Payment
from ..schemas.sync import (
    ErrorKind,
    FullSyncResult,
    IntegritySyncResult,
    PackageSyncResult,
    PaymentSyncResult,
    SyncError,
    SyncResult,
    UpsertOutcome,
)
from .errors import CancelToken, MappingError, RemoteError, RemoteNotFound, SyncCancelled
from .fallback import apply_invoice_totals
from .field_mapper import (
    AGENT,
    CUSTOMER,
    INVOICE,
    INVOICE_ITEM,
    PAYMENT,
    REGISTRATION,
    SUBMITTED_PAYMENT,
    TEMPLATE,
    USER,
    MappedRecord,
    map_record,
    parse_timestamp,
)
from .files import FileMaterializer, validate_categories
from .progress import ProgressReporter, ProgressStore
from .reconciler import reconcile
from .remote_client import RemoteClient, RemoteRecord, filter_by_modified
from .upsert import Strategy, as_utc, find_local, is_stale, upsert

logger = logging.getLogger(__name__)

FULL_SYNC_ORDER = (
    AGENT,
    USER,
    CUSTOMER,
    INVOICE,
    REGISTRATION,
    TEMPLATE,
    PAYMENT,
    SUBMITTED_PAYMENT,
)

# Relation groups synced around an invoice root, in write order.
RELATION_GROUPS = ("customers", "agents", "users", "payments", "registrations", "items")

_GROUP_TYPES = {
    "customers": CUSTOMER,
    "agents": AGENT,
    "registrations": REGISTRATION,
    "items": INVOICE_ITEM,
}


def agent_users_constraint(agent_id: str) -> list[dict[str, Any]]:
    return [{"key": "Linked Agent Profile", "constraint_type": "equals", "value": agent_id}]


def _rate(count: int, started: float) -> float:
    elapsed = time.monotonic() - started
    return round(count / elapsed, 1) if elapsed > 0 else float(count)


class SyncOrchestrator:
    """Runs sync flows against one database session and one remote client.

    Usage:
        async with RemoteClient.from_settings() as remote:
            orchestrator = SyncOrchestrator(db, remote, progress=store)
            result = await orchestrator.sync_invoice_package(date_from)
    """

    def __init__(
        self,
        db: AsyncSession,
        remote: RemoteClient,
        progress: ProgressStore | None = None,
        cancel: CancelToken | None = None,
        files: FileMaterializer | None = None,
        *,
        file_limit: int | None = None,
    ):
        self.db = db
        self.remote = remote
        self.progress = progress
        self.cancel = cancel or getattr(remote, "cancel", None) or CancelToken()
        self.files = files
        self.file_limit = file_limit or settings.file_sync_limit
        # Remote records fetched during the current run, keyed by (type, id).
        self._records: dict[tuple[str, str], RemoteRecord] = {}

    def reporter(self, session_id: str | None) -> ProgressReporter:
        return ProgressReporter(self.progress, session_id)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def write(self, mapped: MappedRecord, strategy: Strategy = Strategy.OVERWRITE) -> UpsertOutcome:
        if mapped.entity_type == INVOICE:
            existing = await find_local(self.db, INVOICE, mapped.remote_id)
            await apply_invoice_totals(self.db, mapped, existing)
        return await upsert(self.db, mapped, strategy)

    async def write_record(
        self,
        entity_type: str,
        record: RemoteRecord,
        errors: list[SyncError],
        strategy: Strategy = Strategy.OVERWRITE,
    ) -> UpsertOutcome | None:
        """Map and write one remote record, committing on success.

        Mapping and write failures are appended to ``errors`` and return None.
        """
        try:
            mapped = map_record(entity_type, record)
        except MappingError as exc:
            logger.warning("Skipping unmappable %s record: %s", entity_type, exc)
            errors.append(SyncError(entity_type=entity_type, kind=ErrorKind.MAPPING, message=str(exc)))
            return None

        return await self.write_mapped(mapped, errors, strategy)

    # ------------------------------------------------------------------
    # Fetch helpers
    # ------------------------------------------------------------------

    async def fetch_cached(self, entity_type: str, remote_id: str) -> RemoteRecord:
        key = (entity_type, remote_id)
        if key not in self._records:
            self._records[key] = await self.remote.fetch_by_id(entity_type, remote_id)
        return self._records[key]

    async def sync_ids(
        self,
        entity_type: str,
        remote_ids: Iterable[str],
        errors: list[SyncError],
        strategy: Strategy = Strategy.OVERWRITE,
    ) -> tuple[int, list[str]]:
        """Fetch and write records by id. Returns (written count, ids missing remotely)."""
        ids = list(dict.fromkeys(i for i in remote_ids if i))
        if not ids:
            return 0, []

        records = {i: self._records[(entity_type, i)] for i in ids if (entity_type, i) in self._records}
        to_fetch = [i for i in ids if i not in records]
        missing: list[str] = []
        if to_fetch:
            batch = await self.remote.fetch_many(entity_type, to_fetch)
            if batch.cancelled:
                raise SyncCancelled(f"Cancelled while fetching {entity_type}")
            for remote_id, record in batch.records.items():
                self._records[(entity_type, remote_id)] = record
            records.update(batch.records)
            missing = list(batch.missing)
            for remote_id, message in batch.failed.items():
                errors.append(
                    SyncError(
                        entity_type=entity_type,
                        remote_id=remote_id,
                        kind=ErrorKind.TRANSIENT_FETCH,
                        message=message,
                    )
                )

        written = 0
        for remote_id in ids:
            record = records.get(remote_id)
            if record is None:
                continue
            self.cancel.raise_if_cancelled()
            outcome = await self.write_record(entity_type, record, errors, strategy)
            if outcome is not None and outcome.written:
                written += 1
        return written, missing

    async def sync_payment_ids(self, payment_ids: Iterable[str], errors: list[SyncError]) -> tuple[int, int]:
        """Sync linked payments; ids unknown as payments are retried as submitted payments."""
        payments, missing = await self.sync_ids(PAYMENT, payment_ids, errors)
        submitted = 0
        if missing:
            submitted, still_missing = await self.sync_ids(SUBMITTED_PAYMENT, missing, errors)
            for payment_id in still_missing:
                logger.info("Payment %s not found as payment or submitted payment", payment_id)
        return payments, submitted

    async def sync_users_for_agents(self, agent_ids: Iterable[str], errors: list[SyncError]) -> int:
        written = 0
        for agent_id in dict.fromkeys(agent_ids):
            scan = await self.remote.scan(USER, constraints=agent_users_constraint(agent_id))
            if not scan.complete:
                errors.append(
                    SyncError(
                        entity_type=USER,
                        remote_id=agent_id,
                        kind=ErrorKind.TRANSIENT_FETCH,
                        message="User lookup for agent incomplete",
                    )
                )
            for record in scan.records:
                outcome = await self.write_record(USER, record, errors)
                if outcome is not None and outcome.written:
                    written += 1
        return written

    async def sync_relations(
        self,
        roots: Iterable[MappedRecord],
        errors: list[SyncError],
        include: Iterable[str] = RELATION_GROUPS,
    ) -> dict[str, int]:
        """Force-sync the related rows of several roots, leaves first."""
        roots = list(roots)
        include = set(include)
        counts = {group: 0 for group in RELATION_GROUPS}
        counts["submitted_payments"] = 0

        def collect(target: str) -> list[str]:
            ids: list[str] = []
            for root in roots:
                ids.extend(root.relation_ids(target))
            return list(dict.fromkeys(ids))

        agent_ids = collect(AGENT)
        for group in RELATION_GROUPS:
            if group not in include:
                continue
            if group == "users":
                counts["users"] = await self.sync_users_for_agents(agent_ids, errors)
            elif group == "payments":
                counts["payments"], counts["submitted_payments"] = await self.sync_payment_ids(
                    collect(PAYMENT), errors
                )
            else:
                entity_type = _GROUP_TYPES[group]
                counts[group], _ = await self.sync_ids(entity_type, collect(entity_type), errors)
        return counts

    # ------------------------------------------------------------------
    # Whole collections
    # ------------------------------------------------------------------

    async def sync_entity_type(
        self,
        entity_type: str,
        strategy: Strategy = Strategy.OVERWRITE,
        reporter: ProgressReporter | None = None,
    ) -> SyncResult:
        """Scan one collection and write every record."""
        result = SyncResult(entity_type=entity_type)
        scan = await self.remote.scan(entity_type)
        result.complete = scan.complete
        if not scan.complete:
            result.errors.append(
                SyncError(
                    entity_type=entity_type,
                    kind=ErrorKind.TRANSIENT_FETCH,
                    message=f"Pagination halted after {len(scan.records)} records",
                )
            )

        total = len(scan.records)
        started = time.monotonic()
        for index, record in enumerate(scan.records, start=1):
            self.cancel.raise_if_cancelled()
            outcome = await self.write_record(entity_type, record, result.errors, strategy)
            if outcome is not None:
                result.record(outcome)
            if reporter is not None and index % 100 == 0:
                await reporter.update(
                    current=index,
                    total=total,
                    current_item=record.get("_id"),
                    records_per_second=_rate(index, started),
                )
        if reporter is not None and total:
            await reporter.update(records_per_second=_rate(total, started))

        logger.info(
            "Synced %s: %s created, %s updated, %s skipped, %s errors",
            entity_type, result.created, result.updated, result.skipped, len(result.errors),
        )
        return result

    async def run_full_sync(
        self,
        session_id: str | None = None,
        file_categories: Iterable[str] = (),
    ) -> FullSyncResult:
        """Sync every collection in dependency order, then requested file categories."""
        categories = validate_categories(file_categories)
        reporter = self.reporter(session_id)
        result = FullSyncResult()
        self._records = {}

        await reporter.start(
            phase="Data",
            total=len(FULL_SYNC_ORDER),
            categories_total=categories,
            details=["Starting full sync..."],
        )
        logger.info("Full sync starting (file categories: %s)", ", ".join(categories) or "none")

        try:
            for index, entity_type in enumerate(FULL_SYNC_ORDER):
                self.cancel.raise_if_cancelled()
                await reporter.update(f"Syncing {entity_type}...", category=entity_type, current=index)
                entity_result = await self.sync_entity_type(entity_type, reporter=reporter)
                result.results.append(entity_result)
                result.errors.extend(entity_result.errors)

            if categories:
                await reporter.update("Syncing files...", phase="Files", current=0, total=len(categories))
                await self._sync_files(categories, session_id, reporter, result)
        except SyncCancelled as exc:
            logger.warning("Full sync cancelled: %s", exc)
            result.cancelled = True
            result.errors.append(SyncError(entity_type="full_sync", kind=ErrorKind.CANCELLED, message=str(exc)))
            await reporter.fail("Sync cancelled")
            return result

        await reporter.complete("Full sync complete", phase="Completed", current=len(FULL_SYNC_ORDER))
        logger.info("Full sync finished with %s errors", len(result.errors))
        return result

    async def _sync_files(
        self,
        categories: list[str],
        session_id: str | None,
        reporter: ProgressReporter,
        result: FullSyncResult,
    ) -> None:
        if self.files is None:
            logger.warning("File categories requested but no file materializer is configured")
            result.errors.append(
                SyncError(entity_type="files", kind=ErrorKind.VALIDATION, message="No file materializer configured")
            )
            return

        for index, category in enumerate(categories, start=1):
            self.cancel.raise_if_cancelled()
            await reporter.update(f"Syncing file category {category}...", category=category)
            try:
                files = await self.files.sync_files_by_category(category, self.file_limit, session_id)
            except Exception as exc:
                logger.error("File category %s failed: %s", category, exc)
                result.errors.append(
                    SyncError(entity_type="files", remote_id=category, kind=ErrorKind.TRANSIENT_FETCH, message=str(exc))
                )
                continue
            result.files[category] = {"success": files.success, "failed": files.failed}
            await reporter.category_done(category)
            await reporter.update(current=index)
            logger.info("File category %s: %s ok, %s failed", category, files.success, files.failed)

    # ------------------------------------------------------------------
    # Relation-aware invoice package
    # ------------------------------------------------------------------

    async def _relation_stale(self, entity_type: str, remote_id: str) -> bool:
        try:
            record = await self.fetch_cached(entity_type, remote_id)
        except RemoteNotFound:
            return False
        except (httpx.HTTPError, RemoteError) as exc:
            logger.warning("Could not check %s %s: %s", entity_type, remote_id, exc)
            return False
        local = await find_local(self.db, entity_type, remote_id)
        return is_stale(local, parse_timestamp(record.get("Modified Date")))

    async def _payments_stale(self, payment_ids: list[str]) -> bool:
        for payment_id in payment_ids:
            row = await find_local(self.db, PAYMENT, payment_id)
            if row is None:
                row = await find_local(self.db, SUBMITTED_PAYMENT, payment_id)
            if row is None or row.last_synced_at is None:
                return True
            if row.modified_date is not None and as_utc(row.modified_date) > as_utc(row.last_synced_at):
                return True
        return False

    async def needs_sync(self, invoice: MappedRecord) -> list[str]:
        """Reasons an invoice package is stale; empty when it is current."""
        reasons: list[str] = []
        local = await find_local(self.db, INVOICE, invoice.remote_id)
        if is_stale(local, invoice.modified_at):
            reasons.append("invoice")
        for reason, entity_type in (("customer", CUSTOMER), ("agent", AGENT), ("seda", REGISTRATION)):
            for remote_id in invoice.relation_ids(entity_type):
                if await self._relation_stale(entity_type, remote_id):
                    reasons.append(reason)
                    break
        if await self._payments_stale(invoice.relation_ids(PAYMENT)):
            reasons.append("payment")
        return reasons

    async def sync_invoice_package(
        self,
        date_from: datetime,
        date_to: datetime | None = None,
        session_id: str | None = None,
    ) -> PackageSyncResult:
        """Sync invoices modified in a window together with all their relations.

        One stale relation marks the whole package stale and every relation of
        that invoice is written, not just the stale one.
        """
        reporter = self.reporter(session_id)
        result = PackageSyncResult()
        self._records = {}

        await reporter.start(
            phase=result.phase,
            category="Fetching invoices",
            details=["Starting invoice package sync..."],
            date_from=date_from.isoformat(),
            date_to=date_to.isoformat() if date_to else None,
        )

        try:
            scan = await self.remote.scan(INVOICE)
            if not scan.complete:
                result.errors.append(
                    SyncError(
                        entity_type=INVOICE,
                        kind=ErrorKind.TRANSIENT_FETCH,
                        message=f"Invoice scan halted after {len(scan.records)} records",
                    )
                )
            in_range = filter_by_modified(scan.records, date_from, date_to)
            result.scanned = len(scan.records)
            result.in_range = len(in_range)
            logger.info("%s of %s invoices modified in range", result.in_range, result.scanned)

            await self._phase(reporter, result, "Deciding", total=len(in_range))
            stale: list[MappedRecord] = []
            for index, record in enumerate(in_range, start=1):
                self.cancel.raise_if_cancelled()
                try:
                    mapped = map_record(INVOICE, record)
                except MappingError as exc:
                    result.errors.append(SyncError(entity_type=INVOICE, kind=ErrorKind.MAPPING, message=str(exc)))
                    continue
                reasons = await self.needs_sync(mapped)
                if reasons:
                    logger.info("Invoice %s needs sync: %s", mapped.remote_id, ", ".join(reasons))
                    stale.append(mapped)
                if index % 50 == 0:
                    await reporter.update(current=index, current_item=mapped.remote_id)
            result.needs_sync = len(stale)

            await self._phase(reporter, result, "SyncingRelations", total=len(stale))
            counts = await self.sync_relations(stale, result.errors)
            result.synced_customers = counts["customers"]
            result.synced_agents = counts["agents"]
            result.synced_users = counts["users"]
            result.synced_payments = counts["payments"]
            result.synced_submitted_payments = counts["submitted_payments"]
            result.synced_registrations = counts["registrations"]
            result.synced_items = counts["items"]

            await self._phase(reporter, result, "SyncingRoot", total=len(stale))
            for index, mapped in enumerate(stale, start=1):
                self.cancel.raise_if_cancelled()
                outcome = await self.write_mapped(mapped, result.errors)
                if outcome is not None and outcome.written:
                    result.synced_invoices += 1
                await reporter.update(current=index, current_item=mapped.remote_id)

            await self._phase(reporter, result, "SyncingSecondary")
            templates = await self.sync_entity_type(TEMPLATE)
            result.synced_templates = templates.created + templates.updated
            result.errors.extend(templates.errors)
        except SyncCancelled as exc:
            logger.warning("Invoice package sync cancelled during %s", result.phase)
            result.cancelled = True
            result.errors.append(SyncError(entity_type=INVOICE, kind=ErrorKind.CANCELLED, message=str(exc)))
            await reporter.fail("Sync cancelled", phase=result.phase)
            return result

        result.phase = "Completed"
        summary = (
            f"Invoice package sync complete: {result.synced_invoices} invoices, "
            f"{result.synced_customers} customers, {result.synced_agents} agents, "
            f"{result.synced_payments + result.synced_submitted_payments} payments"
        )
        logger.info("%s (%s errors)", summary, len(result.errors))
        await reporter.complete(summary, phase=result.phase, category="Completed")
        return result

    async def _phase(self, reporter: ProgressReporter, result: PackageSyncResult, phase: str, total: int = 0) -> None:
        result.phase = phase
        logger.info("Invoice package sync: %s", phase)
        await reporter.update(phase, phase=phase, category=phase, current=0, total=total)

    async def write_mapped(
        self,
        mapped: MappedRecord,
        errors: list[SyncError],
        strategy: Strategy = Strategy.OVERWRITE,
    ) -> UpsertOutcome | None:
        try:
            outcome = await self.write(mapped, strategy)
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error("Failed to write %s %s: %s", mapped.entity_type, mapped.remote_id, exc)
            errors.append(
                SyncError(
                    entity_type=mapped.entity_type,
                    remote_id=mapped.remote_id,
                    kind=ErrorKind.WRITE,
                    message=str(exc),
                )
            )
            return None
        return outcome

    # ------------------------------------------------------------------
    # Single invoice chain
    # ------------------------------------------------------------------

    async def sync_invoice_with_integrity(
        self,
        invoice_id: str,
        force: bool = False,
        skip_users: bool = False,
        skip_agents: bool = False,
    ) -> IntegritySyncResult:
        """Sync one invoice after everything it references."""
        result = IntegritySyncResult(
            invoice_id=invoice_id,
            stats={
                "agent": 0,
                "customer": 0,
                "user": 0,
                "payments": 0,
                "submitted_payments": 0,
                "invoice_items": 0,
                "seda": 0,
                "invoice": 0,
            },
        )

        try:
            record = await self.remote.fetch_by_id(INVOICE, invoice_id)
        except RemoteNotFound as exc:
            logger.info("Invoice %s not found remotely", invoice_id)
            result.errors.append(
                SyncError(entity_type=INVOICE, remote_id=invoice_id, kind=ErrorKind.NOT_FOUND, message=str(exc))
            )
            return result
        except (httpx.HTTPError, RemoteError) as exc:
            result.errors.append(
                SyncError(entity_type=INVOICE, remote_id=invoice_id, kind=ErrorKind.TRANSIENT_FETCH, message=str(exc))
            )
            return result
        except SyncCancelled as exc:
            result.errors.append(
                SyncError(entity_type=INVOICE, remote_id=invoice_id, kind=ErrorKind.CANCELLED, message=str(exc))
            )
            return result
        result.steps.append("fetch_invoice")

        try:
            mapped = map_record(INVOICE, record)
        except MappingError as exc:
            result.errors.append(
                SyncError(entity_type=INVOICE, remote_id=invoice_id, kind=ErrorKind.MAPPING, message=str(exc))
            )
            return result

        if not force:
            local = await find_local(self.db, INVOICE, invoice_id)
            if local is not None and not is_stale(local, mapped.modified_at):
                logger.info("Invoice %s is up to date; skipping", invoice_id)
                result.skipped = True
                result.success = True
                result.steps = ["skip"]
                return result
        result.steps.append("extract_relations")

        stats = result.stats
        try:
            if not skip_agents:
                stats["agent"], _ = await self.sync_ids(AGENT, mapped.relation_ids(AGENT), result.errors)
                result.steps.append("sync_agent")
            stats["customer"], _ = await self.sync_ids(CUSTOMER, mapped.relation_ids(CUSTOMER), result.errors)
            result.steps.append("sync_customer")
            if not skip_users:
                stats["user"], _ = await self.sync_ids(USER, mapped.relation_ids(USER), result.errors)
                result.steps.append("sync_user")
            stats["payments"], stats["submitted_payments"] = await self.sync_payment_ids(
                mapped.relation_ids(PAYMENT), result.errors
            )
            result.steps.append("sync_payments")
            stats["invoice_items"], _ = await self.sync_ids(
                INVOICE_ITEM, mapped.relation_ids(INVOICE_ITEM), result.errors
            )
            result.steps.append("sync_items")
            stats["seda"], _ = await self.sync_ids(REGISTRATION, mapped.relation_ids(REGISTRATION), result.errors)
            result.steps.append("sync_seda")
        except SyncCancelled as exc:
            result.errors.append(
                SyncError(entity_type=INVOICE, remote_id=invoice_id, kind=ErrorKind.CANCELLED, message=str(exc))
            )
            return result

        outcome = await self.write_mapped(mapped, result.errors)
        if outcome is not None:
            stats["invoice"] = 1 if outcome.written else 0
            result.steps.append("sync_invoice")
            result.success = True
        return result

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    async def _local_payment_ids(self) -> set[str]:
        rows = await self.db.execute(select(Payment.bubble_id))
        return {rid for (rid,) in rows.all() if rid}

    async def sync_payments_with_reconciliation(self, session_id: str | None = None) -> PaymentSyncResult:
        """Sync both payment collections and drop submitted payments that were verified.

        Invoices linked to payments seen for the first time are re-synced so
        their totals and links reflect the new payment.
        """
        reporter = self.reporter(session_id)
        result = PaymentSyncResult()
        self._records = {}
        await reporter.start(phase="Payments", category=PAYMENT, details=["Syncing payments..."])

        try:
            known = await self._local_payment_ids()
            result.payments = await self.sync_entity_type(PAYMENT, reporter=reporter)
            await reporter.update("Syncing submitted payments...", category=SUBMITTED_PAYMENT)
            result.submitted_payments = await self.sync_entity_type(SUBMITTED_PAYMENT, reporter=reporter)
            result.errors.extend(result.payments.errors + result.submitted_payments.errors)

            await reporter.update("Reconciling submitted payments...", phase="Reconciling")
            result.reconcile = await reconcile(self.db, self.remote, SUBMITTED_PAYMENT)
            result.errors.extend(result.reconcile.errors)

            new_ids = sorted((await self._local_payment_ids()) - known)
            result.new_payment_ids = new_ids
            invoice_ids: list[str] = []
            for payment_id in new_ids:
                row = await find_local(self.db, PAYMENT, payment_id)
                if row is not None and row.linked_invoice:
                    invoice_ids.append(row.linked_invoice)

            await reporter.update(
                f"Syncing {len(set(invoice_ids))} invoices for new payments...", phase="Invoices"
            )
            for invoice_id in dict.fromkeys(invoice_ids):
                self.cancel.raise_if_cancelled()
                chain = await self.sync_invoice_with_integrity(invoice_id, force=True, skip_users=True)
                result.synced_invoices += chain.stats.get("invoice", 0)
                result.errors.extend(chain.errors)
        except SyncCancelled as exc:
            result.errors.append(SyncError(entity_type=PAYMENT, kind=ErrorKind.CANCELLED, message=str(exc)))
            await reporter.fail("Sync cancelled")
            return result

        logger.info(
            "Payment sync complete: %s new payments, %s submitted deleted, %s invoices refreshed",
            len(result.new_payment_ids), result.reconcile.deleted, result.synced_invoices,
        )
        await reporter.complete("Payment sync complete", phase="Completed")
        return result
