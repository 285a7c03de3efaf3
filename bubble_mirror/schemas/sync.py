"""Sync result schemas."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel


class ErrorKind(str, Enum):
    TRANSIENT_FETCH = "transient_fetch"
    NOT_FOUND = "not_found"
    MAPPING = "mapping"
    SCHEMA_PATCH = "schema_patch"
    VALIDATION = "validation"
    WRITE = "write"
    CANCELLED = "cancelled"


class SyncError(BaseModel):
    entity_type: str
    remote_id: str | None = None
    kind: ErrorKind
    message: str

    def __str__(self) -> str:
        target = f"{self.entity_type} {self.remote_id}" if self.remote_id else self.entity_type
        return f"[{self.kind.value}] {target}: {self.message}"


class UpsertOutcome(BaseModel):
    action: Literal["inserted", "updated", "skipped", "merged"]
    reason: str | None = None
    fields_filled: int = 0

    @property
    def written(self) -> bool:
        if self.action == "merged":
            return self.fields_filled > 0
        return self.action in ("inserted", "updated")


class SyncResult(BaseModel):
    entity_type: str | None = None
    created: int = 0
    updated: int = 0
    skipped: int = 0
    merged: int = 0
    errors: list[SyncError] = []
    complete: bool = True

    @property
    def success(self) -> bool:
        return not self.errors or (self.created + self.updated + self.merged) > 0

    def record(self, outcome: UpsertOutcome) -> None:
        if outcome.action == "inserted":
            self.created += 1
        elif outcome.action == "updated":
            self.updated += 1
        elif outcome.action == "merged":
            self.merged += 1
        else:
            self.skipped += 1


class MissingColumn(BaseModel):
    column_name: str
    json_field: str
    inferred_type: str


class SchemaPatchResult(BaseModel):
    success: bool = True
    entity_type: str
    existing_columns: list[str] = []
    json_fields: list[str] = []
    missing_columns: list[MissingColumn] = []
    reflected_columns: list[MissingColumn] = []
    added_columns: list[str] = []
    errors: list[SyncError] = []


class BatchUploadResult(BaseModel):
    success: bool = False
    entity_type: str
    processed: int = 0
    synced: int = 0
    skipped: int = 0
    errors: list[SyncError] = []
    validation_error: str | None = None
    schema_patch: SchemaPatchResult | None = None


class IdCandidate(BaseModel):
    type: str
    id: str
    remote_modified_at: datetime | None = None


class IdSyncResult(BaseModel):
    requested: int = 0
    fetched: int = 0
    synced: int = 0
    skipped: int = 0
    related_synced: int = 0
    errors: list[SyncError] = []

    @property
    def success(self) -> bool:
        return not self.errors or self.synced > 0


class PackageSyncResult(BaseModel):
    """Outcome of a relation-aware invoice package sync."""

    phase: str = "Fetching"
    scanned: int = 0
    in_range: int = 0
    needs_sync: int = 0
    synced_invoices: int = 0
    synced_customers: int = 0
    synced_agents: int = 0
    synced_users: int = 0
    synced_payments: int = 0
    synced_submitted_payments: int = 0
    synced_registrations: int = 0
    synced_items: int = 0
    synced_templates: int = 0
    cancelled: bool = False
    errors: list[SyncError] = []

    @property
    def success(self) -> bool:
        return self.phase == "Completed" and (not self.errors or self.synced_invoices > 0)


class IntegritySyncResult(BaseModel):
    invoice_id: str
    success: bool = False
    skipped: bool = False
    steps: list[str] = []
    stats: dict[str, int] = {}
    errors: list[SyncError] = []


class FullSyncResult(BaseModel):
    results: list[SyncResult] = []
    files: dict[str, dict[str, int]] = {}
    cancelled: bool = False
    errors: list[SyncError] = []

    @property
    def success(self) -> bool:
        return not self.cancelled and all(r.success for r in self.results)


class ReconcileResult(BaseModel):
    entity_type: str
    remote_count: int = 0
    local_count: int = 0
    deleted: int = 0
    deleted_ids: list[str] = []
    errors: list[SyncError] = []

    @property
    def success(self) -> bool:
        return not self.errors


class PaymentSyncResult(BaseModel):
    payments: SyncResult | None = None
    submitted_payments: SyncResult | None = None
    reconcile: ReconcileResult | None = None
    new_payment_ids: list[str] = []
    synced_invoices: int = 0
    errors: list[SyncError] = []


class FileSyncResult(BaseModel):
    success: int = 0
    failed: int = 0


class ProgressSnapshot(BaseModel):
    session_id: str
    status: Literal["idle", "running", "completed", "error"] = "idle"
    phase: str | None = None
    category: str | None = None
    current: int = 0
    total: int = 0
    current_item: str | None = None
    records_per_second: float | None = None
    details: list[str] = []
    categories_total: list[str] = []
    categories_completed: list[str] = []
    date_from: str | None = None
    date_to: str | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None

    model_config = {"from_attributes": True}


def as_payload(model: BaseModel) -> dict[str, Any]:
    """Serialize a result model including its computed ``success`` flag."""
    data = model.model_dump(mode="json")
    success = getattr(model, "success", None)
    if isinstance(success, bool):
        data["success"] = success
    return data
