"""Sync trigger, upload and progress routes."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable

from fastapi import APIRouter, BackgroundTasks, Body, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import async_session_factory, get_db
from ..schemas.sync import as_payload
from ..sync.batch_upload import sync_with_validation
from ..sync.files import validate_categories
from ..sync.idlist import parse_id_list_csv, sync_by_ids
from ..sync.orchestrator import SyncOrchestrator
from ..sync.progress import ProgressReporter, ProgressStore, SqlProgressStore, get_progress, new_session_id
from ..sync.remote_client import RemoteClient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])

progress_store = SqlProgressStore(async_session_factory)

Flow = Callable[[SyncOrchestrator], Awaitable[Any]]


class InvoiceWindow(BaseModel):
    date_from: datetime
    date_to: datetime | None = None


class IdList(BaseModel):
    csv: str


def get_progress_store() -> ProgressStore:
    return progress_store


def get_session_factory():
    return async_session_factory


def get_remote_factory():
    return RemoteClient.from_settings


async def run_flow(
    flow: Flow,
    session_id: str,
    store: ProgressStore,
    session_factory,
    remote_factory,
) -> None:
    """Run one sync flow outside the request with its own session and client."""
    try:
        async with session_factory() as db, remote_factory() as remote:
            await flow(SyncOrchestrator(db, remote, progress=store))
    except Exception as exc:
        logger.exception("Background sync %s failed", session_id)
        await ProgressReporter(store, session_id).fail(str(exc))


def _start(
    background_tasks: BackgroundTasks,
    flow: Flow,
    store: ProgressStore,
    session_factory,
    remote_factory,
    session_id: str | None = None,
) -> dict[str, Any]:
    session_id = session_id or new_session_id()
    background_tasks.add_task(run_flow, flow, session_id, store, session_factory, remote_factory)
    return {"status": "started", "session_id": session_id}


@router.post("/full", status_code=202)
async def trigger_full_sync(
    background_tasks: BackgroundTasks,
    files: str | None = None,
    store: ProgressStore = Depends(get_progress_store),
    session_factory=Depends(get_session_factory),
    remote_factory=Depends(get_remote_factory),
):
    try:
        categories = validate_categories(c.strip() for c in files.split(",") if c.strip()) if files else []
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    session_id = new_session_id()
    return _start(
        background_tasks,
        lambda o: o.run_full_sync(session_id, categories),
        store, session_factory, remote_factory, session_id,
    )


@router.post("/invoices", status_code=202)
async def trigger_invoice_package(
    window: InvoiceWindow,
    background_tasks: BackgroundTasks,
    store: ProgressStore = Depends(get_progress_store),
    session_factory=Depends(get_session_factory),
    remote_factory=Depends(get_remote_factory),
):
    session_id = new_session_id()
    return _start(
        background_tasks,
        lambda o: o.sync_invoice_package(window.date_from, window.date_to, session_id),
        store, session_factory, remote_factory, session_id,
    )


@router.post("/invoice/{invoice_id}")
async def sync_single_invoice(
    invoice_id: str,
    force: bool = False,
    session_factory=Depends(get_session_factory),
    remote_factory=Depends(get_remote_factory),
):
    async with session_factory() as db, remote_factory() as remote:
        result = await SyncOrchestrator(db, remote).sync_invoice_with_integrity(invoice_id, force=force)
    return as_payload(result)


@router.post("/ids", status_code=202)
async def trigger_id_list(
    background_tasks: BackgroundTasks,
    body: IdList,
    store: ProgressStore = Depends(get_progress_store),
    session_factory=Depends(get_session_factory),
    remote_factory=Depends(get_remote_factory),
):
    candidates = parse_id_list_csv(body.csv)
    if not candidates:
        raise HTTPException(status_code=422, detail="No valid rows found")

    session_id = new_session_id()
    response = _start(
        background_tasks,
        lambda o: sync_by_ids(o, candidates, session_id=session_id),
        store, session_factory, remote_factory, session_id,
    )
    response["candidates"] = len(candidates)
    return response


@router.post("/payments", status_code=202)
async def trigger_payment_sync(
    background_tasks: BackgroundTasks,
    store: ProgressStore = Depends(get_progress_store),
    session_factory=Depends(get_session_factory),
    remote_factory=Depends(get_remote_factory),
):
    session_id = new_session_id()
    return _start(
        background_tasks,
        lambda o: o.sync_payments_with_reconciliation(session_id),
        store, session_factory, remote_factory, session_id,
    )


@router.post("/upload/{entity_type}")
async def upload_records(
    entity_type: str,
    records: Any = Body(...),
    patch_schema: bool = True,
    db: AsyncSession = Depends(get_db),
):
    result = await sync_with_validation(db, entity_type, records, patch_schema=patch_schema)
    if result.validation_error:
        raise HTTPException(status_code=422, detail=result.model_dump(mode="json"))
    return result.model_dump(mode="json")


@router.get("/progress/{session_id}")
async def read_progress(
    session_id: str,
    store: ProgressStore = Depends(get_progress_store),
):
    snapshot = await get_progress(store, session_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Progress session not found")
    return snapshot.model_dump(mode="json")
