"""Sync API route tests."""

from __future__ import annotations

import pytest
from httpx import AsyncClient

from bubble_mirror.sync.field_mapper import AGENT, CUSTOMER, INVOICE, PAYMENT


@pytest.mark.asyncio
async def test_health_endpoint(client: AsyncClient):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_ready_endpoint(client: AsyncClient):
    resp = await client.get("/ready")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ready"
    assert "remote_configured" in data


@pytest.mark.asyncio
async def test_upload_records(client: AsyncClient):
    resp = await client.post(
        "/sync/upload/payment",
        json=[{"_id": "p1", "Amount": "100"}, {"_id": "p2", "Amount": "200"}],
        params={"patch_schema": "false"},
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is True
    assert data["synced"] == 2


@pytest.mark.asyncio
async def test_upload_rejects_bad_batch(client: AsyncClient):
    resp = await client.post("/sync/upload/payment", json=[{"Amount": "100"}])
    assert resp.status_code == 422
    assert resp.json()["detail"]["processed"] == 1

    resp = await client.post("/sync/upload/agent", json=[{"_id": "a1"}])
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_progress_not_found(client: AsyncClient):
    resp = await client.get("/sync/progress/unknown")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_full_sync_runs_in_background(client: AsyncClient, remote):
    remote.add(AGENT, {"_id": "a1", "Name": "Ali"})

    resp = await client.post("/sync/full")
    assert resp.status_code == 202
    session_id = resp.json()["session_id"]

    progress = await client.get(f"/sync/progress/{session_id}")
    assert progress.status_code == 200
    assert progress.json()["status"] == "completed"


@pytest.mark.asyncio
async def test_full_sync_unknown_file_category(client: AsyncClient):
    resp = await client.post("/sync/full", params={"files": "signatures,videos"})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_invoice_package_window(client: AsyncClient, remote):
    remote.add(INVOICE, {"_id": "i1", "Modified Date": "2024-01-10T00:00:00Z", "Linked Customer": "c1"})
    remote.add(CUSTOMER, {"_id": "c1", "Name": "Siti"})

    resp = await client.post("/sync/invoices", json={"date_from": "2024-01-01T00:00:00Z"})
    assert resp.status_code == 202

    progress = (await client.get(f"/sync/progress/{resp.json()['session_id']}")).json()
    assert progress["status"] == "completed"
    assert progress["date_from"].startswith("2024-01-01")


@pytest.mark.asyncio
async def test_single_invoice_sync(client: AsyncClient, remote):
    remote.add(INVOICE, {"_id": "i1", "Amount": 10, "Linked Agent": "a1"})
    remote.add(AGENT, {"_id": "a1"})

    resp = await client.post("/sync/invoice/i1")
    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is True
    assert data["stats"]["agent"] == 1

    missing = (await client.post("/sync/invoice/nope")).json()
    assert missing["success"] is False
    assert missing["errors"][0]["kind"] == "not_found"


@pytest.mark.asyncio
async def test_id_list_sync(client: AsyncClient, remote):
    remote.add(INVOICE, {"_id": "i1", "Amount": 10})

    resp = await client.post("/sync/ids", json={"csv": "type,id,modified\ninvoice,i1,2024-01-01"})
    assert resp.status_code == 202
    assert resp.json()["candidates"] == 1

    progress = (await client.get(f"/sync/progress/{resp.json()['session_id']}")).json()
    assert progress["status"] == "completed"

    empty = await client.post("/sync/ids", json={"csv": "type,id,modified"})
    assert empty.status_code == 422


@pytest.mark.asyncio
async def test_payment_sync(client: AsyncClient, remote):
    remote.add(PAYMENT, {"_id": "p1", "Amount": 10})

    resp = await client.post("/sync/payments")
    assert resp.status_code == 202

    progress = (await client.get(f"/sync/progress/{resp.json()['session_id']}")).json()
    assert progress["status"] == "completed"
