"""Test the remote API client pagination and fetch primitives."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from bubble_mirror.sync.errors import CancelToken, RemoteError, RemoteNotFound, SyncCancelled
from bubble_mirror.sync.remote_client import RemoteClient, filter_by_modified


def page(results, remaining=0):
    return {"response": {"cursor": 0, "results": results, "count": len(results), "remaining": remaining}}


@pytest.fixture
def remote_client():
    client = RemoteClient("https://app.example.com/api/1.1/obj", "test-key", max_concurrency=2)
    client._client = MagicMock()
    return client


@pytest.mark.asyncio
async def test_scan_follows_cursor(remote_client, mock_response):
    remote_client._client.get = AsyncMock(side_effect=[
        mock_response(page([{"_id": "a"}, {"_id": "b"}], remaining=1)),
        mock_response(page([{"_id": "c"}], remaining=0)),
    ])

    scan = await remote_client.scan("invoice")

    assert scan.complete
    assert [r["_id"] for r in scan.records] == ["a", "b", "c"]
    second_call = remote_client._client.get.call_args_list[1]
    assert second_call.kwargs["params"]["cursor"] == 2


@pytest.mark.asyncio
async def test_scan_deduplicates_ids(remote_client, mock_response):
    remote_client._client.get = AsyncMock(side_effect=[
        mock_response(page([{"_id": "a"}, {"_id": "b"}], remaining=2)),
        mock_response(page([{"_id": "b"}, {"_id": "c"}], remaining=0)),
    ])

    scan = await remote_client.scan("payment")
    assert [r["_id"] for r in scan.records] == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_scan_halts_on_server_error(remote_client, mock_response):
    remote_client._client.get = AsyncMock(side_effect=[
        mock_response(page([{"_id": "a"}], remaining=5)),
        mock_response({}, status_code=500),
    ])

    scan = await remote_client.scan("invoice")
    assert not scan.complete
    assert [r["_id"] for r in scan.records] == ["a"]


@pytest.mark.asyncio
async def test_scan_404_is_incomplete(remote_client, mock_response):
    remote_client._client.get = AsyncMock(return_value=mock_response({}, status_code=404))

    scan = await remote_client.scan("submit_payment")
    assert scan.records == []
    assert not scan.complete


@pytest.mark.asyncio
async def test_scan_stops_on_repeated_page(remote_client, mock_response):
    remote_client._client.get = AsyncMock(return_value=mock_response(page([{"_id": "a"}], remaining=3)))

    scan = await remote_client.scan("agent")
    assert len(scan.records) == 1
    assert not scan.complete


@pytest.mark.asyncio
async def test_scan_passes_constraints(remote_client, mock_response):
    remote_client._client.get = AsyncMock(return_value=mock_response(page([])))
    constraints = [{"key": "Linked Agent Profile", "constraint_type": "equals", "value": "a1"}]

    await remote_client.scan("user", constraints)

    params = remote_client._client.get.call_args.kwargs["params"]
    assert '"Linked Agent Profile"' in params["constraints"]


@pytest.mark.asyncio
async def test_fetch_by_id(remote_client, mock_response):
    remote_client._client.get = AsyncMock(return_value=mock_response({"response": {"Name": "Ali"}}))

    record = await remote_client.fetch_by_id("agent", "a1")
    assert record == {"Name": "Ali", "_id": "a1"}
    assert remote_client._client.get.call_args.args[0] == "/agent/a1"


@pytest.mark.asyncio
async def test_fetch_by_id_not_found(remote_client, mock_response):
    remote_client._client.get = AsyncMock(return_value=mock_response({}, status_code=404))

    with pytest.raises(RemoteNotFound):
        await remote_client.fetch_by_id("agent", "gone")


@pytest.mark.asyncio
async def test_fetch_all_ids(remote_client, mock_response):
    remote_client._client.get = AsyncMock(return_value=mock_response(page([{"_id": "x"}, {"_id": "y"}])))

    id_scan = await remote_client.fetch_all_ids("submit_payment")
    assert id_scan.ids == {"x", "y"}
    assert id_scan.complete


@pytest.mark.asyncio
async def test_fetch_many_sorts_outcomes(remote_client, mock_response):
    responses = {
        "/payment/p1": mock_response({"response": {"Amount": 10}}),
        "/payment/p2": mock_response({}, status_code=404),
        "/payment/p3": mock_response({}, status_code=503),
    }

    async def _get(path, params=None):
        return responses[path]

    remote_client._client.get = AsyncMock(side_effect=_get)

    batch = await remote_client.fetch_many("payment", ["p1", "p2", "p3", "p1"])
    assert list(batch.records) == ["p1"]
    assert batch.missing == ["p2"]
    assert list(batch.failed) == ["p3"]
    assert remote_client._client.get.call_count == 3


@pytest.mark.asyncio
async def test_cancel_stops_new_requests(remote_client, mock_response):
    remote_client.cancel = CancelToken()
    remote_client.cancel.cancel()
    remote_client._client.get = AsyncMock(return_value=mock_response(page([])))

    with pytest.raises(SyncCancelled):
        await remote_client.scan("invoice")
    batch = await remote_client.fetch_many("invoice", ["i1"])
    assert batch.cancelled
    remote_client._client.get.assert_not_called()


@pytest.mark.asyncio
async def test_transport_error_halts_scan(remote_client):
    remote_client._client.get = AsyncMock(side_effect=httpx.ConnectError("boom"))

    scan = await remote_client.scan("invoice")
    assert not scan.complete


def _maintenance_transport(ok_pages):
    """Serve ``ok_pages`` for collection requests, then an HTML body with HTTP 200."""
    pages = list(ok_pages)

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/invoice") and pages:
            return httpx.Response(200, json=pages.pop(0))
        return httpx.Response(200, text="<html>maintenance</html>")

    return httpx.MockTransport(handler)


@pytest.mark.asyncio
async def test_non_json_page_halts_scan():
    transport = _maintenance_transport([page([{"_id": "a"}], remaining=5)])
    async with RemoteClient("https://app.example.com/api", "k", transport=transport) as remote:
        scan = await remote.scan("invoice")

    assert not scan.complete
    assert [r["_id"] for r in scan.records] == ["a"]


@pytest.mark.asyncio
async def test_non_json_body_is_a_failed_fetch():
    transport = _maintenance_transport([])
    async with RemoteClient("https://app.example.com/api", "k", transport=transport) as remote:
        with pytest.raises(RemoteError):
            await remote.fetch_by_id("agent", "a1")
        batch = await remote.fetch_many("agent", ["a1", "a2"])

    assert batch.records == {}
    assert sorted(batch.failed) == ["a1", "a2"]
    assert not batch.cancelled


def test_client_requires_context():
    with pytest.raises(RuntimeError):
        RemoteClient("https://x", "k").client


def test_filter_by_modified_window():
    records = [
        {"_id": "old", "Modified Date": "2023-12-31T23:59:59Z"},
        {"_id": "in", "Modified Date": "2024-01-10T00:00:00Z"},
        {"_id": "late", "Modified Date": "2024-02-10T00:00:00Z"},
        {"_id": "none"},
    ]
    selected = filter_by_modified(
        records,
        datetime(2024, 1, 1, tzinfo=timezone.utc),
        datetime(2024, 2, 1),
    )
    assert [r["_id"] for r in selected] == ["in"]
