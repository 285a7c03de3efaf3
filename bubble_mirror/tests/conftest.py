"""Async test fixtures for mirror tests using SQLite."""

from __future__ import annotations

from typing import Any
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from bubble_mirror.database import get_db
from bubble_mirror.models import Base
from bubble_mirror.sync.errors import RemoteNotFound
from bubble_mirror.sync.progress import InMemoryProgressStore
from bubble_mirror.sync.remote_client import FetchBatch, IdScan, Scan


class FakeRemote:
    """In-memory stand-in for ``RemoteClient`` keyed by entity type."""

    def __init__(self, collections: dict[str, list[dict[str, Any]]] | None = None, incomplete=()):
        self.collections = {k: list(v) for k, v in (collections or {}).items()}
        self.incomplete = set(incomplete)
        self.cancel = None
        self.calls: list[tuple[str, str, Any]] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        return None

    def add(self, entity_type: str, *records: dict[str, Any]) -> None:
        self.collections.setdefault(entity_type, []).extend(records)

    def _find(self, entity_type: str, remote_id: str) -> dict[str, Any] | None:
        for record in self.collections.get(entity_type, []):
            if record.get("_id") == remote_id:
                return dict(record)
        return None

    async def scan(self, entity_type: str, constraints=None) -> Scan:
        self.calls.append(("scan", entity_type, constraints))
        records = [dict(r) for r in self.collections.get(entity_type, [])]
        for constraint in constraints or []:
            records = [r for r in records if r.get(constraint["key"]) == constraint["value"]]
        return Scan(records=records, complete=entity_type not in self.incomplete)

    async def fetch_all_ids(self, entity_type: str) -> IdScan:
        scan = await self.scan(entity_type)
        return IdScan(ids={r["_id"] for r in scan.records}, complete=scan.complete)

    async def fetch_by_id(self, entity_type: str, remote_id: str) -> dict[str, Any]:
        self.calls.append(("fetch_by_id", entity_type, remote_id))
        record = self._find(entity_type, remote_id)
        if record is None:
            raise RemoteNotFound(entity_type, remote_id)
        return record

    async def fetch_many(self, entity_type: str, remote_ids) -> FetchBatch:
        batch = FetchBatch()
        for remote_id in dict.fromkeys(remote_ids):
            self.calls.append(("fetch_by_id", entity_type, remote_id))
            record = self._find(entity_type, remote_id)
            if record is None:
                batch.missing.append(remote_id)
            else:
                batch.records[remote_id] = record
        return batch

    def fetched_ids(self, entity_type: str) -> list[str]:
        return [arg for call, et, arg in self.calls if call == "fetch_by_id" and et == entity_type]


@pytest_asyncio.fixture
async def engine():
    eng = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def progress_store():
    return InMemoryProgressStore()


@pytest_asyncio.fixture
async def client(session_factory, remote, progress_store):
    """HTTPX async test client against the mirror app."""
    from bubble_mirror.app import app
    from bubble_mirror.routers import sync as sync_routes

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[sync_routes.get_session_factory] = lambda: session_factory
    app.dependency_overrides[sync_routes.get_remote_factory] = lambda: (lambda: remote)
    app.dependency_overrides[sync_routes.get_progress_store] = lambda: progress_store

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture
def mock_response():
    """Factory fixture to create mock HTTP responses."""
    def _create_response(data: Any, status_code: int = 200):
        response = MagicMock()
        response.status_code = status_code
        response.json.return_value = data
        response.raise_for_status = MagicMock()
        if status_code >= 400:
            from httpx import HTTPStatusError
            response.raise_for_status.side_effect = HTTPStatusError(
                f"HTTP {status_code}", request=MagicMock(), response=response
            )
        return response
    return _create_response

