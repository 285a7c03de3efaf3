"""Progress sessions for in-flight sync runs.

Stores are injected into the orchestrator through ``ProgressReporter``;
readers poll ``store.get(session_id)``. Reporter writes are fire-and-forget:
they are bounded by a timeout and never raise into the sync step.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Protocol

from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import settings
from ..models import SyncProgress
from ..schemas.sync import ProgressSnapshot
from .upsert import as_utc, utcnow

logger = logging.getLogger(__name__)

MAX_DETAILS = 50


def new_session_id() -> str:
    return uuid.uuid4().hex


class ProgressStore(Protocol):
    async def create(self, session_id: str, **fields: Any) -> ProgressSnapshot: ...

    async def update(self, session_id: str, **fields: Any) -> None: ...

    async def get(self, session_id: str) -> ProgressSnapshot | None: ...

    async def delete(self, session_id: str) -> None: ...

    async def cleanup(self, older_than: timedelta | None = None) -> int: ...

    async def sessions(self) -> list[str]: ...


class InMemoryProgressStore:
    """Process-local keyed map of progress snapshots."""

    def __init__(self, retention: timedelta | None = None) -> None:
        self._sessions: dict[str, ProgressSnapshot] = {}
        self.retention = retention or timedelta(seconds=settings.progress_retention_seconds)

    async def create(self, session_id: str, **fields: Any) -> ProgressSnapshot:
        now = utcnow()
        snapshot = ProgressSnapshot(session_id=session_id, started_at=now, updated_at=now, **fields)
        self._sessions[session_id] = snapshot
        return snapshot.model_copy(deep=True)

    async def update(self, session_id: str, **fields: Any) -> None:
        snapshot = self._sessions.get(session_id)
        if snapshot is None:
            return
        self._sessions[session_id] = snapshot.model_copy(update={**fields, "updated_at": utcnow()})

    async def get(self, session_id: str) -> ProgressSnapshot | None:
        snapshot = self._sessions.get(session_id)
        return snapshot.model_copy(deep=True) if snapshot else None

    async def delete(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    async def cleanup(self, older_than: timedelta | None = None) -> int:
        cutoff = utcnow() - (older_than or self.retention)
        expired = [
            sid for sid, snap in self._sessions.items()
            if snap.updated_at is not None and as_utc(snap.updated_at) < cutoff
        ]
        for sid in expired:
            del self._sessions[sid]
        return len(expired)

    async def sessions(self) -> list[str]:
        return list(self._sessions)


class SqlProgressStore:
    """Progress snapshots persisted in the ``sync_progress`` table.

    Uses its own sessions so progress commits never touch the sync transaction.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        retention: timedelta | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.retention = retention or timedelta(seconds=settings.progress_retention_seconds)

    @staticmethod
    def _snapshot(row: SyncProgress) -> ProgressSnapshot:
        snapshot = ProgressSnapshot.model_validate(row)
        return snapshot.model_copy(
            update={
                "started_at": as_utc(snapshot.started_at),
                "updated_at": as_utc(snapshot.updated_at),
                "completed_at": as_utc(snapshot.completed_at),
            }
        )

    async def create(self, session_id: str, **fields: Any) -> ProgressSnapshot:
        now = utcnow()
        async with self._session_factory() as db:
            row = SyncProgress(session_id=session_id, started_at=now, updated_at=now)
            for key, value in fields.items():
                setattr(row, key, value)
            db.add(row)
            await db.commit()
            await db.refresh(row)
            return self._snapshot(row)

    async def update(self, session_id: str, **fields: Any) -> None:
        async with self._session_factory() as db:
            stmt = select(SyncProgress).where(SyncProgress.session_id == session_id)
            row = (await db.execute(stmt)).scalar_one_or_none()
            if row is None:
                return
            for key, value in fields.items():
                setattr(row, key, value)
            row.updated_at = utcnow()
            await db.commit()

    async def get(self, session_id: str) -> ProgressSnapshot | None:
        async with self._session_factory() as db:
            stmt = select(SyncProgress).where(SyncProgress.session_id == session_id)
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._snapshot(row) if row else None

    async def delete(self, session_id: str) -> None:
        async with self._session_factory() as db:
            await db.execute(delete(SyncProgress).where(SyncProgress.session_id == session_id))
            await db.commit()

    async def cleanup(self, older_than: timedelta | None = None) -> int:
        cutoff = utcnow() - (older_than or self.retention)
        async with self._session_factory() as db:
            stmt = delete(SyncProgress).where(
                or_(SyncProgress.updated_at < cutoff, SyncProgress.updated_at.is_(None))
            )
            result = await db.execute(stmt)
            await db.commit()
            return result.rowcount or 0

    async def sessions(self) -> list[str]:
        async with self._session_factory() as db:
            rows = await db.execute(select(SyncProgress.session_id))
            return [sid for (sid,) in rows.all()]


class ProgressReporter:
    """Write side of a progress session, bound to one session id.

    A reporter without a store or session id is a no-op.
    """

    def __init__(
        self,
        store: ProgressStore | None,
        session_id: str | None = None,
        *,
        timeout: float | None = None,
    ) -> None:
        self.store = store
        self.session_id = session_id
        self.timeout = timeout if timeout is not None else settings.progress_write_timeout_seconds
        self._details: list[str] = []
        self._completed: list[str] = []

    @property
    def enabled(self) -> bool:
        return self.store is not None and bool(self.session_id)

    async def _safe(self, write: Awaitable[Any]) -> None:
        try:
            await asyncio.wait_for(write, timeout=self.timeout)
        except Exception as exc:
            logger.warning("Progress write for session %s failed: %s", self.session_id, exc)

    async def start(self, **fields: Any) -> None:
        if not self.enabled:
            return
        self._details = list(fields.pop("details", []) or [])
        existing = None
        try:
            existing = await asyncio.wait_for(self.store.get(self.session_id), timeout=self.timeout)
        except Exception as exc:
            logger.warning("Progress read for session %s failed: %s", self.session_id, exc)
        if existing is None:
            await self._safe(
                self.store.create(self.session_id, status="running", details=self._details, **fields)
            )
        else:
            await self._safe(
                self.store.update(
                    self.session_id,
                    status="running",
                    details=self._details,
                    error_message=None,
                    completed_at=None,
                    **fields,
                )
            )

    async def update(self, detail: str | None = None, **fields: Any) -> None:
        if not self.enabled:
            return
        if detail:
            self._details = (self._details + [detail])[-MAX_DETAILS:]
            fields["details"] = list(self._details)
        await self._safe(self.store.update(self.session_id, **fields))

    async def category_done(self, category: str) -> None:
        if category not in self._completed:
            self._completed.append(category)
        await self.update(categories_completed=list(self._completed))

    async def complete(self, detail: str | None = None, **fields: Any) -> None:
        await self.update(detail, status="completed", completed_at=utcnow(), **fields)

    async def fail(self, message: str, **fields: Any) -> None:
        await self.update(
            f"Error: {message}", status="error", error_message=message, completed_at=utcnow(), **fields
        )


async def get_progress(store: ProgressStore, session_id: str) -> ProgressSnapshot | None:
    return await store.get(session_id)


def is_expired(snapshot: ProgressSnapshot, retention: timedelta, now: datetime | None = None) -> bool:
    if snapshot.updated_at is None:
        return True
    return as_utc(snapshot.updated_at) < (now or utcnow()) - retention
