"""Bubble Data API client - paginated, cursor-based fetch primitives.

All sync paths go through this client; no business logic lives here.

Usage:
    async with RemoteClient.from_settings() as remote:
        scan = await remote.scan("invoice")
        agent = await remote.fetch_by_id("agent", "1699999999999x1")
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable

import httpx

from ..config import settings
from .errors import CancelToken, RemoteError, RemoteNotFound, SyncCancelled
from .field_mapper import parse_timestamp

logger = logging.getLogger(__name__)

RemoteRecord = dict[str, Any]


@dataclass
class Page:
    records: list[RemoteRecord]
    remaining: int


@dataclass
class Scan:
    """Records accumulated by a pagination loop.

    ``complete`` is False when the loop halted early (HTTP error, transport
    error, page guard); callers must treat that as a partial result.
    """

    records: list[RemoteRecord]
    complete: bool = True


@dataclass
class IdScan:
    ids: set[str]
    complete: bool = True


@dataclass
class FetchBatch:
    """Result of a concurrent by-id fetch."""

    records: dict[str, RemoteRecord] = field(default_factory=dict)
    missing: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    cancelled: bool = False


def _extract_results(payload: Any) -> tuple[list[RemoteRecord], int]:
    """Pull ``(results, remaining)`` out of a collection response."""
    if not isinstance(payload, dict):
        return [], 0
    body = payload.get("response", payload)
    if not isinstance(body, dict):
        return [], 0
    raw = body.get("results", [])
    records = [item for item in raw if isinstance(item, dict)] if isinstance(raw, list) else []
    remaining = body.get("remaining", 0)
    try:
        remaining = int(remaining)
    except (TypeError, ValueError):
        remaining = 0
    return records, remaining


def filter_by_modified(
    records: Iterable[RemoteRecord],
    date_from: datetime | None,
    date_to: datetime | None = None,
) -> list[RemoteRecord]:
    """Keep records whose ``Modified Date`` falls inside ``[date_from, date_to]``.

    The remote API cannot constrain on system fields, so windows are applied
    in memory after a full collection scan. ``date_to`` defaults to now.
    """
    upper = date_to or datetime.now(timezone.utc)
    if upper.tzinfo is None:
        upper = upper.replace(tzinfo=timezone.utc)
    lower = date_from
    if lower is not None and lower.tzinfo is None:
        lower = lower.replace(tzinfo=timezone.utc)

    selected: list[RemoteRecord] = []
    for record in records:
        modified = parse_timestamp(record.get("Modified Date"))
        if modified is None:
            continue
        if lower is not None and modified < lower:
            continue
        if modified > upper:
            continue
        selected.append(record)
    return selected


class RemoteClient:
    """Bubble Data API client bound to one ``httpx.AsyncClient``."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 30.0,
        page_size: int = 100,
        max_concurrency: int = 10,
        max_pages: int = 10000,
        cancel: CancelToken | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.page_size = page_size
        self.max_pages = max_pages
        self.cancel = cancel
        self._transport = transport
        self._semaphore = asyncio.Semaphore(max(1, max_concurrency))
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(cls, cancel: CancelToken | None = None) -> "RemoteClient":
        return cls(
            settings.remote_base_url,
            settings.remote_api_key,
            timeout=settings.remote_timeout_seconds,
            page_size=settings.remote_page_size,
            max_concurrency=settings.remote_concurrency,
            max_pages=settings.remote_max_pages,
            cancel=cancel,
        )

    async def __aenter__(self) -> "RemoteClient":
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Accept": "application/json",
            },
        )
        return self

    async def __aexit__(self, *args) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if not self._client:
            raise RuntimeError("Client not initialized. Use 'async with' context.")
        return self._client

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        if self.cancel is not None:
            self.cancel.raise_if_cancelled()
        resp = await self.client.get(path, params=params)
        resp.raise_for_status()
        try:
            return resp.json()
        except ValueError as exc:
            raise RemoteError(
                f"{path} returned a non-JSON body", status_code=resp.status_code
            ) from exc

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    async def fetch_page(
        self,
        entity_type: str,
        cursor: int = 0,
        page_size: int | None = None,
        constraints: list[dict[str, Any]] | None = None,
    ) -> Page:
        """Fetch one page of a collection. HTTP errors propagate."""
        params: dict[str, Any] = {"cursor": cursor, "limit": page_size or self.page_size}
        if constraints:
            params["constraints"] = json.dumps(constraints)
        payload = await self._get(f"/{entity_type}", params=params)
        records, remaining = _extract_results(payload)
        return Page(records=records, remaining=remaining)

    async def fetch_by_id(self, entity_type: str, remote_id: str) -> RemoteRecord:
        """Fetch a single record; raises ``RemoteNotFound`` when absent."""
        try:
            payload = await self._get(f"/{entity_type}/{remote_id}")
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 404:
                raise RemoteNotFound(entity_type, remote_id) from exc
            raise

        record = payload.get("response") if isinstance(payload, dict) else None
        if not isinstance(record, dict) or not record:
            raise RemoteNotFound(entity_type, remote_id)
        record.setdefault("_id", remote_id)
        return record

    # ------------------------------------------------------------------
    # Pagination
    # ------------------------------------------------------------------

    async def scan(
        self,
        entity_type: str,
        constraints: list[dict[str, Any]] | None = None,
    ) -> Scan:
        """Walk a collection until ``remaining`` reaches zero or a page is empty.

        Non-2xx responses halt the loop and keep what was accumulated; 404 is
        logged at INFO only. ``SyncCancelled`` propagates.
        """
        records: list[RemoteRecord] = []
        seen_ids: set[str] = set()
        cursor = 0
        complete = True

        for _ in range(self.max_pages):
            try:
                page = await self.fetch_page(entity_type, cursor, constraints=constraints)
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                if status == 404:
                    logger.info("Collection %s returned 404 at cursor %s", entity_type, cursor)
                else:
                    logger.warning(
                        "Pagination of %s halted at cursor %s: HTTP %s", entity_type, cursor, status
                    )
                complete = False
                break
            except (httpx.HTTPError, RemoteError) as exc:
                logger.warning("Pagination of %s halted at cursor %s: %s", entity_type, cursor, exc)
                complete = False
                break

            if not page.records:
                break

            new_count = 0
            for item in page.records:
                item_id = item.get("_id")
                if isinstance(item_id, str) and item_id:
                    if item_id in seen_ids:
                        continue
                    seen_ids.add(item_id)
                records.append(item)
                new_count += 1

            cursor += len(page.records)
            if page.remaining <= 0:
                break

            # Guard against an API that ignores the cursor and repeats a page.
            if new_count == 0:
                logger.warning("Pagination of %s stalled at cursor %s", entity_type, cursor)
                complete = False
                break
        else:
            logger.warning("Pagination of %s stopped after %s pages", entity_type, self.max_pages)
            complete = False

        logger.info("Fetched %s %s records (complete=%s)", len(records), entity_type, complete)
        return Scan(records=records, complete=complete)

    async def fetch_all_ids(self, entity_type: str) -> IdScan:
        """Collect only the identifiers of a collection."""
        scan = await self.scan(entity_type)
        ids = {r["_id"] for r in scan.records if isinstance(r.get("_id"), str) and r["_id"]}
        return IdScan(ids=ids, complete=scan.complete)

    async def fetch_many(self, entity_type: str, remote_ids: Iterable[str]) -> FetchBatch:
        """Fetch several records by id concurrently, bounded by the semaphore."""
        batch = FetchBatch()
        unique_ids = list(dict.fromkeys(i for i in remote_ids if isinstance(i, str) and i))

        async def _one(remote_id: str) -> None:
            async with self._semaphore:
                try:
                    batch.records[remote_id] = await self.fetch_by_id(entity_type, remote_id)
                except RemoteNotFound:
                    logger.info("%s %s not found remotely; skipping", entity_type, remote_id)
                    batch.missing.append(remote_id)
                except SyncCancelled:
                    batch.cancelled = True
                except (httpx.HTTPError, RemoteError) as exc:
                    logger.warning("Fetch of %s %s failed: %s", entity_type, remote_id, exc)
                    batch.failed[remote_id] = str(exc)

        await asyncio.gather(*(_one(remote_id) for remote_id in unique_ids))
        return batch
