"""File materialization collaborator.

Downloading attachments is owned by a separate service; the orchestrator only
asks it to process one category at a time.
"""

from __future__ import annotations

from typing import Protocol

from ..schemas.sync import FileSyncResult

FILE_CATEGORIES = (
    "signatures",
    "ic_copies",
    "bills",
    "user_profiles",
    "roof_site_images",
    "payments",
)


class FileMaterializer(Protocol):
    async def sync_files_by_category(
        self,
        category: str,
        limit: int,
        session_id: str | None = None,
    ) -> FileSyncResult: ...


def validate_categories(categories) -> list[str]:
    """Keep known categories in canonical order; raise on unknown names."""
    requested = list(dict.fromkeys(categories or ()))
    unknown = [c for c in requested if c not in FILE_CATEGORIES]
    if unknown:
        raise ValueError(f"Unknown file categories: {', '.join(unknown)}")
    return [c for c in FILE_CATEGORIES if c in requested]
