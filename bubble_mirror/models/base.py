"""Base model classes and mixins for mirrored entities."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, String, Text, Uuid, func
from sqlalchemy.dialects import postgresql
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Ordered lists of remote ids: native TEXT[] on PostgreSQL, JSON elsewhere.
StringList = JSON().with_variant(postgresql.ARRAY(Text), "postgresql")


class Base(DeclarativeBase):
    pass


class UUIDMixin:
    """Adds a UUID primary key."""

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )


class TimestampMixin:
    """Adds created_at / updated_at columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class RemoteIdMixin:
    """Remote identifier column shared by every entity except Customer."""

    bubble_id: Mapped[str] = mapped_column(String(100), unique=True, index=True)


class RemoteSyncMixin:
    """Adds remote sync tracking columns.

    ``modified_date`` is copied from the remote record, ``last_synced_at`` is
    stamped by the engine on every write, and ``unmapped_fields`` keeps remote
    keys that have no declared column.
    """

    modified_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    created_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    last_synced_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    unmapped_fields: Mapped[dict[str, Any] | None] = mapped_column(JSON, default=None)
