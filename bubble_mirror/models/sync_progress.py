"""Persisted progress sessions for long-running sync runs."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Float, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, UUIDMixin


class SyncProgress(UUIDMixin, Base):
    __tablename__ = "sync_progress"

    session_id: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    status: Mapped[str] = mapped_column(String(20), default="idle", index=True)
    phase: Mapped[str | None] = mapped_column(String(50), default=None)
    category: Mapped[str | None] = mapped_column(String(100), default=None)
    current: Mapped[int] = mapped_column(Integer, default=0)
    total: Mapped[int] = mapped_column(Integer, default=0)
    current_item: Mapped[str | None] = mapped_column(String(100), default=None)
    records_per_second: Mapped[float | None] = mapped_column(Float, default=None)
    details: Mapped[list[Any]] = mapped_column(JSON, default=list)
    categories_total: Mapped[list[Any]] = mapped_column(JSON, default=list)
    categories_completed: Mapped[list[Any]] = mapped_column(JSON, default=list)
    date_from: Mapped[str | None] = mapped_column(String(50), default=None)
    date_to: Mapped[str | None] = mapped_column(String(50), default=None)
    error_message: Mapped[str | None] = mapped_column(Text, default=None)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
