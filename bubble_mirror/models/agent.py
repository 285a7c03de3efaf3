"""Agent and User models."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, RemoteIdMixin, RemoteSyncMixin, StringList, TimestampMixin, UUIDMixin


class Agent(UUIDMixin, RemoteIdMixin, RemoteSyncMixin, TimestampMixin, Base):
    __tablename__ = "agent"

    name: Mapped[str | None] = mapped_column(String(255), default=None)
    email: Mapped[str | None] = mapped_column(String(255), default=None)
    contact: Mapped[str | None] = mapped_column(String(100), default=None)
    agent_type: Mapped[str | None] = mapped_column(String(100), default=None)
    slug: Mapped[str | None] = mapped_column(String(255), default=None)
    address: Mapped[str | None] = mapped_column(Text, default=None)
    bankin_account: Mapped[str | None] = mapped_column(String(100), default=None)
    banker: Mapped[str | None] = mapped_column(String(255), default=None)
    commission: Mapped[int | None] = mapped_column(Integer, default=None)
    tree_seed: Mapped[str | None] = mapped_column(String(255), default=None)
    ic_front: Mapped[str | None] = mapped_column(Text, default=None)
    ic_back: Mapped[str | None] = mapped_column(Text, default=None)
    intro_youtube: Mapped[str | None] = mapped_column(Text, default=None)
    last_update_annual_sales: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    current_annual_sales: Mapped[int | None] = mapped_column(Integer, default=None)
    annual_collection: Mapped[int | None] = mapped_column(Integer, default=None)

    # Relations (remote ids)
    linked_user_login: Mapped[str | None] = mapped_column(String(100), default=None)
    created_by: Mapped[str | None] = mapped_column(String(100), default=None)


class User(UUIDMixin, RemoteIdMixin, RemoteSyncMixin, TimestampMixin, Base):
    __tablename__ = "user"

    email: Mapped[str | None] = mapped_column(String(255), default=None)
    # JSON text of the remote authentication block (only kept when it has an email).
    authentication: Mapped[str | None] = mapped_column(Text, default=None)
    agent_code: Mapped[str | None] = mapped_column(String(100), default=None)
    dealership: Mapped[str | None] = mapped_column(String(255), default=None)
    profile_picture: Mapped[str | None] = mapped_column(Text, default=None)
    user_signed_up: Mapped[bool | None] = mapped_column(Boolean, default=None)
    access_level: Mapped[list[str] | None] = mapped_column(StringList, default=None)
    check_in_report_today: Mapped[str | None] = mapped_column(String(100), default=None)

    # Relations (remote ids)
    linked_agent_profile: Mapped[str | None] = mapped_column(
        String(100), default=None, index=True
    )
    created_by: Mapped[str | None] = mapped_column(String(100), default=None)
