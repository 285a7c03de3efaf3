"""Customer model. Keyed by ``customer_id`` rather than ``bubble_id``."""

from __future__ import annotations

from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, RemoteSyncMixin, TimestampMixin, UUIDMixin


class Customer(UUIDMixin, RemoteSyncMixin, TimestampMixin, Base):
    __tablename__ = "customer"

    customer_id: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    name: Mapped[str | None] = mapped_column(String(255), default=None)
    email: Mapped[str | None] = mapped_column(String(255), default=None)
    phone: Mapped[str | None] = mapped_column(String(100), default=None)
    address: Mapped[str | None] = mapped_column(Text, default=None)
    city: Mapped[str | None] = mapped_column(String(100), default=None)
    state: Mapped[str | None] = mapped_column(String(100), default=None)
    postcode: Mapped[str | None] = mapped_column(String(20), default=None)
    ic_number: Mapped[str | None] = mapped_column(String(50), default=None)

    # Relations (remote ids)
    created_by: Mapped[str | None] = mapped_column(String(100), default=None)
    linked_agent: Mapped[str | None] = mapped_column(String(100), default=None)
