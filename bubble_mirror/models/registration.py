"""Registration (SEDA) model."""

from __future__ import annotations

from decimal import Decimal

from sqlalchemy import Boolean, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, RemoteIdMixin, RemoteSyncMixin, StringList, TimestampMixin, UUIDMixin


class Registration(UUIDMixin, RemoteIdMixin, RemoteSyncMixin, TimestampMixin, Base):
    __tablename__ = "seda_registration"

    city: Mapped[str | None] = mapped_column(String(100), default=None)
    state: Mapped[str | None] = mapped_column(String(100), default=None)
    installation_address: Mapped[str | None] = mapped_column(Text, default=None)
    email: Mapped[str | None] = mapped_column(String(255), default=None)
    ic_no: Mapped[str | None] = mapped_column(String(50), default=None)
    project_price: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), default=None)
    system_size: Mapped[int | None] = mapped_column(Integer, default=None)
    system_size_in_form_kwp: Mapped[int | None] = mapped_column(Integer, default=None)
    sunpeak_hours: Mapped[Decimal | None] = mapped_column(Numeric(8, 2), default=None)
    reg_status: Mapped[str | None] = mapped_column(String(100), default=None)
    redex_status: Mapped[str | None] = mapped_column(String(100), default=None)
    seda_status: Mapped[str | None] = mapped_column(String(100), default=None)
    phase_type: Mapped[str | None] = mapped_column(String(50), default=None)
    tnb_account_no: Mapped[str | None] = mapped_column(String(100), default=None)
    nem_application_no: Mapped[str | None] = mapped_column(String(100), default=None)
    special_remark: Mapped[str | None] = mapped_column(Text, default=None)
    drawing_system_submitted: Mapped[bool | None] = mapped_column(Boolean, default=None)

    # File references (materialized by the file service)
    customer_signature: Mapped[str | None] = mapped_column(Text, default=None)
    ic_copy_front: Mapped[str | None] = mapped_column(Text, default=None)
    ic_copy_back: Mapped[str | None] = mapped_column(Text, default=None)
    tnb_bill_1: Mapped[str | None] = mapped_column(Text, default=None)
    tnb_bill_2: Mapped[str | None] = mapped_column(Text, default=None)
    tnb_bill_3: Mapped[str | None] = mapped_column(Text, default=None)
    roof_images: Mapped[list[str] | None] = mapped_column(StringList, default=None)
    site_images: Mapped[list[str] | None] = mapped_column(StringList, default=None)

    # Relations (remote ids)
    agent: Mapped[str | None] = mapped_column(String(100), default=None)
    linked_customer: Mapped[str | None] = mapped_column(String(100), default=None)
    linked_invoice: Mapped[list[str] | None] = mapped_column(StringList, default=None)
    created_by: Mapped[str | None] = mapped_column(String(100), default=None)
