"""Payment models.

A submitted payment is the pending variant; once verified remotely it moves
to the payment collection and disappears from the submitted one.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, RemoteIdMixin, RemoteSyncMixin, StringList, TimestampMixin, UUIDMixin


class PaymentColumnsMixin:
    amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), default=None)
    payment_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    payment_method: Mapped[str | None] = mapped_column(String(100), default=None)
    payment_method_v2: Mapped[str | None] = mapped_column(String(100), default=None)
    payment_index: Mapped[int | None] = mapped_column(Integer, default=None)
    epp_month: Mapped[int | None] = mapped_column(Integer, default=None)
    epp_type: Mapped[str | None] = mapped_column(String(100), default=None)
    bank_charges: Mapped[int | None] = mapped_column(Integer, default=None)
    issuer_bank: Mapped[str | None] = mapped_column(String(100), default=None)
    terminal: Mapped[str | None] = mapped_column(String(100), default=None)
    remark: Mapped[str | None] = mapped_column(Text, default=None)
    attachment: Mapped[list[str] | None] = mapped_column(StringList, default=None)
    verified_by: Mapped[str | None] = mapped_column(String(100), default=None)

    # Relations (remote ids)
    linked_agent: Mapped[str | None] = mapped_column(String(100), default=None)
    linked_customer: Mapped[str | None] = mapped_column(String(100), default=None)
    linked_invoice: Mapped[str | None] = mapped_column(String(100), default=None, index=True)
    created_by: Mapped[str | None] = mapped_column(String(100), default=None)


class Payment(UUIDMixin, RemoteIdMixin, RemoteSyncMixin, PaymentColumnsMixin, TimestampMixin, Base):
    __tablename__ = "payment"


class SubmittedPayment(
    UUIDMixin, RemoteIdMixin, RemoteSyncMixin, PaymentColumnsMixin, TimestampMixin, Base
):
    __tablename__ = "submitted_payment"

    status: Mapped[str | None] = mapped_column(String(50), default=None)
