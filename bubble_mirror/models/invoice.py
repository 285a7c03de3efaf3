"""Invoice, line item and invoice template models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, RemoteIdMixin, RemoteSyncMixin, StringList, TimestampMixin, UUIDMixin


class Invoice(UUIDMixin, RemoteIdMixin, RemoteSyncMixin, TimestampMixin, Base):
    __tablename__ = "invoice"

    invoice_id: Mapped[int | None] = mapped_column(Integer, default=None)
    invoice_number: Mapped[str | None] = mapped_column(String(100), default=None)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), default=None)
    total_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), default=None)
    first_payment_percent: Mapped[int | None] = mapped_column(Integer, default=None)
    first_payment_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    second_payment_percent: Mapped[int | None] = mapped_column(Integer, default=None)
    amount_eligible_for_comm: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), default=None)
    full_payment_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    last_payment_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    invoice_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    status: Mapped[str | None] = mapped_column(String(50), default=None)
    type: Mapped[str | None] = mapped_column(String(50), default=None)
    version: Mapped[int | None] = mapped_column(Integer, default=None)
    approval_status: Mapped[str | None] = mapped_column(String(50), default=None)
    case_status: Mapped[str | None] = mapped_column(String(50), default=None)
    stock_status_inv: Mapped[str | None] = mapped_column(String(50), default=None)
    paid: Mapped[bool | None] = mapped_column(Boolean, default=None)
    need_approval: Mapped[bool | None] = mapped_column(Boolean, default=None)
    locked_package: Mapped[bool | None] = mapped_column(Boolean, default=None)
    commission_paid: Mapped[bool | None] = mapped_column(Boolean, default=None)
    normal_commission: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), default=None)
    performance_tier_month: Mapped[int | None] = mapped_column(Integer, default=None)
    performance_tier_year: Mapped[int | None] = mapped_column(Integer, default=None)
    panel_qty: Mapped[int | None] = mapped_column(Integer, default=None)
    stamp_cash_price: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), default=None)
    dealercode: Mapped[str | None] = mapped_column(String(100), default=None)
    logs: Mapped[str | None] = mapped_column(Text, default=None)
    eligible_amount_description: Mapped[str | None] = mapped_column(Text, default=None)
    visit: Mapped[int | None] = mapped_column(Integer, default=None)

    # Relations (remote ids)
    linked_customer: Mapped[str | None] = mapped_column(String(100), default=None, index=True)
    linked_agent: Mapped[str | None] = mapped_column(String(100), default=None, index=True)
    linked_seda_registration: Mapped[str | None] = mapped_column(String(100), default=None)
    linked_payment: Mapped[list[str] | None] = mapped_column(StringList, default=None)
    linked_invoice_item: Mapped[list[str] | None] = mapped_column(StringList, default=None)
    linked_stock_transaction: Mapped[list[str] | None] = mapped_column(StringList, default=None)
    linked_package: Mapped[str | None] = mapped_column(String(100), default=None)
    linked_agreement: Mapped[str | None] = mapped_column(String(100), default=None)
    created_by: Mapped[str | None] = mapped_column(String(100), default=None)


class InvoiceItem(UUIDMixin, RemoteIdMixin, RemoteSyncMixin, TimestampMixin, Base):
    __tablename__ = "invoice_item"

    description: Mapped[str | None] = mapped_column(Text, default=None)
    qty: Mapped[int | None] = mapped_column(Integer, default=None)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), default=None)
    unit_price: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), default=None)
    is_a_package: Mapped[bool | None] = mapped_column(Boolean, default=None)
    inv_item_type: Mapped[str | None] = mapped_column(String(100), default=None)
    epp: Mapped[int | None] = mapped_column(Integer, default=None)
    sort: Mapped[int | None] = mapped_column(Integer, default=None)
    voucher_remark: Mapped[str | None] = mapped_column(Text, default=None)

    # Relations (remote ids)
    linked_invoice: Mapped[str | None] = mapped_column(String(100), default=None, index=True)
    linked_package: Mapped[str | None] = mapped_column(String(100), default=None)
    linked_voucher: Mapped[str | None] = mapped_column(String(100), default=None)
    created_by: Mapped[str | None] = mapped_column(String(100), default=None)


class InvoiceTemplate(UUIDMixin, RemoteIdMixin, RemoteSyncMixin, TimestampMixin, Base):
    __tablename__ = "invoice_template"

    template_name: Mapped[str | None] = mapped_column(String(255), default=None)
    company_name: Mapped[str | None] = mapped_column(String(255), default=None)
    company_address: Mapped[str | None] = mapped_column(Text, default=None)
    company_phone: Mapped[str | None] = mapped_column(String(100), default=None)
    company_email: Mapped[str | None] = mapped_column(String(255), default=None)
    sst_registration_no: Mapped[str | None] = mapped_column(String(100), default=None)
    bank_name: Mapped[str | None] = mapped_column(String(255), default=None)
    bank_account_no: Mapped[str | None] = mapped_column(String(100), default=None)
    bank_account_name: Mapped[str | None] = mapped_column(String(255), default=None)
    logo_url: Mapped[str | None] = mapped_column(Text, default=None)
    terms_and_conditions: Mapped[str | None] = mapped_column(Text, default=None)
    disclaimer: Mapped[str | None] = mapped_column(Text, default=None)
    active: Mapped[bool | None] = mapped_column(Boolean, default=None)
    is_default: Mapped[bool | None] = mapped_column(Boolean, default=None)
    apply_sst: Mapped[bool | None] = mapped_column(Boolean, default=None)
    created_by: Mapped[str | None] = mapped_column(String(100), default=None)
