"""Mirror models - re-exports all models and Base.metadata."""

from .base import Base, UUIDMixin, TimestampMixin, RemoteIdMixin, RemoteSyncMixin, StringList
from .agent import Agent, User
from .customer import Customer
from .invoice import Invoice, InvoiceItem, InvoiceTemplate
from .payment import Payment, SubmittedPayment
from .registration import Registration
from .sync_progress import SyncProgress

__all__ = [
    "Base",
    "UUIDMixin",
    "TimestampMixin",
    "RemoteIdMixin",
    "RemoteSyncMixin",
    "StringList",
    "Agent",
    "User",
    "Customer",
    "Invoice",
    "InvoiceItem",
    "InvoiceTemplate",
    "Payment",
    "SubmittedPayment",
    "Registration",
    "SyncProgress",
]
