"""Persistence for invoices, merchants and webhook events."""

from storage.base import (
    IN_FLIGHT_STATUSES,
    DuplicateRecordError,
    InvoiceRepository,
    MerchantRepository,
    StorageError,
    WebhookEventRepository,
)
from storage.memory import (
    InMemoryInvoiceRepository,
    InMemoryMerchantRepository,
    InMemoryWebhookEventRepository,
)
from storage.sqlite import (
    SQLiteInvoiceRepository,
    SQLiteMerchantRepository,
    SQLiteWebhookEventRepository,
    init_db,
)

__all__ = [
    "IN_FLIGHT_STATUSES",
    "DuplicateRecordError",
    "InvoiceRepository",
    "MerchantRepository",
    "StorageError",
    "WebhookEventRepository",
    "InMemoryInvoiceRepository",
    "InMemoryMerchantRepository",
    "InMemoryWebhookEventRepository",
    "SQLiteInvoiceRepository",
    "SQLiteMerchantRepository",
    "SQLiteWebhookEventRepository",
    "init_db",
]
