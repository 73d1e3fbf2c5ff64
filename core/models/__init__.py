"""Core data models for registry invoice reconciliation."""

from core.models.common import ensure_utc, new_id, parse_timestamp, utcnow
from core.models.invoice import (
    Invoice,
    InvoiceDirection,
    InvoiceStatus,
    RegistryState,
    UpdateSource,
)
from core.models.merchant import Merchant, RegistrationStatus
from core.models.events import (
    AuditAction,
    AuditActor,
    AuditLogEntry,
    WebhookEnvelope,
    WebhookEvent,
)

__all__ = [
    # Helpers
    "ensure_utc",
    "new_id",
    "parse_timestamp",
    "utcnow",

    # Invoice
    "Invoice",
    "InvoiceDirection",
    "InvoiceStatus",
    "RegistryState",
    "UpdateSource",

    # Merchant
    "Merchant",
    "RegistrationStatus",

    # Events
    "AuditAction",
    "AuditActor",
    "AuditLogEntry",
    "WebhookEnvelope",
    "WebhookEvent",
]
