"""In-memory repositories for tests and single-process development."""

from datetime import datetime
from threading import Lock
from typing import Dict, List, Optional, Sequence

from core.audit.events import AuditBackend
from core.models.common import utcnow
from core.models.events import AuditLogEntry, WebhookEvent
from core.models.invoice import Invoice
from core.models.merchant import Merchant
from storage.base import (
    IN_FLIGHT_STATUSES,
    DuplicateRecordError,
    InvoiceRepository,
    MerchantRepository,
    WebhookEventRepository,
)


def _poll_key(invoice: Invoice) -> datetime:
    return invoice.last_polled_at or invoice.status_updated_at or invoice.created_at


class InMemoryInvoiceRepository(InvoiceRepository):
    """Invoices in a dict.

    Audit entries passed to create/compare_and_swap are appended to
    ``audit_backend`` while the lock is held.
    """

    def __init__(self, audit_backend: AuditBackend):
        self._invoices: Dict[str, Invoice] = {}
        self._audit = audit_backend
        self._lock = Lock()

    async def get(self, invoice_id: str) -> Optional[Invoice]:
        with self._lock:
            invoice = self._invoices.get(invoice_id)
            return invoice.model_copy(deep=True) if invoice else None

    async def get_by_document_id(self, document_id: str) -> Optional[Invoice]:
        with self._lock:
            for invoice in self._invoices.values():
                if invoice.document_id == document_id:
                    return invoice.model_copy(deep=True)
        return None

    async def create(self, invoice: Invoice, audit_entry: Optional[AuditLogEntry] = None) -> Invoice:
        with self._lock:
            for existing in self._invoices.values():
                if existing.id == invoice.id or existing.invoice_uuid == invoice.invoice_uuid:
                    raise DuplicateRecordError(f"Invoice {invoice.id} already exists")
                if invoice.document_id and existing.document_id == invoice.document_id:
                    raise DuplicateRecordError(f"Document {invoice.document_id} already has an invoice")
            stored = invoice.model_copy(deep=True)
            self._invoices[stored.id] = stored
            if audit_entry is not None:
                self._audit.append(audit_entry)
            return stored.model_copy(deep=True)

    async def compare_and_swap(
        self,
        invoice: Invoice,
        expected_version: int,
        audit_entry: Optional[AuditLogEntry] = None,
    ) -> Optional[Invoice]:
        with self._lock:
            current = self._invoices.get(invoice.id)
            if current is None or current.version != expected_version:
                return None
            if invoice.document_id and any(
                other.document_id == invoice.document_id and other.id != invoice.id
                for other in self._invoices.values()
            ):
                raise DuplicateRecordError(f"Document {invoice.document_id} already has an invoice")
            stored = invoice.model_copy(
                deep=True,
                update={"version": expected_version + 1, "last_polled_at": current.last_polled_at},
            )
            if audit_entry is not None:
                self._audit.append(audit_entry)
            self._invoices[stored.id] = stored
            return stored.model_copy(deep=True)

    async def list_in_flight(
        self,
        older_than: datetime,
        limit: int,
        merchant_ids: Optional[Sequence[str]] = None,
        team_id: Optional[str] = None,
    ) -> List[Invoice]:
        with self._lock:
            candidates = [
                inv for inv in self._invoices.values()
                if inv.status in IN_FLIGHT_STATUSES
                and inv.document_id
                and (merchant_ids is None or inv.merchant_id in merchant_ids)
                and (team_id is None or inv.team_id == team_id)
                and (inv.status_updated_at is None or inv.status_updated_at < older_than)
                and (inv.last_polled_at is None or inv.last_polled_at < older_than)
            ]
            candidates.sort(key=_poll_key)
            return [inv.model_copy(deep=True) for inv in candidates[:limit]]

    async def mark_polled(self, invoice_id: str, polled_at: datetime) -> None:
        with self._lock:
            invoice = self._invoices.get(invoice_id)
            if invoice is not None:
                self._invoices[invoice_id] = invoice.model_copy(update={"last_polled_at": polled_at})


class InMemoryMerchantRepository(MerchantRepository):

    def __init__(self):
        self._merchants: Dict[str, Merchant] = {}
        self._lock = Lock()

    async def get(self, merchant_id: str) -> Optional[Merchant]:
        with self._lock:
            merchant = self._merchants.get(merchant_id)
            return merchant.model_copy(deep=True) if merchant else None

    async def get_by_endpoint_id(self, endpoint_id: str) -> Optional[Merchant]:
        with self._lock:
            for merchant in self._merchants.values():
                if merchant.endpoint_id == endpoint_id:
                    return merchant.model_copy(deep=True)
        return None

    async def save(self, merchant: Merchant) -> Merchant:
        with self._lock:
            if merchant.endpoint_id:
                for other in self._merchants.values():
                    if other.endpoint_id == merchant.endpoint_id and other.id != merchant.id:
                        raise DuplicateRecordError(f"Endpoint {merchant.endpoint_id} is already connected")
            self._merchants[merchant.id] = merchant.model_copy(deep=True)
            return merchant.model_copy(deep=True)

    async def update_sync_cursor(self, merchant_id: str, last_sync_at: datetime) -> Optional[Merchant]:
        with self._lock:
            merchant = self._merchants.get(merchant_id)
            if merchant is None:
                return None
            updated = merchant.model_copy(update={"last_sync_at": last_sync_at, "updated_at": utcnow()}, deep=True)
            self._merchants[merchant_id] = updated
            return updated.model_copy(deep=True)

    async def list_active(self, team_id: Optional[str] = None) -> List[Merchant]:
        with self._lock:
            return [
                m.model_copy(deep=True) for m in self._merchants.values()
                if m.is_active and (team_id is None or m.team_id == team_id)
            ]


class InMemoryWebhookEventRepository(WebhookEventRepository):

    def __init__(self):
        self._events: Dict[str, WebhookEvent] = {}
        self._lock = Lock()

    async def get_by_event_id(self, event_id: str) -> Optional[WebhookEvent]:
        with self._lock:
            event = self._events.get(event_id)
            return event.model_copy(deep=True) if event else None

    async def record(self, event: WebhookEvent) -> WebhookEvent:
        with self._lock:
            existing = self._events.get(event.event_id)
            if existing is not None:
                return existing.model_copy(deep=True)
            self._events[event.event_id] = event.model_copy(deep=True)
            return event.model_copy(deep=True)

    async def mark_processed(
        self,
        event_id: str,
        processed_at: datetime,
        invoice_id: Optional[str] = None,
    ) -> None:
        with self._lock:
            event = self._events[event_id]
            self._events[event_id] = event.model_copy(update={
                "processed": True,
                "processed_at": processed_at,
                "error_message": None,
                "invoice_id": invoice_id or event.invoice_id,
            })

    async def mark_failed(
        self,
        event_id: str,
        error_message: str,
        invoice_id: Optional[str] = None,
    ) -> None:
        with self._lock:
            event = self._events[event_id]
            self._events[event_id] = event.model_copy(update={
                "error_message": error_message,
                "invoice_id": invoice_id or event.invoice_id,
            })
