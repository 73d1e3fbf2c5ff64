"""Repository interfaces.

The invoice repository is the only place an invoice row is written. Status
writes go through ``compare_and_swap``, keyed on the row's ``version``, so
concurrent writers in different processes cannot lose each other's updates.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Sequence

from core.models.events import AuditLogEntry, WebhookEvent
from core.models.invoice import Invoice, InvoiceStatus
from core.models.merchant import Merchant

IN_FLIGHT_STATUSES = (
    InvoiceStatus.SUBMITTED,
    InvoiceStatus.VALIDATED,
    InvoiceStatus.SENT,
)


class StorageError(Exception):
    """The underlying store failed to read or write."""
    pass


class DuplicateRecordError(StorageError):
    """A unique key (id, document_id, event_id, endpoint_id) already exists."""
    pass


class InvoiceRepository(ABC):
    """Persistence for invoices."""

    @abstractmethod
    async def get(self, invoice_id: str) -> Optional[Invoice]:
        pass

    @abstractmethod
    async def get_by_document_id(self, document_id: str) -> Optional[Invoice]:
        pass

    @abstractmethod
    async def create(self, invoice: Invoice, audit_entry: Optional[AuditLogEntry] = None) -> Invoice:
        """Insert a new invoice, optionally with its audit entry in the same write.

        Raises:
            DuplicateRecordError: id, invoice_uuid or document_id already exists
        """
        pass

    @abstractmethod
    async def compare_and_swap(
        self,
        invoice: Invoice,
        expected_version: int,
        audit_entry: Optional[AuditLogEntry] = None,
    ) -> Optional[Invoice]:
        """Write ``invoice`` if the stored version still equals ``expected_version``.

        The stored version becomes ``expected_version + 1`` and the audit
        entry is appended in the same unit of work. ``last_polled_at`` is
        not touched.

        Returns:
            The stored invoice, or None if another writer got there first.
        """
        pass

    @abstractmethod
    async def list_in_flight(
        self,
        older_than: datetime,
        limit: int,
        merchant_ids: Optional[Sequence[str]] = None,
        team_id: Optional[str] = None,
    ) -> List[Invoice]:
        """Non-terminal, non-draft invoices with a document id that nobody has
        looked at since ``older_than``, oldest first."""
        pass

    @abstractmethod
    async def mark_polled(self, invoice_id: str, polled_at: datetime) -> None:
        """Record a poll without touching status or version."""
        pass


class MerchantRepository(ABC):
    """Persistence for merchant connections."""

    @abstractmethod
    async def get(self, merchant_id: str) -> Optional[Merchant]:
        pass

    @abstractmethod
    async def get_by_endpoint_id(self, endpoint_id: str) -> Optional[Merchant]:
        pass

    @abstractmethod
    async def save(self, merchant: Merchant) -> Merchant:
        """Insert or replace by id.

        Raises:
            DuplicateRecordError: endpoint_id belongs to another merchant
        """
        pass

    @abstractmethod
    async def update_sync_cursor(self, merchant_id: str, last_sync_at: datetime) -> Optional[Merchant]:
        """Set only ``last_sync_at``, leaving credentials written by a
        concurrent refresh untouched.

        Returns:
            The stored merchant, or None if it does not exist.
        """
        pass

    @abstractmethod
    async def list_active(self, team_id: Optional[str] = None) -> List[Merchant]:
        pass


class WebhookEventRepository(ABC):
    """Persistence for inbound webhook events."""

    @abstractmethod
    async def get_by_event_id(self, event_id: str) -> Optional[WebhookEvent]:
        pass

    @abstractmethod
    async def record(self, event: WebhookEvent) -> WebhookEvent:
        """Insert the event, or return the already-stored one with the same event_id."""
        pass

    @abstractmethod
    async def mark_processed(
        self,
        event_id: str,
        processed_at: datetime,
        invoice_id: Optional[str] = None,
    ) -> None:
        pass

    @abstractmethod
    async def mark_failed(
        self,
        event_id: str,
        error_message: str,
        invoice_id: Optional[str] = None,
    ) -> None:
        """Record a transient failure; the event stays unprocessed."""
        pass
