"""Buyer responses to received documents.

Accepting or rejecting an incoming invoice is forwarded to the registry
first; the registry's answer is then proposed to the reconciliation engine
with source ``user``. A registry failure leaves the invoice unchanged and
is audited.
"""

from datetime import datetime
from typing import Any, Awaitable, Dict, Optional

from connectors.registry.client import RegistryApiClient
from connectors.registry.errors import RegistryApiError
from core.audit.events import AuditLog
from core.models.common import utcnow
from core.models.events import AuditAction, AuditActor
from core.models.invoice import Invoice, InvoiceDirection, InvoiceStatus, RegistryState, UpdateSource
from core.observability.logging import get_logger, with_correlation
from core.security.credential_store import RefreshFailedError
from reconciliation.engine import ReconciliationEngine, TransitionResult
from reconciliation.lifecycle import is_terminal
from storage.base import InvoiceRepository
from submission.service import InvalidInvoiceStateError, InvoiceNotFoundError

logger = get_logger(__name__)


class IncomingInvoiceService:
    """Accept or reject invoices received from suppliers."""

    def __init__(
        self,
        invoices: InvoiceRepository,
        client: RegistryApiClient,
        engine: ReconciliationEngine,
        audit: AuditLog,
    ):
        self.invoices = invoices
        self.client = client
        self.engine = engine
        self.audit = audit

    async def _respondable(self, invoice_id: str) -> Invoice:
        invoice = await self.invoices.get(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)
        if invoice.direction != InvoiceDirection.INCOMING:
            raise InvalidInvoiceStateError("Only incoming invoices can be accepted or rejected")
        if is_terminal(invoice.status):
            raise InvalidInvoiceStateError(
                f"Invoice is already {invoice.status.value}"
            )
        if not invoice.document_id or not invoice.merchant_id:
            raise InvalidInvoiceStateError("Invoice has no registry document")
        return invoice

    async def accept_invoice(self, invoice_id: str, user_id: Optional[str] = None) -> TransitionResult:
        """Accept an incoming invoice.

        Raises:
            InvoiceNotFoundError: no such invoice
            InvalidInvoiceStateError: outgoing, already final, or no document
            RegistryApiError: the registry call failed; the invoice is unchanged
        """
        invoice = await self._respondable(invoice_id)
        with with_correlation(invoice_id=invoice.id, document_id=invoice.document_id, source="user"):
            responded_at = utcnow()
            response = await self._call(
                invoice, "accept", user_id,
                self.client.accept_document(invoice.merchant_id, invoice.document_id),
            )
            return await self._propose(invoice, InvoiceStatus.ACCEPTED, responded_at, response, user_id)

    async def reject_invoice(
        self,
        invoice_id: str,
        reason: str,
        user_id: Optional[str] = None,
    ) -> TransitionResult:
        """Reject an incoming invoice; ``reason`` is sent to the supplier."""
        if not reason or not reason.strip():
            raise ValueError("A rejection reason is required")
        invoice = await self._respondable(invoice_id)
        with with_correlation(invoice_id=invoice.id, document_id=invoice.document_id, source="user"):
            responded_at = utcnow()
            response = await self._call(
                invoice, "reject", user_id,
                self.client.reject_document(invoice.merchant_id, invoice.document_id, reason),
            )
            return await self._propose(
                invoice, InvoiceStatus.REJECTED, responded_at, response, user_id, reason=reason
            )

    async def _call(
        self,
        invoice: Invoice,
        action: str,
        user_id: Optional[str],
        call: Awaitable[Any],
    ) -> Dict[str, Any]:
        try:
            response = await call
        except (RegistryApiError, RefreshFailedError) as e:
            self.audit.record(
                AuditAction.BUYER_RESPONSE_FAILED,
                AuditActor.USER if user_id else AuditActor.SYSTEM,
                "invoice",
                invoice.id,
                f"Registry {action} failed; invoice left as {invoice.status.value}",
                team_id=invoice.team_id,
                actor_id=user_id,
                details={"error": str(e), "action": action},
            )
            logger.error(f"Buyer {action} failed: {e}")
            raise
        return response if isinstance(response, dict) else {"response": response}

    async def _propose(
        self,
        invoice: Invoice,
        status: InvoiceStatus,
        responded_at: datetime,
        raw: Dict[str, Any],
        user_id: Optional[str],
        reason: Optional[str] = None,
    ) -> TransitionResult:
        logger.info(f"Incoming invoice {invoice.id} {status.value} by buyer")
        return await self.engine.propose_transition(
            invoice.id,
            UpdateSource.USER,
            status,
            responded_at,
            raw_payload=raw,
            registry_state=RegistryState(registry_status=status.value.upper(), raw=raw),
            actor_id=user_id,
            reason=reason,
        )
