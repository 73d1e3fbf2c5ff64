"""Outgoing document submission.

Creates draft invoices, submits their UBL documents to the registry and
delivers validated documents to buyers. The synchronous registry responses
are proposed to the reconciliation engine with source ``submission``; this
module never writes a status itself.
"""

from datetime import datetime
from typing import Optional, Union

from connectors.registry.client import RegistryApiClient
from connectors.registry.errors import RegistryApiError, RegistryValidationError
from connectors.registry.models import SubmissionResponse
from core.audit.events import AuditLog
from core.models.common import new_id, utcnow
from core.models.events import AuditAction, AuditActor
from core.models.invoice import Invoice, InvoiceStatus, RegistryState, UpdateSource
from core.observability.logging import get_logger, with_correlation
from core.security.credential_store import RefreshFailedError
from reconciliation.engine import ReconciliationEngine, TransitionResult
from storage.base import InvoiceRepository

logger = get_logger(__name__)

SENDABLE_STATUSES = (InvoiceStatus.SUBMITTED, InvoiceStatus.VALIDATED)


class InvoiceNotFoundError(Exception):
    def __init__(self, invoice_id: str):
        super().__init__(f"Invoice {invoice_id} not found")
        self.invoice_id = invoice_id


class InvalidInvoiceStateError(ValueError):
    """The requested action is not allowed in the invoice's current state."""
    pass


class DocumentSubmissionService:
    """Submit, send, cancel and download outgoing invoices."""

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

    async def get_invoice(self, invoice_id: str) -> Invoice:
        invoice = await self.invoices.get(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)
        return invoice

    async def create_draft(
        self,
        team_id: Optional[str],
        merchant_id: str,
        invoice_number: Optional[str] = None,
        invoice_uuid: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Invoice:
        invoice = Invoice(
            team_id=team_id,
            merchant_id=merchant_id,
            invoice_number=invoice_number,
            invoice_uuid=invoice_uuid or new_id(),
        )
        created = await self.engine.create_invoice(
            invoice,
            AuditActor.USER if user_id else AuditActor.SYSTEM,
            f"Draft invoice {invoice_number or invoice.id} created",
            actor_id=user_id,
            details={"invoice_number": invoice_number, "merchant_id": merchant_id},
        )
        logger.info(f"Draft invoice {created.id} created")
        return created

    async def submit_invoice(
        self,
        invoice_id: str,
        document: Union[str, bytes],
        document_type: str = "INVOICE",
        user_id: Optional[str] = None,
    ) -> TransitionResult:
        """Submit a draft's UBL document and record the registry's verdict.

        Raises:
            InvoiceNotFoundError: no such invoice
            InvalidInvoiceStateError: invoice is not a draft or has no merchant
            RegistryApiError: transient or auth failure after retries; the
                draft is left unchanged and the failure is audited
        """
        invoice = await self.get_invoice(invoice_id)
        if invoice.status != InvoiceStatus.DRAFT:
            raise InvalidInvoiceStateError(
                f"Only draft invoices can be submitted (status is {invoice.status.value})"
            )
        if not invoice.merchant_id:
            raise InvalidInvoiceStateError("Invoice has no merchant connection")

        with with_correlation(invoice_id=invoice.id, merchant_id=invoice.merchant_id, source="submission"):
            submitted_at = utcnow()
            try:
                response = await self.client.submit_document(invoice.merchant_id, document, document_type)
            except RegistryValidationError as e:
                logger.warning(f"Registry rejected document: {e}")
                return await self.engine.propose_transition(
                    invoice.id,
                    UpdateSource.SUBMISSION,
                    InvoiceStatus.VALIDATION_FAILED,
                    submitted_at,
                    raw_payload={"error": str(e), "response_body": e.response_body},
                    actor_id=user_id,
                    reason=str(e),
                )
            except (RegistryApiError, RefreshFailedError) as e:
                self.audit.record(
                    AuditAction.DOCUMENT_SUBMISSION_FAILED,
                    AuditActor.USER if user_id else AuditActor.SYSTEM,
                    "invoice",
                    invoice.id,
                    "Document submission failed; invoice left as draft",
                    team_id=invoice.team_id,
                    actor_id=user_id,
                    details={"error": str(e), "document_type": document_type},
                )
                logger.error(f"Document submission failed: {e}")
                raise

            return await self._apply_submission(invoice, response, submitted_at, user_id)

    async def _apply_submission(
        self,
        invoice: Invoice,
        response: SubmissionResponse,
        submitted_at: datetime,
        user_id: Optional[str],
    ) -> TransitionResult:
        raw = response.model_dump(mode="json")
        if response.valid_documents:
            document = response.valid_documents[0]
            state = RegistryState(
                document_id=document.document_id,
                registry_status="SUBMITTED",
                verification_link=document.verification_link,
                raw=raw,
            )
            logger.info(f"Document accepted for validation as {document.document_id}")
            return await self.engine.propose_transition(
                invoice.id,
                UpdateSource.SUBMISSION,
                InvoiceStatus.SUBMITTED,
                submitted_at,
                raw_payload=raw,
                registry_state=state,
                actor_id=user_id,
            )

        failed = response.failed_documents[0] if response.failed_documents else None
        reason = (failed.error_message if failed else None) or "Registry returned no valid document"
        logger.warning(f"Document failed validation: {reason}")
        return await self.engine.propose_transition(
            invoice.id,
            UpdateSource.SUBMISSION,
            InvoiceStatus.VALIDATION_FAILED,
            submitted_at,
            raw_payload=raw,
            registry_state=RegistryState(registry_status="VALIDATION_FAILED", raw=raw),
            actor_id=user_id,
            reason=reason,
        )

    async def send_invoice(self, invoice_id: str, user_id: Optional[str] = None) -> TransitionResult:
        """Deliver a submitted or validated document to the buyer."""
        invoice = await self.get_invoice(invoice_id)
        if not invoice.document_id:
            raise InvalidInvoiceStateError("Invoice has not been submitted to the registry")
        if invoice.status not in SENDABLE_STATUSES:
            raise InvalidInvoiceStateError(
                f"Invoice cannot be sent from status {invoice.status.value}"
            )

        with with_correlation(invoice_id=invoice.id, document_id=invoice.document_id, source="submission"):
            sent_at = utcnow()
            response = await self.client.send_document(invoice.merchant_id, [invoice.document_id])
            raw = response if isinstance(response, dict) else {"response": response}
            return await self.engine.propose_transition(
                invoice.id,
                UpdateSource.SUBMISSION,
                InvoiceStatus.SENT,
                sent_at,
                raw_payload=raw,
                registry_state=RegistryState(registry_status="SENT", raw=raw),
                actor_id=user_id,
            )

    async def cancel_invoice(
        self,
        invoice_id: str,
        user_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> TransitionResult:
        await self.get_invoice(invoice_id)
        return await self.engine.cancel(invoice_id, actor_id=user_id, reason=reason)

    async def fetch_pdf(self, invoice_id: str) -> bytes:
        invoice = await self.get_invoice(invoice_id)
        if not invoice.document_id:
            raise InvalidInvoiceStateError("Invoice has no registry document")
        return await self.client.fetch_document_pdf(invoice.merchant_id, invoice.document_id)
