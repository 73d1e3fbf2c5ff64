"""Registry webhook ingestion.

Verifies, deduplicates and applies inbound registry notifications. Every
event is recorded before it is processed so a delivery that fails halfway
can be reprocessed when the registry redelivers it.
"""

import hashlib
import hmac
import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import ValidationError

from connectors.registry.errors import RegistryApiError
from core.audit.events import AuditLog
from core.models.common import utcnow
from core.models.events import AuditAction, AuditActor, WebhookEnvelope, WebhookEvent
from core.models.invoice import Invoice, InvoiceDirection, InvoiceStatus, RegistryState, UpdateSource
from core.observability.logging import get_logger, with_correlation
from core.observability.metrics import get_metrics
from core.security.credential_store import CredentialStore, RefreshFailedError
from reconciliation.engine import ReconciliationEngine, TransitionResult
from reconciliation.lifecycle import map_registry_status
from storage.base import (
    DuplicateRecordError,
    InvoiceRepository,
    MerchantRepository,
    StorageError,
    WebhookEventRepository,
)

logger = get_logger(__name__)

SIGNATURE_HEADER = "X-Registry-Signature"

DOCUMENT_STATUS_UPDATED = "DOCUMENT_STATUS_UPDATED"
ENTITY_REVOKED = "ENTITY_REVOKED"

# Events that announce a document sent to one of our merchants by someone else.
RECEIVE_EVENTS = ("DOCUMENT_RECEIVED",)
RECEIVE_DOCUMENT_TYPE = "RECEIVE"

EVENT_STATUS: Dict[str, InvoiceStatus] = {
    "DOCUMENT_DELIVERED": InvoiceStatus.SENT,
    "DOCUMENT_RECEIVED": InvoiceStatus.SENT,
    "DOCUMENT_VALIDATED": InvoiceStatus.VALIDATED,
    "DOCUMENT_VALIDATION_FAILED": InvoiceStatus.VALIDATION_FAILED,
    "DOCUMENT_ACCEPTED": InvoiceStatus.ACCEPTED,
    "DOCUMENT_REJECTED": InvoiceStatus.REJECTED,
}


class WebhookAuthenticationError(Exception):
    """Signature missing, invalid, or no secret configured."""
    pass


class WebhookPayloadError(Exception):
    """Body is not a valid webhook envelope."""
    pass


class UnknownDocumentError(Exception):
    """A connected merchant's document has no local invoice yet.

    Usually the submission response has not been stored; the event is left
    unprocessed so the registry redelivers it.
    """
    pass


class WebhookOutcome(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    ERROR = "error"


@dataclass
class WebhookResult:
    outcome: WebhookOutcome
    event_id: str
    invoice_id: Optional[str] = None
    transition: Optional[TransitionResult] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.outcome.value,
            "event_id": self.event_id,
            "invoice_id": self.invoice_id,
            "transition": self.transition.to_dict() if self.transition else None,
            "message": self.message,
        }


# =============================================================================
# Signature and parsing
# =============================================================================

def normalize_event_type(value: str) -> str:
    """``document.delivered`` and ``document-delivered`` become ``DOCUMENT_DELIVERED``."""
    return re.sub(r"[.\-\s]+", "_", value.strip()).upper()


def is_receive_event(event_type: str, payload: Dict[str, Any]) -> bool:
    if event_type in RECEIVE_EVENTS:
        return True
    return str(payload.get("type") or "").upper() == RECEIVE_DOCUMENT_TYPE


def compute_signature(secret: str, raw_body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(
    raw_body: bytes,
    signature: Optional[str],
    secret: Optional[str],
    allow_unsigned: bool = False,
) -> None:
    """Check an HMAC-SHA256 hex signature, optionally prefixed with ``sha256=``.

    Raises:
        WebhookAuthenticationError: on a missing or bad signature, or when no
            secret is configured and unsigned delivery is not allowed
    """
    if not secret:
        if allow_unsigned:
            return
        raise WebhookAuthenticationError("Webhook secret is not configured")
    if not signature:
        raise WebhookAuthenticationError(f"Missing {SIGNATURE_HEADER} header")

    provided = signature.strip()
    if provided.lower().startswith("sha256="):
        provided = provided[len("sha256="):]
    expected = compute_signature(secret, raw_body)
    if not hmac.compare_digest(expected.encode("ascii"), provided.lower().encode("utf-8")):
        raise WebhookAuthenticationError("Invalid webhook signature")


def parse_envelope(raw_body: bytes) -> Tuple[WebhookEnvelope, Dict[str, Any]]:
    """Parse the body into an envelope plus the raw dict kept for audit."""
    try:
        payload = json.loads(raw_body)
    except ValueError as e:
        raise WebhookPayloadError(f"Body is not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise WebhookPayloadError("Body must be a JSON object")
    try:
        envelope = WebhookEnvelope.model_validate(payload)
    except ValidationError as e:
        raise WebhookPayloadError(f"Invalid webhook envelope: {e.error_count()} error(s)") from e
    return envelope, payload


# =============================================================================
# Ingestion
# =============================================================================

class WebhookIngestion:
    """Applies registry webhooks through the reconciliation engine."""

    def __init__(
        self,
        events: WebhookEventRepository,
        invoices: InvoiceRepository,
        merchants: MerchantRepository,
        engine: ReconciliationEngine,
        credentials: CredentialStore,
        audit: AuditLog,
        secret: Optional[str] = None,
        allow_unsigned: bool = False,
    ):
        self.events = events
        self.invoices = invoices
        self.merchants = merchants
        self.engine = engine
        self.credentials = credentials
        self.audit = audit
        self.secret = secret
        self.allow_unsigned = allow_unsigned

    async def handle(self, raw_body: bytes, signature: Optional[str]) -> WebhookResult:
        """Verify, record and apply one delivery.

        Raises:
            WebhookAuthenticationError: signature check failed
            WebhookPayloadError: body is not a valid envelope
        """
        try:
            verify_signature(raw_body, signature, self.secret, self.allow_unsigned)
        except WebhookAuthenticationError:
            get_metrics().record_webhook("unauthorized")
            raise
        try:
            envelope, payload = parse_envelope(raw_body)
        except WebhookPayloadError:
            get_metrics().record_webhook("malformed")
            raise

        event_type = normalize_event_type(envelope.event_type)
        with with_correlation(
            event_id=envelope.event_id,
            document_id=envelope.document_id,
            source=UpdateSource.WEBHOOK.value,
        ):
            existing = await self.events.get_by_event_id(envelope.event_id)
            if existing is not None and existing.processed:
                return self._duplicate(envelope, existing)
            if existing is None:
                await self.events.record(WebhookEvent(
                    event_id=envelope.event_id,
                    event_type=event_type,
                    payload=payload,
                ))
            else:
                logger.info("Reprocessing previously failed webhook event")

            try:
                invoice_id, transition = await self._process(envelope, event_type, payload)
            except (RegistryApiError, StorageError, RefreshFailedError, UnknownDocumentError) as e:
                return await self._fail(envelope, str(e), None)

            if transition is not None and transition.is_error:
                return await self._fail(envelope, transition.reason or "transition failed", invoice_id)

            await self.events.mark_processed(envelope.event_id, utcnow(), invoice_id)
            get_metrics().record_webhook("accepted")
            logger.info(f"Webhook {event_type} processed")
            return WebhookResult(
                WebhookOutcome.ACCEPTED,
                envelope.event_id,
                invoice_id=invoice_id,
                transition=transition,
                message=transition.reason if transition is not None else None,
            )

    # =========================================================================
    # Processing
    # =========================================================================

    async def _process(
        self,
        envelope: WebhookEnvelope,
        event_type: str,
        payload: Dict[str, Any],
    ) -> Tuple[Optional[str], Optional[TransitionResult]]:
        if event_type == ENTITY_REVOKED:
            await self._revoke_entity(envelope)
            return None, None

        if event_type == DOCUMENT_STATUS_UPDATED:
            candidate = map_registry_status(envelope.status)
        else:
            candidate = EVENT_STATUS.get(event_type)
        if candidate is None:
            logger.info(f"Ignoring event {event_type} (status={envelope.status!r})")
            return None, None
        if not envelope.document_id:
            logger.warning(f"Event {event_type} has no document_id, ignoring")
            return None, None

        invoice = await self._resolve_invoice(envelope, event_type, payload)
        if invoice is None:
            return None, None

        state = RegistryState(
            document_id=envelope.document_id,
            registry_status=envelope.status.upper() if envelope.status else None,
            endpoint_id=envelope.endpoint_id,
            last_event_type=event_type,
            raw=payload,
        )
        with with_correlation(invoice_id=invoice.id, merchant_id=invoice.merchant_id):
            transition = await self.engine.propose_transition(
                invoice.id,
                UpdateSource.WEBHOOK,
                candidate,
                envelope.timestamp,
                raw_payload=payload,
                registry_state=state,
                reason=envelope.reason,
            )
        return invoice.id, transition

    async def _resolve_invoice(
        self,
        envelope: WebhookEnvelope,
        event_type: str,
        payload: Dict[str, Any],
    ) -> Optional[Invoice]:
        """Find the invoice for the document.

        Receive-side events for a connected merchant create an incoming shell.
        Any other event for a connected merchant's unknown document raises
        UnknownDocumentError.
        """
        invoice = await self.invoices.get_by_document_id(envelope.document_id)
        if invoice is not None:
            return invoice

        merchant = None
        if envelope.endpoint_id:
            merchant = await self.merchants.get_by_endpoint_id(envelope.endpoint_id)
        if merchant is None:
            logger.info(
                f"No invoice or merchant for document {envelope.document_id} "
                f"(endpoint {envelope.endpoint_id}), ignoring"
            )
            return None

        if not is_receive_event(event_type, payload):
            raise UnknownDocumentError(
                f"Document {envelope.document_id} of merchant {merchant.id} is not known yet"
            )

        shell = Invoice(
            team_id=merchant.team_id,
            merchant_id=merchant.id,
            document_id=envelope.document_id,
            direction=InvoiceDirection.INCOMING,
            registry_response=RegistryState(
                document_id=envelope.document_id,
                endpoint_id=envelope.endpoint_id,
            ),
        )
        try:
            created = await self.engine.create_invoice(
                shell,
                AuditActor.WEBHOOK,
                f"Incoming invoice created for document {envelope.document_id}",
                details={"event_id": envelope.event_id},
            )
        except DuplicateRecordError:
            # Concurrent delivery created it first.
            return await self.invoices.get_by_document_id(envelope.document_id)
        logger.info(f"Created incoming invoice {created.id} for merchant {merchant.id}")
        return created

    async def _revoke_entity(self, envelope: WebhookEnvelope) -> None:
        merchant = None
        if envelope.endpoint_id:
            merchant = await self.merchants.get_by_endpoint_id(envelope.endpoint_id)
        if merchant is None:
            logger.info(f"ENTITY_REVOKED for unknown endpoint {envelope.endpoint_id}, ignoring")
            return
        await self.credentials.revoke(merchant.id, notify_registry=False, actor=AuditActor.WEBHOOK)

    # =========================================================================
    # Outcomes
    # =========================================================================

    def _duplicate(self, envelope: WebhookEnvelope, existing: WebhookEvent) -> WebhookResult:
        self.audit.record(
            AuditAction.DUPLICATE_IGNORED,
            AuditActor.WEBHOOK,
            "webhook_event",
            envelope.event_id,
            "Replay of an already processed webhook event",
            details={"event_type": existing.event_type, "invoice_id": existing.invoice_id},
        )
        get_metrics().record_webhook("duplicate")
        logger.info("Duplicate webhook event ignored")
        return WebhookResult(WebhookOutcome.DUPLICATE, envelope.event_id, invoice_id=existing.invoice_id)

    async def _fail(
        self,
        envelope: WebhookEnvelope,
        error: str,
        invoice_id: Optional[str],
    ) -> WebhookResult:
        await self.events.mark_failed(envelope.event_id, error, invoice_id)
        self.audit.record(
            AuditAction.WEBHOOK_PROCESSING_FAILED,
            AuditActor.WEBHOOK,
            "webhook_event",
            envelope.event_id,
            "Webhook processing failed; event left for redelivery",
            details={"error": error, "invoice_id": invoice_id, "event_type": envelope.event_type},
        )
        get_metrics().record_webhook("error")
        logger.error(f"Webhook processing failed: {error}")
        return WebhookResult(WebhookOutcome.ERROR, envelope.event_id, invoice_id=invoice_id, message=error)
