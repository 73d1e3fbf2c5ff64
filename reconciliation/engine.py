"""Reconciliation engine for registry invoice status.

Every status write goes through this module. Three channels propose updates
(the synchronous submission response, webhooks, the polling sweep) and the
engine decides whether each proposal moves the invoice forward:

- proposals older than the last accepted observation are stale
- only forward transitions are applied; terminal states never move
- the write is a compare-and-swap on the invoice version, retried a bounded
  number of times when another writer got there first

Exposes:
- ReconciliationEngine.propose_transition(...) -> TransitionResult
- ReconciliationEngine.cancel(...) -> TransitionResult
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from core.audit.events import create_audit_entry
from core.models.common import ensure_utc, utcnow
from core.models.events import AuditAction, AuditActor, AuditLogEntry
from core.models.invoice import Invoice, InvoiceStatus, RegistryState, UpdateSource
from core.observability.logging import get_logger, with_correlation
from core.observability.metrics import get_metrics
from reconciliation.lifecycle import STATUS_STAMP_FIELDS, is_forward, is_terminal, rank
from storage.base import InvoiceRepository, StorageError

logger = get_logger(__name__)


# =============================================================================
# Results
# =============================================================================

class TransitionOutcome(str, Enum):
    ACCEPTED = "accepted"
    IGNORED = "ignored"
    ERROR = "error"


class IgnoreReason:
    """Why a proposal was not applied. Ignored proposals are not errors."""
    STALE = "stale"
    UNCHANGED = "unchanged"
    NOT_FORWARD = "not_forward"
    TERMINAL = "terminal"


@dataclass
class TransitionResult:
    """Outcome of a proposed status change."""
    outcome: TransitionOutcome
    invoice: Optional[Invoice] = None
    reason: Optional[str] = None
    previous_status: Optional[InvoiceStatus] = None

    @property
    def accepted(self) -> bool:
        return self.outcome == TransitionOutcome.ACCEPTED

    @property
    def ignored(self) -> bool:
        return self.outcome == TransitionOutcome.IGNORED

    @property
    def is_error(self) -> bool:
        return self.outcome == TransitionOutcome.ERROR

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "reason": self.reason,
            "previous_status": self.previous_status.value if self.previous_status else None,
            "status": self.invoice.status.value if self.invoice else None,
        }


SOURCE_ACTORS = {
    UpdateSource.SUBMISSION: AuditActor.SYSTEM,
    UpdateSource.WEBHOOK: AuditActor.WEBHOOK,
    UpdateSource.POLL: AuditActor.POLL,
    UpdateSource.USER: AuditActor.USER,
}

FAILURE_STATUSES = (InvoiceStatus.VALIDATION_FAILED, InvoiceStatus.REJECTED)


# =============================================================================
# Engine
# =============================================================================

class ReconciliationEngine:
    """Single writer of invoice status.

    Usage:
        engine = ReconciliationEngine(invoice_repository)
        result = await engine.propose_transition(
            invoice.id,
            UpdateSource.WEBHOOK,
            InvoiceStatus.SENT,
            envelope.timestamp,
            raw_payload=envelope.model_dump(mode="json"),
        )
    """

    def __init__(self, invoices: InvoiceRepository, max_attempts: int = 5):
        self.invoices = invoices
        self.max_attempts = max_attempts

    async def create_invoice(
        self,
        invoice: Invoice,
        actor: AuditActor,
        message: str,
        actor_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Invoice:
        """Insert a new invoice together with its ``invoice-created`` entry."""
        entry = create_audit_entry(
            AuditAction.INVOICE_CREATED,
            actor,
            "invoice",
            invoice.id,
            message,
            team_id=invoice.team_id,
            actor_id=actor_id,
            details={
                "status": invoice.status.value,
                "direction": invoice.direction.value,
                "document_id": invoice.document_id,
                **(details or {}),
            },
        )
        return await self.invoices.create(invoice, audit_entry=entry)

    async def propose_transition(
        self,
        invoice_id: str,
        source: UpdateSource,
        candidate_status: InvoiceStatus,
        candidate_timestamp: datetime,
        raw_payload: Optional[Dict[str, Any]] = None,
        registry_state: Optional[RegistryState] = None,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> TransitionResult:
        """Apply ``candidate_status`` if it is newer and moves the invoice forward.

        Args:
            source: channel making the proposal
            candidate_timestamp: when the registry observed the candidate status
            raw_payload: registry payload, kept verbatim in the audit entry
            registry_state: partial registry state to merge into the invoice
            actor_id: user id when a user triggered the submission
            reason: rejection or validation failure reason

        Returns:
            ACCEPTED with the stored invoice, IGNORED with a reason, or ERROR
            if the invoice is missing, storage failed, or every CAS attempt
            lost to a concurrent writer.
        """
        candidate_timestamp = ensure_utc(candidate_timestamp)
        raw_payload = raw_payload or {}

        with with_correlation(invoice_id=invoice_id, source=source.value):
            for attempt in range(1, self.max_attempts + 1):
                try:
                    invoice = await self.invoices.get(invoice_id)
                except StorageError as e:
                    return self._error(source, f"storage error: {e}")
                if invoice is None:
                    return self._error(source, "invoice not found")

                ignore_reason = self._check(invoice, source, candidate_status, candidate_timestamp)
                if ignore_reason is not None:
                    return self._ignored(invoice, source, candidate_status, ignore_reason)

                updated = self._apply(
                    invoice, source, candidate_status, candidate_timestamp,
                    raw_payload, registry_state, reason,
                )
                entry = self._transition_entry(
                    invoice, updated, source, candidate_timestamp, raw_payload, actor_id
                )

                try:
                    stored = await self.invoices.compare_and_swap(updated, invoice.version, entry)
                except StorageError as e:
                    return self._error(source, f"storage error: {e}", invoice.status)

                if stored is not None:
                    get_metrics().record_transition(source.value, "accepted")
                    logger.info(
                        f"Invoice {invoice_id}: {invoice.status.value} -> {stored.status.value}",
                        extra_fields={"version": stored.version},
                    )
                    return TransitionResult(
                        TransitionOutcome.ACCEPTED, stored, previous_status=invoice.status
                    )

                logger.debug(f"Version conflict on attempt {attempt}, re-reading invoice")

            return self._error(source, f"version conflict after {self.max_attempts} attempts")

    async def cancel(
        self,
        invoice_id: str,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> TransitionResult:
        """User-driven cancellation of any non-terminal invoice."""
        source = UpdateSource.USER
        with with_correlation(invoice_id=invoice_id, source=source.value):
            for _ in range(self.max_attempts):
                try:
                    invoice = await self.invoices.get(invoice_id)
                except StorageError as e:
                    return self._error(source, f"storage error: {e}")
                if invoice is None:
                    return self._error(source, "invoice not found")

                if is_terminal(invoice.status):
                    return self._ignored(invoice, source, InvoiceStatus.CANCELLED, IgnoreReason.TERMINAL)

                now = utcnow()
                updated = invoice.model_copy(update={
                    "status": InvoiceStatus.CANCELLED,
                    "status_updated_at": now,
                    "cancelled_at": now,
                    "rejection_reason": reason or invoice.rejection_reason,
                    "updated_at": now,
                })
                entry = create_audit_entry(
                    AuditAction.INVOICE_CANCELLED,
                    AuditActor.USER,
                    "invoice",
                    invoice.id,
                    f"Invoice cancelled from {invoice.status.value}",
                    team_id=invoice.team_id,
                    actor_id=actor_id,
                    details={"from": invoice.status.value, "to": "cancelled", "reason": reason},
                )

                try:
                    stored = await self.invoices.compare_and_swap(updated, invoice.version, entry)
                except StorageError as e:
                    return self._error(source, f"storage error: {e}", invoice.status)
                if stored is not None:
                    get_metrics().record_transition(source.value, "accepted")
                    logger.info(f"Invoice {invoice_id} cancelled")
                    return TransitionResult(
                        TransitionOutcome.ACCEPTED, stored, previous_status=invoice.status
                    )

            return self._error(source, f"version conflict after {self.max_attempts} attempts")

    # =========================================================================
    # Decision
    # =========================================================================

    @staticmethod
    def _check(
        invoice: Invoice,
        source: UpdateSource,
        candidate: InvoiceStatus,
        candidate_timestamp: datetime,
    ) -> Optional[str]:
        """Return an ignore reason, or None if the proposal should be applied."""
        current = invoice.status
        if candidate == current:
            return IgnoreReason.UNCHANGED

        # The submission response for a draft has no earlier observation to lose to.
        submission_on_draft = source == UpdateSource.SUBMISSION and current == InvoiceStatus.DRAFT
        last_seen = invoice.status_updated_at
        if not submission_on_draft and last_seen is not None:
            if candidate_timestamp < last_seen:
                return IgnoreReason.STALE
            if candidate_timestamp == last_seen and rank(candidate) <= rank(current):
                return IgnoreReason.STALE

        if is_terminal(current):
            return IgnoreReason.TERMINAL
        if not is_forward(current, candidate):
            return IgnoreReason.NOT_FORWARD
        return None

    @staticmethod
    def _apply(
        invoice: Invoice,
        source: UpdateSource,
        candidate: InvoiceStatus,
        candidate_timestamp: datetime,
        raw_payload: Dict[str, Any],
        registry_state: Optional[RegistryState],
        reason: Optional[str],
    ) -> Invoice:
        now = utcnow()
        patch = (registry_state or RegistryState()).model_copy(update={
            "last_source": source,
            "received_at": now,
            "raw": raw_payload or (registry_state.raw if registry_state else {}),
        })
        registry_status = patch.registry_status or candidate.value.upper()
        merged = patch.merged_with(invoice.registry_response).model_copy(
            update={"registry_status": registry_status}
        )

        update: Dict[str, Any] = {
            "status": candidate,
            "registry_status": registry_status,
            "status_updated_at": candidate_timestamp,
            "registry_response": merged,
            "updated_at": now,
        }
        stamp = STATUS_STAMP_FIELDS.get(candidate)
        if stamp:
            update[stamp] = candidate_timestamp
        if invoice.document_id is None and merged.document_id:
            update["document_id"] = merged.document_id
        if candidate in FAILURE_STATUSES:
            update["rejection_reason"] = (
                reason
                or raw_payload.get("reason")
                or raw_payload.get("rejection_reason")
                or invoice.rejection_reason
            )
        return invoice.model_copy(update=update)

    @staticmethod
    def _transition_entry(
        before: Invoice,
        after: Invoice,
        source: UpdateSource,
        candidate_timestamp: datetime,
        raw_payload: Dict[str, Any],
        actor_id: Optional[str],
    ) -> AuditLogEntry:
        actor = SOURCE_ACTORS[source]
        if source == UpdateSource.SUBMISSION and actor_id:
            actor = AuditActor.USER
        return create_audit_entry(
            AuditAction.INVOICE_STATUS_CHANGED,
            actor,
            "invoice",
            before.id,
            f"Status changed from {before.status.value} to {after.status.value}",
            team_id=before.team_id,
            actor_id=actor_id,
            details={
                "source": source.value,
                "from": before.status.value,
                "to": after.status.value,
                "candidate_timestamp": candidate_timestamp.isoformat(),
                "document_id": after.document_id,
                "payload": raw_payload,
            },
        )

    # =========================================================================
    # Outcomes
    # =========================================================================

    @staticmethod
    def _ignored(
        invoice: Invoice,
        source: UpdateSource,
        candidate: InvoiceStatus,
        reason: str,
    ) -> TransitionResult:
        get_metrics().record_transition(source.value, "ignored", reason)
        message = f"Ignored {candidate.value} for invoice at {invoice.status.value}: {reason}"
        if reason == IgnoreReason.UNCHANGED:
            logger.debug(message)
        else:
            logger.info(message)
        return TransitionResult(
            TransitionOutcome.IGNORED, invoice, reason=reason, previous_status=invoice.status
        )

    @staticmethod
    def _error(
        source: UpdateSource,
        reason: str,
        previous_status: Optional[InvoiceStatus] = None,
    ) -> TransitionResult:
        get_metrics().record_transition(source.value, "error")
        logger.warning(f"Transition failed: {reason}")
        return TransitionResult(
            TransitionOutcome.ERROR, reason=reason, previous_status=previous_status
        )
