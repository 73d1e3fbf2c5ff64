"""Status polling sweep.

Pull-based reconciliation for invoices whose webhooks may have been lost.
Two modes:

- legacy: fetch each stale in-flight invoice's document one by one
- official: read the registry's "documents updated since" feed per merchant
  and advance the merchant's sync cursor after a clean batch

Both modes hand every observation to the reconciliation engine with source
``poll``. Failures are recorded per invoice and the batch continues.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from connectors.registry.client import RegistryApiClient
from connectors.registry.errors import RegistryApiError, RegistryNotFoundError
from connectors.registry.models import DocumentDetail
from connectors.registry.retry import BackoffPolicy
from core.audit.events import AuditLog
from core.models.common import utcnow
from core.models.events import AuditAction, AuditActor
from core.models.invoice import Invoice, RegistryState, UpdateSource
from core.models.merchant import Merchant
from core.observability.logging import get_logger, with_correlation
from core.observability.metrics import get_metrics
from core.security.credential_store import NotConnectedError, RefreshFailedError
from reconciliation.engine import ReconciliationEngine, TransitionOutcome, TransitionResult
from reconciliation.lifecycle import map_registry_status
from storage.base import InvoiceRepository, MerchantRepository, StorageError
from submission.service import InvalidInvoiceStateError, InvoiceNotFoundError

logger = get_logger(__name__)

# Per-invoice failures that are recorded and skipped rather than aborting the sweep.
POLL_ERRORS = (RegistryApiError, NotConnectedError, RefreshFailedError, StorageError)


# =============================================================================
# Configuration and results
# =============================================================================

@dataclass
class PollingConfig:
    """Legacy sweep settings."""
    max_age_minutes: int = 60
    batch_size: int = 10
    retry_attempts: int = 3


class PollingRequest(BaseModel):
    """One sweep, as requested over HTTP or by the polling workflow."""
    team_id: Optional[str] = None
    merchant_id: Optional[str] = None
    max_age: int = Field(60, ge=1, description="Minutes since last observation before an invoice is polled")
    batch_size: int = Field(10, ge=1, le=500)
    retry_attempts: int = Field(3, ge=1, le=10)
    use_official_polling: bool = False
    last_synced_at: Optional[datetime] = Field(None, description="Override for the official polling cursor")

    def to_config(self) -> PollingConfig:
        return PollingConfig(
            max_age_minutes=self.max_age,
            batch_size=self.batch_size,
            retry_attempts=self.retry_attempts,
        )


@dataclass
class PollingResult:
    processed: int = 0
    updated: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed == 0

    def add_error(self, invoice_id: Optional[str], document_id: Optional[str], error: str) -> None:
        self.failed += 1
        self.errors.append({"invoice_id": invoice_id, "document_id": document_id, "error": error})

    def merge(self, other: "PollingResult") -> None:
        self.processed += other.processed
        self.updated += other.updated
        self.failed += other.failed
        self.errors.extend(other.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "processed": self.processed,
            "updated": self.updated,
            "failed": self.failed,
            "errors": list(self.errors),
        }


# =============================================================================
# Sweep
# =============================================================================

class StatusPollingSweep:
    """Polls the registry for in-flight invoice status."""

    def __init__(
        self,
        invoices: InvoiceRepository,
        merchants: MerchantRepository,
        client: RegistryApiClient,
        engine: ReconciliationEngine,
        audit: AuditLog,
        policy: Optional[BackoffPolicy] = None,
    ):
        self.invoices = invoices
        self.merchants = merchants
        self.client = client
        self.engine = engine
        self.audit = audit
        self.policy = policy or BackoffPolicy()

    async def run(self, request: PollingRequest) -> PollingResult:
        """Run one sweep in the requested mode.

        Raises:
            ValueError: official polling requested without a team or merchant
        """
        with with_correlation(team_id=request.team_id, merchant_id=request.merchant_id, source="poll"):
            if request.use_official_polling:
                mode = "official"
                result = await self._run_official(request)
            else:
                mode = "legacy"
                result = await self.poll_in_flight(
                    team_id=request.team_id,
                    merchant_id=request.merchant_id,
                    config=request.to_config(),
                )

        get_metrics().record_poll_run(mode, result.processed, result.updated, result.failed)
        logger.info(
            f"{mode} polling finished: processed={result.processed} "
            f"updated={result.updated} failed={result.failed}"
        )
        return result

    async def _run_official(self, request: PollingRequest) -> PollingResult:
        if request.merchant_id:
            return await self.poll_official_updates(request.merchant_id, request.last_synced_at)
        if not request.team_id:
            raise ValueError("team_id or merchant_id is required for official polling")

        result = PollingResult()
        for merchant in await self.merchants.list_active(request.team_id):
            try:
                result.merge(await self.poll_official_updates(merchant.id, request.last_synced_at))
            except POLL_ERRORS as e:
                logger.warning(f"Official polling failed for merchant {merchant.id}: {e}")
                result.add_error(None, None, f"merchant {merchant.id}: {e}")
        return result

    # =========================================================================
    # Legacy per-invoice polling
    # =========================================================================

    async def poll_in_flight(
        self,
        team_id: Optional[str] = None,
        merchant_id: Optional[str] = None,
        config: Optional[PollingConfig] = None,
    ) -> PollingResult:
        """Poll the oldest stale in-flight invoices, up to ``batch_size``."""
        config = config or PollingConfig()
        result = PollingResult()

        merchant_ids = [
            m.id for m in await self.merchants.list_active(team_id)
            if merchant_id is None or m.id == merchant_id
        ]
        if not merchant_ids:
            logger.debug("No active merchants to poll")
            return result

        older_than = utcnow() - timedelta(minutes=config.max_age_minutes)
        invoices = await self.invoices.list_in_flight(
            older_than, config.batch_size, merchant_ids=merchant_ids, team_id=team_id
        )
        policy = self.policy.with_attempts(config.retry_attempts)

        for invoice in invoices:
            result.processed += 1
            with with_correlation(
                invoice_id=invoice.id,
                document_id=invoice.document_id,
                merchant_id=invoice.merchant_id,
            ):
                try:
                    detail = await self.client.fetch_document(
                        invoice.merchant_id, invoice.document_id, policy=policy
                    )
                    transition = await self._propose(invoice, detail)
                except POLL_ERRORS as e:
                    self._record_failure(result, invoice, e)
                else:
                    self._count(result, invoice, transition)
                await self.invoices.mark_polled(invoice.id, utcnow())

        return result

    # =========================================================================
    # Official bulk polling
    # =========================================================================

    async def poll_official_updates(
        self,
        merchant_id: str,
        last_synced_at: Optional[datetime] = None,
    ) -> PollingResult:
        """Apply the registry's update feed for one merchant.

        The cursor moves to the newest ``updated_at`` in the batch only when
        every failure in the batch was a not-found. Anything else leaves it
        in place so the whole batch is read again next time; replays of
        already applied observations come back IGNORED.
        """
        merchant = await self.merchants.get(merchant_id)
        if merchant is None:
            raise NotConnectedError(merchant_id, "unknown merchant")

        cursor = last_synced_at or merchant.last_sync_at
        result = PollingResult()
        with with_correlation(merchant_id=merchant_id, team_id=merchant.team_id, source="poll"):
            updates = await self.client.list_document_updates(merchant_id, since=cursor)

            newest: Optional[datetime] = None
            clean = True
            for update in updates.documents:
                if newest is None or update.updated_at > newest:
                    newest = update.updated_at

                invoice = await self.invoices.get_by_document_id(update.document_id)
                if invoice is None:
                    logger.debug(f"Skipping unknown document {update.document_id}")
                    continue

                result.processed += 1
                with with_correlation(invoice_id=invoice.id, document_id=invoice.document_id):
                    try:
                        detail = await self.client.fetch_document(merchant_id, update.document_id)
                        if detail.updated_at is None:
                            detail = detail.model_copy(update={"updated_at": update.updated_at})
                        transition = await self._propose(invoice, detail)
                    except POLL_ERRORS as e:
                        self._record_failure(result, invoice, e)
                        if not isinstance(e, RegistryNotFoundError):
                            clean = False
                    else:
                        self._count(result, invoice, transition)
                        if transition.is_error:
                            clean = False

            if clean and newest is not None:
                await self._advance_cursor(merchant, cursor, newest, len(updates.documents))
            elif not clean:
                logger.warning("Batch had failures; sync cursor not advanced")

        return result

    async def _advance_cursor(
        self,
        merchant: Merchant,
        previous: Optional[datetime],
        newest: datetime,
        batch_size: int,
    ) -> None:
        if previous is not None and newest <= previous:
            return
        await self.merchants.update_sync_cursor(merchant.id, newest)
        self.audit.record(
            AuditAction.POLL_CURSOR_ADVANCED,
            AuditActor.POLL,
            "merchant",
            merchant.id,
            "Official polling cursor advanced",
            team_id=merchant.team_id,
            details={
                "from": previous.isoformat() if previous else None,
                "to": newest.isoformat(),
                "documents": batch_size,
            },
        )

    # =========================================================================
    # On-demand refresh
    # =========================================================================

    async def refresh_invoice(self, invoice_id: str) -> TransitionResult:
        """Fetch one invoice's document now and propose what the registry reports."""
        invoice = await self.invoices.get(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)
        if not invoice.document_id:
            raise InvalidInvoiceStateError("Invoice has no registry document to refresh")

        with with_correlation(invoice_id=invoice.id, document_id=invoice.document_id, source="poll"):
            detail = await self.client.fetch_document(invoice.merchant_id, invoice.document_id)
            transition = await self._propose(invoice, detail)
            await self.invoices.mark_polled(invoice.id, utcnow())
            return transition

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _propose(self, invoice: Invoice, detail: DocumentDetail) -> TransitionResult:
        raw = detail.model_dump(mode="json")
        candidate = map_registry_status(detail.status)
        if candidate is None:
            logger.info(f"Registry status {detail.status!r} does not map to a lifecycle status")
            return TransitionResult(
                TransitionOutcome.IGNORED, invoice, reason="unmapped_status", previous_status=invoice.status
            )

        state = RegistryState(
            document_id=detail.document_id or invoice.document_id,
            registry_status=detail.status.upper(),
            verification_link=detail.verification_link,
            raw=raw,
        )
        return await self.engine.propose_transition(
            invoice.id,
            UpdateSource.POLL,
            candidate,
            detail.updated_at or utcnow(),
            raw_payload=raw,
            registry_state=state,
        )

    @staticmethod
    def _count(result: PollingResult, invoice: Invoice, transition: TransitionResult) -> None:
        if transition.accepted:
            result.updated += 1
        elif transition.is_error:
            result.add_error(invoice.id, invoice.document_id, transition.reason or "transition failed")

    def _record_failure(self, result: PollingResult, invoice: Invoice, error: Exception) -> None:
        result.add_error(invoice.id, invoice.document_id, str(error))
        self.audit.record(
            AuditAction.POLL_FAILED,
            AuditActor.POLL,
            "invoice",
            invoice.id,
            "Status poll failed",
            team_id=invoice.team_id,
            details={
                "document_id": invoice.document_id,
                "error": str(error),
                "error_type": type(error).__name__,
            },
        )
        logger.warning(f"Poll failed for invoice {invoice.id}: {error}")
