"""
Reconciliation Engine Test

Validates the single writer of invoice status:
1. Forward transitions are applied with an audit entry in the same write
2. Stale, backward, sibling and terminal proposals are ignored, not errors
3. Equal timestamps break ties toward the more final status
4. Concurrent proposals converge through the version compare-and-swap
5. Cancellation is a user action that ignores terminal invoices
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

from core.audit.events import AuditLog, InMemoryAuditBackend
from core.models.events import AuditAction, AuditActor
from core.models.invoice import Invoice, InvoiceStatus, RegistryState, UpdateSource
from reconciliation.engine import IgnoreReason, ReconciliationEngine, TransitionOutcome
from reconciliation.lifecycle import rank
from storage.memory import InMemoryInvoiceRepository

BASE_TIME = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def at(minutes: int) -> datetime:
    return BASE_TIME + timedelta(minutes=minutes)


class InterleavingInvoiceRepository(InMemoryInvoiceRepository):
    """Yields after every read so concurrent proposals interleave."""

    async def get(self, invoice_id: str) -> Optional[Invoice]:
        invoice = await super().get(invoice_id)
        await asyncio.sleep(0)
        return invoice


class AlwaysConflictingRepository(InMemoryInvoiceRepository):
    """Every compare-and-swap loses."""

    async def compare_and_swap(self, invoice, expected_version, audit_entry=None):
        return None


def make_engine(repo_cls=InMemoryInvoiceRepository):
    backend = InMemoryAuditBackend()
    repo = repo_cls(backend)
    return ReconciliationEngine(repo), repo, AuditLog(backend)


def seed(repo, **fields) -> Invoice:
    fields.setdefault("team_id", "team-1")
    fields.setdefault("merchant_id", "m-1")
    return asyncio.run(repo.create(Invoice(**fields)))


def transitions(audit: AuditLog, invoice_id: str):
    return audit.query(entity_id=invoice_id, action=AuditAction.INVOICE_STATUS_CHANGED)


class TestAcceptedTransitions:
    """Forward proposals are written."""

    def test_forward_transition_is_applied_and_audited(self):
        engine, repo, audit = make_engine()
        invoice = seed(repo, status=InvoiceStatus.SUBMITTED, document_id="DOC-1", status_updated_at=at(0))

        result = asyncio.run(engine.propose_transition(
            invoice.id, UpdateSource.WEBHOOK, InvoiceStatus.VALIDATED, at(5),
            raw_payload={"event_id": "evt-1", "event_type": "DOCUMENT_VALIDATED"},
        ))

        assert result.outcome == TransitionOutcome.ACCEPTED
        assert result.previous_status == InvoiceStatus.SUBMITTED
        stored = asyncio.run(repo.get(invoice.id))
        assert stored.status == InvoiceStatus.VALIDATED
        assert stored.status_updated_at == at(5)
        assert stored.validated_at == at(5)
        assert stored.version == invoice.version + 1
        assert stored.registry_status == "VALIDATED"

        entries = transitions(audit, invoice.id)
        assert len(entries) == 1
        assert entries[0].actor == AuditActor.WEBHOOK
        assert entries[0].details["from"] == "submitted"
        assert entries[0].details["to"] == "validated"
        assert entries[0].details["source"] == "webhook"
        assert entries[0].details["payload"]["event_id"] == "evt-1"

    def test_skipping_intermediate_states(self):
        engine, repo, _ = make_engine()
        invoice = seed(repo, status=InvoiceStatus.SUBMITTED, document_id="DOC-1", status_updated_at=at(0))

        result = asyncio.run(engine.propose_transition(
            invoice.id, UpdateSource.POLL, InvoiceStatus.ACCEPTED, at(30)
        ))

        assert result.accepted
        assert result.invoice.status == InvoiceStatus.ACCEPTED
        assert result.invoice.accepted_at == at(30)

    def test_rejection_reason_recorded(self):
        engine, repo, _ = make_engine()
        invoice = seed(repo, status=InvoiceStatus.SENT, document_id="DOC-1", status_updated_at=at(0))

        result = asyncio.run(engine.propose_transition(
            invoice.id, UpdateSource.WEBHOOK, InvoiceStatus.REJECTED, at(10),
            raw_payload={"reason": "Wrong buyer TIN"},
        ))

        assert result.accepted
        assert result.invoice.rejection_reason == "Wrong buyer TIN"
        assert result.invoice.rejected_at == at(10)

    def test_document_id_is_set_once(self):
        engine, repo, _ = make_engine()
        draft = seed(repo, status=InvoiceStatus.DRAFT, document_id=None)

        first = asyncio.run(engine.propose_transition(
            draft.id, UpdateSource.SUBMISSION, InvoiceStatus.SUBMITTED, at(0),
            registry_state=RegistryState(document_id="DOC-9", verification_link="https://verify/DOC-9"),
        ))
        assert first.invoice.document_id == "DOC-9"

        second = asyncio.run(engine.propose_transition(
            draft.id, UpdateSource.POLL, InvoiceStatus.VALIDATED, at(5),
            registry_state=RegistryState(document_id="DOC-OTHER", registry_status="VALIDATED"),
        ))
        assert second.accepted
        assert second.invoice.document_id == "DOC-9"

    def test_registry_state_is_merged(self):
        engine, repo, _ = make_engine()
        draft = seed(repo, status=InvoiceStatus.DRAFT, document_id=None)

        asyncio.run(engine.propose_transition(
            draft.id, UpdateSource.SUBMISSION, InvoiceStatus.SUBMITTED, at(0),
            raw_payload={"valid_documents": [{"document_id": "DOC-9"}]},
            registry_state=RegistryState(document_id="DOC-9", verification_link="https://verify/DOC-9"),
        ))
        result = asyncio.run(engine.propose_transition(
            draft.id, UpdateSource.WEBHOOK, InvoiceStatus.SENT, at(5),
            raw_payload={"event_type": "DOCUMENT_DELIVERED"},
            registry_state=RegistryState(last_event_type="DOCUMENT_DELIVERED"),
        ))

        state = result.invoice.registry_response
        assert state.verification_link == "https://verify/DOC-9"
        assert state.last_event_type == "DOCUMENT_DELIVERED"
        assert state.last_source == UpdateSource.WEBHOOK
        assert state.registry_status == "SENT"
        assert state.raw == {"event_type": "DOCUMENT_DELIVERED"}

    def test_submission_actor_is_user_when_user_given(self):
        engine, repo, audit = make_engine()
        draft = seed(repo, status=InvoiceStatus.DRAFT, document_id=None)

        asyncio.run(engine.propose_transition(
            draft.id, UpdateSource.SUBMISSION, InvoiceStatus.SUBMITTED, at(0), actor_id="user-7"
        ))

        entry = transitions(audit, draft.id)[0]
        assert entry.actor == AuditActor.USER
        assert entry.actor_id == "user-7"


class TestIgnoredProposals:
    """Proposals that must not change the invoice."""

    def test_stale_proposal_is_ignored(self):
        engine, repo, audit = make_engine()
        invoice = seed(repo, status=InvoiceStatus.VALIDATED, document_id="DOC-1", status_updated_at=at(10))

        result = asyncio.run(engine.propose_transition(
            invoice.id, UpdateSource.POLL, InvoiceStatus.SENT, at(5)
        ))

        assert result.outcome == TransitionOutcome.IGNORED
        assert result.reason == IgnoreReason.STALE
        assert asyncio.run(repo.get(invoice.id)).status == InvoiceStatus.VALIDATED
        assert transitions(audit, invoice.id) == []

    def test_equal_timestamp_prefers_more_final_status(self):
        engine, repo, _ = make_engine()
        invoice = seed(repo, status=InvoiceStatus.SENT, document_id="DOC-1", status_updated_at=at(10))

        lower = asyncio.run(engine.propose_transition(
            invoice.id, UpdateSource.POLL, InvoiceStatus.VALIDATED, at(10)
        ))
        higher = asyncio.run(engine.propose_transition(
            invoice.id, UpdateSource.POLL, InvoiceStatus.ACCEPTED, at(10)
        ))

        assert lower.reason == IgnoreReason.STALE
        assert higher.accepted
        assert higher.invoice.status == InvoiceStatus.ACCEPTED

    def test_sibling_move_is_not_forward(self):
        engine, repo, _ = make_engine()
        invoice = seed(repo, status=InvoiceStatus.VALIDATED, document_id="DOC-1", status_updated_at=at(0))

        result = asyncio.run(engine.propose_transition(
            invoice.id, UpdateSource.WEBHOOK, InvoiceStatus.VALIDATION_FAILED, at(5)
        ))

        assert result.ignored
        assert result.reason == IgnoreReason.NOT_FORWARD

    def test_terminal_invoice_does_not_move(self):
        engine, repo, _ = make_engine()
        invoice = seed(repo, status=InvoiceStatus.ACCEPTED, document_id="DOC-1", status_updated_at=at(0))

        result = asyncio.run(engine.propose_transition(
            invoice.id, UpdateSource.WEBHOOK, InvoiceStatus.REJECTED, at(5)
        ))

        assert result.ignored
        assert result.reason == IgnoreReason.TERMINAL
        assert asyncio.run(repo.get(invoice.id)).status == InvoiceStatus.ACCEPTED

    def test_same_status_is_unchanged(self):
        engine, repo, _ = make_engine()
        invoice = seed(repo, status=InvoiceStatus.SENT, document_id="DOC-1", status_updated_at=at(0))

        result = asyncio.run(engine.propose_transition(
            invoice.id, UpdateSource.POLL, InvoiceStatus.SENT, at(5)
        ))

        assert result.ignored
        assert result.reason == IgnoreReason.UNCHANGED
        assert asyncio.run(repo.get(invoice.id)).version == invoice.version

    def test_submission_response_on_draft_skips_timestamp_check(self):
        engine, repo, _ = make_engine()
        draft = seed(repo, status=InvoiceStatus.DRAFT, document_id=None, status_updated_at=at(30))

        result = asyncio.run(engine.propose_transition(
            draft.id, UpdateSource.SUBMISSION, InvoiceStatus.SUBMITTED, at(0)
        ))

        assert result.accepted

    def test_webhook_on_draft_still_checks_timestamp(self):
        engine, repo, _ = make_engine()
        draft = seed(repo, status=InvoiceStatus.DRAFT, document_id="DOC-1", status_updated_at=at(30))

        result = asyncio.run(engine.propose_transition(
            draft.id, UpdateSource.WEBHOOK, InvoiceStatus.SENT, at(0)
        ))

        assert result.reason == IgnoreReason.STALE


class TestErrors:
    """Proposals that could not be applied."""

    def test_missing_invoice(self):
        engine, _, _ = make_engine()
        result = asyncio.run(engine.propose_transition(
            "missing", UpdateSource.POLL, InvoiceStatus.SENT, at(0)
        ))
        assert result.outcome == TransitionOutcome.ERROR

    def test_conflicts_exhaust_attempts(self):
        engine, repo, audit = make_engine(AlwaysConflictingRepository)
        invoice = seed(repo, status=InvoiceStatus.SUBMITTED, document_id="DOC-1", status_updated_at=at(0))

        result = asyncio.run(engine.propose_transition(
            invoice.id, UpdateSource.POLL, InvoiceStatus.SENT, at(5)
        ))

        assert result.is_error
        assert "version conflict" in result.reason
        assert transitions(audit, invoice.id) == []


class TestConcurrency:
    """Concurrent writers converge."""

    def test_concurrent_webhook_and_poll_write_once(self):
        engine, repo, audit = make_engine(InterleavingInvoiceRepository)
        invoice = seed(repo, status=InvoiceStatus.SENT, document_id="DOC-1", status_updated_at=at(0))

        async def race():
            return await asyncio.gather(
                engine.propose_transition(invoice.id, UpdateSource.WEBHOOK, InvoiceStatus.ACCEPTED, at(10)),
                engine.propose_transition(invoice.id, UpdateSource.POLL, InvoiceStatus.ACCEPTED, at(11)),
            )

        results = asyncio.run(race())

        outcomes = sorted(r.outcome.value for r in results)
        assert outcomes == ["accepted", "ignored"]
        stored = asyncio.run(repo.get(invoice.id))
        assert stored.status == InvoiceStatus.ACCEPTED
        assert stored.version == invoice.version + 1
        assert len(transitions(audit, invoice.id)) == 1

    def test_accepted_ranks_never_decrease(self):
        engine, repo, _ = make_engine()
        invoice = seed(repo, status=InvoiceStatus.DRAFT, document_id=None)
        proposals = [
            (UpdateSource.SUBMISSION, InvoiceStatus.SUBMITTED, 0),
            (UpdateSource.POLL, InvoiceStatus.SENT, 20),
            (UpdateSource.WEBHOOK, InvoiceStatus.VALIDATED, 10),
            (UpdateSource.POLL, InvoiceStatus.SUBMITTED, 25),
            (UpdateSource.WEBHOOK, InvoiceStatus.SENT, 20),
            (UpdateSource.WEBHOOK, InvoiceStatus.REJECTED, 40),
            (UpdateSource.POLL, InvoiceStatus.ACCEPTED, 45),
        ]

        ranks = []
        for source, status, minute in proposals:
            result = asyncio.run(engine.propose_transition(invoice.id, source, status, at(minute)))
            if result.accepted:
                ranks.append(rank(result.invoice.status))

        assert ranks == sorted(ranks)
        assert asyncio.run(repo.get(invoice.id)).status == InvoiceStatus.REJECTED


class TestCancel:
    """User cancellation."""

    def test_cancel_in_flight_invoice(self):
        engine, repo, audit = make_engine()
        invoice = seed(repo, status=InvoiceStatus.VALIDATED, document_id="DOC-1", status_updated_at=at(0))

        result = asyncio.run(engine.cancel(invoice.id, actor_id="user-1", reason="Duplicate"))

        assert result.accepted
        assert result.invoice.status == InvoiceStatus.CANCELLED
        assert result.invoice.cancelled_at is not None
        entries = audit.query(entity_id=invoice.id, action=AuditAction.INVOICE_CANCELLED)
        assert len(entries) == 1
        assert entries[0].actor == AuditActor.USER
        assert entries[0].details["reason"] == "Duplicate"

    def test_cancel_terminal_invoice_is_ignored(self):
        engine, repo, _ = make_engine()
        invoice = seed(repo, status=InvoiceStatus.REJECTED, document_id="DOC-1", status_updated_at=at(0))

        result = asyncio.run(engine.cancel(invoice.id, actor_id="user-1"))

        assert result.ignored
        assert result.reason == IgnoreReason.TERMINAL

    def test_channels_cannot_reopen_cancelled_invoice(self):
        engine, repo, _ = make_engine()
        invoice = seed(repo, status=InvoiceStatus.SENT, document_id="DOC-1", status_updated_at=at(0))
        asyncio.run(engine.cancel(invoice.id))

        result = asyncio.run(engine.propose_transition(
            invoice.id, UpdateSource.WEBHOOK, InvoiceStatus.ACCEPTED, datetime.now(timezone.utc) + timedelta(hours=1)
        ))

        assert result.ignored
        assert result.reason == IgnoreReason.TERMINAL
