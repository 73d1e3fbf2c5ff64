"""
Document Submission Test

Validates the synchronous submission channel and the full
submit -> webhook -> poll flow:
1. Drafts are created with an audit entry
2. The registry's verdict becomes SUBMITTED or VALIDATION_FAILED
3. Transient submission failures leave the draft untouched and are audited
4. Buyers accept or reject received invoices through the registry
5. A late poll cannot undo a newer webhook observation
"""

import asyncio
import json
from datetime import timedelta

import pytest

from conftest import WEBHOOK_SECRET, FakeResponse, document_response
from connectors.registry.errors import RegistryTransientError
from core.models.events import AuditAction, AuditActor
from core.models.invoice import InvoiceDirection, InvoiceStatus
from reconciliation.engine import IgnoreReason, TransitionOutcome
from submission.service import InvalidInvoiceStateError, InvoiceNotFoundError
from webhooks.ingestion import compute_signature

UBL = "<Invoice><ID>INV-001</ID></Invoice>"
SUBMIT_PATH = "/api/v1/document"
SEND_PATH = "/api/v1/document/send"


def valid_submission(document_id: str = "DOC-7") -> FakeResponse:
    return FakeResponse(200, {
        "valid_documents": [{
            "document_id": document_id,
            "verification_link": f"https://verify.test/{document_id}",
            "document_type": "INVOICE",
        }],
        "failed_documents": [],
    })


@pytest.fixture
def draft(runtime, seed_merchant):
    merchant = seed_merchant()
    return asyncio.run(runtime.submission.create_draft(
        merchant.team_id, merchant.id, invoice_number="INV-001", user_id="user-1"
    ))


class TestDrafts:
    """Draft creation."""

    def test_draft_is_created_and_audited(self, runtime, draft):
        assert draft.status == InvoiceStatus.DRAFT
        assert draft.document_id is None
        entries = runtime.audit.query(entity_id=draft.id, action=AuditAction.INVOICE_CREATED)
        assert len(entries) == 1
        assert entries[0].actor == AuditActor.USER
        assert entries[0].details["invoice_number"] == "INV-001"

    def test_unknown_invoice(self, runtime):
        with pytest.raises(InvoiceNotFoundError):
            asyncio.run(runtime.submission.get_invoice("missing"))


class TestSubmit:
    """Submission responses."""

    def test_valid_document_is_submitted(self, runtime, session, draft):
        session.add("POST", SUBMIT_PATH, valid_submission())

        result = asyncio.run(runtime.submission.submit_invoice(draft.id, UBL, user_id="user-1"))

        assert result.accepted
        invoice = result.invoice
        assert invoice.status == InvoiceStatus.SUBMITTED
        assert invoice.document_id == "DOC-7"
        assert invoice.submitted_at is not None
        assert invoice.registry_response.verification_link == "https://verify.test/DOC-7"

        entry = runtime.audit.query(entity_id=draft.id, action=AuditAction.INVOICE_STATUS_CHANGED)[0]
        assert entry.actor == AuditActor.USER
        assert entry.details["source"] == "submission"

    def test_failed_document_is_validation_failed(self, runtime, session, draft):
        session.add("POST", SUBMIT_PATH, FakeResponse(200, {
            "valid_documents": [],
            "failed_documents": [{"document_type": "INVOICE", "error_message": "Missing buyer TIN"}],
        }))

        result = asyncio.run(runtime.submission.submit_invoice(draft.id, UBL))

        assert result.invoice.status == InvoiceStatus.VALIDATION_FAILED
        assert result.invoice.rejection_reason == "Missing buyer TIN"
        assert result.invoice.validated_at is not None

    def test_rejected_request_is_validation_failed(self, runtime, session, draft):
        session.add("POST", SUBMIT_PATH, FakeResponse(422, {"error": "schema violation"}))

        result = asyncio.run(runtime.submission.submit_invoice(draft.id, UBL))

        assert result.invoice.status == InvoiceStatus.VALIDATION_FAILED
        assert len(session.calls_to("POST", SUBMIT_PATH)) == 1

    def test_transient_failure_leaves_draft(self, runtime, session, draft):
        session.add("POST", SUBMIT_PATH, FakeResponse(503, {"error": "maintenance"}))

        with pytest.raises(RegistryTransientError):
            asyncio.run(runtime.submission.submit_invoice(draft.id, UBL, user_id="user-1"))

        assert asyncio.run(runtime.invoices.get(draft.id)).status == InvoiceStatus.DRAFT
        failures = runtime.audit.query(entity_id=draft.id, action=AuditAction.DOCUMENT_SUBMISSION_FAILED)
        assert len(failures) == 1

    def test_only_drafts_can_be_submitted(self, runtime, session, draft):
        session.add("POST", SUBMIT_PATH, valid_submission())
        asyncio.run(runtime.submission.submit_invoice(draft.id, UBL))

        with pytest.raises(InvalidInvoiceStateError):
            asyncio.run(runtime.submission.submit_invoice(draft.id, UBL))


class TestSendAndCancel:
    """Delivery and cancellation."""

    def test_send_submitted_invoice(self, runtime, session, seed_merchant, seed_invoice):
        merchant = seed_merchant()
        invoice = seed_invoice(merchant, status=InvoiceStatus.VALIDATED)
        session.add("POST", SEND_PATH, FakeResponse(200, {"sent_documents": ["DOC-1"]}))

        result = asyncio.run(runtime.submission.send_invoice(invoice.id))

        assert result.invoice.status == InvoiceStatus.SENT
        assert result.invoice.sent_at is not None
        assert session.calls_to("POST", SEND_PATH)[0].json == {"documents": ["DOC-1"]}

    def test_cannot_send_draft(self, runtime, draft):
        with pytest.raises(InvalidInvoiceStateError):
            asyncio.run(runtime.submission.send_invoice(draft.id))

    def test_cannot_send_terminal_invoice(self, runtime, seed_merchant, seed_invoice):
        invoice = seed_invoice(seed_merchant(), status=InvoiceStatus.ACCEPTED)
        with pytest.raises(InvalidInvoiceStateError):
            asyncio.run(runtime.submission.send_invoice(invoice.id))

    def test_cancel(self, runtime, draft):
        result = asyncio.run(runtime.submission.cancel_invoice(draft.id, user_id="user-1", reason="typo"))

        assert result.invoice.status == InvoiceStatus.CANCELLED


class TestBuyerResponses:
    """Accepting and rejecting received invoices."""

    @pytest.fixture
    def received(self, seed_merchant, seed_invoice):
        return seed_invoice(
            seed_merchant(), status=InvoiceStatus.SENT, document_id="DOC-IN", direction=InvoiceDirection.INCOMING
        )

    def test_accept(self, runtime, session, received):
        session.add("POST", "/api/v1/invoices/DOC-IN/accept", FakeResponse(200, {"status": "ACCEPTED"}))

        result = asyncio.run(runtime.incoming.accept_invoice(received.id, user_id="user-1"))

        assert result.accepted
        assert result.invoice.status == InvoiceStatus.ACCEPTED
        assert result.invoice.accepted_at is not None
        assert result.invoice.registry_status == "ACCEPTED"
        entries = runtime.audit.query(entity_id=received.id, action=AuditAction.INVOICE_STATUS_CHANGED)
        assert entries[-1].actor == AuditActor.USER
        assert entries[-1].actor_id == "user-1"

    def test_reject_records_reason(self, runtime, session, received):
        session.add("POST", "/api/v1/invoices/DOC-IN/reject", FakeResponse(200, {}))

        result = asyncio.run(runtime.incoming.reject_invoice(received.id, "Wrong VAT rate"))

        assert result.invoice.status == InvoiceStatus.REJECTED
        assert result.invoice.rejection_reason == "Wrong VAT rate"
        assert session.calls_to("POST", "/api/v1/invoices/DOC-IN/reject")[0].json == {"reason": "Wrong VAT rate"}

    def test_reject_requires_reason(self, runtime, session, received):
        with pytest.raises(ValueError):
            asyncio.run(runtime.incoming.reject_invoice(received.id, "  "))
        assert session.calls == []

    def test_outgoing_invoice_cannot_be_accepted(self, runtime, session, seed_merchant, seed_invoice):
        invoice = seed_invoice(seed_merchant(), status=InvoiceStatus.SENT)

        with pytest.raises(InvalidInvoiceStateError):
            asyncio.run(runtime.incoming.accept_invoice(invoice.id))
        assert session.calls == []

    def test_final_invoice_cannot_be_rejected(self, runtime, seed_merchant, seed_invoice):
        invoice = seed_invoice(
            seed_merchant(), status=InvoiceStatus.ACCEPTED, direction=InvoiceDirection.INCOMING
        )
        with pytest.raises(InvalidInvoiceStateError):
            asyncio.run(runtime.incoming.reject_invoice(invoice.id, "too late"))

    def test_unknown_invoice(self, runtime):
        with pytest.raises(InvoiceNotFoundError):
            asyncio.run(runtime.incoming.accept_invoice("missing"))

    def test_registry_failure_leaves_invoice(self, runtime, session, received):
        session.add("POST", "/api/v1/invoices/DOC-IN/accept", FakeResponse(503, {"error": "down"}))

        with pytest.raises(RegistryTransientError):
            asyncio.run(runtime.incoming.accept_invoice(received.id))

        assert asyncio.run(runtime.invoices.get(received.id)).status == InvoiceStatus.SENT
        failures = runtime.audit.query(entity_id=received.id, action=AuditAction.BUYER_RESPONSE_FAILED)
        assert len(failures) == 1


class TestFullFlow:
    """Submission, then webhook, then a late poll."""

    def test_late_poll_cannot_undo_webhook(self, runtime, session, draft):
        session.add("POST", SUBMIT_PATH, valid_submission("DOC-7"))
        submitted = asyncio.run(runtime.submission.submit_invoice(draft.id, UBL)).invoice
        t0 = submitted.submitted_at
        t1 = t0 + timedelta(minutes=1)

        body = json.dumps({
            "event_id": "evt-validated",
            "event_type": "DOCUMENT_VALIDATED",
            "document_id": "DOC-7",
            "timestamp": t1.isoformat(),
        }).encode("utf-8")
        asyncio.run(runtime.webhooks.handle(body, compute_signature(WEBHOOK_SECRET, body)))
        assert asyncio.run(runtime.invoices.get(draft.id)).status == InvoiceStatus.VALIDATED

        session.add("GET", "/api/v1/document/DOC-7", document_response("DOC-7", "SUBMITTED", t0))
        polled = asyncio.run(runtime.polling.refresh_invoice(draft.id))

        assert polled.outcome == TransitionOutcome.IGNORED
        assert polled.reason == IgnoreReason.STALE
        stored = asyncio.run(runtime.invoices.get(draft.id))
        assert stored.status == InvoiceStatus.VALIDATED
        transitions = runtime.audit.query(entity_id=draft.id, action=AuditAction.INVOICE_STATUS_CHANGED)
        assert [e.details["to"] for e in transitions] == ["submitted", "validated"]

    def test_pdf_download(self, runtime, session, seed_merchant, seed_invoice):
        invoice = seed_invoice(seed_merchant(), status=InvoiceStatus.SENT)
        session.add("GET", "/api/v1/document/DOC-1/pdf", FakeResponse(200, body=b"%PDF-1.7"))

        assert asyncio.run(runtime.submission.fetch_pdf(invoice.id)) == b"%PDF-1.7"
