"""
SQLite Storage Test

Validates the durable repositories:
1. Invoice compare-and-swap on the version column
2. Audit rows commit in the same transaction as the status write
3. Unique document, endpoint and event ids
4. In-flight selection for the polling sweep
5. Webhook event bookkeeping
6. Merchant sync cursor updates and limited audit queries
"""

import asyncio
from datetime import timedelta
from typing import Optional

import pytest

from core.audit.events import AuditLog, InMemoryAuditBackend, SQLiteAuditBackend, create_audit_entry
from core.models.common import utcnow
from core.models.events import AuditAction, AuditActor, WebhookEvent
from core.models.invoice import Invoice, InvoiceStatus, RegistryState, UpdateSource
from core.models.merchant import Merchant, RegistrationStatus
from reconciliation.engine import ReconciliationEngine
from storage.base import DuplicateRecordError
from storage.sqlite import (
    SQLiteInvoiceRepository,
    SQLiteMerchantRepository,
    SQLiteWebhookEventRepository,
    init_db,
)


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "store.db"
    init_db(path)
    return path


@pytest.fixture
def invoices(db_path):
    return SQLiteInvoiceRepository(db_path)


@pytest.fixture
def audit(db_path):
    return AuditLog(SQLiteAuditBackend(db_path))


def make_invoice(**fields) -> Invoice:
    fields.setdefault("team_id", "team-1")
    fields.setdefault("merchant_id", "m-1")
    fields.setdefault("status", InvoiceStatus.SUBMITTED)
    fields.setdefault("document_id", "DOC-1")
    fields.setdefault("status_updated_at", utcnow() - timedelta(hours=2))
    return Invoice(**fields)


def status_entry(invoice: Invoice):
    return create_audit_entry(
        AuditAction.INVOICE_STATUS_CHANGED, AuditActor.POLL, "invoice", invoice.id, "status changed"
    )


class TestInvoiceRepository:
    """Invoice rows and the version compare-and-swap."""

    def test_create_and_read_back(self, invoices):
        invoice = make_invoice(registry_response=RegistryState(document_id="DOC-1", verification_link="https://v/1"))
        asyncio.run(invoices.create(invoice))

        stored = asyncio.run(invoices.get(invoice.id))
        by_document = asyncio.run(invoices.get_by_document_id("DOC-1"))

        assert stored.status == InvoiceStatus.SUBMITTED
        assert stored.version == 0
        assert stored.registry_response.verification_link == "https://v/1"
        assert by_document.id == invoice.id
        assert asyncio.run(invoices.get("missing")) is None

    def test_duplicate_document_id(self, invoices):
        asyncio.run(invoices.create(make_invoice()))
        with pytest.raises(DuplicateRecordError):
            asyncio.run(invoices.create(make_invoice()))

    def test_compare_and_swap_bumps_version(self, invoices, audit):
        invoice = asyncio.run(invoices.create(make_invoice()))
        updated = invoice.model_copy(update={"status": InvoiceStatus.VALIDATED})

        stored = asyncio.run(invoices.compare_and_swap(updated, 0, status_entry(invoice)))

        assert stored.version == 1
        assert asyncio.run(invoices.get(invoice.id)).status == InvoiceStatus.VALIDATED
        assert len(audit.query(entity_id=invoice.id)) == 1

    def test_stale_version_writes_nothing(self, invoices, audit):
        invoice = asyncio.run(invoices.create(make_invoice()))
        asyncio.run(invoices.compare_and_swap(invoice.model_copy(update={"status": InvoiceStatus.VALIDATED}), 0))

        lost = asyncio.run(invoices.compare_and_swap(
            invoice.model_copy(update={"status": InvoiceStatus.SENT}), 0, status_entry(invoice)
        ))

        assert lost is None
        assert asyncio.run(invoices.get(invoice.id)).status == InvoiceStatus.VALIDATED
        assert audit.query(entity_id=invoice.id) == []

    def test_duplicate_document_on_swap_rolls_back_audit(self, invoices, audit):
        asyncio.run(invoices.create(make_invoice(document_id="DOC-TAKEN")))
        draft = asyncio.run(invoices.create(make_invoice(status=InvoiceStatus.DRAFT, document_id=None)))

        with pytest.raises(DuplicateRecordError):
            asyncio.run(invoices.compare_and_swap(
                draft.model_copy(update={"document_id": "DOC-TAKEN"}), 0, status_entry(draft)
            ))

        assert audit.query(entity_id=draft.id) == []
        assert asyncio.run(invoices.get(draft.id)).version == 0

    def test_swap_keeps_last_polled_at(self, invoices):
        invoice = asyncio.run(invoices.create(make_invoice()))
        polled_at = utcnow()
        asyncio.run(invoices.mark_polled(invoice.id, polled_at))

        stored = asyncio.run(invoices.compare_and_swap(
            invoice.model_copy(update={"status": InvoiceStatus.SENT}), 0
        ))

        assert stored.last_polled_at == polled_at

    def test_list_in_flight(self, invoices):
        now = utcnow()
        oldest = make_invoice(document_id="DOC-A", status_updated_at=now - timedelta(hours=5))
        older = make_invoice(document_id="DOC-B", status=InvoiceStatus.SENT, status_updated_at=now - timedelta(hours=3))
        recent = make_invoice(document_id="DOC-C", status_updated_at=now - timedelta(minutes=5))
        terminal = make_invoice(document_id="DOC-D", status=InvoiceStatus.ACCEPTED)
        draft = make_invoice(document_id=None, status=InvoiceStatus.DRAFT, status_updated_at=None)
        other_merchant = make_invoice(document_id="DOC-E", merchant_id="m-2")
        for invoice in (recent, older, terminal, draft, other_merchant, oldest):
            asyncio.run(invoices.create(invoice))

        cutoff = now - timedelta(hours=1)
        found = asyncio.run(invoices.list_in_flight(cutoff, 10, merchant_ids=["m-1"]))

        assert [i.id for i in found] == [oldest.id, older.id]
        assert len(asyncio.run(invoices.list_in_flight(cutoff, 1, merchant_ids=["m-1"]))) == 1
        assert asyncio.run(invoices.list_in_flight(cutoff, 10, merchant_ids=[])) == []
        assert len(asyncio.run(invoices.list_in_flight(cutoff, 10))) == 3

    def test_recently_polled_invoices_are_skipped(self, invoices):
        invoice = asyncio.run(invoices.create(make_invoice()))
        asyncio.run(invoices.mark_polled(invoice.id, utcnow()))

        found = asyncio.run(invoices.list_in_flight(utcnow() - timedelta(hours=1), 10))

        assert found == []


class InterleavingSQLiteInvoiceRepository(SQLiteInvoiceRepository):
    """Yields after every read so concurrent proposals interleave."""

    async def get(self, invoice_id: str) -> Optional[Invoice]:
        invoice = await super().get(invoice_id)
        await asyncio.sleep(0)
        return invoice


class TestEngineOnSQLite:
    """The engine against the durable store."""

    def test_concurrent_proposals_write_once(self, db_path, audit):
        repo = InterleavingSQLiteInvoiceRepository(db_path)
        engine = ReconciliationEngine(repo)
        invoice = asyncio.run(repo.create(make_invoice(status=InvoiceStatus.SENT)))
        observed = utcnow()

        async def race():
            return await asyncio.gather(
                engine.propose_transition(invoice.id, UpdateSource.WEBHOOK, InvoiceStatus.ACCEPTED, observed),
                engine.propose_transition(invoice.id, UpdateSource.POLL, InvoiceStatus.REJECTED, observed),
            )

        results = asyncio.run(race())

        assert sum(1 for r in results if r.accepted) == 1
        stored = asyncio.run(repo.get(invoice.id))
        assert stored.version == 1
        assert stored.status in (InvoiceStatus.ACCEPTED, InvoiceStatus.REJECTED)
        entries = audit.query(entity_id=invoice.id, action=AuditAction.INVOICE_STATUS_CHANGED)
        assert len(entries) == 1
        assert entries[0].details["to"] == stored.status.value

    def test_created_invoice_has_audit_entry(self, db_path, audit):
        engine = ReconciliationEngine(SQLiteInvoiceRepository(db_path))
        invoice = asyncio.run(engine.create_invoice(
            make_invoice(status=InvoiceStatus.DRAFT, document_id=None), AuditActor.USER, "Draft created", actor_id="u-1"
        ))

        entries = audit.query(entity_id=invoice.id, action=AuditAction.INVOICE_CREATED)
        assert len(entries) == 1
        assert entries[0].actor_id == "u-1"
        assert entries[0].details["status"] == "draft"


class TestMerchantRepository:
    """Merchant upsert and lookups."""

    def test_save_is_an_upsert(self, db_path):
        repo = SQLiteMerchantRepository(db_path)
        merchant = asyncio.run(repo.save(Merchant(team_id="team-1", endpoint_id="EP-1")))
        asyncio.run(repo.save(merchant.model_copy(update={
            "is_active": True,
            "registration_status": RegistrationStatus.ACTIVE,
        })))

        stored = asyncio.run(repo.get_by_endpoint_id("EP-1"))

        assert stored.id == merchant.id
        assert stored.is_active
        assert [m.id for m in asyncio.run(repo.list_active("team-1"))] == [merchant.id]
        assert asyncio.run(repo.list_active("team-2")) == []

    def test_endpoint_is_unique(self, db_path):
        repo = SQLiteMerchantRepository(db_path)
        asyncio.run(repo.save(Merchant(team_id="team-1", endpoint_id="EP-1")))
        with pytest.raises(DuplicateRecordError):
            asyncio.run(repo.save(Merchant(team_id="team-2", endpoint_id="EP-1")))

    def test_sync_cursor_update_leaves_credentials(self, db_path):
        repo = SQLiteMerchantRepository(db_path)
        merchant = asyncio.run(repo.save(Merchant(team_id="team-1", endpoint_id="EP-1")))
        asyncio.run(repo.save(merchant.model_copy(update={"encrypted_access_token": "sealed-new"})))
        cursor = utcnow() - timedelta(minutes=5)

        updated = asyncio.run(repo.update_sync_cursor(merchant.id, cursor))

        assert updated.last_sync_at == cursor
        stored = asyncio.run(repo.get(merchant.id))
        assert stored.last_sync_at == cursor
        assert stored.encrypted_access_token == "sealed-new"
        assert asyncio.run(repo.update_sync_cursor("nobody", cursor)) is None


class TestWebhookEventRepository:
    """Inbound event bookkeeping."""

    def test_record_is_idempotent(self, db_path):
        repo = SQLiteWebhookEventRepository(db_path)
        first = asyncio.run(repo.record(WebhookEvent(event_id="evt-1", event_type="DOCUMENT_DELIVERED")))
        again = asyncio.run(repo.record(WebhookEvent(event_id="evt-1", event_type="DOCUMENT_ACCEPTED")))

        assert again.id == first.id
        assert again.event_type == "DOCUMENT_DELIVERED"

    def test_failed_then_processed(self, db_path):
        repo = SQLiteWebhookEventRepository(db_path)
        asyncio.run(repo.record(WebhookEvent(event_id="evt-1", event_type="DOCUMENT_DELIVERED", payload={"a": 1})))

        asyncio.run(repo.mark_failed("evt-1", "storage error", invoice_id="inv-1"))
        failed = asyncio.run(repo.get_by_event_id("evt-1"))
        assert not failed.processed
        assert failed.error_message == "storage error"
        assert failed.invoice_id == "inv-1"

        asyncio.run(repo.mark_processed("evt-1", utcnow()))
        done = asyncio.run(repo.get_by_event_id("evt-1"))
        assert done.processed
        assert done.processed_at is not None
        assert done.error_message is None
        assert done.invoice_id == "inv-1"
        assert done.payload == {"a": 1}


class TestAuditQuery:
    """Limited queries return the newest entries in the order they were written."""

    @pytest.mark.parametrize("backend", ["memory", "sqlite"])
    def test_limit_keeps_latest_entries(self, db_path, backend):
        log = AuditLog(InMemoryAuditBackend() if backend == "memory" else SQLiteAuditBackend(db_path))
        for n in range(5):
            log.record(
                AuditAction.INVOICE_STATUS_CHANGED, AuditActor.POLL, "invoice", "inv-1",
                f"change {n}", details={"n": n},
            )

        latest = log.query(entity_id="inv-1", limit=3)

        assert [e.details["n"] for e in latest] == [2, 3, 4]
        assert [e.details["n"] for e in log.query(entity_id="inv-1")] == [0, 1, 2, 3, 4]
