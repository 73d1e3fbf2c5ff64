"""SQLite repositories.

Each row keeps its queryable fields as columns and the full model as JSON in
``data``. Invoice status writes are ``UPDATE ... WHERE id = ? AND version = ?``
and commit together with their audit row.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional, Sequence

from core.audit.events import AUDIT_INDEX_DDL, AUDIT_TABLE_DDL, insert_audit_entry
from core.models.common import ensure_utc, parse_timestamp, utcnow
from core.models.events import AuditLogEntry, WebhookEvent
from core.models.invoice import Invoice
from core.models.merchant import Merchant
from storage.base import (
    IN_FLIGHT_STATUSES,
    DuplicateRecordError,
    InvoiceRepository,
    MerchantRepository,
    StorageError,
    WebhookEventRepository,
)


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC timestamp so string comparison orders correctly."""
    if value is None:
        return None
    return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def init_db(db_path: Path) -> None:
    """Create tables if they don't exist."""
    conn = sqlite3.connect(str(db_path))
    try:
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS merchants (
                id TEXT PRIMARY KEY,
                team_id TEXT,
                endpoint_id TEXT UNIQUE,
                is_active INTEGER NOT NULL DEFAULT 0,
                registration_status TEXT NOT NULL,
                data TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS invoices (
                id TEXT PRIMARY KEY,
                invoice_uuid TEXT NOT NULL UNIQUE,
                document_id TEXT UNIQUE,
                team_id TEXT,
                merchant_id TEXT,
                status TEXT NOT NULL,
                status_updated_at TEXT,
                last_polled_at TEXT,
                version INTEGER NOT NULL DEFAULT 0,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_invoices_in_flight
            ON invoices(status, merchant_id, status_updated_at)
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS webhook_events (
                id TEXT PRIMARY KEY,
                event_id TEXT NOT NULL UNIQUE,
                event_type TEXT NOT NULL,
                payload TEXT NOT NULL,
                invoice_id TEXT,
                processed INTEGER NOT NULL DEFAULT 0,
                processed_at TEXT,
                error_message TEXT,
                received_at TEXT NOT NULL
            )
        """)
        cursor.execute(AUDIT_TABLE_DDL)
        cursor.execute(AUDIT_INDEX_DDL)
        conn.commit()
    finally:
        conn.close()


class _SQLiteRepository:
    """Connection handling shared by the repositories."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        try:
            cursor = conn.cursor()
            yield cursor
            conn.commit()
        except sqlite3.IntegrityError as e:
            conn.rollback()
            raise DuplicateRecordError(str(e)) from e
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(str(e)) from e
        finally:
            conn.close()


# =============================================================================
# Invoices
# =============================================================================

_INVOICE_COLUMNS = "data, version, last_polled_at"


def _row_to_invoice(row) -> Invoice:
    invoice = Invoice.model_validate_json(row[0])
    return invoice.model_copy(update={
        "version": row[1],
        "last_polled_at": parse_timestamp(row[2]),
    })


class SQLiteInvoiceRepository(_SQLiteRepository, InvoiceRepository):

    async def get(self, invoice_id: str) -> Optional[Invoice]:
        with self._transaction() as cursor:
            row = cursor.execute(
                f"SELECT {_INVOICE_COLUMNS} FROM invoices WHERE id = ?", (invoice_id,)
            ).fetchone()
        return _row_to_invoice(row) if row else None

    async def get_by_document_id(self, document_id: str) -> Optional[Invoice]:
        with self._transaction() as cursor:
            row = cursor.execute(
                f"SELECT {_INVOICE_COLUMNS} FROM invoices WHERE document_id = ?", (document_id,)
            ).fetchone()
        return _row_to_invoice(row) if row else None

    async def create(self, invoice: Invoice, audit_entry: Optional[AuditLogEntry] = None) -> Invoice:
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO invoices
                    (id, invoice_uuid, document_id, team_id, merchant_id, status,
                     status_updated_at, last_polled_at, version, data, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    invoice.id,
                    invoice.invoice_uuid,
                    invoice.document_id,
                    invoice.team_id,
                    invoice.merchant_id,
                    invoice.status.value,
                    _ts(invoice.status_updated_at),
                    _ts(invoice.last_polled_at),
                    invoice.version,
                    invoice.model_dump_json(),
                    _ts(invoice.created_at),
                ),
            )
            if audit_entry is not None:
                insert_audit_entry(cursor, audit_entry)
        return invoice

    async def compare_and_swap(
        self,
        invoice: Invoice,
        expected_version: int,
        audit_entry: Optional[AuditLogEntry] = None,
    ) -> Optional[Invoice]:
        new_version = expected_version + 1
        stored = invoice.model_copy(update={"version": new_version})
        with self._transaction() as cursor:
            cursor.execute(
                """
                UPDATE invoices
                SET document_id = ?, status = ?, status_updated_at = ?, version = ?, data = ?
                WHERE id = ? AND version = ?
                """,
                (
                    stored.document_id,
                    stored.status.value,
                    _ts(stored.status_updated_at),
                    new_version,
                    stored.model_dump_json(),
                    stored.id,
                    expected_version,
                ),
            )
            if cursor.rowcount != 1:
                return None
            if audit_entry is not None:
                insert_audit_entry(cursor, audit_entry)
            row = cursor.execute(
                "SELECT last_polled_at FROM invoices WHERE id = ?", (stored.id,)
            ).fetchone()
        return stored.model_copy(update={"last_polled_at": parse_timestamp(row[0])})

    async def list_in_flight(
        self,
        older_than: datetime,
        limit: int,
        merchant_ids: Optional[Sequence[str]] = None,
        team_id: Optional[str] = None,
    ) -> List[Invoice]:
        cutoff = _ts(older_than)
        statuses = [s.value for s in IN_FLIGHT_STATUSES]
        clauses = [
            f"status IN ({', '.join('?' for _ in statuses)})",
            "document_id IS NOT NULL",
            "(status_updated_at IS NULL OR status_updated_at < ?)",
            "(last_polled_at IS NULL OR last_polled_at < ?)",
        ]
        params: list = [*statuses, cutoff, cutoff]
        if merchant_ids is not None:
            if not merchant_ids:
                return []
            clauses.append(f"merchant_id IN ({', '.join('?' for _ in merchant_ids)})")
            params.extend(merchant_ids)
        if team_id is not None:
            clauses.append("team_id = ?")
            params.append(team_id)
        params.append(limit)

        with self._transaction() as cursor:
            rows = cursor.execute(
                f"""
                SELECT {_INVOICE_COLUMNS} FROM invoices
                WHERE {' AND '.join(clauses)}
                ORDER BY COALESCE(last_polled_at, status_updated_at, created_at)
                LIMIT ?
                """,
                params,
            ).fetchall()
        return [_row_to_invoice(row) for row in rows]

    async def mark_polled(self, invoice_id: str, polled_at: datetime) -> None:
        with self._transaction() as cursor:
            cursor.execute(
                "UPDATE invoices SET last_polled_at = ? WHERE id = ?",
                (_ts(polled_at), invoice_id),
            )


# =============================================================================
# Merchants
# =============================================================================

class SQLiteMerchantRepository(_SQLiteRepository, MerchantRepository):

    async def get(self, merchant_id: str) -> Optional[Merchant]:
        with self._transaction() as cursor:
            row = cursor.execute("SELECT data FROM merchants WHERE id = ?", (merchant_id,)).fetchone()
        return Merchant.model_validate_json(row[0]) if row else None

    async def get_by_endpoint_id(self, endpoint_id: str) -> Optional[Merchant]:
        with self._transaction() as cursor:
            row = cursor.execute(
                "SELECT data FROM merchants WHERE endpoint_id = ?", (endpoint_id,)
            ).fetchone()
        return Merchant.model_validate_json(row[0]) if row else None

    async def save(self, merchant: Merchant) -> Merchant:
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO merchants (id, team_id, endpoint_id, is_active, registration_status, data, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    team_id = excluded.team_id,
                    endpoint_id = excluded.endpoint_id,
                    is_active = excluded.is_active,
                    registration_status = excluded.registration_status,
                    data = excluded.data,
                    updated_at = excluded.updated_at
                """,
                (
                    merchant.id,
                    merchant.team_id,
                    merchant.endpoint_id,
                    1 if merchant.is_active else 0,
                    merchant.registration_status.value,
                    merchant.model_dump_json(),
                    _ts(merchant.updated_at),
                ),
            )
        return merchant

    async def update_sync_cursor(self, merchant_id: str, last_sync_at: datetime) -> Optional[Merchant]:
        now = _ts(utcnow())
        with self._transaction() as cursor:
            cursor.execute(
                """
                UPDATE merchants
                SET data = json_set(data, '$.last_sync_at', ?, '$.updated_at', ?),
                    updated_at = ?
                WHERE id = ?
                """,
                (_ts(last_sync_at), now, now, merchant_id),
            )
            row = cursor.execute("SELECT data FROM merchants WHERE id = ?", (merchant_id,)).fetchone()
        return Merchant.model_validate_json(row[0]) if row else None

    async def list_active(self, team_id: Optional[str] = None) -> List[Merchant]:
        query = "SELECT data FROM merchants WHERE is_active = 1"
        params: list = []
        if team_id is not None:
            query += " AND team_id = ?"
            params.append(team_id)
        with self._transaction() as cursor:
            rows = cursor.execute(query, params).fetchall()
        return [Merchant.model_validate_json(row[0]) for row in rows]


# =============================================================================
# Webhook events
# =============================================================================

def _row_to_event(row) -> WebhookEvent:
    return WebhookEvent(
        id=row[0],
        event_id=row[1],
        event_type=row[2],
        payload=json.loads(row[3]),
        invoice_id=row[4],
        processed=bool(row[5]),
        processed_at=parse_timestamp(row[6]),
        error_message=row[7],
        received_at=parse_timestamp(row[8]),
    )


_EVENT_COLUMNS = (
    "id, event_id, event_type, payload, invoice_id, processed, processed_at, error_message, received_at"
)


class SQLiteWebhookEventRepository(_SQLiteRepository, WebhookEventRepository):

    async def get_by_event_id(self, event_id: str) -> Optional[WebhookEvent]:
        with self._transaction() as cursor:
            row = cursor.execute(
                f"SELECT {_EVENT_COLUMNS} FROM webhook_events WHERE event_id = ?", (event_id,)
            ).fetchone()
        return _row_to_event(row) if row else None

    async def record(self, event: WebhookEvent) -> WebhookEvent:
        with self._transaction() as cursor:
            cursor.execute(
                f"""
                INSERT INTO webhook_events ({_EVENT_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(event_id) DO NOTHING
                """,
                (
                    event.id,
                    event.event_id,
                    event.event_type,
                    json.dumps(event.payload, default=str),
                    event.invoice_id,
                    1 if event.processed else 0,
                    _ts(event.processed_at),
                    event.error_message,
                    _ts(event.received_at),
                ),
            )
            row = cursor.execute(
                f"SELECT {_EVENT_COLUMNS} FROM webhook_events WHERE event_id = ?", (event.event_id,)
            ).fetchone()
        return _row_to_event(row)

    async def mark_processed(
        self,
        event_id: str,
        processed_at: datetime,
        invoice_id: Optional[str] = None,
    ) -> None:
        with self._transaction() as cursor:
            cursor.execute(
                """
                UPDATE webhook_events
                SET processed = 1, processed_at = ?, error_message = NULL,
                    invoice_id = COALESCE(?, invoice_id)
                WHERE event_id = ?
                """,
                (_ts(processed_at), invoice_id, event_id),
            )

    async def mark_failed(
        self,
        event_id: str,
        error_message: str,
        invoice_id: Optional[str] = None,
    ) -> None:
        with self._transaction() as cursor:
            cursor.execute(
                """
                UPDATE webhook_events
                SET error_message = ?, invoice_id = COALESCE(?, invoice_id)
                WHERE event_id = ?
                """,
                (error_message, invoice_id, event_id),
            )
