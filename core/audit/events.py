"""Append-only audit log.

Records every accepted invoice transition plus channel bookkeeping
(duplicate webhooks, failed polls, merchant connect/disconnect). There is
no update or delete path.

Unlike application logs, a failed audit write is an error: the caller sees
the exception.
"""

import json
import sqlite3
from abc import ABC, abstractmethod
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional

from core.models.common import parse_timestamp
from core.models.events import AuditAction, AuditActor, AuditLogEntry


AUDIT_TABLE_DDL = """
    CREATE TABLE IF NOT EXISTS audit_log (
        entry_id TEXT PRIMARY KEY,
        timestamp TEXT NOT NULL,
        actor TEXT NOT NULL,
        actor_id TEXT,
        action TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        team_id TEXT,
        message TEXT,
        details TEXT
    )
"""

AUDIT_INDEX_DDL = """
    CREATE INDEX IF NOT EXISTS idx_audit_entity
    ON audit_log(entity_type, entity_id, timestamp)
"""


def create_audit_entry(
    action: AuditAction,
    actor: AuditActor,
    entity_type: str,
    entity_id: str,
    message: str = "",
    team_id: Optional[str] = None,
    actor_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> AuditLogEntry:
    """Create a new audit entry with generated id and timestamp."""
    return AuditLogEntry(
        action=action,
        actor=actor,
        actor_id=actor_id,
        entity_type=entity_type,
        entity_id=entity_id,
        team_id=team_id,
        message=message,
        details=details or {},
    )


def insert_audit_entry(cursor: sqlite3.Cursor, entry: AuditLogEntry) -> None:
    """Insert an entry using an existing cursor (shares the caller's transaction)."""
    cursor.execute(
        """
        INSERT INTO audit_log
            (entry_id, timestamp, actor, actor_id, action, entity_type, entity_id, team_id, message, details)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            entry.entry_id,
            entry.timestamp.isoformat(),
            entry.actor.value,
            entry.actor_id,
            entry.action.value,
            entry.entity_type,
            entry.entity_id,
            entry.team_id,
            entry.message,
            json.dumps(entry.details, default=str),
        ),
    )


class AuditBackend(ABC):
    """Abstract base class for audit persistence backends."""

    @abstractmethod
    def append(self, entry: AuditLogEntry) -> None:
        """Persist an audit entry."""
        pass

    @abstractmethod
    def query(
        self,
        entity_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        entity_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditLogEntry]:
        """The latest ``limit`` matching entries, oldest first."""
        pass


def _matches(entry: AuditLogEntry, entity_id, action, entity_type) -> bool:
    if entity_id and entry.entity_id != entity_id:
        return False
    if action and entry.action != action:
        return False
    if entity_type and entry.entity_type != entity_type:
        return False
    return True


class InMemoryAuditBackend(AuditBackend):
    """In-memory audit backend for tests and local runs."""

    def __init__(self):
        self._entries: List[AuditLogEntry] = []
        self._lock = Lock()

    def append(self, entry: AuditLogEntry) -> None:
        with self._lock:
            self._entries.append(entry.model_copy(deep=True))

    def query(
        self,
        entity_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        entity_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditLogEntry]:
        with self._lock:
            results = [e for e in self._entries if _matches(e, entity_id, action, entity_type)]
        return [e.model_copy(deep=True) for e in results[-limit:]] if limit > 0 else []


class SQLiteAuditBackend(AuditBackend):
    """Audit backend on the service's sqlite database."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self.db_path), timeout=30)

    def _init_db(self) -> None:
        conn = self._connect()
        try:
            conn.execute(AUDIT_TABLE_DDL)
            conn.execute(AUDIT_INDEX_DDL)
            conn.commit()
        finally:
            conn.close()

    def append(self, entry: AuditLogEntry) -> None:
        conn = self._connect()
        try:
            insert_audit_entry(conn.cursor(), entry)
            conn.commit()
        finally:
            conn.close()

    def query(
        self,
        entity_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        entity_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditLogEntry]:
        clauses = []
        params: List[Any] = []
        if entity_id:
            clauses.append("entity_id = ?")
            params.append(entity_id)
        if action:
            clauses.append("action = ?")
            params.append(action.value)
        if entity_type:
            clauses.append("entity_type = ?")
            params.append(entity_type)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)

        conn = self._connect()
        try:
            rows = conn.execute(
                f"""
                SELECT entry_id, timestamp, actor, actor_id, action, entity_type,
                       entity_id, team_id, message, details
                FROM audit_log {where}
                ORDER BY rowid DESC
                LIMIT ?
                """,
                params,
            ).fetchall()[::-1]
        finally:
            conn.close()

        return [
            AuditLogEntry(
                entry_id=row[0],
                timestamp=parse_timestamp(row[1]),
                actor=AuditActor(row[2]),
                actor_id=row[3],
                action=AuditAction(row[4]),
                entity_type=row[5],
                entity_id=row[6],
                team_id=row[7],
                message=row[8] or "",
                details=json.loads(row[9]) if row[9] else {},
            )
            for row in rows
        ]


class AuditLog:
    """Write-only audit log facade.

    Usage:
        audit = AuditLog(InMemoryAuditBackend())
        audit.record(
            AuditAction.DUPLICATE_IGNORED,
            AuditActor.WEBHOOK,
            "webhook_event",
            "evt-1",
            "Replay of processed event",
        )
    """

    def __init__(self, backend: AuditBackend):
        self.backend = backend

    def append(self, entry: AuditLogEntry) -> AuditLogEntry:
        self.backend.append(entry)
        return entry

    def record(
        self,
        action: AuditAction,
        actor: AuditActor,
        entity_type: str,
        entity_id: str,
        message: str = "",
        **kwargs,
    ) -> AuditLogEntry:
        """Create and append an entry. kwargs go to create_audit_entry."""
        return self.append(create_audit_entry(action, actor, entity_type, entity_id, message, **kwargs))

    def query(
        self,
        entity_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        entity_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditLogEntry]:
        return self.backend.query(entity_id=entity_id, action=action, entity_type=entity_type, limit=limit)
