"""Core audit module - append-only audit trail."""

from core.audit.events import (
    AuditBackend,
    AuditLog,
    InMemoryAuditBackend,
    SQLiteAuditBackend,
    create_audit_entry,
)

__all__ = [
    "AuditBackend",
    "AuditLog",
    "InMemoryAuditBackend",
    "SQLiteAuditBackend",
    "create_audit_entry",
]
