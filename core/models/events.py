"""Webhook event and audit entry models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from core.models.common import new_id, utcnow


class WebhookEvent(BaseModel):
    """An inbound registry notification, as received.

    Only ``processed``, ``processed_at``, ``error_message`` and
    ``invoice_id`` change after the event is recorded.
    """
    id: str = Field(default_factory=new_id)
    event_id: str = Field(..., description="Registry-assigned id, used for deduplication")
    event_type: str = Field(..., description="Normalized event type, e.g. DOCUMENT_DELIVERED")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Raw envelope")
    invoice_id: Optional[str] = Field(None, description="Resolved invoice")
    processed: bool = False
    processed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    received_at: datetime = Field(default_factory=utcnow)


class WebhookEnvelope(BaseModel):
    """Registry webhook body. Unknown keys are kept for the audit trail."""
    model_config = ConfigDict(extra="allow")

    event_id: str = Field(..., min_length=1)
    event_type: str = Field(..., min_length=1)
    timestamp: datetime
    document_id: Optional[str] = None
    endpoint_id: Optional[str] = None
    status: Optional[str] = None
    reason: Optional[str] = None


class AuditActor(str, Enum):
    """Who or what caused an audited action."""
    SYSTEM = "system"
    USER = "user"
    WEBHOOK = "webhook"
    POLL = "poll"


class AuditAction(str, Enum):
    """Audited actions."""
    INVOICE_CREATED = "invoice-created"
    INVOICE_STATUS_CHANGED = "invoice-status-changed"
    INVOICE_CANCELLED = "invoice-cancelled"
    DOCUMENT_SUBMISSION_FAILED = "document-submission-failed"
    BUYER_RESPONSE_FAILED = "buyer-response-failed"

    DUPLICATE_IGNORED = "duplicate-ignored"
    WEBHOOK_PROCESSING_FAILED = "webhook-processing-failed"

    POLL_FAILED = "poll-failed"
    POLL_CURSOR_ADVANCED = "poll-cursor-advanced"

    MERCHANT_CONNECTED = "merchant-connected"
    MERCHANT_DISCONNECTED = "merchant-disconnected"
    MERCHANT_SUSPENDED = "merchant-suspended"
    MERCHANT_REVOKED_BY_REGISTRY = "merchant-revoked-by-registry"


class AuditLogEntry(BaseModel):
    """Append-only audit record."""
    entry_id: str = Field(default_factory=new_id)
    timestamp: datetime = Field(default_factory=utcnow)
    actor: AuditActor = Field(..., description="system, user, webhook or poll")
    actor_id: Optional[str] = Field(None, description="User id when actor is user")
    action: AuditAction
    entity_type: str = Field(..., description="invoice, merchant or webhook_event")
    entity_id: str
    team_id: Optional[str] = None
    message: str = ""
    details: Dict[str, Any] = Field(default_factory=dict)
