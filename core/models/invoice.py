"""Invoice domain models.

An invoice moves through the registry lifecycle. Its status is written only
by the reconciliation engine; everything else here is plain data.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from core.models.common import new_id, utcnow


class InvoiceStatus(str, Enum):
    """Lifecycle status of an invoice."""
    DRAFT = "draft"
    SUBMITTED = "submitted"
    VALIDATED = "validated"
    VALIDATION_FAILED = "validation_failed"
    SENT = "sent"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class InvoiceDirection(str, Enum):
    """Whether we issued the invoice or received it."""
    OUTGOING = "outgoing"
    INCOMING = "incoming"


class UpdateSource(str, Enum):
    """Channel that proposed a status update."""
    SUBMISSION = "submission"
    WEBHOOK = "webhook"
    POLL = "poll"
    USER = "user"


class RegistryState(BaseModel):
    """Typed view of the last registry response for an invoice.

    Every field is optional so a value can be used as a partial update:
    ``patch.merged_with(previous)`` keeps previous values wherever the patch
    has ``None``. ``raw`` always carries the latest payload verbatim.
    """
    document_id: Optional[str] = Field(None, description="Registry document id")
    registry_status: Optional[str] = Field(None, description="Status string as reported by the registry")
    verification_link: Optional[str] = Field(None, description="Public verification URL")
    endpoint_id: Optional[str] = Field(None, description="Counterparty endpoint id")
    last_source: Optional[UpdateSource] = Field(None, description="Channel of the last accepted update")
    last_event_type: Optional[str] = Field(None, description="Webhook event type, if any")
    received_at: Optional[datetime] = Field(None, description="When the payload was received")
    raw: Dict[str, Any] = Field(default_factory=dict, description="Last raw registry payload")

    def merged_with(self, previous: Optional["RegistryState"]) -> "RegistryState":
        """Merge this (newer) state over ``previous``, null-safe."""
        if previous is None:
            return self.model_copy(deep=True)
        merged = previous.model_dump()
        for name, value in self.model_dump().items():
            if name == "raw":
                continue
            if value is not None:
                merged[name] = value
        merged["raw"] = dict(self.raw) if self.raw else dict(previous.raw)
        return RegistryState.model_validate(merged)


class Invoice(BaseModel):
    """An e-invoice tracked against the registry."""
    id: str = Field(default_factory=new_id, description="Internal id")
    team_id: Optional[str] = Field(None, description="Owning team")
    merchant_id: Optional[str] = Field(None, description="Merchant connection used for registry calls")
    invoice_number: Optional[str] = Field(None, description="Human invoice number")
    invoice_uuid: str = Field(default_factory=new_id, description="Registry UUID, immutable")
    document_id: Optional[str] = Field(None, description="Registry document id, immutable once set")

    status: InvoiceStatus = Field(InvoiceStatus.DRAFT, description="Lifecycle status")
    registry_status: Optional[str] = Field(None, description="Registry status mirror")
    direction: InvoiceDirection = Field(InvoiceDirection.OUTGOING, description="outgoing or incoming")
    status_updated_at: Optional[datetime] = Field(None, description="Timestamp of the last accepted observation")
    registry_response: Optional[RegistryState] = Field(None, description="Merged registry state")
    rejection_reason: Optional[str] = Field(None, description="Why validation failed or the buyer rejected")

    submitted_at: Optional[datetime] = None
    validated_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    last_polled_at: Optional[datetime] = Field(None, description="Last time the polling sweep looked at this invoice")
    version: int = Field(0, description="Optimistic concurrency counter")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
