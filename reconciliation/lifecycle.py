"""Invoice lifecycle rules.

Ranks, the forward-transition table and the registry status vocabulary.
Pure functions only; the engine applies them.
"""

from typing import Dict, FrozenSet, Optional

from core.models.invoice import InvoiceStatus

RANK: Dict[InvoiceStatus, int] = {
    InvoiceStatus.DRAFT: 0,
    InvoiceStatus.SUBMITTED: 1,
    InvoiceStatus.VALIDATED: 2,
    InvoiceStatus.VALIDATION_FAILED: 2,
    InvoiceStatus.SENT: 3,
    InvoiceStatus.ACCEPTED: 4,
    InvoiceStatus.REJECTED: 4,
    InvoiceStatus.CANCELLED: 5,
}

# Intermediate states may be skipped; siblings of equal rank may not replace each other.
FORWARD_TRANSITIONS: Dict[InvoiceStatus, FrozenSet[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: frozenset({
        InvoiceStatus.SUBMITTED,
        InvoiceStatus.VALIDATED,
        InvoiceStatus.VALIDATION_FAILED,
        InvoiceStatus.SENT,
        InvoiceStatus.ACCEPTED,
        InvoiceStatus.REJECTED,
    }),
    InvoiceStatus.SUBMITTED: frozenset({
        InvoiceStatus.VALIDATED,
        InvoiceStatus.VALIDATION_FAILED,
        InvoiceStatus.SENT,
        InvoiceStatus.ACCEPTED,
        InvoiceStatus.REJECTED,
    }),
    InvoiceStatus.VALIDATED: frozenset({
        InvoiceStatus.SENT,
        InvoiceStatus.ACCEPTED,
        InvoiceStatus.REJECTED,
    }),
    InvoiceStatus.SENT: frozenset({
        InvoiceStatus.ACCEPTED,
        InvoiceStatus.REJECTED,
    }),
}

TERMINAL_STATUSES: FrozenSet[InvoiceStatus] = frozenset({
    InvoiceStatus.VALIDATION_FAILED,
    InvoiceStatus.ACCEPTED,
    InvoiceStatus.REJECTED,
    InvoiceStatus.CANCELLED,
})

REGISTRY_STATUS_MAP: Dict[str, InvoiceStatus] = {
    "VALIDATED": InvoiceStatus.VALIDATED,
    "VALID": InvoiceStatus.VALIDATED,
    "VALIDATION_FAILED": InvoiceStatus.VALIDATION_FAILED,
    "INVALID": InvoiceStatus.VALIDATION_FAILED,
    "FAILED": InvoiceStatus.VALIDATION_FAILED,
    "ACCEPTED": InvoiceStatus.ACCEPTED,
    "REJECTED": InvoiceStatus.REJECTED,
    "PROCESSING": InvoiceStatus.SUBMITTED,
    "PENDING": InvoiceStatus.SUBMITTED,
    "SUBMITTED": InvoiceStatus.SUBMITTED,
    "DELIVERED": InvoiceStatus.SENT,
    "SENT": InvoiceStatus.SENT,
}

# Lifecycle timestamp written when an invoice enters a status.
STATUS_STAMP_FIELDS: Dict[InvoiceStatus, str] = {
    InvoiceStatus.SUBMITTED: "submitted_at",
    InvoiceStatus.VALIDATED: "validated_at",
    InvoiceStatus.VALIDATION_FAILED: "validated_at",
    InvoiceStatus.SENT: "sent_at",
    InvoiceStatus.ACCEPTED: "accepted_at",
    InvoiceStatus.REJECTED: "rejected_at",
    InvoiceStatus.CANCELLED: "cancelled_at",
}


def rank(status: InvoiceStatus) -> int:
    return RANK[status]


def is_terminal(status: InvoiceStatus) -> bool:
    return status in TERMINAL_STATUSES


def is_forward(current: InvoiceStatus, candidate: InvoiceStatus) -> bool:
    """True if a registry channel may move ``current`` to ``candidate``."""
    return candidate in FORWARD_TRANSITIONS.get(current, frozenset())


def map_registry_status(value: Optional[str]) -> Optional[InvoiceStatus]:
    """Map a registry status string to a lifecycle status.

    Matching is case-insensitive. CANCELLED and unknown strings map to None:
    cancellation is a user action, never a registry observation.
    """
    if not value:
        return None
    return REGISTRY_STATUS_MAP.get(value.strip().upper())
