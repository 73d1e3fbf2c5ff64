"""Invoice status reconciliation."""

from reconciliation.engine import (
    IgnoreReason,
    ReconciliationEngine,
    TransitionOutcome,
    TransitionResult,
)
from reconciliation.lifecycle import (
    FORWARD_TRANSITIONS,
    RANK,
    TERMINAL_STATUSES,
    is_forward,
    is_terminal,
    map_registry_status,
    rank,
)

__all__ = [
    "IgnoreReason",
    "ReconciliationEngine",
    "TransitionOutcome",
    "TransitionResult",
    "FORWARD_TRANSITIONS",
    "RANK",
    "TERMINAL_STATUSES",
    "is_forward",
    "is_terminal",
    "map_registry_status",
    "rank",
]
