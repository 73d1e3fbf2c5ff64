"""Pull-based registry status reconciliation."""

from polling.sweep import (
    PollingConfig,
    PollingRequest,
    PollingResult,
    StatusPollingSweep,
)

__all__ = [
    "PollingConfig",
    "PollingRequest",
    "PollingResult",
    "StatusPollingSweep",
]
