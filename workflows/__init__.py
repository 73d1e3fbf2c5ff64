"""Temporal workflows for registry status reconciliation."""

from workflows.status_polling_workflow import (
    DEFAULT_TASK_QUEUE,
    StatusPollingInput,
    StatusPollingWorkflow,
)

__all__ = [
    "DEFAULT_TASK_QUEUE",
    "StatusPollingInput",
    "StatusPollingWorkflow",
]
