"""Activity definitions module."""

from activities.polling import (
    StatusPollInput,
    StatusPollOutput,
    run_status_poll,
)

__all__ = [
    "StatusPollInput",
    "StatusPollOutput",
    "run_status_poll",
]
