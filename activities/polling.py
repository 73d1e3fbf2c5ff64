"""Status polling activity.

Temporal activity that runs one polling sweep through the shared runtime.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from temporalio import activity

from core.observability.logging import get_logger, with_correlation
from polling.sweep import PollingRequest
from runtime import get_runtime

logger = get_logger(__name__)


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class StatusPollInput:
    """Input for run_status_poll activity.

    Attributes:
        team_id: Restrict the sweep to one team
        merchant_id: Restrict the sweep to one merchant
        max_age: Minutes since last observation before an invoice is polled
        batch_size: Invoices per legacy sweep
        retry_attempts: Attempts per registry fetch
        use_official_polling: Read the registry update feed instead
        last_synced_at: ISO timestamp overriding the official cursor
    """
    team_id: Optional[str] = None
    merchant_id: Optional[str] = None
    max_age: int = 60
    batch_size: int = 10
    retry_attempts: int = 3
    use_official_polling: bool = False
    last_synced_at: Optional[str] = None


@dataclass
class StatusPollOutput:
    """Output from run_status_poll activity."""
    processed: int = 0
    updated: int = 0
    failed: int = 0
    errors: List[dict] = field(default_factory=list)


# =============================================================================
# Activities
# =============================================================================

@activity.defn
async def run_status_poll(input: StatusPollInput) -> StatusPollOutput:
    """Run one sweep.

    NotConnectedError propagates and is non-retryable in the workflow's
    retry policy; transient registry failures are recorded per invoice
    inside the sweep.
    """
    info = activity.info()
    request = PollingRequest(
        team_id=input.team_id,
        merchant_id=input.merchant_id,
        max_age=input.max_age,
        batch_size=input.batch_size,
        retry_attempts=input.retry_attempts,
        use_official_polling=input.use_official_polling,
        last_synced_at=input.last_synced_at,
    )

    with with_correlation(workflow_id=info.workflow_id, team_id=input.team_id, source="poll"):
        logger.info(f"Status poll activity started (attempt {info.attempt})")
        result = await get_runtime().polling.run(request)

    return StatusPollOutput(
        processed=result.processed,
        updated=result.updated,
        failed=result.failed,
        errors=result.errors,
    )
