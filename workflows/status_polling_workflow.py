"""Status Polling Workflow.

Runs the polling sweep on a fixed interval, forever. History is bounded by
continuing as new after a fixed number of sweeps.
"""

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from temporalio import workflow
from temporalio.common import RetryPolicy
from temporalio.exceptions import ActivityError

with workflow.unsafe.imports_passed_through():
    from activities.polling import StatusPollInput, run_status_poll


DEFAULT_TASK_QUEUE = "registry-polling"

POLL_RETRY_POLICY = RetryPolicy(
    initial_interval=timedelta(seconds=5),
    backoff_coefficient=2.0,
    maximum_interval=timedelta(minutes=2),
    maximum_attempts=3,
    non_retryable_error_types=["NotConnectedError"],
)


@dataclass
class StatusPollingInput:
    """Input for StatusPollingWorkflow.

    Attributes:
        team_id: Restrict sweeps to one team (all teams if None)
        merchant_id: Restrict sweeps to one merchant
        max_age: Minutes since last observation before an invoice is polled
        batch_size: Invoices per legacy sweep
        retry_attempts: Attempts per registry fetch
        use_official_polling: Use the registry update feed
        interval_seconds: Pause between sweeps
        sweeps_per_run: Sweeps before continuing as new
        continue_forever: If False, stop after one run (tests, one-off catch-up)
    """
    team_id: Optional[str] = None
    merchant_id: Optional[str] = None
    max_age: int = 60
    batch_size: int = 10
    retry_attempts: int = 3
    use_official_polling: bool = False
    interval_seconds: int = 300
    sweeps_per_run: int = 50
    continue_forever: bool = True


@workflow.defn
class StatusPollingWorkflow:
    """Periodic registry status reconciliation."""

    @workflow.run
    async def run(self, input: StatusPollingInput) -> dict:
        totals = {"sweeps": 0, "processed": 0, "updated": 0, "failed": 0, "activity_failures": 0}

        for sweep in range(input.sweeps_per_run):
            try:
                output = await workflow.execute_activity(
                    run_status_poll,
                    StatusPollInput(
                        team_id=input.team_id,
                        merchant_id=input.merchant_id,
                        max_age=input.max_age,
                        batch_size=input.batch_size,
                        retry_attempts=input.retry_attempts,
                        use_official_polling=input.use_official_polling,
                    ),
                    start_to_close_timeout=timedelta(minutes=10),
                    retry_policy=POLL_RETRY_POLICY,
                )
            except ActivityError as e:
                # The next sweep picks up whatever this one missed.
                totals["activity_failures"] += 1
                workflow.logger.warning(f"Status poll sweep {sweep + 1} failed: {e.cause or e}")
            else:
                totals["processed"] += output.processed
                totals["updated"] += output.updated
                totals["failed"] += output.failed
                workflow.logger.info(
                    f"Sweep {sweep + 1}: processed={output.processed} "
                    f"updated={output.updated} failed={output.failed}"
                )
            totals["sweeps"] += 1

            if sweep + 1 < input.sweeps_per_run:
                await asyncio.sleep(input.interval_seconds)

        if input.continue_forever:
            await asyncio.sleep(input.interval_seconds)
            workflow.continue_as_new(input)

        return totals
