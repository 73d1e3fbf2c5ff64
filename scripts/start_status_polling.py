"""Start the status polling workflow.

Connects to Temporal and starts (or reports the already running)
StatusPollingWorkflow for a team.
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from temporalio.common import WorkflowIDReusePolicy
from temporalio.exceptions import WorkflowAlreadyStartedError

from core.config import RegistryConfig
from core.observability.logging import configure_logging, get_logger
from temporal_client import get_temporal_client
from workflows.status_polling_workflow import StatusPollingInput, StatusPollingWorkflow

logger = get_logger(__name__)


async def start_status_polling(args: argparse.Namespace) -> str:
    """Start the workflow and return its id."""
    config = RegistryConfig.from_env()
    client = await get_temporal_client()
    workflow_id = f"status-polling-{args.team_id or 'all'}"

    try:
        handle = await client.start_workflow(
            StatusPollingWorkflow.run,
            StatusPollingInput(
                team_id=args.team_id,
                max_age=args.max_age,
                batch_size=args.batch_size,
                use_official_polling=args.official,
                interval_seconds=args.interval,
            ),
            id=workflow_id,
            task_queue=config.polling_task_queue,
            id_reuse_policy=WorkflowIDReusePolicy.ALLOW_DUPLICATE,
        )
        logger.info(f"Workflow started: {handle.id}")
    except WorkflowAlreadyStartedError:
        logger.info(f"Workflow {workflow_id} is already running")
    return workflow_id


def main():
    """Entry point."""
    parser = argparse.ArgumentParser(description="Start registry status polling")
    parser.add_argument("--team-id", default=None, help="Team to poll (default: all)")
    parser.add_argument("--max-age", type=int, default=60, help="Minutes before an invoice is polled")
    parser.add_argument("--batch-size", type=int, default=10)
    parser.add_argument("--interval", type=int, default=300, help="Seconds between sweeps")
    parser.add_argument("--official", action="store_true", help="Use the registry update feed")
    args = parser.parse_args()

    config = RegistryConfig.from_env()
    configure_logging(level=config.log_level, json_format=config.log_json)
    try:
        print(asyncio.run(start_status_polling(args)))
        return 0
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
