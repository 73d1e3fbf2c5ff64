"""Worker for registry status polling.

Connects to Temporal, listens on the polling task queue and runs the
StatusPollingWorkflow and its sweep activity.

Run with --queue <name> to override POLLING_TASK_QUEUE.
"""

import argparse
import asyncio
import sys
from pathlib import Path

from temporalio.worker import Worker

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from activities.polling import run_status_poll
from core.config import RegistryConfig
from core.observability.logging import configure_logging, get_logger
from runtime import get_runtime
from temporal_client import get_temporal_client
from workflows.status_polling_workflow import StatusPollingWorkflow

logger = get_logger(__name__)

WORKFLOWS = [StatusPollingWorkflow]
ACTIVITIES = [run_status_poll]


async def run_worker(queue: str = None):
    """Start a worker on the polling task queue.

    Args:
        queue: Task queue to poll (defaults to POLLING_TASK_QUEUE)

    Raises:
        Exception: If connection to Temporal fails
    """
    config = RegistryConfig.from_env()
    task_queue = queue or config.polling_task_queue
    runtime = get_runtime()
    client = None

    try:
        client = await get_temporal_client()
        logger.info(f"Connected to Temporal namespace: {client.namespace}")

        worker = Worker(
            client,
            task_queue=task_queue,
            workflows=WORKFLOWS,
            activities=ACTIVITIES,
        )
        logger.info(f"Worker created for queue '{task_queue}'")
        logger.info("Worker running... (Ctrl+C to stop)")
        await worker.run()

    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")
    except Exception as e:
        logger.error(f"Worker error: {e}", exc_info=True)
        raise
    finally:
        await runtime.close()
        logger.info("Registry HTTP session closed")


def main():
    """Entry point for worker with CLI args."""
    config = RegistryConfig.from_env()
    parser = argparse.ArgumentParser(description="Registry status polling Temporal worker")
    parser.add_argument(
        "--queue", "-q",
        default=config.polling_task_queue,
        help=f"Task queue to poll (default: {config.polling_task_queue})"
    )
    args = parser.parse_args()

    configure_logging(level=config.log_level, json_format=config.log_json)
    asyncio.run(run_worker(queue=args.queue))


if __name__ == "__main__":
    main()
