"""Worker for the sync connector.

Listens for sync workflows and activities on Temporal.

Task queues:
- sync-default: Premium decision/apply passes, BC webhook jobs, subscription renewal
- sync-planner: legacy Planner push + poll (Graph calls, slower)

Run with --queue <name> to specify which queue to poll.
Run with --all to poll both queues (for local development).
"""

import argparse
import asyncio
import sys
from pathlib import Path

from temporalio.worker import Worker

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from temporal_client import get_temporal_client
from core.observability import configure_logging, get_logger
from workflows.sync_workflow import (
    PremiumSyncWorkflow,
    BcJobQueueWorkflow,
    PlannerPollingWorkflow,
    BcSubscriptionRenewalWorkflow,
    TASK_QUEUE_SYNC,
    TASK_QUEUE_PLANNER,
)
from activities.sync import (
    decide_sync_direction,
    run_bc_to_premium,
    run_premium_to_bc,
    process_bc_jobs,
    run_planner_sync,
    renew_subscriptions,
)


logger = get_logger(__name__)

# =============================================================================
# Activity Groupings by Task Queue
# =============================================================================

SYNC_QUEUE_ACTIVITIES = [
    decide_sync_direction,
    run_bc_to_premium,
    run_premium_to_bc,
    process_bc_jobs,
    renew_subscriptions,
]

PLANNER_QUEUE_ACTIVITIES = [
    run_planner_sync,
]

SYNC_WORKFLOWS = [
    PremiumSyncWorkflow,
    BcJobQueueWorkflow,
    PlannerPollingWorkflow,
    BcSubscriptionRenewalWorkflow,
]


def build_workers(client, queue: str = TASK_QUEUE_SYNC, all_queues: bool = False):
    """Workers for one queue, or for both in local development mode.

    Workflows always run on the sync queue; the Planner queue only hosts
    activities.
    """
    if all_queues:
        return [
            Worker(client, task_queue=TASK_QUEUE_SYNC, workflows=SYNC_WORKFLOWS,
                   activities=SYNC_QUEUE_ACTIVITIES + PLANNER_QUEUE_ACTIVITIES),
            Worker(client, task_queue=TASK_QUEUE_PLANNER, workflows=[], activities=PLANNER_QUEUE_ACTIVITIES),
        ]
    if queue == TASK_QUEUE_PLANNER:
        return [Worker(client, task_queue=queue, workflows=[], activities=PLANNER_QUEUE_ACTIVITIES)]
    return [Worker(client, task_queue=TASK_QUEUE_SYNC, workflows=SYNC_WORKFLOWS, activities=SYNC_QUEUE_ACTIVITIES)]


async def run_worker(queue: str = TASK_QUEUE_SYNC, all_queues: bool = False):
    """Start worker(s) and run until interrupted."""
    client = await get_temporal_client()
    logger.info(f"Connected to Temporal: {client.namespace}")
    try:
        workers = build_workers(client, queue=queue, all_queues=all_queues)
        for worker in workers:
            logger.info(f"Worker created for queue '{worker.task_queue}'")
        logger.info("Worker(s) running... (Ctrl+C to stop)")
        await asyncio.gather(*[w.run() for w in workers])
    except Exception as e:
        logger.error(f"Worker error: {e}", exc_info=True)
        raise


def main():
    """Entry point for worker with CLI args."""
    parser = argparse.ArgumentParser(description="BC Premium Sync Temporal Worker")
    parser.add_argument(
        "--queue", "-q",
        choices=[TASK_QUEUE_SYNC, TASK_QUEUE_PLANNER],
        default=TASK_QUEUE_SYNC,
        help=f"Task queue to poll (default: {TASK_QUEUE_SYNC})"
    )
    parser.add_argument(
        "--all", "-a",
        action="store_true",
        dest="all_queues",
        help="Poll all queues (local development mode)"
    )

    args = parser.parse_args()
    configure_logging()
    try:
        asyncio.run(run_worker(queue=args.queue, all_queues=args.all_queues))
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")


if __name__ == "__main__":
    main()
