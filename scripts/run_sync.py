"""Run a sync pass from the command line.

Runs the engine in-process against the configured BC, Dataverse and Graph
tenants, or starts the matching Temporal workflow with --workflow.

Examples:
    python scripts/run_sync.py decide
    python scripts/run_sync.py bc-to-premium --project PR00042
    python scripts/run_sync.py auto --dry-run
    python scripts/run_sync.py bc-jobs --max-jobs 50
    python scripts/run_sync.py subscriptions ensure --url https://host/webhooks/bc
    python scripts/run_sync.py auto --workflow
"""

import argparse
import asyncio
import json
import sys
import uuid
from pathlib import Path

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from core.config import get_webhook_config
from core.observability import configure_logging, get_logger, with_correlation
from stores import BcWebhookStore
from sync.bc_to_premium import sync_bc_to_premium
from sync.context import open_sync_context
from sync.decision import decide_premium_sync, run_premium_sync_decision
from sync.job_processor import process_bc_jobs_locked
from sync.planner_sync import open_planner_context, run_planner_polling_sync, sync_bc_to_planner
from sync.premium_to_bc import sync_premium_changes, sync_premium_task_ids
from sync.subscriptions import delete_bc_subscription, ensure_bc_subscriptions, renew_bc_subscriptions


logger = get_logger(__name__)


def _webhook_store(kv) -> BcWebhookStore:
    config = get_webhook_config()
    return BcWebhookStore(kv, dedupe_window_seconds=config.dedupe_window_seconds, lock_ttl_seconds=config.job_lock_ttl_seconds)


async def run_command(args) -> dict:
    request_id = f"cli-{uuid.uuid4()}"
    with with_correlation(request_id=request_id, scope=f"cli:{args.command}"):
        if args.command == "planner":
            async with open_planner_context() as ctx:
                if args.poll:
                    return await run_planner_polling_sync(ctx)
                return await sync_bc_to_planner(ctx, project_no=args.project)

        async with open_sync_context() as ctx:
            if args.command == "bc-to-premium":
                return await sync_bc_to_premium(
                    ctx, project_nos=args.project or None, task_system_ids=args.task or None, request_id=request_id
                )
            if args.command == "premium-to-bc":
                if args.task_id:
                    return await sync_premium_task_ids(ctx, args.task_id, respect_prefer_bc=True, request_id=request_id)
                return await sync_premium_changes(ctx, request_id=request_id)
            if args.command == "decide":
                return (await decide_premium_sync(ctx, prefer_bc=args.prefer_bc, grace_ms=args.grace_ms)).to_dict()
            if args.command == "auto":
                return await run_premium_sync_decision(
                    ctx, dry_run=args.dry_run, prefer_bc=args.prefer_bc, grace_ms=args.grace_ms, request_id=request_id
                )
            if args.command == "bc-jobs":
                summary, skipped = await process_bc_jobs_locked(
                    ctx, _webhook_store(ctx.kv), max_jobs=args.max_jobs, request_id=request_id
                )
                return summary if summary is not None else {"skipped": skipped}
            if args.command == "subscriptions":
                store = _webhook_store(ctx.kv)
                config = get_webhook_config()
                entity_sets = args.entity_set or [config.bc_queue_entity_set]
                if args.action == "ensure":
                    url = args.url or config.bc_notification_url
                    if not url:
                        raise SystemExit("--url or BC_WEBHOOK_NOTIFICATION_URL is required")
                    return await ensure_bc_subscriptions(
                        ctx.bc, store, url, client_state=config.bc_shared_secret, entity_sets=entity_sets
                    )
                if args.action == "renew":
                    return await renew_bc_subscriptions(ctx.bc, store, entity_sets=entity_sets)
                return {entity_set: await delete_bc_subscription(ctx.bc, store, entity_set) for entity_set in entity_sets}
    raise SystemExit(f"Unknown command: {args.command}")


async def start_workflow(args) -> dict:
    """Start the workflow for ``args.command`` and wait for its result."""
    from temporal_client import get_temporal_client
    from workflows.sync_workflow import (
        BcJobQueueInput,
        BcJobQueueWorkflow,
        PlannerPollingInput,
        PlannerPollingWorkflow,
        PremiumSyncInput,
        PremiumSyncWorkflow,
        TASK_QUEUE_SYNC,
    )

    client = await get_temporal_client()
    workflow_id = f"{args.command}-{uuid.uuid4()}"
    if args.command in ("auto", "decide"):
        run, arg = PremiumSyncWorkflow.run, PremiumSyncInput(
            dry_run=args.command == "decide" or args.dry_run, prefer_bc=args.prefer_bc, grace_ms=args.grace_ms
        )
    elif args.command == "bc-jobs":
        run, arg = BcJobQueueWorkflow.run, BcJobQueueInput(max_jobs=args.max_jobs)
    elif args.command == "planner":
        run, arg = PlannerPollingWorkflow.run, PlannerPollingInput(project_no=args.project, poll=args.poll)
    else:
        raise SystemExit(f"No workflow for command: {args.command}")

    handle = await client.start_workflow(run, arg, id=workflow_id, task_queue=TASK_QUEUE_SYNC)
    logger.info(f"Workflow started: {handle.id}")
    return await handle.result()


def _optional_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "y", "on")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="BC / Premium sync runner")
    parser.add_argument("--workflow", action="store_true", help="Start the Temporal workflow instead of running in-process")
    sub = parser.add_subparsers(dest="command", required=True)

    bc = sub.add_parser("bc-to-premium", help="Push BC project tasks to Premium")
    bc.add_argument("--project", action="append", help="BC project number (repeatable)")
    bc.add_argument("--task", action="append", help="BC task systemId (repeatable)")

    premium = sub.add_parser("premium-to-bc", help="Apply Premium task changes to BC")
    premium.add_argument("--task-id", action="append", help="Premium task id (repeatable)")

    for name in ("decide", "auto"):
        p = sub.add_parser(name, help="Preview or run the direction decision")
        p.add_argument("--prefer-bc", type=_optional_bool, default=None)
        p.add_argument("--grace-ms", type=float, default=None)
        p.add_argument("--dry-run", action="store_true")

    jobs = sub.add_parser("bc-jobs", help="Drain queued BC webhook jobs")
    jobs.add_argument("--max-jobs", type=int, default=25)

    planner = sub.add_parser("planner", help="Legacy Planner push or poll")
    planner.add_argument("--project", default=None)
    planner.add_argument("--poll", action="store_true", help="Poll Planner for changes instead of pushing")

    subs = sub.add_parser("subscriptions", help="Manage BC webhook subscriptions")
    subs.add_argument("action", choices=["ensure", "renew", "delete"])
    subs.add_argument("--url", default=None, help="Notification URL (default BC_WEBHOOK_NOTIFICATION_URL)")
    subs.add_argument("--entity-set", action="append", help="Entity set (repeatable)")
    return parser


def main():
    args = build_parser().parse_args()
    configure_logging()
    result = asyncio.run(start_workflow(args) if args.workflow else run_command(args))
    print(json.dumps(result, indent=2, default=str))


if __name__ == "__main__":
    main()
