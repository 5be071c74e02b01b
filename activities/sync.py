"""Sync activities for the durable schedules.

Each activity opens its own provider clients and KV store from the
environment, runs one engine entry point and returns its summary. Workflows
pass dataclass inputs; summaries come back as plain dicts.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from temporalio import activity

from core.config import get_webhook_config
from core.observability import with_correlation
from stores import BcWebhookStore, create_kv_store
from sync.bc_to_premium import sync_bc_to_premium
from sync.context import open_sync_context
from sync.decision import decide_premium_sync
from sync.job_processor import DEFAULT_MAX_JOBS, process_bc_jobs_locked
from sync.planner_sync import open_planner_context, run_planner_polling_sync, sync_bc_to_planner
from sync.premium_to_bc import sync_premium_changes, sync_premium_task_ids
from sync.subscriptions import renew_bc_subscriptions


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class DecideInput:
    """Optional overrides for the decision engine."""
    prefer_bc: Optional[bool] = None
    grace_ms: Optional[float] = None


@dataclass
class BcToPremiumInput:
    """Targets for a BC -> Premium pass.

    Attributes:
        project_nos: Explicit projects; empty lets the change feed/queue decide
        task_system_ids: BC task system ids to sync in targeted mode
        request_id: Correlation id for logs
    """
    project_nos: List[str] = field(default_factory=list)
    task_system_ids: List[str] = field(default_factory=list)
    request_id: str = ""


@dataclass
class PremiumToBcInput:
    task_ids: List[str] = field(default_factory=list)
    request_id: str = ""


@dataclass
class ProcessBcJobsInput:
    max_jobs: int = DEFAULT_MAX_JOBS
    request_id: str = ""


@dataclass
class ProcessBcJobsOutput:
    """``locked`` is set when another processor held the queue lock."""
    summary: Dict[str, Any] = field(default_factory=dict)
    locked: bool = False


@dataclass
class PlannerSyncInput:
    project_no: Optional[str] = None
    poll: bool = True


@dataclass
class RenewSubscriptionsInput:
    entity_sets: List[str] = field(default_factory=list)


def _request_id(value: str) -> str:
    return value or activity.info().workflow_id


# =============================================================================
# Activity Definitions
# =============================================================================

@activity.defn
async def decide_sync_direction(input: DecideInput) -> Dict[str, Any]:
    """Compare pending BC and Premium changes; returns ``SyncDecision.to_dict()``."""
    async with open_sync_context() as ctx:
        decision = await decide_premium_sync(ctx, prefer_bc=input.prefer_bc, grace_ms=input.grace_ms)
    activity.logger.info(f"Sync decision: {decision.decision} ({decision.reason})")
    return decision.to_dict()


@activity.defn
async def run_bc_to_premium(input: BcToPremiumInput) -> Dict[str, Any]:
    request_id = _request_id(input.request_id)
    with with_correlation(request_id=request_id, activity_name="run_bc_to_premium"):
        async with open_sync_context() as ctx:
            return await sync_bc_to_premium(
                ctx,
                project_nos=input.project_nos or None,
                task_system_ids=input.task_system_ids or None,
                request_id=request_id,
            )


@activity.defn
async def run_premium_to_bc(input: PremiumToBcInput) -> Dict[str, Any]:
    """Apply the Premium delta feed, or only ``task_ids`` when given."""
    request_id = _request_id(input.request_id)
    with with_correlation(request_id=request_id, activity_name="run_premium_to_bc"):
        async with open_sync_context() as ctx:
            if input.task_ids:
                return await sync_premium_task_ids(ctx, input.task_ids, respect_prefer_bc=True, request_id=request_id)
            return await sync_premium_changes(ctx, request_id=request_id)


@activity.defn
async def process_bc_jobs(input: ProcessBcJobsInput) -> ProcessBcJobsOutput:
    request_id = _request_id(input.request_id)
    config = get_webhook_config()
    with with_correlation(request_id=request_id, activity_name="process_bc_jobs"):
        async with open_sync_context() as ctx:
            store = ctx.webhook_store(config.dedupe_window_seconds, config.job_lock_ttl_seconds)
            summary, skipped = await process_bc_jobs_locked(ctx, store, max_jobs=input.max_jobs, request_id=request_id)
    if skipped:
        activity.logger.info("BC job queue locked by another processor; skipping")
        return ProcessBcJobsOutput(locked=True)
    return ProcessBcJobsOutput(summary=summary or {})


@activity.defn
async def run_planner_sync(input: PlannerSyncInput) -> Dict[str, Any]:
    """Legacy Planner mode: push BC tasks, then poll Planner for edits."""
    async with open_planner_context() as ctx:
        result: Dict[str, Any] = {"push": await sync_bc_to_planner(ctx, project_no=input.project_no)}
        if input.poll:
            result["poll"] = await run_planner_polling_sync(ctx)
    return result


@activity.defn
async def renew_subscriptions(input: RenewSubscriptionsInput) -> Dict[str, Any]:
    from connectors.business_central import BusinessCentralClient

    config = get_webhook_config()
    kv = create_kv_store()
    try:
        store = BcWebhookStore(kv)
        async with BusinessCentralClient() as bc:
            return await renew_bc_subscriptions(bc, store, entity_sets=input.entity_sets or [config.bc_queue_entity_set])
    finally:
        await kv.close()
