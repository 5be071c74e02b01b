"""
Sync Workflows

Durable schedules for the connector:
- PremiumSyncWorkflow: decide a direction, then run that pass
- BcJobQueueWorkflow: drain queued BC webhook jobs in rounds
- PlannerPollingWorkflow: legacy Planner push + poll
- BcSubscriptionRenewalWorkflow: keep BC webhook subscriptions alive

Each workflow is meant to be started on a Temporal schedule (or cron); a run
does one unit of work and returns its summary.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from temporalio import workflow
from temporalio.common import RetryPolicy

with workflow.unsafe.imports_passed_through():
    from activities.sync import (
        decide_sync_direction,
        run_bc_to_premium,
        run_premium_to_bc,
        process_bc_jobs,
        run_planner_sync,
        renew_subscriptions,
        DecideInput,
        BcToPremiumInput,
        PremiumToBcInput,
        ProcessBcJobsInput,
        PlannerSyncInput,
        RenewSubscriptionsInput,
    )
    from sync.decision import BC_TO_PREMIUM, PREMIUM_TO_BC


TASK_QUEUE_SYNC = "sync-default"
TASK_QUEUE_PLANNER = "sync-planner"

# Setup failures and bad credentials will not heal on retry
NON_RETRYABLE = ["SyncSetupError", "ConfigError", "TokenError", "BCAuthError", "DataverseAuthError", "GraphAuthError"]


def _pass_options(minutes: int = 15) -> Dict[str, Any]:
    return {
        "start_to_close_timeout": timedelta(minutes=minutes),
        "retry_policy": RetryPolicy(
            maximum_attempts=3,
            initial_interval=timedelta(seconds=10),
            maximum_interval=timedelta(minutes=2),
            backoff_coefficient=2.0,
            non_retryable_error_types=NON_RETRYABLE,
        ),
    }


# =============================================================================
# Workflow Inputs
# =============================================================================

@dataclass
class PremiumSyncInput:
    """Input for PremiumSyncWorkflow.

    Attributes:
        dry_run: Decide only; run nothing
        prefer_bc: Override SYNC_PREFER_BC
        grace_ms: Override SYNC_BC_MODIFIED_GRACE_MS
    """
    dry_run: bool = False
    prefer_bc: Optional[bool] = None
    grace_ms: Optional[float] = None


@dataclass
class BcJobQueueInput:
    max_jobs: int = 25
    max_rounds: int = 10


@dataclass
class PlannerPollingInput:
    project_no: Optional[str] = None
    poll: bool = True


@dataclass
class SubscriptionRenewalInput:
    entity_sets: List[str] = field(default_factory=list)


# =============================================================================
# Workflows
# =============================================================================

@workflow.defn
class PremiumSyncWorkflow:
    """Decision + apply.

    The decision activity only reads; the chosen direction runs as its own
    activity so a failed pass retries without re-deciding.
    """

    @workflow.run
    async def run(self, input: PremiumSyncInput) -> Dict[str, Any]:
        request_id = workflow.info().workflow_id
        decision = await workflow.execute_activity(
            decide_sync_direction,
            DecideInput(prefer_bc=input.prefer_bc, grace_ms=input.grace_ms),
            **_pass_options(minutes=5),
        )
        workflow.logger.info(f"Sync decision: {decision['decision']} ({decision['reason']})")

        if input.dry_run:
            return {"decision": decision, "result": None}

        if decision["decision"] == BC_TO_PREMIUM:
            summary = await workflow.execute_activity(
                run_bc_to_premium,
                BcToPremiumInput(request_id=request_id),
                **_pass_options(),
            )
            return {"decision": decision, "result": {BC_TO_PREMIUM: summary}}

        if decision["decision"] == PREMIUM_TO_BC:
            summary = await workflow.execute_activity(
                run_premium_to_bc,
                PremiumToBcInput(request_id=request_id),
                **_pass_options(),
            )
            return {"decision": decision, "result": {PREMIUM_TO_BC: summary}}

        return {"decision": decision, "result": None}


@workflow.defn
class BcJobQueueWorkflow:
    """Drain queued BC webhook jobs until the queue is empty or locked."""

    @workflow.run
    async def run(self, input: BcJobQueueInput) -> Dict[str, Any]:
        totals = {"rounds": 0, "jobs": 0, "processed": 0, "skipped": 0, "errors": 0, "locked": False}
        for round_no in range(max(1, input.max_rounds)):
            output = await workflow.execute_activity(
                process_bc_jobs,
                ProcessBcJobsInput(max_jobs=input.max_jobs, request_id=f"{workflow.info().workflow_id}-{round_no}"),
                **_pass_options(minutes=10),
            )
            totals["rounds"] += 1
            if output.locked:
                totals["locked"] = True
                break
            for key in ("jobs", "processed", "skipped", "errors"):
                totals[key] += output.summary.get(key, 0)
            if output.summary.get("jobs", 0) < input.max_jobs:
                break
        workflow.logger.info(f"BC job queue drained: {totals}")
        return totals


@workflow.defn
class PlannerPollingWorkflow:
    """Legacy Planner mode: BC -> Planner push followed by a Planner poll."""

    @workflow.run
    async def run(self, input: PlannerPollingInput) -> Dict[str, Any]:
        return await workflow.execute_activity(
            run_planner_sync,
            PlannerSyncInput(project_no=input.project_no, poll=input.poll),
            task_queue=TASK_QUEUE_PLANNER,
            **_pass_options(minutes=30),
        )


@workflow.defn
class BcSubscriptionRenewalWorkflow:

    @workflow.run
    async def run(self, input: SubscriptionRenewalInput) -> Dict[str, Any]:
        return await workflow.execute_activity(
            renew_subscriptions,
            RenewSubscriptionsInput(entity_sets=input.entity_sets),
            **_pass_options(minutes=2),
        )
