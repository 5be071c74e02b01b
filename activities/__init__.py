"""Activity definitions module."""

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
    ProcessBcJobsOutput,
    PlannerSyncInput,
    RenewSubscriptionsInput,
)

__all__ = [
    "decide_sync_direction",
    "run_bc_to_premium",
    "run_premium_to_bc",
    "process_bc_jobs",
    "run_planner_sync",
    "renew_subscriptions",
    "DecideInput",
    "BcToPremiumInput",
    "PremiumToBcInput",
    "ProcessBcJobsInput",
    "ProcessBcJobsOutput",
    "PlannerSyncInput",
    "RenewSubscriptionsInput",
]
