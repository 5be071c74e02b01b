"""Workflow definitions module."""

from workflows.sync_workflow import (
    PremiumSyncWorkflow,
    BcJobQueueWorkflow,
    PlannerPollingWorkflow,
    BcSubscriptionRenewalWorkflow,
    PremiumSyncInput,
    BcJobQueueInput,
    PlannerPollingInput,
    SubscriptionRenewalInput,
    TASK_QUEUE_SYNC,
    TASK_QUEUE_PLANNER,
)

__all__ = [
    "PremiumSyncWorkflow",
    "BcJobQueueWorkflow",
    "PlannerPollingWorkflow",
    "BcSubscriptionRenewalWorkflow",
    "PremiumSyncInput",
    "BcJobQueueInput",
    "PlannerPollingInput",
    "SubscriptionRenewalInput",
    "TASK_QUEUE_SYNC",
    "TASK_QUEUE_PLANNER",
]
