"""BC <-> Premium reconciliation engine.

Entry points take a ``SyncContext`` (clients, stores, policy and clock):

- ``sync_bc_to_premium`` -- BC tasks to Premium project tasks
- ``sync_premium_changes`` / ``sync_premium_task_ids`` -- Premium back to BC
- ``run_premium_sync_decision`` -- choose a direction from pending changes
- ``process_bc_job_queue`` -- drain BC webhook jobs

The legacy Planner mode lives in ``sync.planner_sync`` with its own context.
"""

from sync.context import SyncContext, open_sync_context
from sync.bc_to_premium import sync_bc_to_premium, sync_task_to_dataverse
from sync.premium_to_bc import run_premium_change_poll, sync_premium_changes, sync_premium_task_ids
from sync.decision import decide, decide_premium_sync, preview_bc_changes, preview_premium_changes, run_premium_sync_decision
from sync.job_processor import process_bc_job_queue, process_bc_jobs_locked

__all__ = [
    "SyncContext",
    "open_sync_context",
    "sync_bc_to_premium",
    "sync_task_to_dataverse",
    "sync_premium_changes",
    "sync_premium_task_ids",
    "run_premium_change_poll",
    "decide",
    "decide_premium_sync",
    "preview_bc_changes",
    "preview_premium_changes",
    "run_premium_sync_decision",
    "process_bc_job_queue",
    "process_bc_jobs_locked",
]
