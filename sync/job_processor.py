"""Drains queued BC webhook jobs into targeted BC -> Premium passes."""

import asyncio
from typing import Any, Dict, List, Optional, Set, Tuple

from connectors.errors import is_not_found_error
from core.observability import get_logger, get_metrics
from stores.webhook_store import BcWebhookJob, BcWebhookStore
from sync.bc_queue import canonical_system_id
from sync.bc_to_premium import merge_summaries, sync_bc_to_premium
from sync.context import SyncContext

logger = get_logger(__name__)

DEFAULT_MAX_JOBS = 25


def new_job_summary() -> Dict[str, Any]:
    return {
        "jobs": 0,
        "projects": 0,
        "processed": 0,
        "skipped": 0,
        "errors": 0,
        "projectNos": [],
        "skipReasons": {},
    }


class _JobTargets:
    """Projects touched by a batch of jobs.

    A project with ``None`` task ids gets a full pass; otherwise only the
    listed tasks are re-synced.
    """

    def __init__(self):
        self.projects: Dict[str, Optional[Set[str]]] = {}
        self.queue_triggered = False

    def add_task(self, project_no: str, system_id: str) -> None:
        if project_no in self.projects and self.projects[project_no] is None:
            return
        self.projects.setdefault(project_no, set()).add(system_id)

    def add_project(self, project_no: str) -> None:
        self.projects[project_no] = None


def _skip(summary: Dict[str, Any], reason: str) -> None:
    summary["skipped"] += 1
    summary["skipReasons"][reason] = summary["skipReasons"].get(reason, 0) + 1


async def _resolve_job(ctx: SyncContext, job: BcWebhookJob, targets: _JobTargets) -> Optional[str]:
    """Add the job's project to ``targets``. Returns a skip reason or None."""
    entity_set = (job.entitySet or "").strip().lower()
    system_id = canonical_system_id(job.systemId)
    if not entity_set or not system_id:
        return "invalid"

    queue_entity_set = (ctx.bc.config.queue_entity_set or "").strip().lower()
    if queue_entity_set and entity_set == queue_entity_set:
        targets.queue_triggered = True
        return None

    if entity_set == "projecttasks":
        try:
            task = await ctx.bc.get_project_task(system_id)
        except Exception as exc:
            if is_not_found_error(exc):
                return "notFound"
            raise
        if not task:
            return "notFound"
        # Our own lock write also fires a notification.
        if task.get("syncLock"):
            return "locked"
        project_no = str(task.get("projectNo") or "").strip()
        if not project_no:
            return "noProject"
        targets.add_task(project_no, system_id)
        return None

    if entity_set == "projects":
        try:
            project = await ctx.bc.get_project(system_id)
        except Exception as exc:
            if is_not_found_error(exc):
                return "notFound"
            raise
        project_no = str((project or {}).get("projectNo") or (project or {}).get("no") or "").strip()
        if not project_no:
            return "noProject"
        targets.add_project(project_no)
        return None

    return "unsupportedEntity"


async def process_bc_job_queue(
    ctx: SyncContext,
    store: BcWebhookStore,
    max_jobs: int = DEFAULT_MAX_JOBS,
    request_id: str = "",
) -> Dict[str, Any]:
    """Pop up to ``max_jobs`` jobs and run one pass per affected project.

    The caller is expected to hold the processing lock. A job popped here is
    gone from the queue whether or not its pass succeeds.

    Returns:
        ``{jobs, projects, processed, skipped, errors, projectNos, skipReasons, sync}``
    """
    summary = new_job_summary()
    jobs = await store.pop_jobs(max_jobs)
    summary["jobs"] = len(jobs)
    if not jobs:
        return summary

    targets = _JobTargets()
    for job in jobs:
        try:
            reason = await _resolve_job(ctx, job, targets)
        except Exception as exc:
            summary["errors"] += 1
            logger.warning(
                "BC webhook job resolution failed",
                extra_fields={"entitySet": job.entitySet, "systemId": job.systemId, "error": str(exc)},
            )
            continue
        if reason:
            _skip(summary, reason)

    pass_summaries: List[Dict[str, Any]] = []
    for project_no, task_ids in targets.projects.items():
        try:
            result = await sync_bc_to_premium(
                ctx,
                project_nos=[project_no],
                task_system_ids=sorted(task_ids) if task_ids else None,
                request_id=request_id,
            )
        except Exception as exc:
            summary["errors"] += 1
            logger.warning("BC webhook sync failed", extra_fields={"projectNo": project_no, "error": str(exc)})
            continue
        summary["processed"] += 1
        summary["projectNos"].append(project_no)
        pass_summaries.append(result)

    if targets.queue_triggered:
        try:
            result = await sync_bc_to_premium(ctx, request_id=request_id)
            summary["processed"] += 1
            summary["projectNos"].extend(no for no in result.get("projectNos", []) if no not in summary["projectNos"])
            pass_summaries.append(result)
        except Exception as exc:
            summary["errors"] += 1
            logger.warning("BC queue-triggered sync failed", extra_fields={"error": str(exc)})

    summary["projects"] = len(summary["projectNos"])
    summary["sync"] = merge_summaries(pass_summaries)
    get_metrics().record_jobs_processed(summary["jobs"])
    counts = {k: summary[k] for k in ("jobs", "projects", "processed", "skipped", "errors")}
    logger.info("BC webhook jobs processed", extra_fields=counts)
    await _publish_outcome(ctx, request_id, summary, counts)
    return summary


async def _publish_outcome(ctx: SyncContext, request_id: str, summary: Dict[str, Any], counts: Dict[str, int]) -> None:
    if ctx.log_sink is None:
        return
    entry: Dict[str, Any] = {"requestId": request_id, "type": "jobs", **counts, "projectNos": list(summary["projectNos"])}
    if summary["skipReasons"]:
        entry["skipReasons"] = dict(summary["skipReasons"])
    try:
        await ctx.log_sink.append(entry)
    except Exception as exc:
        # Jobs are already popped; the summary still goes back to the caller.
        logger.warning("BC job outcome not logged", extra_fields={"error": str(exc)})


async def process_bc_jobs_locked(
    ctx: SyncContext,
    store: BcWebhookStore,
    max_jobs: int = DEFAULT_MAX_JOBS,
    request_id: str = "",
    retry_count: int = 0,
    retry_delay_seconds: float = 0.0,
) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
    """Run ``process_bc_job_queue`` under the queue lock.

    Returns:
        ``(summary, None)`` on success, ``(None, "locked")`` when the lock
        stayed taken through every retry.
    """
    attempts = 0
    while True:
        token = await store.acquire_lock()
        if token:
            try:
                return await process_bc_job_queue(ctx, store, max_jobs=max_jobs, request_id=request_id), None
            finally:
                await store.release_lock(token)
        attempts += 1
        if attempts > retry_count:
            return None, "locked"
        await asyncio.sleep(retry_delay_seconds)
