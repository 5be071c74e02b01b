"""Premium -> BC reconciliation.

Premium task rows are read from the Dataverse change-tracking feed (or by id
for webhook-driven runs), matched to their BC task, and patched back onto BC
under the sync lock. Only fields the BC task schema exposes are written.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from connectors.base import escape_odata_string
from connectors.errors import is_not_found_error
from core.observability import get_logger, record_pass_completed, record_pass_failed, record_pass_started, with_correlation
from stores import normalize_project_no
from sync.bc_queue import canonical_system_id
from sync.concurrency import run_with_concurrency
from sync.context import SyncContext
from sync.linkage import find_primary_for
from sync.mapping import (
    bc_patch_has_changes,
    build_bc_patch,
    build_bc_update_from_premium,
    is_bc_changed_since_last_sync,
    utc_now_iso,
)
from sync.premium_resources import resolve_task_id
from sync.sections import build_allowed_task_numbers, is_allowed_task_no
from sync.sync_lock import TaskLockedError

logger = get_logger(__name__)

DIRECTION = "premiumToBc"

CLEAR_LINK_UPDATES = {"plannerTaskId": "", "plannerPlanId": "", "plannerBucket": "", "lastPlannerEtag": ""}


def premium_task_select(mapping) -> List[str]:
    fields = [
        mapping.task_id_field,
        mapping.task_title_field,
        mapping.task_percent_field,
        mapping.task_start_field,
        mapping.task_finish_field,
        mapping.task_bc_no_field,
        mapping.task_project_id_field,
        mapping.task_modified_field,
    ]
    return list(dict.fromkeys(f for f in fields if f))


def new_summary(changed: int = 0) -> Dict[str, Any]:
    return {"changed": changed, "updated": 0, "skipped": 0, "cleared": 0, "errors": 0}


def _removed_task_id(row: Dict[str, Any], mapping) -> str:
    task_id = resolve_task_id(row, mapping) or row.get("id") or ""
    return str(task_id).strip()


def _project_task_key(project_no: str, task_no: str) -> str:
    return f"{project_no.strip().lower()}::{task_no.strip()}"


# =============================================================================
# BC task lookup
# =============================================================================

@dataclass
class BcTaskLookup:
    """BC tasks prefetched for a batch of Premium rows."""
    by_counterpart: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    by_project_task_no: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    project_nos: Dict[str, Optional[str]] = field(default_factory=dict)

    def add(self, task: Dict[str, Any]) -> None:
        counterpart = str(task.get("plannerTaskId") or "").strip()
        if counterpart:
            self.by_counterpart.setdefault(counterpart, []).append(task)
        project_no = str(task.get("projectNo") or "").strip()
        task_no = str(task.get("taskNo") or "").strip()
        if project_no and task_no:
            self.by_project_task_no[_project_task_key(project_no, task_no)] = task

    def for_counterpart(self, task_id: str) -> Optional[Dict[str, Any]]:
        tasks = self.by_counterpart.get(task_id)
        if not tasks:
            return None
        return tasks[0] if len(tasks) == 1 else find_primary_for(tasks, task_id)


async def resolve_premium_project_no(ctx: SyncContext, row: Dict[str, Any], lookup: BcTaskLookup) -> Optional[str]:
    """BC project number for a Premium task row, via its project when needed."""
    mapping = ctx.mapping
    if not mapping.project_bc_no_field:
        return None
    direct = row.get(mapping.project_bc_no_field)
    if isinstance(direct, str) and direct.strip():
        return direct.strip()
    project_id = str(row.get(mapping.task_project_id_field) or "").strip()
    if not project_id:
        return None
    if project_id in lookup.project_nos:
        return lookup.project_nos[project_id]
    resolved: Optional[str] = None
    try:
        project = await ctx.dataverse.get_by_id(mapping.project_entity_set, project_id, [mapping.project_bc_no_field])
        value = (project or {}).get(mapping.project_bc_no_field)
        resolved = value.strip() if isinstance(value, str) and value.strip() else None
    except Exception as exc:
        logger.warning("Dataverse project lookup failed", extra_fields={"projectId": project_id, "error": str(exc)})
    lookup.project_nos[project_id] = resolved
    return resolved


async def prefetch_bc_tasks(ctx: SyncContext, rows: List[Dict[str, Any]]) -> BcTaskLookup:
    """Load every BC task of the projects touched by ``rows``, one query per project."""
    lookup = BcTaskLookup()
    project_nos: Dict[str, None] = {}
    for row in rows:
        if "@removed" in row:
            continue
        project_no = await resolve_premium_project_no(ctx, row, lookup)
        if project_no:
            project_nos[project_no] = None

    async def load(project_no: str, _index: int) -> None:
        try:
            tasks = await ctx.bc.list_project_tasks(f"projectNo eq '{escape_odata_string(project_no)}'")
        except Exception as exc:
            logger.warning("BC task preload failed", extra_fields={"projectNo": project_no, "error": str(exc)})
            return
        for task in tasks:
            lookup.add(task)

    await run_with_concurrency(list(project_nos), ctx.config.task_concurrency, load)
    return lookup


async def resolve_bc_task(ctx: SyncContext, row: Dict[str, Any], lookup: BcTaskLookup) -> Optional[Dict[str, Any]]:
    """BC task for a Premium row: counterpart id, then project + BC task number."""
    mapping = ctx.mapping
    task_id = resolve_task_id(row, mapping) or ""
    if task_id:
        task = lookup.for_counterpart(task_id)
        if task:
            return task
    task_no = row.get(mapping.task_bc_no_field) if mapping.task_bc_no_field else None
    task_no = task_no.strip() if isinstance(task_no, str) else ""
    project_no = await resolve_premium_project_no(ctx, row, lookup) if task_no else None
    if task_no and project_no:
        task = lookup.by_project_task_no.get(_project_task_key(project_no, task_no))
        if task:
            return task
    if task_id:
        task = await ctx.bc.find_project_task_by_planner_task_id(task_id)
        if task:
            return task
    if task_no and project_no:
        return await ctx.bc.find_project_task_by_project_and_task_no(project_no, task_no)
    return None


# =============================================================================
# Writes
# =============================================================================

@dataclass
class _PassPolicy:
    field_names: Optional[Set[str]]
    disabled: Set[str]
    allowlist: Set[int]
    respect_prefer_bc: bool = True


async def _mark_bc_write(ctx: SyncContext, task: Dict[str, Any]) -> None:
    system_id = canonical_system_id(task.get("systemId"))
    if not system_id:
        return
    try:
        await ctx.premium_writes.mark([system_id])
    except Exception as exc:
        logger.warning("Failed to mark BC task write", extra_fields={"systemId": system_id, "error": str(exc)})


def _excluded(task: Dict[str, Any], policy: _PassPolicy) -> Optional[str]:
    if normalize_project_no(task.get("projectNo")) in policy.disabled:
        return "project disabled"
    if not is_allowed_task_no(task.get("taskNo"), policy.allowlist):
        return "taskNo not in allowlist"
    return None


async def clear_bc_link(ctx: SyncContext, task: Dict[str, Any], policy: _PassPolicy) -> str:
    """Drop the counterpart link of a BC task whose Premium row was deleted."""
    if not task.get("systemId") or _excluded(task, policy):
        return "skipped"
    if not await ctx.lock.prepare(task):
        return "skipped"
    updates = {**CLEAR_LINK_UPDATES, "lastSyncAt": utc_now_iso(ctx.clock())}
    try:
        await ctx.lock.write(task, updates, policy.field_names)
    except TaskLockedError:
        return "skipped"
    await _mark_bc_write(ctx, task)
    return "cleared"


async def apply_premium_row(
    ctx: SyncContext, row: Dict[str, Any], task: Dict[str, Any], policy: _PassPolicy
) -> str:
    """Patch one BC task from its Premium row.

    Returns:
        ``"updated"`` or ``"skipped"``
    """
    mapping = ctx.mapping
    task_id = resolve_task_id(row, mapping) or ""
    reason = _excluded(task, policy)
    if reason:
        logger.info("Premium -> BC skipped", extra_fields={"taskNo": task.get("taskNo"), "reason": reason})
        return "skipped"
    if task_id and await ctx.bc_writes.was_marked(task_id):
        logger.info(
            "Premium -> BC skipped (BC-origin writeback window)",
            extra_fields={"taskNo": task.get("taskNo"), "taskId": task_id},
        )
        return "skipped"
    if not await ctx.lock.prepare(task):
        logger.info("Premium -> BC skipped (syncLock)", extra_fields={"projectNo": task.get("projectNo"), "taskNo": task.get("taskNo")})
        return "skipped"
    if policy.respect_prefer_bc and ctx.config.prefer_bc and is_bc_changed_since_last_sync(
        task, ctx.config.bc_modified_grace_ms
    ):
        logger.info(
            "Premium -> BC skipped (BC newer)",
            extra_fields={"projectNo": task.get("projectNo"), "taskNo": task.get("taskNo"), "lastSyncAt": task.get("lastSyncAt")},
        )
        return "skipped"

    updates = build_bc_update_from_premium(task, row, mapping, policy.field_names, utc_now_iso(ctx.clock()))
    if not updates.get("lastPlannerEtag"):
        updates.pop("lastPlannerEtag", None)
    plan_id = row.get(mapping.task_project_id_field)
    updates["plannerTaskId"] = task_id or task.get("plannerTaskId")
    updates["plannerPlanId"] = plan_id if isinstance(plan_id, str) and plan_id else task.get("plannerPlanId")
    patch = build_bc_patch(task, updates, policy.field_names)
    if not bc_patch_has_changes(task, patch):
        return "skipped"
    try:
        await ctx.lock.write(task, patch, policy.field_names)
    except TaskLockedError:
        return "skipped"
    await _mark_bc_write(ctx, task)
    return "updated"


async def _build_policy(ctx: SyncContext, respect_prefer_bc: bool) -> _PassPolicy:
    field_names = None
    try:
        field_names = await ctx.bc.get_task_field_names() or None
    except Exception as exc:
        logger.debug("BC task field names unavailable", extra_fields={"error": str(exc)})
    return _PassPolicy(
        field_names=field_names,
        disabled=await ctx.project_settings.disabled_projects(),
        allowlist=build_allowed_task_numbers(ctx.config.task_no_allowlist),
        respect_prefer_bc=respect_prefer_bc,
    )


def _tally(summary: Dict[str, Any], outcomes: List[str]) -> None:
    for outcome in outcomes:
        summary[outcome] += 1


# =============================================================================
# Entry points
# =============================================================================

async def sync_premium_changes(
    ctx: SyncContext, delta_link: Optional[str] = None, request_id: str = ""
) -> Dict[str, Any]:
    """Apply every Premium task change since the stored delta link.

    Deleted rows clear the BC link (``clearLink``) or are ignored. The new
    delta link is saved once the batch has been processed.

    Returns:
        ``{changed, updated, skipped, cleared, errors, deltaLinkSaved}``
    """
    mapping = ctx.mapping
    started = ctx.clock()
    record_pass_started(DIRECTION)
    with with_correlation(request_id=request_id or None, scope=DIRECTION):
        try:
            delta_link = delta_link or await ctx.deltas.get(mapping.task_entity_set)
            changes = await ctx.dataverse.list_changes(
                mapping.task_entity_set,
                select=premium_task_select(mapping),
                delta_link=delta_link,
                top=ctx.config.poll_page_size,
                max_pages=ctx.config.poll_max_pages,
            )
        except Exception as exc:
            record_pass_failed(DIRECTION, str(exc))
            raise
        rows = changes["value"]
        summary = new_summary(len(rows))
        policy = await _build_policy(ctx, respect_prefer_bc=True)
        lookup = await prefetch_bc_tasks(ctx, rows)

        async def handle(row: Dict[str, Any], _index: int) -> str:
            try:
                if "@removed" in row:
                    if ctx.config.delete_behavior == "ignore":
                        return "skipped"
                    task_id = _removed_task_id(row, mapping)
                    task = lookup.for_counterpart(task_id) if task_id else None
                    if task is None and task_id:
                        task = await ctx.bc.find_project_task_by_planner_task_id(task_id)
                    return await clear_bc_link(ctx, task, policy) if task else "skipped"
                task = await resolve_bc_task(ctx, row, lookup)
                if not task:
                    logger.info(
                        "Premium -> BC skipped (no BC task match)",
                        extra_fields={"taskId": resolve_task_id(row, mapping)},
                    )
                    return "skipped"
                return await apply_premium_row(ctx, row, task, policy)
            except Exception as exc:
                logger.warning(
                    "Premium -> BC update failed",
                    extra_fields={"taskId": resolve_task_id(row, mapping), "error": str(exc)},
                )
                return "errors"

        _tally(summary, await run_with_concurrency(rows, ctx.config.task_concurrency, handle))

        summary["deltaLinkSaved"] = False
        if changes.get("delta_link"):
            await ctx.deltas.save(mapping.task_entity_set, changes["delta_link"])
            summary["deltaLinkSaved"] = True
    record_pass_completed(DIRECTION, summary, ctx.clock() - started)
    return summary


async def sync_premium_task_ids(
    ctx: SyncContext,
    task_ids: List[str],
    respect_prefer_bc: bool = False,
    request_id: str = "",
) -> Dict[str, Any]:
    """Apply specific Premium tasks to BC (webhook-driven).

    A task that no longer exists clears its BC link under ``clearLink``.
    """
    mapping = ctx.mapping
    unique_ids = list(dict.fromkeys(str(v).strip() for v in task_ids or [] if str(v or "").strip()))
    summary = new_summary(len(unique_ids))
    summary["taskIds"] = unique_ids
    started = ctx.clock()
    record_pass_started(DIRECTION)
    with with_correlation(request_id=request_id or None, scope=DIRECTION):
        policy = await _build_policy(ctx, respect_prefer_bc)
        lookup = BcTaskLookup()

        async def handle(task_id: str, _index: int) -> str:
            try:
                row = await ctx.dataverse.get_by_id(mapping.task_entity_set, task_id, premium_task_select(mapping))
            except Exception as exc:
                if not is_not_found_error(exc):
                    logger.warning("Premium -> BC task lookup failed", extra_fields={"taskId": task_id, "error": str(exc)})
                    return "errors"
                if ctx.config.delete_behavior == "ignore":
                    return "skipped"
                try:
                    task = await ctx.bc.find_project_task_by_planner_task_id(task_id)
                    return await clear_bc_link(ctx, task, policy) if task else "skipped"
                except Exception as clear_error:
                    logger.warning(
                        "Failed clearing BC link for deleted premium task",
                        extra_fields={"taskId": task_id, "error": str(clear_error)},
                    )
                    return "errors"
            if not row:
                return "skipped"
            row.setdefault(mapping.task_id_field, task_id)
            try:
                task = await resolve_bc_task(ctx, row, lookup)
                if not task:
                    return "skipped"
                return await apply_premium_row(ctx, row, task, policy)
            except Exception as exc:
                logger.warning("Premium -> BC task update failed", extra_fields={"taskId": task_id, "error": str(exc)})
                return "errors"

        _tally(summary, await run_with_concurrency(unique_ids, ctx.config.task_concurrency, handle))
    record_pass_completed(DIRECTION, summary, ctx.clock() - started)
    return summary


async def run_premium_change_poll(ctx: SyncContext, request_id: str = "") -> Dict[str, Any]:
    return await sync_premium_changes(ctx, request_id=request_id)
