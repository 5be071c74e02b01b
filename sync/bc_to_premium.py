"""BC -> Premium reconciliation pass.

For each selected project the BC task list is sorted, filtered through the
section rules, and written to Premium either through one batched operation
set (schedule API) or task by task. The counterpart id, ETag and
``lastSyncAt`` are stamped back onto BC under the sync lock.

Usage:
    async with open_sync_context() as ctx:
        summary = await sync_bc_to_premium(ctx, project_nos=["PR00042"])
"""

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

from connectors.base import escape_odata_string
from connectors.errors import SyncSetupError, is_not_found_error
from core.observability import get_logger, record_pass_completed, record_pass_failed, record_pass_started, with_correlation
from stores import normalize_project_no
from sync.bc_queue import BcQueueTargets, QueueEntryRef, canonical_system_id, delete_queue_entries, resolve_bc_queue_targets
from sync.concurrency import run_with_concurrency
from sync.context import SyncContext
from sync.linkage import resolve_duplicate_links
from sync.mapping import (
    build_schedule_task_entity,
    build_task_payload,
    format_guid,
    is_guid,
    payload_matches_row,
    resolve_bc_modified_ms,
    resolve_bc_task_sync_fields,
    resolve_dataverse_modified_ms,
    utc_now_iso,
)
from sync.premium_resources import (
    ResourceCaches,
    TaskIndex,
    cleanup_operation_set,
    cleanup_unused_operation_set,
    create_operation_set_with_recovery,
    ensure_assignment_for_task,
    find_task_by_bc_no,
    find_task_by_title,
    get_project_bucket_id,
    get_task_schedule_snapshot,
    is_direct_task_write_blocked,
    is_invalid_default_bucket_error,
    is_operation_set_limit_error,
    load_task_index,
    preload_project_assignments,
    resolve_project_from_bc,
    resolve_project_id,
    resolve_task_id,
    snapshot_from_row,
    validate_task_id_for_project,
)
from sync.sections import SectionTracker, build_allowed_task_numbers, is_allowed_task_no, sort_tasks_by_task_no
from sync.sync_lock import TaskLockedError

logger = get_logger(__name__)

DIRECTION = "bcToPremium"
CHANGE_CURSOR_SCOPE = "premium"
SCHEDULE_MANAGED_ENTITY_SET = "msdyn_projecttasks"


class ScheduleApiUnavailableError(Exception):
    """The schedule API is required but cannot be used for this project."""


def new_summary() -> Dict[str, Any]:
    return {"projects": 0, "tasks": 0, "created": 0, "updated": 0, "skipped": 0, "errors": 0, "projectNos": []}


def merge_summaries(summaries: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    merged = new_summary()
    for summary in summaries:
        for key in ("projects", "tasks", "created", "updated", "skipped", "errors"):
            merged[key] += summary.get(key, 0)
        for project_no in summary.get("projectNos", []):
            if project_no and project_no not in merged["projectNos"]:
                merged["projectNos"].append(project_no)
    return merged


# =============================================================================
# Per-task write path
# =============================================================================

@dataclass
class ScheduleFallbackState:
    unavailable: bool = False
    reason: str = ""
    warned: bool = False


@dataclass
class ProjectPassState:
    """Mutable state shared by every task write of one project pass."""
    project_no: str
    project_id: str
    index: TaskIndex
    caches: ResourceCaches = field(default_factory=ResourceCaches)
    fallback: ScheduleFallbackState = field(default_factory=ScheduleFallbackState)
    field_names: Optional[Set[str]] = None
    require_schedule_api: bool = False
    operation_set_touched: bool = False


@dataclass
class TaskOutcome:
    action: str
    task_id: str = ""
    pending: Optional[Dict[str, Any]] = None


def _link_updates(ctx: SyncContext, task_id: str, project_id: str, etag: Optional[str]) -> Dict[str, Any]:
    return {
        "plannerTaskId": task_id,
        "plannerPlanId": project_id,
        "lastPlannerEtag": etag or "",
        "lastSyncAt": utc_now_iso(ctx.clock()),
    }


def _is_linked(task: Dict[str, Any], task_id: str, project_id: str) -> bool:
    return (
        format_guid(str(task.get("plannerTaskId") or "")).lower() == format_guid(task_id).lower()
        and format_guid(str(task.get("plannerPlanId") or "")).lower() == format_guid(project_id).lower()
    )


async def _mark_premium_write(ctx: SyncContext, task_id: str, task: Dict[str, Any]) -> None:
    try:
        await ctx.bc_writes.mark([task_id])
    except Exception as exc:
        logger.warning(
            "Failed to mark premium task write",
            extra_fields={"taskId": task_id, "projectNo": task.get("projectNo"), "taskNo": task.get("taskNo"), "error": str(exc)},
        )


async def _stamp_bc_task(ctx: SyncContext, state: ProjectPassState, task: Dict[str, Any], updates: Dict[str, Any]) -> None:
    await ctx.lock.write(task, updates, state.field_names or None)


async def _cleanup_operation_set(ctx: SyncContext, operation_set_id: str) -> None:
    if ctx.config.cleanup_operation_sets and operation_set_id:
        await cleanup_operation_set(
            ctx.dataverse, operation_set_id, ctx.clock(), ctx.config.cleanup_operation_sets_min_age_minutes
        )


async def _run_schedule_fallback(
    ctx: SyncContext,
    state: ProjectPassState,
    task: Dict[str, Any],
    task_id: Optional[str],
    snapshot: Optional[Dict[str, Any]] = None,
) -> TaskOutcome:
    """Write one task through its own operation set, executed immediately."""
    project_id = state.project_id
    description = f"BC sync fallback {project_id} {utc_now_iso(ctx.clock())}"
    operation_set_id = await create_operation_set_with_recovery(ctx.dataverse, project_id, description, ctx.clock())
    if not operation_set_id:
        raise ScheduleApiUnavailableError("Dataverse schedule API unavailable for fallback write")
    try:
        fields = resolve_bc_task_sync_fields(task)
        if task_id:
            entity = build_schedule_task_entity(
                task_id, project_id, task, ctx.mapping, mode="update", fields=fields, snapshot=snapshot
            )
            await _mark_premium_write(ctx, task_id, task)
            await ctx.dataverse.pss_update(entity, operation_set_id)
            action, etag = "updated", task.get("lastPlannerEtag")
        else:
            task_id = str(uuid.uuid4())
            await _mark_premium_write(ctx, task_id, task)
            bucket_id = await get_project_bucket_id(ctx.dataverse, project_id, state.caches.buckets)
            entity = build_schedule_task_entity(
                task_id, project_id, task, ctx.mapping, mode="create", bucket_id=bucket_id, fields=fields
            )
            await ctx.dataverse.pss_create(entity, operation_set_id)
            action, etag = "created", None
        await ensure_assignment_for_task(ctx.dataverse, task, project_id, task_id, state.caches, operation_set_id)
        await ctx.dataverse.execute_operation_set(operation_set_id)
        await _stamp_bc_task(ctx, state, task, _link_updates(ctx, task_id, project_id, etag))
        state.index.add(task_id, None, str(task.get("taskNo") or ""), fields.title)
        return TaskOutcome(action, task_id)
    finally:
        await _cleanup_operation_set(ctx, operation_set_id)


async def _fallback_after_blocked_write(
    ctx: SyncContext,
    state: ProjectPassState,
    task: Dict[str, Any],
    task_id: Optional[str],
    snapshot: Optional[Dict[str, Any]],
    error: Exception,
) -> TaskOutcome:
    if state.fallback.unavailable:
        if not state.fallback.warned:
            state.fallback.warned = True
            logger.warning(
                "Skipping direct Dataverse task writes; schedule fallback unavailable for project",
                extra_fields={"projectNo": state.project_no, "reason": state.fallback.reason},
            )
        return TaskOutcome("skipped", task_id or "")
    try:
        return await _run_schedule_fallback(ctx, state, task, task_id, snapshot)
    except Exception as fallback_error:
        if is_operation_set_limit_error(fallback_error):
            state.fallback.unavailable = True
            state.fallback.reason = "operation_set_capacity"
            logger.warning(
                "Schedule fallback disabled for project after operation set limit error",
                extra_fields={"projectNo": state.project_no, "taskNo": task.get("taskNo"), "error": str(fallback_error)},
            )
            return TaskOutcome("skipped", task_id or "")
        logger.warning(
            "Schedule fallback failed",
            extra_fields={"projectId": state.project_id, "taskId": task_id, "error": str(fallback_error)},
        )
        raise error from fallback_error


async def _locate_existing_task(
    ctx: SyncContext, state: ProjectPassState, task: Dict[str, Any], title: str
) -> str:
    """Counterpart id for a BC task: stored link, then BC task number, then title."""
    mapping = ctx.mapping
    task_id = format_guid(str(task.get("plannerTaskId") or ""))
    if task_id and not is_guid(task_id):
        logger.warning(
            "Ignoring non-GUID counterpart task id",
            extra_fields={"projectNo": task.get("projectNo"), "taskNo": task.get("taskNo"), "taskId": task_id},
        )
        task_id = ""
    if task_id and not state.index.has(task_id):
        if not await validate_task_id_for_project(ctx.dataverse, task_id, state.project_id, mapping):
            logger.warning(
                "Counterpart task id invalid for project; will relink",
                extra_fields={"projectNo": task.get("projectNo"), "taskNo": task.get("taskNo"), "taskId": task_id},
            )
            task_id = ""
    if task_id:
        return task_id

    task_no = str(task.get("taskNo") or "").strip()
    if task_no:
        indexed = state.index.by_task_no.get(task_no)
        if indexed:
            return indexed
        found = await find_task_by_bc_no(ctx.dataverse, state.project_id, task_no, mapping)
        if found:
            state.index.add(resolve_task_id(found, mapping) or "", found, task_no, title)
            return resolve_task_id(found, mapping) or ""

    if title:
        indexed = state.index.by_title.get(title.lower())
        if indexed:
            return indexed
        found = await find_task_by_title(ctx.dataverse, state.project_id, title, mapping)
        if found:
            state.index.add(resolve_task_id(found, mapping) or "", found, task_no, title)
            return resolve_task_id(found, mapping) or ""
    return ""


async def _premium_is_newer(ctx: SyncContext, state: ProjectPassState, task: Dict[str, Any], task_id: str) -> bool:
    row = state.index.row(task_id)
    try:
        if not row or ctx.mapping.task_modified_field not in row:
            row = await ctx.dataverse.get_by_id(ctx.mapping.task_entity_set, task_id, [ctx.mapping.task_modified_field])
    except Exception as exc:
        logger.debug(
            "Dataverse modified check failed; proceeding with BC update",
            extra_fields={"taskNo": task.get("taskNo"), "error": str(exc)},
        )
        return False
    premium_ms = resolve_dataverse_modified_ms(row, ctx.mapping)
    bc_ms = resolve_bc_modified_ms(task)
    if premium_ms is None or bc_ms is None:
        return False
    return premium_ms - bc_ms > ctx.config.premium_modified_grace_ms


async def sync_task_to_dataverse(
    ctx: SyncContext,
    task: Dict[str, Any],
    state: ProjectPassState,
    use_schedule_api: bool = False,
    operation_set_id: Optional[str] = None,
) -> TaskOutcome:
    """Write one BC task to its Premium counterpart, creating it if absent.

    With ``operation_set_id`` the write is queued in the project's batch and
    the BC stamp is returned as ``pending`` for after execution. Otherwise
    the row is written directly (``If-Match`` on update) and BC is stamped
    immediately. An unchanged row that is already linked is skipped without
    any write.

    Raises:
        TaskLockedError: another writer holds the BC task lock
        ScheduleApiUnavailableError: schedule API required but unusable
    """
    mapping = ctx.mapping
    project_id = state.project_id
    fields = resolve_bc_task_sync_fields(task)
    payload = build_task_payload(task, project_id, mapping, fields)
    title = fields.title
    task_no = str(task.get("taskNo") or "").strip()
    batched = bool(use_schedule_api and operation_set_id)

    task_id = await _locate_existing_task(ctx, state, task, title)
    if task_id:
        row = state.index.row(task_id)
        if _is_linked(task, task_id, project_id) and payload_matches_row(payload, row, mapping):
            return TaskOutcome("skipped", task_id)

        if not ctx.config.prefer_bc and await _premium_is_newer(ctx, state, task, task_id):
            logger.info(
                "BC -> Premium skipped (Premium newer)",
                extra_fields={"projectNo": state.project_no, "taskNo": task_no, "taskId": task_id},
            )
            return TaskOutcome("skipped", task_id)

        snapshot: Optional[Dict[str, Any]] = None
        if (batched or state.require_schedule_api) and not (
            fields.percent.present and fields.start.present and fields.finish.present
        ):
            if row:
                snapshot = snapshot_from_row(row, mapping)
            else:
                try:
                    snapshot = await get_task_schedule_snapshot(ctx.dataverse, task_id, mapping)
                except Exception as exc:
                    logger.debug(
                        "Dataverse schedule snapshot lookup failed; proceeding with BC update",
                        extra_fields={"taskNo": task_no, "error": str(exc)},
                    )

        if batched:
            state.operation_set_touched = True
            await _mark_premium_write(ctx, task_id, task)
            entity = build_schedule_task_entity(
                task_id, project_id, task, mapping, mode="update", fields=fields, snapshot=snapshot
            )
            await ctx.dataverse.pss_update(entity, operation_set_id)
            await ensure_assignment_for_task(ctx.dataverse, task, project_id, task_id, state.caches, operation_set_id)
            state.index.add(task_id, None, task_no, title)
            updates = _link_updates(ctx, task_id, project_id, task.get("lastPlannerEtag"))
            pending = {"task": task, "updates": updates, "action": "updated", "taskId": task_id}
            return TaskOutcome("updated", task_id, pending)

        if state.require_schedule_api:
            if state.fallback.unavailable:
                raise ScheduleApiUnavailableError(
                    f"Dataverse schedule API unavailable for BC -> Premium update ({state.fallback.reason or 'unknown'})"
                )
            return await _run_schedule_fallback(ctx, state, task, task_id, snapshot)

        if_match = str(task.get("lastPlannerEtag") or "") or None
        try:
            await _mark_premium_write(ctx, task_id, task)
            result = await ctx.dataverse.update(mapping.task_entity_set, task_id, payload, if_match=if_match)
        except Exception as exc:
            if is_direct_task_write_blocked(exc):
                return await _fallback_after_blocked_write(ctx, state, task, task_id, snapshot, exc)
            raise
        await _stamp_bc_task(ctx, state, task, _link_updates(ctx, task_id, project_id, result.get("etag") or task.get("lastPlannerEtag")))
        state.index.add(task_id, {**(row or {}), **payload}, task_no, title)
        await ensure_assignment_for_task(ctx.dataverse, task, project_id, task_id, state.caches)
        return TaskOutcome("updated", task_id)

    if not mapping.allow_task_create:
        return TaskOutcome("skipped")

    if batched:
        state.operation_set_touched = True
        new_task_id = str(uuid.uuid4())
        await _mark_premium_write(ctx, new_task_id, task)
        bucket_id = await get_project_bucket_id(ctx.dataverse, project_id, state.caches.buckets)
        entity = build_schedule_task_entity(
            new_task_id, project_id, task, mapping, mode="create", bucket_id=bucket_id, fields=fields
        )
        await ctx.dataverse.pss_create(entity, operation_set_id)
        await ensure_assignment_for_task(ctx.dataverse, task, project_id, new_task_id, state.caches, operation_set_id)
        state.index.add(new_task_id, None, task_no, title)
        updates = _link_updates(ctx, new_task_id, project_id, None)
        pending = {"task": task, "updates": updates, "action": "created", "taskId": new_task_id}
        return TaskOutcome("created", new_task_id, pending)

    if state.require_schedule_api:
        if state.fallback.unavailable:
            raise ScheduleApiUnavailableError(
                f"Dataverse schedule API unavailable for BC -> Premium create ({state.fallback.reason or 'unknown'})"
            )
        return await _run_schedule_fallback(ctx, state, task, None)

    try:
        created = await ctx.dataverse.create(mapping.task_entity_set, payload)
    except Exception as exc:
        if is_direct_task_write_blocked(exc):
            return await _fallback_after_blocked_write(ctx, state, task, None, None, exc)
        raise
    new_task_id = created.get("entity_id") or ""
    if not new_task_id:
        return TaskOutcome("error")
    await _mark_premium_write(ctx, new_task_id, task)
    await _stamp_bc_task(ctx, state, task, _link_updates(ctx, new_task_id, project_id, created.get("etag")))
    state.index.add(new_task_id, {**payload, mapping.task_project_id_field: project_id}, task_no, title)
    await ensure_assignment_for_task(ctx.dataverse, task, project_id, new_task_id, state.caches)
    return TaskOutcome("created", new_task_id)


# =============================================================================
# Project pass
# =============================================================================

@dataclass
class _TaskRun:
    action: str
    task: Dict[str, Any]
    batched: bool = False


async def _load_project_tasks(ctx: SyncContext, project_no: str, task_ids: Optional[Set[str]]) -> List[Dict[str, Any]]:
    if not task_ids:
        return await ctx.bc.list_project_tasks(f"projectNo eq '{escape_odata_string(project_no)}'")
    tasks: List[Dict[str, Any]] = []
    for system_id in sorted(task_ids):
        try:
            task = await ctx.bc.get_project_task(system_id)
        except Exception as exc:
            if is_not_found_error(exc):
                continue
            raise
        if task and str(task.get("projectNo") or "").strip() == project_no:
            tasks.append(task)
    return tasks


async def _resolve_project_id(ctx: SyncContext, project_no: str, tasks: List[Dict[str, Any]]) -> str:
    """Premium project id for a BC project.

    Raises:
        SyncSetupError: no usable project could be found or created
    """
    mapping = ctx.mapping
    cached = next((str(t.get("plannerPlanId") or "").strip() for t in tasks if str(t.get("plannerPlanId") or "").strip()), "")
    if cached and not is_guid(cached):
        logger.warning(
            "Ignoring non-GUID counterpart project id", extra_fields={"projectNo": project_no, "projectId": cached}
        )
        cached = ""
    if cached:
        try:
            await ctx.dataverse.get_by_id(mapping.project_entity_set, cached, [mapping.project_id_field])
        except Exception as exc:
            logger.debug(
                "Cached Dataverse project lookup failed",
                extra_fields={"projectNo": project_no, "projectId": cached, "error": str(exc)},
            )
            cached = ""

    resolved = ""
    resolve_error: Optional[Exception] = None
    if mapping.project_bc_no_field or not cached:
        try:
            entity = await resolve_project_from_bc(ctx.bc, ctx.dataverse, project_no, mapping)
            resolved = resolve_project_id(entity, mapping) or ""
        except Exception as exc:
            resolve_error = exc
            logger.warning(
                "Dataverse project resolve by BC projectNo failed",
                extra_fields={"projectNo": project_no, "error": str(exc)},
            )
    if resolved and cached and resolved.lower() != cached.lower():
        logger.warning(
            "BC tasks reference a stale project id; using the canonical Dataverse project",
            extra_fields={"projectNo": project_no, "cachedProjectId": cached, "resolvedProjectId": resolved},
        )
    project_id = resolved or cached
    if not project_id:
        raise SyncSetupError(f"Dataverse project could not be resolved for BC project {project_no}") from resolve_error
    return project_id


async def _start_operation_set(ctx: SyncContext, state: ProjectPassState) -> str:
    if not ctx.config.use_schedule_api:
        return ""
    bucket_id = await get_project_bucket_id(ctx.dataverse, state.project_id, state.caches.buckets)
    if not bucket_id:
        logger.warning(
            "Dataverse bucket unavailable; continuing with schedule API updates (task creates may fail)",
            extra_fields={"projectNo": state.project_no, "projectId": state.project_id},
        )
    description = f"BC sync {state.project_no} {utc_now_iso(ctx.clock())}"
    try:
        operation_set_id = await create_operation_set_with_recovery(
            ctx.dataverse, state.project_id, description, ctx.clock()
        )
    except Exception as exc:
        if is_operation_set_limit_error(exc):
            state.fallback.unavailable = True
            state.fallback.reason = "operation_set_capacity"
        logger.warning(
            "Dataverse schedule API init failed; using per-task writes",
            extra_fields={"projectNo": state.project_no, "error": str(exc)},
        )
        return ""
    if not operation_set_id:
        logger.warning(
            "Dataverse schedule API unavailable; using per-task writes", extra_fields={"projectNo": state.project_no}
        )
    return operation_set_id


async def sync_project_to_premium(
    ctx: SyncContext,
    project_no: str,
    task_ids: Optional[Set[str]] = None,
    queue_refs: Optional[List[QueueEntryRef]] = None,
    field_names: Optional[Set[str]] = None,
) -> Dict[str, Any]:
    """Reconcile one BC project into Premium.

    Per-task failures are counted; only an unresolvable project raises.

    Returns:
        A summary dict for this project
    """
    summary = new_summary()
    queue_refs = queue_refs or []
    mapping = ctx.mapping
    try:
        tasks = await _load_project_tasks(ctx, project_no, task_ids)
    except Exception as exc:
        logger.warning("BC task load failed", extra_fields={"projectNo": project_no, "error": str(exc)})
        summary["errors"] += 1
        return summary

    ordered = sort_tasks_by_task_no(tasks)
    project_id = await _resolve_project_id(ctx, project_no, ordered)
    await resolve_duplicate_links(ctx.bc, ordered)

    state = ProjectPassState(
        project_no=project_no,
        project_id=project_id,
        index=await load_task_index(ctx.dataverse, project_id, mapping),
        field_names=field_names,
        require_schedule_api=bool(
            ctx.config.require_schedule_api and mapping.task_entity_set == SCHEDULE_MANAGED_ENTITY_SET
        ),
    )
    operation_set_id = await _start_operation_set(ctx, state)
    use_schedule_api = bool(operation_set_id)
    pending: List[Dict[str, Any]] = []
    batched_tasks: List[Dict[str, Any]] = []
    batch_counts = {"created": 0, "updated": 0, "skipped": 0}
    succeeded: Set[str] = set()

    try:
        if not ordered:
            project_level = any(not ref.task_system_id for ref in queue_refs)
            logger.warning(
                "BC -> Premium found no BC tasks for project",
                extra_fields={"projectNo": project_no, "queueEntries": len(queue_refs)},
            )
            if project_level:
                # Retained for a later pass once BC task rows are queryable.
                summary["errors"] += 1
            summary["projects"] += 1
            summary["projectNos"].append(project_no)
            return summary

        allowlist = build_allowed_task_numbers(ctx.config.task_no_allowlist)
        sections = SectionTracker()
        to_sync: List[Dict[str, Any]] = []
        for task in ordered:
            skip_for_section = sections.should_skip(task)
            system_id = canonical_system_id(task.get("systemId"))
            summary["tasks"] += 1
            if skip_for_section or not is_allowed_task_no(task.get("taskNo"), allowlist):
                summary["skipped"] += 1
                continue
            if system_id and await ctx.premium_writes.was_marked(system_id):
                logger.info(
                    "BC -> Premium skipped (premium-origin writeback window)",
                    extra_fields={"projectNo": project_no, "taskNo": task.get("taskNo"), "systemId": system_id},
                )
                summary["skipped"] += 1
                succeeded.add(system_id)
                continue
            to_sync.append(task)

        if to_sync:
            await preload_project_assignments(ctx.dataverse, project_id, state.caches)

        async def sync_one(task: Dict[str, Any], batch_api: bool, batch_operation_set: Optional[str]) -> _TaskRun:
            try:
                if not await ctx.lock.prepare(task):
                    logger.info(
                        "BC task locked by another writer; skipping",
                        extra_fields={"projectNo": project_no, "taskNo": task.get("taskNo")},
                    )
                    return _TaskRun("skipped", task)
            except Exception as exc:
                logger.warning(
                    "Failed to clear stale sync lock",
                    extra_fields={"projectNo": project_no, "taskNo": task.get("taskNo"), "error": str(exc)},
                )
                return _TaskRun("error", task)
            track = bool(batch_api and batch_operation_set)
            if track:
                batched_tasks.append(task)
            try:
                with with_correlation(project_no=project_no, task_no=str(task.get("taskNo") or "")):
                    outcome = await sync_task_to_dataverse(ctx, task, state, batch_api, batch_operation_set)
            except TaskLockedError:
                return _TaskRun("skipped", task)
            except Exception as exc:
                logger.warning(
                    "Premium task sync failed",
                    extra_fields={"projectNo": project_no, "taskNo": task.get("taskNo"), "error": str(exc)},
                )
                return _TaskRun("error", task)
            if outcome.pending:
                pending.append(outcome.pending)
            return _TaskRun(outcome.action, task, track)

        if use_schedule_api and ctx.config.preserve_task_order:
            # One task at a time through the direct path keeps Premium order equal to BC order.
            runs = await run_with_concurrency(to_sync, 1, lambda task, _: sync_one(task, False, None))
        elif use_schedule_api:
            creates = [t for t in to_sync if not state.index.likely_has(t)]
            updates = [t for t in to_sync if state.index.likely_has(t)]
            runs = await run_with_concurrency(creates, 1, lambda task, _: sync_one(task, True, operation_set_id))
            runs += await run_with_concurrency(
                updates, ctx.config.task_concurrency, lambda task, _: sync_one(task, True, operation_set_id)
            )
        else:
            limit = 1 if ctx.config.preserve_task_order else ctx.config.task_concurrency
            runs = await run_with_concurrency(to_sync, limit, lambda task, _: sync_one(task, False, None))

        for run in runs:
            if run.action == "error":
                summary["errors"] += 1
                continue
            system_id = canonical_system_id(run.task.get("systemId"))
            if run.action in ("created", "updated") and system_id:
                succeeded.add(system_id)
            counts = batch_counts if run.batched else summary
            counts[run.action if run.action in ("created", "updated") else "skipped"] += 1

        if operation_set_id and (pending or state.operation_set_touched):
            await _execute_batch(ctx, state, operation_set_id, pending, batched_tasks, batch_counts, summary, succeeded)

        project_ok = summary["errors"] == 0 and summary["tasks"] > 0
        await delete_queue_entries(ctx.bc, queue_refs, succeeded, not task_ids, project_ok)

        summary["projects"] += 1
        summary["projectNos"].append(project_no)
        logger.info(
            "BC -> Premium project sync summary",
            extra_fields={
                "projectNo": project_no,
                "projectId": project_id,
                "tasksExamined": summary["tasks"],
                "created": summary["created"],
                "updated": summary["updated"],
                "skipped": summary["skipped"],
                "errors": summary["errors"],
                "usedScheduleApi": use_schedule_api,
            },
        )
        return summary
    finally:
        if operation_set_id and not state.operation_set_touched and not pending:
            await cleanup_unused_operation_set(ctx.dataverse, operation_set_id)
        elif operation_set_id:
            await _cleanup_operation_set(ctx, operation_set_id)


async def _execute_batch(
    ctx: SyncContext,
    state: ProjectPassState,
    operation_set_id: str,
    pending: List[Dict[str, Any]],
    batched_tasks: List[Dict[str, Any]],
    batch_counts: Dict[str, int],
    summary: Dict[str, Any],
    succeeded: Set[str],
) -> None:
    """Execute the project's operation set, then stamp BC.

    When execution fails nothing in the batch was applied, so each batched
    task is retried on its own; writes already made outside the batch stand.
    """
    try:
        await ctx.dataverse.execute_operation_set(operation_set_id)
    except Exception as exc:
        logger.warning(
            "Dataverse schedule execute failed",
            extra_fields={"projectNo": state.project_no, "operationSetId": operation_set_id, "error": str(exc)},
        )
        if is_invalid_default_bucket_error(exc):
            state.caches.buckets.pop(state.project_id, None)
            recovered = await get_project_bucket_id(ctx.dataverse, state.project_id, state.caches.buckets)
            logger.warning(
                "Dataverse default bucket invalid; refreshed bucket before retry",
                extra_fields={"projectNo": state.project_no, "recovered": bool(recovered)},
            )
        for entry in pending:
            if entry.get("action") == "created":
                state.index.discard(entry["taskId"])
        if batched_tasks:
            logger.warning(
                "Retrying batched tasks individually",
                extra_fields={"projectNo": state.project_no, "count": len(batched_tasks)},
            )
        for task in batched_tasks:
            try:
                outcome = await sync_task_to_dataverse(ctx, task, state)
            except TaskLockedError:
                summary["skipped"] += 1
                continue
            except Exception as retry_error:
                summary["errors"] += 1
                logger.warning(
                    "Premium task retry failed",
                    extra_fields={"projectNo": state.project_no, "taskNo": task.get("taskNo"), "error": str(retry_error)},
                )
                continue
            if outcome.action in ("created", "updated"):
                summary[outcome.action] += 1
                system_id = canonical_system_id(task.get("systemId"))
                if system_id:
                    succeeded.add(system_id)
            else:
                summary["skipped"] += 1
        return

    for key, value in batch_counts.items():
        summary[key] += value
    for entry in pending:
        task = entry["task"]
        try:
            await _stamp_bc_task(ctx, state, task, entry["updates"])
        except Exception as exc:
            summary["errors"] += 1
            succeeded.discard(canonical_system_id(task.get("systemId")))
            logger.warning(
                "BC stamp after operation set failed",
                extra_fields={"projectNo": state.project_no, "taskNo": task.get("taskNo"), "error": str(exc)},
            )


# =============================================================================
# Entry point
# =============================================================================

@dataclass
class _ProjectTarget:
    project_no: str
    task_ids: Optional[Set[str]] = None
    queue_refs: List[QueueEntryRef] = field(default_factory=list)
    first_seq: Optional[int] = None


@dataclass
class _ChangeFeedBatch:
    targets: List[_ProjectTarget]
    cursor: Optional[int]
    last_seq: Optional[int]


async def _targets_from_task_ids(ctx: SyncContext, task_ids: Set[str]) -> List[_ProjectTarget]:
    grouped: Dict[str, Set[str]] = {}
    for system_id in sorted(task_ids):
        try:
            task = await ctx.bc.get_project_task(system_id)
        except Exception as exc:
            if is_not_found_error(exc):
                continue
            raise
        project_no = str((task or {}).get("projectNo") or "").strip()
        if project_no:
            grouped.setdefault(project_no, set()).add(system_id)
    return [_ProjectTarget(no, ids) for no, ids in grouped.items()]


def _sequence_no(item: Dict[str, Any]) -> Optional[int]:
    value = item.get("sequenceNo")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


async def _read_change_feed(ctx: SyncContext) -> Optional[_ChangeFeedBatch]:
    """Projects named by the BC change feed; None when the feed is unavailable or empty.

    Each target carries the lowest sequence number that named it so the cursor
    can stop short of projects deferred to a later pass.
    """
    try:
        cursor = await ctx.cursors.get(CHANGE_CURSOR_SCOPE)
        changes = await ctx.bc.list_project_changes_since(cursor)
    except Exception as exc:
        logger.warning("BC change feed read failed; falling back to sync queue", extra_fields={"error": str(exc)})
        return None
    if not changes.get("entity_set") or not changes.get("items"):
        return None
    targets: Dict[str, _ProjectTarget] = {}
    unsequenced: Set[str] = set()
    for item in changes["items"]:
        project_no = str(item.get("projectNo") or "").strip()
        if not project_no:
            continue
        target = targets.setdefault(project_no, _ProjectTarget(project_no))
        seq = _sequence_no(item)
        if seq is None:
            unsequenced.add(project_no)
        elif target.first_seq is None or seq < target.first_seq:
            target.first_seq = seq
    for project_no in unsequenced:
        targets[project_no].first_seq = None
    return _ChangeFeedBatch(list(targets.values()), cursor, changes.get("last_seq"))


async def _advance_change_cursor(ctx: SyncContext, feed: _ChangeFeedBatch, deferred: List[_ProjectTarget]) -> None:
    """Move the cursor past the batch, or to just before the first deferred project's change."""
    position = feed.last_seq
    if deferred:
        held = [target.first_seq for target in deferred]
        if any(seq is None for seq in held):
            return
        position = min(held) - 1
        if feed.cursor is not None and position <= feed.cursor:
            return
    if position is not None:
        await ctx.cursors.save(CHANGE_CURSOR_SCOPE, position)

def _targets_from_queue(queue: BcQueueTargets) -> List[_ProjectTarget]:
    return [
        _ProjectTarget(no, queue.task_ids_for(no), queue.entries_by_project.get(no, []))
        for no in queue.project_nos
    ]


async def sync_bc_to_premium(
    ctx: SyncContext,
    project_nos: Optional[List[str]] = None,
    task_system_ids: Optional[List[str]] = None,
    request_id: str = "",
) -> Dict[str, Any]:
    """Run a BC -> Premium pass.

    Projects come from ``project_nos`` when given, else from the owners of
    ``task_system_ids``, else from the BC change feed, else from the BC sync
    queue. Disabled projects are skipped.

    Returns:
        ``{projects, tasks, created, updated, skipped, errors, projectNos}``

    Raises:
        SyncSetupError: a selected project could not be resolved in Premium
    """
    started = ctx.clock()
    record_pass_started(DIRECTION)
    with with_correlation(request_id=request_id or None, scope=DIRECTION):
        try:
            summary = await _run_pass(ctx, project_nos, task_system_ids)
        except Exception as exc:
            record_pass_failed(DIRECTION, str(exc))
            raise
    record_pass_completed(DIRECTION, summary, ctx.clock() - started)
    return summary


async def _run_pass(
    ctx: SyncContext, project_nos: Optional[List[str]], task_system_ids: Optional[List[str]]
) -> Dict[str, Any]:
    task_ids = {canonical_system_id(v) for v in task_system_ids or [] if canonical_system_id(v)} or None
    feed: Optional[_ChangeFeedBatch] = None

    if project_nos:
        targets = [_ProjectTarget(str(no).strip(), task_ids) for no in project_nos if str(no).strip()]
    elif task_ids:
        targets = await _targets_from_task_ids(ctx, task_ids)
    else:
        feed = await _read_change_feed(ctx)
        targets = feed.targets if feed else None
        if targets is None:
            try:
                targets = _targets_from_queue(await resolve_bc_queue_targets(ctx.bc))
            except Exception as exc:
                logger.warning("BC queue load failed", extra_fields={"error": str(exc)})
                summary = new_summary()
                summary["errors"] = 1
                return summary

    disabled = await ctx.project_settings.disabled_projects()
    selected: List[_ProjectTarget] = []
    seen: Set[str] = set()
    for target in targets:
        key = normalize_project_no(target.project_no)
        if key in seen:
            continue
        seen.add(key)
        if key in disabled:
            logger.info("Premium sync skipped for disabled project", extra_fields={"projectNo": target.project_no})
            continue
        selected.append(target)
    deferred: List[_ProjectTarget] = []
    limit = ctx.config.max_projects_per_run
    if limit and len(selected) > limit:
        logger.info(
            "Project count exceeds per-run limit; deferring the rest",
            extra_fields={"selected": len(selected), "limit": limit},
        )
        selected, deferred = selected[:limit], selected[limit:]
    if feed is not None:
        await _advance_change_cursor(ctx, feed, deferred)

    field_names = None
    try:
        field_names = await ctx.bc.get_task_field_names() or None
    except Exception as exc:
        logger.debug("BC task field names unavailable", extra_fields={"error": str(exc)})

    async def run(target: _ProjectTarget, _index: int) -> Dict[str, Any]:
        with with_correlation(project_no=target.project_no):
            return await sync_project_to_premium(ctx, target.project_no, target.task_ids, target.queue_refs, field_names)

    summaries = await run_with_concurrency(selected, ctx.config.project_concurrency, run)
    return merge_summaries(summaries)
