"""Legacy BC <-> Planner sync.

One Planner plan per BC project (``perProjectPlan``) or one shared plan
(``singlePlan``). When a per-project plan cannot be created, tasks fall back
to the default plan with the project number as a title prefix. BC heading tasks
pick the bucket for the posting tasks that follow them. Planner percent only
has three states, so BC percentages are bucketed to 0/50/100.
"""

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote

from connectors.base import escape_odata_string
from connectors.errors import is_not_found_error
from core.config import PlannerSyncConfig, get_planner_sync_config
from core.observability import get_logger, record_pass_completed, record_pass_failed, record_pass_started
from stores import PLANNER_DELTA_KEY, DeltaLinkStore, KeyValueStore, create_kv_store
from sync.mapping import parse_date_ms, utc_now_iso
from sync.sections import sort_tasks_by_task_no
from sync.sync_lock import SyncLock, TaskLockedError

logger = get_logger(__name__)

DIRECTION = "bcToPlanner"
INBOUND_DIRECTION = "plannerToBc"
DEFAULT_BUCKET_NAME = "General"
NOTIFICATION_QUEUE_KEY = "planner:notifications"
PLANNER_MIN_DATE = "1984-01-01"
PLANNER_MAX_DATE = "2149-12-31"
DEFAULT_PLANNER_WEB_BASE = "https://planner.cloud.microsoft"

# Heading descriptions that map to a named bucket; None skips the section.
HEADING_BUCKETS: Dict[str, Optional[str]] = {
    "JOB NAME": "Pre-Construction",
    "INSTALLATION": "Installation",
    "CHANGE ORDER": "Change Orders",
    "CHANGE ORDERS": "Change Orders",
    "REVENUE": None,
}


def _now_ms() -> float:
    return time.time() * 1000


@dataclass
class PlannerContext:
    bc: Any
    graph: Any
    kv: KeyValueStore
    config: PlannerSyncConfig = field(default_factory=get_planner_sync_config)
    clock: Callable[[], float] = _now_ms

    def __post_init__(self):
        self.lock = SyncLock(self.bc, self.config.sync_lock_timeout_minutes, clock=self.clock)
        self.deltas = DeltaLinkStore(self.kv, key=PLANNER_DELTA_KEY)
        self.queue = PlannerNotificationQueue(self.kv)


@asynccontextmanager
async def open_planner_context(kv: Optional[KeyValueStore] = None):
    from connectors.business_central import BusinessCentralClient
    from connectors.planner import GraphClient

    owns_kv = kv is None
    kv = kv or create_kv_store()
    bc = BusinessCentralClient()
    graph = GraphClient()
    try:
        async with bc, graph:
            yield PlannerContext(bc=bc, graph=graph, kv=kv)
    finally:
        if owns_kv:
            await kv.close()


# =============================================================================
# Field mapping
# =============================================================================

def normalize_bucket_name(name: Optional[str]) -> str:
    return (name or "").strip() or DEFAULT_BUCKET_NAME


def resolve_bucket_from_heading(description: Optional[str]) -> Tuple[Optional[str], bool]:
    """Bucket for a heading task; ``(None, True)`` means skip its section."""
    heading = (description or "").strip()
    if not heading:
        return DEFAULT_BUCKET_NAME, False
    normalized = heading.upper()
    if normalized in HEADING_BUCKETS:
        mapped = HEADING_BUCKETS[normalized]
        return mapped, mapped is None
    return normalize_bucket_name(heading), False


def normalize_date_only(value: Optional[str]) -> Optional[str]:
    ms = parse_date_ms(value)
    if ms is None:
        return None
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


def to_planner_date(value: Optional[str]) -> Optional[str]:
    """Midnight UTC of the date, or None outside Planner's 1984..2149 window."""
    date_only = normalize_date_only(value)
    if not date_only or date_only < PLANNER_MIN_DATE or date_only > PLANNER_MAX_DATE:
        return None
    return f"{date_only}T00:00:00.000Z"


def to_planner_percent(value: Optional[float]) -> int:
    if value is None:
        return 0
    if value >= 100:
        return 100
    return 50 if value > 0 else 0


def to_bc_percent(value: Optional[float]) -> int:
    if value is None:
        return 0
    if value >= 100:
        return 100
    return 50 if value >= 50 else 0


def format_planner_description(task: Dict[str, Any]) -> str:
    def fmt(name: str) -> str:
        value = task.get(name)
        return "" if value is None else str(value)

    labels = (
        ("ProjectNo", "projectNo"),
        ("TaskNo", "taskNo"),
        ("TaskType", "taskType"),
        ("AssignedPersonName", "assignedPersonName"),
        ("BudgetTotalCost", "budgetTotalCost"),
        ("ActualTotalCost", "actualTotalCost"),
        ("StartDate", "startDate"),
        ("EndDate", "endDate"),
        ("ManualStartDate", "manualStartDate"),
        ("ManualEndDate", "manualEndDate"),
    )
    return "\n".join(f"{label}: {fmt(name)}" for label, name in labels)


def build_planner_title(task: Dict[str, Any], prefix: str = "") -> str:
    parts = [str(task.get("taskNo") or "").strip(), str(task.get("description") or "").strip()]
    base = " - ".join(part for part in parts if part) or "Untitled Task"
    return f"{prefix}{base}"


def resolve_planner_base_url(config: PlannerSyncConfig) -> str:
    if config.tenant_domain:
        return f"https://tasks.office.com/{config.tenant_domain}"
    return DEFAULT_PLANNER_WEB_BASE


def build_planner_plan_url(plan_id: Optional[str], base_url: str, tenant_id: str = "") -> Optional[str]:
    if not plan_id:
        return None
    base = (base_url or DEFAULT_PLANNER_WEB_BASE).rstrip("/")
    tid = f"?tid={quote(tenant_id)}" if tenant_id else ""
    if "planner.cloud.microsoft" in base:
        return f"{base}/webui/plan/{plan_id}/view/board{tid}"
    if "planner.office.com" in base:
        return f"{base}/plan/{plan_id}{tid}"
    return f"{base}/Home/PlanViews/{plan_id}"


# =============================================================================
# Plans and buckets
# =============================================================================

@dataclass
class PlanResolution:
    plan_id: str
    title_prefix: str = ""


async def resolve_plan_for_project(ctx: PlannerContext, project_no: str, tasks: List[Dict[str, Any]]) -> PlanResolution:
    """Find or create the plan for a project.

    Order: the plan already linked on a task (if its title is the project
    number), a group plan titled with the project number, a new plan, then
    the default plan with a title prefix when fallback is allowed.
    """
    config = ctx.config
    if config.sync_mode == "singlePlan":
        if not config.default_plan_id:
            raise ValueError("PLANNER_DEFAULT_PLAN_ID is required for SYNC_MODE=singlePlan")
        return PlanResolution(config.default_plan_id)

    existing = next((task.get("plannerPlanId") for task in tasks if task.get("plannerPlanId")), None)
    if existing:
        try:
            plan = await ctx.graph.get_plan(existing)
            title = str((plan or {}).get("title") or "").strip()
            if title == project_no:
                return PlanResolution(existing)
            if title:
                logger.warning(
                    "Ignoring existing planner plan; title mismatch",
                    extra_fields={"projectNo": project_no, "planId": existing, "planTitle": title},
                )
        except Exception as exc:
            logger.warning(
                "Failed to verify existing planner plan",
                extra_fields={"projectNo": project_no, "planId": existing, "error": str(exc)},
            )

    plans: List[Dict[str, Any]] = []
    try:
        plans = await ctx.graph.list_plans_for_group(config.group_id)
    except Exception as exc:
        logger.warning("Failed to list plans for group", extra_fields={"error": str(exc)})
    for plan in plans:
        if str(plan.get("title") or "").strip() == project_no and plan.get("id"):
            return PlanResolution(plan["id"])

    try:
        created = await ctx.graph.create_plan(config.group_id, project_no)
        return PlanResolution(created["id"])
    except Exception as exc:
        create_error = str(exc)
        logger.warning("Plan creation failed", extra_fields={"projectNo": project_no, "error": create_error})

    if not config.allow_default_plan_fallback:
        raise RuntimeError(f"Plan creation failed: {create_error}")
    if not config.default_plan_id:
        raise RuntimeError(f"Plan creation failed and PLANNER_DEFAULT_PLAN_ID is not set: {create_error}")
    return PlanResolution(config.default_plan_id, f"{project_no} - ")


class BucketCache:
    """Bucket ids per plan, keyed by lower-cased bucket name."""

    def __init__(self):
        self._plans: Dict[str, Dict[str, str]] = {}

    async def ensure(self, graph, plan_id: str, bucket_name: str) -> str:
        name = normalize_bucket_name(bucket_name)
        key = name.lower()
        if plan_id not in self._plans:
            self._plans[plan_id] = {
                str(bucket["name"]).strip().lower(): bucket["id"]
                for bucket in await graph.list_buckets(plan_id)
                if bucket.get("name") and bucket.get("id")
            }
        buckets = self._plans[plan_id]
        if key not in buckets:
            created = await graph.create_bucket(plan_id, name)
            buckets[key] = created["id"]
        return buckets[key]


# =============================================================================
# BC -> Planner
# =============================================================================

async def upsert_planner_task(
    ctx: PlannerContext,
    task: Dict[str, Any],
    plan_id: str,
    bucket_id: str,
    bucket_name: str,
    title_prefix: str = "",
) -> str:
    """Create or update the Planner task for one BC posting task.

    Returns:
        "created", "updated" or "skipped"
    """
    if not await ctx.lock.prepare(task):
        logger.info("Skipping BC task with syncLock", extra_fields={"taskNo": task.get("taskNo")})
        return "skipped"

    title = build_planner_title(task, title_prefix)
    start = to_planner_date(task.get("manualStartDate") or task.get("startDate"))
    due = to_planner_date(task.get("manualEndDate") or task.get("endDate"))
    percent = to_planner_percent(task.get("percentComplete") or 0)
    description = format_planner_description(task)
    planner_task_id = task.get("plannerTaskId")

    if not planner_task_id:
        payload: Dict[str, Any] = {"planId": plan_id, "bucketId": bucket_id, "title": title, "percentComplete": percent}
        if start:
            payload["startDateTime"] = start
        if due:
            payload["dueDateTime"] = due
        created = await ctx.graph.create_task(payload)
        details = await ctx.graph.get_task_details(created["id"])
        if details.get("@odata.etag"):
            await ctx.graph.update_task_details(created["id"], {"description": description}, details["@odata.etag"])
        latest = await ctx.graph.get_task(created["id"])
        await ctx.lock.write(task, {
            "plannerTaskId": created["id"],
            "plannerPlanId": plan_id,
            "plannerBucket": bucket_name,
            "lastPlannerEtag": latest.get("@odata.etag"),
            "lastSyncAt": utc_now_iso(ctx.clock()),
        })
        logger.info("Planner task created", extra_fields={"taskId": created["id"], "taskNo": task.get("taskNo")})
        return "created"

    planner_task = await ctx.graph.get_task(planner_task_id)
    details = await ctx.graph.get_task_details(planner_task_id)

    changes: Dict[str, Any] = {}
    if (planner_task.get("title") or "") != title:
        changes["title"] = title
    if planner_task.get("bucketId") != bucket_id:
        changes["bucketId"] = bucket_id
    if normalize_date_only(planner_task.get("startDateTime")) != normalize_date_only(start):
        changes["startDateTime"] = start
    if normalize_date_only(planner_task.get("dueDateTime")) != normalize_date_only(due):
        changes["dueDateTime"] = due
    if (planner_task.get("percentComplete") or 0) != percent:
        changes["percentComplete"] = percent

    if changes:
        etag = task.get("lastPlannerEtag") or planner_task.get("@odata.etag")
        if etag:
            await ctx.graph.update_task(planner_task_id, changes, etag)
        else:
            logger.warning("Missing Planner ETag; skipping update", extra_fields={"taskId": planner_task_id})
    if details.get("description") != description and details.get("@odata.etag"):
        await ctx.graph.update_task_details(planner_task_id, {"description": description}, details["@odata.etag"])

    latest = await ctx.graph.get_task(planner_task_id)
    await ctx.lock.write(task, {
        "plannerPlanId": plan_id,
        "plannerBucket": bucket_name,
        "lastPlannerEtag": latest.get("@odata.etag"),
        "lastSyncAt": utc_now_iso(ctx.clock()),
    })
    return "updated" if changes else "skipped"


def _new_planner_summary() -> Dict[str, Any]:
    return {"projects": 0, "tasks": 0, "created": 0, "updated": 0, "skipped": 0, "errors": 0, "plans": []}


async def sync_project_tasks(
    ctx: PlannerContext,
    project_no: str,
    tasks: List[Dict[str, Any]],
    buckets: BucketCache,
    summary: Dict[str, Any],
) -> str:
    """Push one project's posting tasks into its plan; returns the plan id."""
    config = ctx.config
    plan = await resolve_plan_for_project(ctx, project_no, tasks)
    current_bucket: Optional[str] = DEFAULT_BUCKET_NAME
    skip_section = False

    for task in sort_tasks_by_task_no(tasks):
        task_type = str(task.get("taskType") or "").lower()
        if task_type == "heading":
            bucket_name, skip_section = resolve_bucket_from_heading(task.get("description"))
            current_bucket = bucket_name
            if not skip_section:
                await buckets.ensure(ctx.graph, plan.plan_id, bucket_name)
            continue
        if task_type != "posting" or skip_section or not current_bucket:
            continue

        bucket_id = await buckets.ensure(ctx.graph, plan.plan_id, current_bucket)
        sync_task = task
        linked_plan = task.get("plannerPlanId")
        if (
            config.sync_mode == "perProjectPlan"
            and not config.allow_default_plan_fallback
            and linked_plan
            and linked_plan != plan.plan_id
        ):
            logger.warning(
                "Planner plan mismatch; creating new task in per-project plan",
                extra_fields={"taskNo": task.get("taskNo"), "fromPlanId": linked_plan, "toPlanId": plan.plan_id},
            )
            sync_task = dict(task, plannerTaskId=None, plannerPlanId=None)
        try:
            outcome = await upsert_planner_task(
                ctx, sync_task, plan.plan_id, bucket_id, current_bucket, plan.title_prefix
            )
        except TaskLockedError:
            outcome = "skipped"
        except Exception as exc:
            logger.error(
                "Planner task upsert failed",
                extra_fields={"taskNo": task.get("taskNo"), "error": str(exc)},
            )
            outcome = "errors"
        summary[outcome] += 1
    return plan.plan_id


async def _list_tasks_for_project(ctx: PlannerContext, project_no: str) -> List[Dict[str, Any]]:
    raw = await ctx.bc.list_project_tasks(f"projectNo eq '{escape_odata_string(project_no)}'")
    normalized = project_no.strip().lower()
    tasks = [task for task in raw if str(task.get("projectNo") or "").strip().lower() == normalized]
    if raw and len(tasks) != len(raw):
        logger.warning(
            "Filtered BC tasks by projectNo",
            extra_fields={"projectNo": project_no, "before": len(raw), "after": len(tasks)},
        )
    return tasks


async def sync_bc_to_planner(ctx: PlannerContext, project_no: Optional[str] = None, tenant_id: str = "") -> Dict[str, Any]:
    """Push BC project tasks to Planner, for one project or every BC project.

    Returns:
        ``{projects, tasks, created, updated, skipped, errors, plans: [{projectNo, planId, planUrl}]}``
    """
    summary = _new_planner_summary()
    base_url = resolve_planner_base_url(ctx.config)
    buckets = BucketCache()
    started = ctx.clock()
    record_pass_started(DIRECTION)
    try:
        if project_no:
            project_nos = [project_no.strip()]
        else:
            projects = await ctx.bc.list_projects()
            project_nos = [str(p.get("projectNo") or p.get("no") or "").strip() for p in projects]
        for number in project_nos:
            if not number:
                continue
            tasks = await _list_tasks_for_project(ctx, number)
            summary["projects"] += 1
            summary["tasks"] += len(tasks)
            if not tasks:
                continue
            plan_id = await sync_project_tasks(ctx, number, tasks, buckets, summary)
            summary["plans"].append({
                "projectNo": number,
                "planId": plan_id,
                "planUrl": build_planner_plan_url(plan_id, base_url, tenant_id),
            })
    except Exception as exc:
        record_pass_failed(DIRECTION, str(exc))
        raise
    record_pass_completed(DIRECTION, summary, ctx.clock() - started)
    return summary


# =============================================================================
# Planner -> BC
# =============================================================================

async def apply_planner_update_to_bc(ctx: PlannerContext, bc_task: Dict[str, Any], planner_task: Dict[str, Any]) -> str:
    if not await ctx.lock.prepare(bc_task):
        logger.info("Skipping inbound update for sync-locked task", extra_fields={"taskId": planner_task.get("id")})
        return "skipped"

    bucket_name = None
    if planner_task.get("bucketId"):
        try:
            bucket_name = (await ctx.graph.get_bucket(planner_task["bucketId"])).get("name")
        except Exception as exc:
            logger.warning(
                "Planner bucket lookup failed",
                extra_fields={"bucketId": planner_task["bucketId"], "error": str(exc)},
            )
    start = normalize_date_only(planner_task.get("startDateTime"))
    due = normalize_date_only(planner_task.get("dueDateTime"))
    updates: Dict[str, Any] = {
        "percentComplete": to_bc_percent(planner_task.get("percentComplete") or 0),
        "plannerBucket": bucket_name or bc_task.get("plannerBucket"),
        "plannerPlanId": planner_task.get("planId") or bc_task.get("plannerPlanId"),
        "plannerTaskId": planner_task.get("id"),
        "lastPlannerEtag": planner_task.get("@odata.etag"),
        "lastSyncAt": utc_now_iso(ctx.clock()),
        "manualStartDate" if "manualStartDate" in bc_task else "startDate": start,
        "manualEndDate" if "manualEndDate" in bc_task else "endDate": due,
    }
    try:
        await ctx.lock.write(bc_task, updates)
    except TaskLockedError:
        return "skipped"
    return "updated"


async def sync_planner_notification(ctx: PlannerContext, notification: Dict[str, Any]) -> str:
    """Apply one Planner change notification to its linked BC task."""
    task_id = notification.get("taskId")
    bc_task = await ctx.bc.find_project_task_by_planner_task_id(task_id)
    if not bc_task:
        logger.info("No BC task found for Planner notification", extra_fields={"taskId": task_id})
        return "skipped"
    try:
        planner_task = await ctx.graph.get_task(task_id)
    except Exception as exc:
        if not is_not_found_error(exc):
            raise
        logger.warning("Planner task not found", extra_fields={"taskId": task_id})
        return "skipped"
    etag = planner_task.get("@odata.etag")
    if bc_task.get("lastPlannerEtag") and bc_task["lastPlannerEtag"] == etag:
        logger.info("Planner task unchanged; skipping inbound sync", extra_fields={"taskId": task_id})
        return "skipped"
    return await apply_planner_update_to_bc(ctx, bc_task, planner_task)


class PlannerNotificationQueue:
    """FIFO of Planner notifications in the KV store.

    ``drain`` runs one consumer per process; a drain requested while one is
    running is folded into another loop of the running drain.
    """

    def __init__(self, kv: KeyValueStore, key: str = NOTIFICATION_QUEUE_KEY):
        self.kv = kv
        self.key = key
        self._processing = False
        self._pending = False

    async def enqueue(self, items: List[Dict[str, Any]]) -> int:
        for item in items:
            await self.kv.lpush(self.key, item)
        return len(items)

    async def drain(self, handler) -> Dict[str, int]:
        counts = {"processed": 0, "errors": 0}
        if self._processing:
            self._pending = True
            return counts
        self._processing = True
        try:
            while True:
                item = await self.kv.rpop(self.key)
                if item is None:
                    if not self._pending:
                        break
                    self._pending = False
                    continue
                if not isinstance(item, dict):
                    continue
                try:
                    await handler(item)
                    counts["processed"] += 1
                except Exception as exc:
                    counts["errors"] += 1
                    logger.error(
                        "Queue item processing failed",
                        extra_fields={"taskId": item.get("taskId"), "error": str(exc)},
                    )
        finally:
            self._processing = False
        return counts


async def enqueue_and_process_notifications(ctx: PlannerContext, items: List[Dict[str, Any]]) -> Dict[str, int]:
    await ctx.queue.enqueue(items)

    async def handle(item: Dict[str, Any]) -> None:
        await sync_planner_notification(ctx, item)

    return await ctx.queue.drain(handle)


async def _changed_task_ids_from_delta(ctx: PlannerContext, plan_ids: List[str]) -> Optional[set]:
    """Task ids changed since the stored delta link of each plan; None if any plan's delta failed."""
    changed: set = set()
    for plan_id in plan_ids:
        link = await ctx.deltas.get(plan_id)
        try:
            page = await ctx.graph.list_plan_tasks_delta(plan_id, link)
            while True:
                changed.update(item["id"] for item in page["value"] if item.get("id"))
                if page.get("next_link"):
                    page = await ctx.graph.list_plan_tasks_delta(plan_id, page["next_link"])
                    continue
                break
        except Exception as exc:
            logger.warning("Planner delta read failed", extra_fields={"planId": plan_id, "error": str(exc)})
            await ctx.deltas.clear(plan_id)
            return None
        await ctx.deltas.save(plan_id, page.get("delta_link"))
    return changed


async def run_planner_polling_sync(ctx: PlannerContext) -> Dict[str, Any]:
    """Pull Planner changes for linked BC tasks.

    With delta enabled only tasks named by each plan's delta feed are read;
    otherwise every linked task not synced within the poll window is checked.
    """
    started = ctx.clock()
    record_pass_started(INBOUND_DIRECTION)
    summary = {"total": 0, "processed": 0, "skipped": 0, "errors": 0, "mode": "poll"}
    try:
        tasks = await ctx.bc.list_project_tasks("plannerTaskId ne ''")
        tasks = [task for task in tasks if task.get("plannerTaskId")]
        summary["total"] = len(tasks)

        changed = None
        if ctx.config.use_planner_delta:
            plan_ids = sorted({task["plannerPlanId"] for task in tasks if task.get("plannerPlanId")})
            changed = await _changed_task_ids_from_delta(ctx, plan_ids)
            if changed is not None:
                summary["mode"] = "delta"
        cutoff = ctx.clock() - ctx.config.poll_minutes * 60 * 1000

        for task in tasks:
            if changed is not None:
                if task["plannerTaskId"] not in changed:
                    continue
            else:
                last_sync = parse_date_ms(task.get("lastSyncAt"))
                if last_sync and last_sync > cutoff:
                    continue
            try:
                planner_task = await ctx.graph.get_task(task["plannerTaskId"])
            except Exception as exc:
                logger.warning(
                    "Planner task lookup failed during polling",
                    extra_fields={"taskId": task["plannerTaskId"], "error": str(exc)},
                )
                summary["errors"] += 1
                continue
            if task.get("lastPlannerEtag") and task["lastPlannerEtag"] == planner_task.get("@odata.etag"):
                summary["skipped"] += 1
                continue
            outcome = await apply_planner_update_to_bc(ctx, task, planner_task)
            summary["processed" if outcome == "updated" else "skipped"] += 1
    except Exception as exc:
        record_pass_failed(INBOUND_DIRECTION, str(exc))
        raise
    record_pass_completed(INBOUND_DIRECTION, {"updated": summary["processed"], **summary}, ctx.clock() - started)
    return summary
