"""Duplicate counterpart-link resolution.

At most one BC task may reference a given Premium/Planner task id. When
several do (manual data fixes, racing writers), one primary is kept and the
others have their link fields cleared and their lock released.
"""

from collections import OrderedDict
from typing import Any, Dict, Iterable, List, Optional, Tuple

from core.observability import get_logger
from sync.mapping import parse_date_ms, resolve_bc_modified_ms

logger = get_logger(__name__)

LINK_FIELDS = ("plannerTaskId", "plannerPlanId", "plannerBucket", "lastPlannerEtag")


def linkage_score(task: Dict[str, Any]) -> Tuple[int, float, float]:
    """Ranking key: has a plan reference, then lastSyncAt, then modification time."""
    has_plan = 1 if str(task.get("plannerPlanId") or "").strip() else 0
    last_sync = parse_date_ms(task.get("lastSyncAt"))
    modified = resolve_bc_modified_ms(task)
    return (
        has_plan,
        last_sync if last_sync is not None else -1.0,
        modified if modified is not None else -1.0,
    )


def select_primary(tasks: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Highest-scoring task; ties keep the earliest in list order."""
    best = tasks[0]
    for task in tasks[1:]:
        if linkage_score(task) > linkage_score(best):
            best = task
    return best


def group_by_counterpart(tasks: Iterable[Dict[str, Any]]) -> "OrderedDict[str, List[Dict[str, Any]]]":
    grouped: "OrderedDict[str, List[Dict[str, Any]]]" = OrderedDict()
    for task in tasks:
        counterpart = str(task.get("plannerTaskId") or "").strip()
        if counterpart:
            grouped.setdefault(counterpart, []).append(task)
    return grouped


def _clear_patch(task: Dict[str, Any]) -> Dict[str, Any]:
    patch = {name: "" for name in LINK_FIELDS if name in task}
    if "syncLock" in task:
        patch["syncLock"] = False
    return patch


async def resolve_duplicate_links(bc, tasks: List[Dict[str, Any]]) -> int:
    """Clear links on every non-primary task sharing a counterpart id.

    Tasks are updated in place even when the BC patch fails, so the rest of
    the pass does not treat them as linked.

    Returns:
        Number of BC tasks successfully cleared
    """
    cleared = 0
    for counterpart, group in group_by_counterpart(tasks).items():
        if len(group) <= 1:
            continue
        primary = select_primary(group)
        logger.warning(
            "Duplicate counterpart linkage detected; clearing extras",
            extra_fields={
                "counterpartId": counterpart,
                "count": len(group),
                "keepProjectNo": primary.get("projectNo"),
                "keepTaskNo": primary.get("taskNo"),
            },
        )
        for task in group:
            if task is primary:
                continue
            if await _clear_link(bc, task, counterpart, primary):
                cleared += 1
            for name in LINK_FIELDS:
                task[name] = ""
            task["syncLock"] = False
    if cleared:
        logger.info("Cleared duplicate counterpart links in BC", extra_fields={"cleared": cleared})
    return cleared


async def _clear_link(bc, task: Dict[str, Any], counterpart: str, primary: Dict[str, Any]) -> bool:
    system_id = task.get("systemId")
    if not system_id:
        logger.warning(
            "Duplicate linkage missing systemId; skipping",
            extra_fields={"counterpartId": counterpart, "taskNo": task.get("taskNo")},
        )
        return False
    patch = _clear_patch(task)
    if not patch:
        return False
    try:
        await bc.patch_project_task(system_id, patch)
    except Exception as exc:
        logger.warning(
            "Failed to clear duplicate linkage",
            extra_fields={"counterpartId": counterpart, "taskNo": task.get("taskNo"), "error": str(exc)},
        )
        return False
    logger.warning(
        "Cleared duplicate linkage",
        extra_fields={
            "counterpartId": counterpart,
            "projectNo": task.get("projectNo"),
            "taskNo": task.get("taskNo"),
            "keptTaskNo": primary.get("taskNo"),
        },
    )
    return True


def find_primary_for(tasks: List[Dict[str, Any]], counterpart_id: str) -> Optional[Dict[str, Any]]:
    group = group_by_counterpart(tasks).get(counterpart_id)
    return select_primary(group) if group else None
