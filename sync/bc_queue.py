"""BC ``premiumSyncQueue`` reader.

BC writes one queue row per changed project or task. A row without a task
system id asks for a full project pass; a row with one narrows the pass to
that task. Rows are deleted once their project pass succeeds.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from connectors.errors import is_not_found_error
from core.observability import get_logger
from sync.mapping import parse_date_ms

logger = get_logger(__name__)

QUEUE_TIME_FIELDS = (
    "changedAt",
    "systemModifiedAt",
    "lastModifiedDateTime",
    "modifiedAt",
    "modifiedOn",
    "lastModifiedOn",
    "systemModifiedOn",
    "createdAt",
    "createdOn",
    "systemCreatedAt",
)


def normalize_system_id(raw: Any) -> str:
    value = str(raw or "").strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        value = value[1:-1]
    if value.startswith("{") and value.endswith("}"):
        value = value[1:-1]
    return value.strip()


def canonical_system_id(raw: Any) -> str:
    return normalize_system_id(raw).lower()


def latest_timestamp_ms(record: Dict[str, Any]) -> Optional[float]:
    for name in QUEUE_TIME_FIELDS:
        value = record.get(name)
        parsed = parse_date_ms(value if isinstance(value, str) else None)
        if parsed is not None:
            return parsed
    return None


@dataclass
class QueueEntryRef:
    entry_id: str
    project_no: str
    task_system_id: str = ""


@dataclass
class BcQueueTargets:
    entries: List[Dict[str, Any]] = field(default_factory=list)
    project_nos: List[str] = field(default_factory=list)
    task_ids_by_project: Dict[str, Set[str]] = field(default_factory=dict)
    entries_by_project: Dict[str, List[QueueEntryRef]] = field(default_factory=dict)
    full_sync_projects: Set[str] = field(default_factory=set)
    latest_changed_ms: Optional[float] = None

    def task_ids_for(self, project_no: str) -> Optional[Set[str]]:
        """Targeted task ids, or None when the project needs a full pass."""
        if project_no in self.full_sync_projects:
            return None
        return self.task_ids_by_project.get(project_no)


async def load_bc_queue_entries(bc) -> List[Dict[str, Any]]:
    config = bc.config
    if not config.queue_entity_set:
        return []
    return await bc.list_entity_set(
        config.queue_entity_set, top=config.queue_page_size, max_pages=config.queue_max_pages
    )


async def resolve_bc_queue_targets(bc) -> BcQueueTargets:
    """Group queue rows by project, resolving task rows to their real project.

    Raises:
        ConnectorApiError: the queue or a task lookup failed with anything
            other than 404
    """
    config = bc.config
    targets = BcQueueTargets(entries=await load_bc_queue_entries(bc))
    task_cache: Dict[str, Optional[Dict[str, Any]]] = {}
    seen_projects: Dict[str, None] = {}

    def bump(ms: Optional[float]) -> None:
        if ms is not None and (targets.latest_changed_ms is None or ms > targets.latest_changed_ms):
            targets.latest_changed_ms = ms

    for record in targets.entries:
        record = record or {}
        project_no = str(record.get(config.queue_project_no_field) or "").strip()
        task_system_id = canonical_system_id(record.get(config.queue_task_system_id_field))
        bump(latest_timestamp_ms(record))

        if task_system_id:
            if task_system_id not in task_cache:
                try:
                    task_cache[task_system_id] = await bc.get_project_task(task_system_id) or None
                except Exception as exc:
                    if not is_not_found_error(exc):
                        raise
                    task_cache[task_system_id] = None
            task = task_cache[task_system_id]
            if task:
                bump(latest_timestamp_ms(task))
                task_project = str(task.get("projectNo") or "").strip()
                if task_project:
                    project_no = task_project

        if not project_no:
            continue
        seen_projects[project_no] = None
        entry_id = normalize_system_id(record.get("systemId") or record.get("id") or record.get("entryId"))
        if entry_id:
            targets.entries_by_project.setdefault(project_no, []).append(
                QueueEntryRef(entry_id, project_no, task_system_id)
            )
        if not task_system_id:
            targets.full_sync_projects.add(project_no)
            continue
        if project_no not in targets.full_sync_projects:
            targets.task_ids_by_project.setdefault(project_no, set()).add(task_system_id)

    targets.project_nos = list(seen_projects)
    return targets


async def delete_queue_entries(
    bc,
    refs: List[QueueEntryRef],
    succeeded: Set[str],
    full_scope: bool,
    project_ok: bool,
) -> int:
    """Delete queue rows whose work is done.

    Args:
        succeeded: Canonical system ids of tasks written or skipped cleanly
        full_scope: The pass covered every task of the project
        project_ok: The project pass read tasks and had no errors

    Returns:
        Number of rows deleted
    """
    entity_set = bc.config.queue_entity_set
    if not entity_set:
        return 0
    deleted = 0
    seen: Set[str] = set()
    for ref in refs:
        if not ref.entry_id or ref.entry_id in seen:
            continue
        seen.add(ref.entry_id)
        if ref.task_system_id:
            done = ref.task_system_id in succeeded or (full_scope and project_ok)
        else:
            done = project_ok
        if not done:
            continue
        try:
            await bc.delete_entity(entity_set, ref.entry_id)
            deleted += 1
        except Exception as exc:
            logger.warning(
                "BC queue entry delete failed",
                extra_fields={"projectNo": ref.project_no, "queueEntryId": ref.entry_id, "error": str(exc)},
            )
    return deleted
