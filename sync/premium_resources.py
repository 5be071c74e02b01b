"""Premium-side lookups and provisioning used by the BC -> Premium pass.

Covers project resolution, the per-project task index, buckets, bookable
resources, team membership, resource assignments and operation-set
housekeeping. Lookups that only enrich a write (buckets, resources,
assignments) log and return None on failure; project resolution and task
validation propagate unexpected errors.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from connectors.base import escape_odata_string
from connectors.errors import is_not_found_error
from core.config import DataverseMappingConfig
from core.observability import get_logger
from sync.mapping import build_lookup_binding, build_task_title, format_guid, parse_date_ms

logger = get_logger(__name__)

DEFAULT_OPERATION_SET_ENTITY_SET = "msdyn_operationsets"
OPERATION_SET_SELECT = [
    "msdyn_operationsetid",
    "msdyn_completedon",
    "msdyn_executedon",
    "createdon",
    "modifiedon",
    "statecode",
    "statuscode",
    "msdyn_status",
]
OPERATION_SET_COMPLETED_STATUS = 192350003

# Process-wide metadata caches; entries never change within a deployment.
_lookup_field_cache: Dict[str, Optional[str]] = {}
_operation_set_entity_set: Dict[str, str] = {}
_default_bucket_field: Dict[str, Optional[str]] = {}


def clear_resource_caches() -> None:
    _lookup_field_cache.clear()
    _operation_set_entity_set.clear()
    _default_bucket_field.clear()


def _message(error: BaseException) -> str:
    return str(error).lower()


# =============================================================================
# Error classification
# =============================================================================

def is_operation_set_limit_error(error: BaseException) -> bool:
    message = _message(error)
    return (
        "scheduleapi-ov-0004" in message
        or "maximum number of operation set" in message
        or "maximum number of operationset" in message
        or "operation set allowed per user" in message
    )


def is_operation_set_missing_error(error: BaseException) -> bool:
    message = _message(error)
    return (
        "operationsetdoesnotexist" in message
        or "operation set does not exist" in message
        or "one or more operation sets do not exist" in message
        or is_not_found_error(error)
    )


def is_invalid_default_bucket_error(error: BaseException) -> bool:
    message = _message(error)
    return "e_invaliddefaultbucket" in message or "invalid default bucket" in message


def is_direct_task_write_blocked(error: BaseException) -> bool:
    """Platform refuses plain CRUD on schedule-managed task rows."""
    message = _message(error)
    if "cannot directly do 'update' operation" in message:
        return True
    if "cannot directly do 'create' operation" in message:
        return True
    if "resource editing ui via project" in message:
        return True
    return "msdyn_projecttask" in message and "not supported" in message


def is_duplicate_team_member_error(error: BaseException) -> bool:
    message = _message(error)
    return "duplicate resource" in message or "already a member" in message


# =============================================================================
# Metadata lookups
# =============================================================================

async def resolve_lookup_field(dataverse, entity_logical_name: str, target_logical_name: str) -> Optional[str]:
    """Name of the lookup attribute on ``entity_logical_name`` that targets ``target_logical_name``."""
    key = f"{entity_logical_name}:{target_logical_name}"
    if key in _lookup_field_cache:
        return _lookup_field_cache[key]
    target = target_logical_name.lower()
    base = f"EntityDefinitions(LogicalName='{entity_logical_name}')"
    resolved: Optional[str] = None
    try:
        data = await dataverse.request_json(
            "GET", f"{base}/ManyToOneRelationships?$select=ReferencingAttribute,ReferencedEntity"
        )
        for rel in data.get("value") or []:
            if str(rel.get("ReferencedEntity") or "").lower() == target and rel.get("ReferencingAttribute"):
                resolved = str(rel["ReferencingAttribute"])
                break
    except Exception as exc:
        logger.warning(
            "Dataverse lookup field resolve failed",
            extra_fields={"entity": entity_logical_name, "target": target_logical_name, "error": str(exc)},
        )
    if resolved is None:
        try:
            data = await dataverse.request_json(
                "GET", f"{base}/Attributes/Microsoft.Dynamics.CRM.LookupAttributeMetadata?$select=LogicalName,Targets"
            )
            for attr in data.get("value") or []:
                targets = attr.get("Targets") or []
                if any(str(t).lower() == target for t in targets) and attr.get("LogicalName"):
                    resolved = str(attr["LogicalName"]).strip()
                    break
        except Exception as exc:
            logger.warning(
                "Dataverse lookup attribute resolve failed",
                extra_fields={"entity": entity_logical_name, "target": target_logical_name, "error": str(exc)},
            )
    _lookup_field_cache[key] = resolved
    return resolved


async def get_project_team_lookup_fields(dataverse) -> Dict[str, str]:
    return {
        "project": await resolve_lookup_field(dataverse, "msdyn_projectteam", "msdyn_project") or "msdyn_projectid",
        "resource": await resolve_lookup_field(dataverse, "msdyn_projectteam", "bookableresource")
        or "msdyn_bookableresourceid",
    }


async def get_assignment_lookup_fields(dataverse) -> Dict[str, str]:
    return {
        "project": await resolve_lookup_field(dataverse, "msdyn_resourceassignment", "msdyn_project")
        or "msdyn_projectid",
        "task": await resolve_lookup_field(dataverse, "msdyn_resourceassignment", "msdyn_projecttask")
        or "msdyn_taskid",
        "team": await resolve_lookup_field(dataverse, "msdyn_resourceassignment", "msdyn_projectteam")
        or "msdyn_projectteamid",
    }


# =============================================================================
# Projects
# =============================================================================

def resolve_project_id(entity: Optional[Dict[str, Any]], mapping: DataverseMappingConfig) -> Optional[str]:
    if not entity:
        return None
    value = entity.get(mapping.project_id_field)
    return value.strip() if isinstance(value, str) and value.strip() else None


def resolve_task_id(entity: Optional[Dict[str, Any]], mapping: DataverseMappingConfig) -> Optional[str]:
    if not entity:
        return None
    value = entity.get(mapping.task_id_field)
    return value.strip() if isinstance(value, str) and value.strip() else None


async def resolve_project_from_bc(
    bc,
    dataverse,
    project_no: str,
    mapping: DataverseMappingConfig,
    force_create: bool = False,
) -> Optional[Dict[str, Any]]:
    """Find the Premium project for a BC project number, creating it if needed.

    Lookup order: the BC-number field, then (when enabled) an exact title
    match, then a new project titled ``"{projectNo} - {description}"``.

    Returns:
        A project row (at least the id field), or None when creation
        returned no id
    """
    normalized = (project_no or "").strip()
    if not normalized:
        return None
    escaped = escape_odata_string(normalized)
    select = [f for f in (mapping.project_id_field, mapping.project_title_field, mapping.project_bc_no_field) if f]

    if not force_create and mapping.project_bc_no_field:
        page = await dataverse.list(
            mapping.project_entity_set, select=select, filter=f"{mapping.project_bc_no_field} eq '{escaped}'", top=5
        )
        if page["value"]:
            match = page["value"][0]
            logger.info(
                "Dataverse project resolved by BC project number",
                extra_fields={"projectNo": normalized, "projectId": resolve_project_id(match, mapping)},
            )
            return match

    if not force_create and mapping.allow_project_title_fallback and mapping.project_title_field:
        page = await dataverse.list(
            mapping.project_entity_set, select=select, filter=f"{mapping.project_title_field} eq '{escaped}'", top=5
        )
        if page["value"]:
            match = page["value"][0]
            logger.warning(
                "Dataverse project resolved by title fallback",
                extra_fields={"projectNo": normalized, "projectId": resolve_project_id(match, mapping)},
            )
            return match

    bc_project: Optional[Dict[str, Any]] = None
    try:
        projects = await bc.list_projects(f"projectNo eq '{escaped}'")
        bc_project = projects[0] if projects else None
    except Exception as exc:
        logger.warning("BC project lookup failed", extra_fields={"projectNo": normalized, "error": str(exc)})

    description = str((bc_project or {}).get("description") or "").strip()
    title = f"{normalized} - {description}" if description else normalized
    project_id = await dataverse.create_project({mapping.project_title_field: title})
    if not project_id:
        return None
    logger.info("Dataverse project created for BC project", extra_fields={"projectNo": normalized, "projectId": project_id})
    if mapping.project_bc_no_field:
        try:
            await dataverse.update(mapping.project_entity_set, project_id, {mapping.project_bc_no_field: normalized})
        except Exception as exc:
            logger.warning(
                "Dataverse project BC No update failed",
                extra_fields={"projectNo": normalized, "projectId": project_id, "error": str(exc)},
            )
    created = {mapping.project_id_field: project_id, mapping.project_title_field: title}
    if mapping.project_bc_no_field:
        created[mapping.project_bc_no_field] = normalized
    return created


# =============================================================================
# Tasks
# =============================================================================

def project_filter_field(mapping: DataverseMappingConfig) -> str:
    return mapping.task_project_id_field or f"{mapping.task_project_lookup_field}/{mapping.project_id_field}"


def task_row_fields(mapping: DataverseMappingConfig) -> List[str]:
    """Columns read for a task row: identity plus every synchronized field."""
    fields = [
        mapping.task_id_field,
        mapping.task_title_field,
        mapping.task_bc_no_field,
        mapping.task_start_field,
        mapping.task_finish_field,
        mapping.task_percent_field,
        mapping.task_description_field,
        mapping.task_project_id_field,
        mapping.task_modified_field,
    ]
    return list(dict.fromkeys(f for f in fields if f))


async def validate_task_id_for_project(
    dataverse, task_id: str, project_id: str, mapping: DataverseMappingConfig
) -> bool:
    """True when ``task_id`` exists and belongs to ``project_id``.

    A missing row is False; other lookup failures propagate.
    """
    if not task_id:
        return False
    fields = list(dict.fromkeys(f for f in (mapping.task_id_field, mapping.task_project_id_field, "_msdyn_project_value") if f))
    try:
        entity = await dataverse.get_by_id(mapping.task_entity_set, task_id, fields)
    except Exception as exc:
        if is_not_found_error(exc) or "does not exist" in _message(exc):
            return False
        raise
    if not entity:
        return False
    for name in (mapping.task_project_id_field or "_msdyn_project_value", "_msdyn_project_value"):
        raw = entity.get(name)
        if isinstance(raw, str) and raw.strip():
            return format_guid(raw).lower() == format_guid(project_id).lower()
    logger.warning(
        "Dataverse task project lookup missing; treating cached taskId as invalid",
        extra_fields={"taskId": task_id, "expectedProjectId": project_id, "availableKeys": list(entity)[:20]},
    )
    return False


async def find_task_by_bc_no(
    dataverse, project_id: str, task_no: str, mapping: DataverseMappingConfig
) -> Optional[Dict[str, Any]]:
    if not mapping.task_bc_no_field:
        return None
    filter = (
        f"{mapping.task_bc_no_field} eq '{escape_odata_string(task_no)}' "
        f"and {project_filter_field(mapping)} eq {format_guid(project_id)}"
    )
    try:
        page = await dataverse.list(mapping.task_entity_set, select=task_row_fields(mapping), filter=filter, top=1)
    except Exception as exc:
        logger.warning(
            "Dataverse task lookup failed", extra_fields={"projectId": project_id, "taskNo": task_no, "error": str(exc)}
        )
        return None
    return page["value"][0] if page["value"] else None


async def find_task_by_title(
    dataverse, project_id: str, title: str, mapping: DataverseMappingConfig
) -> Optional[Dict[str, Any]]:
    filter = (
        f"{mapping.task_title_field} eq '{escape_odata_string(title)}' "
        f"and {project_filter_field(mapping)} eq {format_guid(project_id)}"
    )
    try:
        page = await dataverse.list(mapping.task_entity_set, select=task_row_fields(mapping), filter=filter, top=1)
    except Exception as exc:
        logger.warning(
            "Dataverse task title lookup failed", extra_fields={"projectId": project_id, "title": title, "error": str(exc)}
        )
        return None
    return page["value"][0] if page["value"] else None


@dataclass
class TaskIndex:
    """Premium task rows of one project, keyed three ways.

    ``rows`` keeps the last-known field values so an unchanged BC task can be
    recognised without another read.
    """
    rows: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    by_task_no: Dict[str, str] = field(default_factory=dict)
    by_title: Dict[str, str] = field(default_factory=dict)

    def add(self, task_id: str, row: Optional[Dict[str, Any]] = None, task_no: str = "", title: str = "") -> None:
        if not task_id:
            return
        if row is not None:
            self.rows[task_id] = dict(row)
        else:
            self.rows.setdefault(task_id, {})
        if task_no.strip():
            self.by_task_no[task_no.strip()] = task_id
        if title.strip():
            self.by_title[title.strip().lower()] = task_id

    def discard(self, task_id: str) -> None:
        """Forget a task id, e.g. one queued for creation that was never written."""
        self.rows.pop(task_id, None)
        for keyed in (self.by_task_no, self.by_title):
            for key in [k for k, v in keyed.items() if v == task_id]:
                del keyed[key]

    def has(self, task_id: str) -> bool:
        return task_id in self.rows

    def row(self, task_id: str) -> Optional[Dict[str, Any]]:
        row = self.rows.get(task_id)
        return row or None

    def likely_has(self, task: Dict[str, Any], task_only: bool = False) -> bool:
        """Whether the BC task probably already has a Premium row."""
        planner_task_id = str(task.get("plannerTaskId") or "").strip()
        if planner_task_id and planner_task_id in self.rows:
            return True
        task_no = str(task.get("taskNo") or "").strip()
        if task_no and task_no in self.by_task_no:
            return True
        return not task_only and build_task_title(task).lower() in self.by_title


async def load_task_index(dataverse, project_id: str, mapping: DataverseMappingConfig) -> TaskIndex:
    """Read every task row of a project; an empty index on failure."""
    index = TaskIndex()
    if not project_id:
        return index
    params = {
        "$select": ",".join(task_row_fields(mapping)),
        "$filter": f"{project_filter_field(mapping)} eq {format_guid(project_id)}",
    }
    try:
        rows = await dataverse.list_all(
            mapping.task_entity_set, params=params, headers={"Prefer": "odata.maxpagesize=200"}
        )
    except Exception as exc:
        logger.debug(
            "Dataverse task index load failed; continuing without cache",
            extra_fields={"projectId": project_id, "error": str(exc)},
        )
        return index
    for row in rows:
        task_id = resolve_task_id(row, mapping)
        if not task_id:
            continue
        bc_no = row.get(mapping.task_bc_no_field) if mapping.task_bc_no_field else None
        title = row.get(mapping.task_title_field)
        index.add(
            task_id,
            row,
            task_no=bc_no if isinstance(bc_no, str) else "",
            title=title if isinstance(title, str) else "",
        )
    return index


async def get_task_schedule_snapshot(dataverse, task_id: str, mapping: DataverseMappingConfig) -> Dict[str, Any]:
    """Current percent/start/finish of a Premium task."""
    fields = [f for f in (mapping.task_percent_field, mapping.task_start_field, mapping.task_finish_field) if f]
    entity = await dataverse.get_by_id(mapping.task_entity_set, task_id, list(dict.fromkeys(fields))) or {}
    return snapshot_from_row(entity, mapping)


def snapshot_from_row(row: Dict[str, Any], mapping: DataverseMappingConfig) -> Dict[str, Any]:
    percent = row.get(mapping.task_percent_field)
    if percent is not None and not isinstance(percent, (int, float)):
        try:
            percent = float(percent)
        except (TypeError, ValueError):
            percent = None
    start = row.get(mapping.task_start_field)
    finish = row.get(mapping.task_finish_field)
    return {
        "percent": percent,
        "start": start.strip() or None if isinstance(start, str) else None,
        "finish": finish.strip() or None if isinstance(finish, str) else None,
    }


# =============================================================================
# Buckets
# =============================================================================

async def ensure_project_default_bucket(dataverse, project_id: str, bucket_id: str) -> bool:
    binding = build_lookup_binding("msdyn_projectbuckets", bucket_id)
    if not project_id or not binding:
        return False
    if "field" not in _default_bucket_field:
        _default_bucket_field["field"] = await resolve_lookup_field(dataverse, "msdyn_project", "msdyn_projectbucket")
    bucket_field = _default_bucket_field["field"]
    if not bucket_field:
        return False
    try:
        await dataverse.update("msdyn_projects", project_id, {f"{bucket_field}@odata.bind": binding})
        return True
    except Exception as exc:
        logger.warning(
            "Dataverse default bucket update failed",
            extra_fields={"projectId": project_id, "field": bucket_field, "error": str(exc)},
        )
        return False


async def create_project_bucket(dataverse, project_id: str, name: str) -> Optional[str]:
    binding = build_lookup_binding("msdyn_projects", project_id)
    if not binding:
        return None
    try:
        created = await dataverse.create(
            "msdyn_projectbuckets", {"msdyn_name": name, "msdyn_project@odata.bind": binding}
        )
    except Exception as exc:
        logger.warning("Dataverse bucket create failed", extra_fields={"projectId": project_id, "error": str(exc)})
        return None
    return created.get("entity_id") or None


async def get_project_bucket_id(
    dataverse, project_id: str, cache: Dict[str, Optional[str]], attempts: int = 3, retry_delay: float = 0.5
) -> Optional[str]:
    """First bucket of the project, creating a "General" bucket when none exists."""
    if project_id in cache:
        return cache[project_id]
    last_error: Optional[Exception] = None
    for attempt in range(1, attempts + 1):
        try:
            page = await dataverse.list(
                "msdyn_projectbuckets",
                select=["msdyn_projectbucketid"],
                filter=f"_msdyn_project_value eq {format_guid(project_id)}",
                top=1,
            )
            rows = page["value"]
            bucket_id = str(rows[0].get("msdyn_projectbucketid") or "").strip() if rows else ""
            if not bucket_id:
                bucket_id = await create_project_bucket(dataverse, project_id, "General") or ""
            if bucket_id:
                await ensure_project_default_bucket(dataverse, project_id, bucket_id)
                cache[project_id] = bucket_id
                return bucket_id
        except Exception as exc:
            last_error = exc
            logger.warning(
                "Dataverse bucket lookup failed",
                extra_fields={"projectId": project_id, "attempt": attempt, "error": str(exc)},
            )
        if attempt < attempts:
            await asyncio.sleep(attempt * retry_delay)
    if last_error is not None:
        logger.warning(
            "Dataverse bucket unavailable after retries",
            extra_fields={"projectId": project_id, "error": str(last_error)},
        )
    cache[project_id] = None
    return None


# =============================================================================
# Resources, team members and assignments
# =============================================================================

@dataclass
class ResourceCaches:
    """Per-pass memoization for Premium lookups."""
    buckets: Dict[str, Optional[str]] = field(default_factory=dict)
    resources: Dict[str, Optional[str]] = field(default_factory=dict)
    teams: Dict[str, Optional[str]] = field(default_factory=dict)
    assignments: Set[str] = field(default_factory=set)
    assignment_snapshot_loaded: bool = False
    assignment_lookups: Optional[Dict[str, str]] = None


def get_assignee_name(task: Dict[str, Any]) -> str:
    name = str(task.get("assignedPersonName") or "").strip()
    return name or str(task.get("assignedPersonCode") or "").strip()


async def get_bookable_resource_id_by_name(dataverse, name: str, cache: Dict[str, Optional[str]]) -> Optional[str]:
    key = name.lower()
    if key in cache:
        return cache[key]
    try:
        page = await dataverse.list(
            "bookableresources",
            select=["bookableresourceid", "name"],
            filter=f"name eq '{escape_odata_string(name)}'",
            top=1,
        )
        rows = page["value"]
        resolved = str(rows[0].get("bookableresourceid") or "").strip() or None if rows else None
    except Exception as exc:
        logger.debug("Dataverse resource lookup failed", extra_fields={"name": name, "error": str(exc)})
        resolved = None
    cache[key] = resolved
    return resolved


async def get_project_team_member_id(
    dataverse, project_id: str, resource_id: str, cache: Dict[str, Optional[str]]
) -> Optional[str]:
    key = f"{project_id}:{resource_id}"
    if key in cache:
        return cache[key]
    try:
        lookups = await get_project_team_lookup_fields(dataverse)
        filter = (
            f"_{lookups['project']}_value eq {format_guid(project_id)} "
            f"and _{lookups['resource']}_value eq {format_guid(resource_id)}"
        )
        page = await dataverse.list("msdyn_projectteams", select=["msdyn_projectteamid"], filter=filter, top=1)
        rows = page["value"]
        resolved = str(rows[0].get("msdyn_projectteamid") or "").strip() or None if rows else None
    except Exception as exc:
        logger.debug(
            "Dataverse project team lookup failed",
            extra_fields={"projectId": project_id, "resourceId": resource_id, "error": str(exc)},
        )
        resolved = None
    cache[key] = resolved
    return resolved


async def create_project_team_member(
    dataverse, project_id: str, resource_id: str, name: str, cache: Dict[str, Optional[str]]
) -> Optional[str]:
    """Add a bookable resource to the project team; an existing member is reused."""
    lookups = await get_project_team_lookup_fields(dataverse)
    project_binding = build_lookup_binding("msdyn_projects", project_id)
    resource_binding = build_lookup_binding("bookableresources", resource_id)
    if not project_binding or not resource_binding:
        return None
    entity = {
        "@odata.type": "Microsoft.Dynamics.CRM.msdyn_projectteam",
        "msdyn_projectteamid": str(uuid.uuid4()),
        "msdyn_name": name,
        f"{lookups['project']}@odata.bind": project_binding,
        f"{lookups['resource']}@odata.bind": resource_binding,
    }
    try:
        created = await dataverse.create("msdyn_projectteams", entity)
        return created.get("entity_id") or None
    except Exception as exc:
        if is_duplicate_team_member_error(exc):
            cache.pop(f"{project_id}:{resource_id}", None)
            return await get_project_team_member_id(dataverse, project_id, resource_id, cache)
        logger.warning(
            "Dataverse project team create failed",
            extra_fields={"projectId": project_id, "resourceId": resource_id, "error": str(exc)},
        )
        return None


async def preload_project_assignments(dataverse, project_id: str, caches: ResourceCaches) -> None:
    """Seed the assignment cache with every (task, team member) pair of a project."""
    try:
        lookups = await get_assignment_lookup_fields(dataverse)
        task_field = f"_{lookups['task']}_value"
        team_field = f"_{lookups['team']}_value"
        rows = await dataverse.list_all(
            "msdyn_resourceassignments",
            params={
                "$select": f"{task_field},{team_field}",
                "$filter": f"_{lookups['project']}_value eq {format_guid(project_id)}",
            },
            headers={"Prefer": "odata.maxpagesize=500"},
        )
    except Exception as exc:
        logger.debug("Dataverse assignment preload failed", extra_fields={"projectId": project_id, "error": str(exc)})
        return
    for row in rows:
        task_id = str(row.get(task_field) or "").strip()
        team_id = str(row.get(team_field) or "").strip()
        if task_id and team_id:
            caches.assignments.add(f"{task_id}:{team_id}")
    caches.assignment_snapshot_loaded = True
    caches.assignment_lookups = lookups


async def ensure_assignment_for_task(
    dataverse,
    task: Dict[str, Any],
    project_id: str,
    task_id: str,
    caches: ResourceCaches,
    operation_set_id: Optional[str] = None,
) -> bool:
    """Make the BC assignee a team member assigned to the Premium task.

    Each record is created only when absent. Returns True when an
    assignment was created.
    """
    assignee = get_assignee_name(task)
    if not assignee:
        return False
    resource_id = await get_bookable_resource_id_by_name(dataverse, assignee, caches.resources)
    if not resource_id:
        logger.debug(
            "Dataverse resource not found for assignee",
            extra_fields={"projectId": project_id, "taskId": task_id, "assignee": assignee},
        )
        return False
    team_id = await get_project_team_member_id(dataverse, project_id, resource_id, caches.teams)
    if not team_id:
        team_id = await create_project_team_member(dataverse, project_id, resource_id, assignee, caches.teams)
        if team_id:
            caches.teams[f"{project_id}:{resource_id}"] = team_id
    if not team_id:
        logger.debug(
            "Dataverse project team member missing for assignment",
            extra_fields={"projectId": project_id, "taskId": task_id, "assignee": assignee},
        )
        return False

    assignment_key = f"{task_id}:{team_id}"
    if assignment_key in caches.assignments:
        return False
    lookups = caches.assignment_lookups or await get_assignment_lookup_fields(dataverse)
    if not caches.assignment_snapshot_loaded:
        try:
            filter = (
                f"_{lookups['task']}_value eq {format_guid(task_id)} "
                f"and _{lookups['team']}_value eq {format_guid(team_id)}"
            )
            page = await dataverse.list(
                "msdyn_resourceassignments", select=["msdyn_resourceassignmentid"], filter=filter, top=1
            )
            if page["value"]:
                caches.assignments.add(assignment_key)
                return False
        except Exception as exc:
            logger.debug(
                "Dataverse assignment lookup failed",
                extra_fields={"projectId": project_id, "taskId": task_id, "error": str(exc)},
            )

    entity = {
        "@odata.type": "Microsoft.Dynamics.CRM.msdyn_resourceassignment",
        "msdyn_resourceassignmentid": str(uuid.uuid4()),
        "msdyn_name": assignee,
        f"{lookups['project']}@odata.bind": build_lookup_binding("msdyn_projects", project_id),
        f"{lookups['team']}@odata.bind": build_lookup_binding("msdyn_projectteams", team_id),
        f"{lookups['task']}@odata.bind": build_lookup_binding("msdyn_projecttasks", task_id),
    }
    try:
        if operation_set_id:
            await dataverse.pss_create(entity, operation_set_id)
        else:
            await dataverse.create("msdyn_resourceassignments", entity)
    except Exception as exc:
        logger.warning(
            "Dataverse assignment create failed",
            extra_fields={"projectId": project_id, "taskId": task_id, "assignee": assignee, "error": str(exc)},
        )
        return False
    caches.assignments.add(assignment_key)
    return True


# =============================================================================
# Operation sets
# =============================================================================

def extract_operation_set_id(row: Optional[Dict[str, Any]]) -> Optional[str]:
    if not isinstance(row, dict):
        return None
    for key in ("msdyn_operationsetid", "OperationSetId", "operationSetId"):
        value = row.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    for key, value in row.items():
        if key.lower().endswith("operationsetid") and isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def is_terminal_operation_set(row: Dict[str, Any]) -> bool:
    if row.get("msdyn_completedon") or row.get("msdyn_executedon"):
        return True
    state = _as_int(row.get("statecode"))
    if state is not None and state != 0:
        return True
    status = row.get("statuscode")
    return _as_int(status if status is not None else row.get("msdyn_status")) == OPERATION_SET_COMPLETED_STATUS


def operation_set_finished_ms(row: Dict[str, Any]) -> Optional[float]:
    for name in ("msdyn_completedon", "msdyn_executedon", "modifiedon", "createdon"):
        parsed = parse_date_ms(row.get(name))
        if parsed is not None:
            return parsed
    return None


async def resolve_operation_set_entity_set(dataverse) -> str:
    if "value" in _operation_set_entity_set:
        return _operation_set_entity_set["value"]
    entity_set = DEFAULT_OPERATION_SET_ENTITY_SET
    try:
        data = await dataverse.request_json(
            "GET", "EntityDefinitions(LogicalName='msdyn_operationset')?$select=EntitySetName"
        )
        entity_set = str(data.get("EntitySetName") or data.get("entitySetName") or entity_set)
    except Exception as exc:
        logger.warning("Operation set entity set lookup failed", extra_fields={"error": str(exc)})
    _operation_set_entity_set["value"] = entity_set
    return entity_set


async def clear_completed_operation_sets_for_capacity(
    dataverse, now_ms: float, older_than_minutes: int = 0, max_pages: int = 10, max_delete: int = 250
) -> Dict[str, Any]:
    """Delete finished operation sets to free per-user capacity."""
    entity_set = await resolve_operation_set_entity_set(dataverse)
    cutoff_ms = now_ms - max(0, older_than_minutes) * 60 * 1000
    rows = await dataverse.list_all(
        entity_set,
        params={"$select": ",".join(OPERATION_SET_SELECT), "$top": "50"},
        max_pages=max_pages,
    )
    to_delete: List[str] = []
    for row in rows:
        if len(to_delete) >= max_delete:
            break
        if not is_terminal_operation_set(row):
            continue
        finished = operation_set_finished_ms(row)
        if finished is None or finished > cutoff_ms:
            continue
        operation_set_id = extract_operation_set_id(row)
        if operation_set_id:
            to_delete.append(operation_set_id)

    deleted = failed = 0
    for operation_set_id in to_delete:
        try:
            await dataverse.delete(entity_set, operation_set_id)
            deleted += 1
        except Exception as exc:
            failed += 1
            logger.warning(
                "Operation set delete failed during capacity cleanup",
                extra_fields={"operationSetId": operation_set_id, "error": str(exc)},
            )
    return {"entitySet": entity_set, "scanned": len(rows), "considered": len(to_delete), "deleted": deleted, "failed": failed}


async def create_operation_set_with_recovery(dataverse, project_id: str, description: str, now_ms: float) -> str:
    """Create an operation set, clearing finished sets once if capacity is exhausted."""
    try:
        return await dataverse.create_operation_set(project_id, description)
    except Exception as exc:
        if not is_operation_set_limit_error(exc):
            raise
        cleanup = await clear_completed_operation_sets_for_capacity(dataverse, now_ms)
        logger.warning(
            "Dataverse operation set capacity reached; cleaned completed sets and retrying",
            extra_fields={"projectId": project_id, "error": str(exc), **cleanup},
        )
        return await dataverse.create_operation_set(project_id, description)


async def cleanup_operation_set(dataverse, operation_set_id: str, now_ms: float, min_age_minutes: int) -> bool:
    """Delete an executed operation set once it is older than ``min_age_minutes``."""
    if not operation_set_id:
        return False
    entity_set = await resolve_operation_set_entity_set(dataverse)
    try:
        row = await dataverse.get_by_id(entity_set, operation_set_id, OPERATION_SET_SELECT)
    except Exception as exc:
        if not is_operation_set_missing_error(exc):
            logger.warning(
                "Dataverse operation set cleanup lookup failed",
                extra_fields={"operationSetId": operation_set_id, "error": str(exc)},
            )
        return False
    if not row or not is_terminal_operation_set(row):
        return False
    finished = operation_set_finished_ms(row)
    if finished is None or now_ms - finished < min_age_minutes * 60 * 1000:
        return False
    try:
        await dataverse.delete(entity_set, operation_set_id)
    except Exception as exc:
        if not is_operation_set_missing_error(exc):
            logger.warning(
                "Dataverse operation set cleanup failed",
                extra_fields={"operationSetId": operation_set_id, "error": str(exc)},
            )
        return False
    return True


async def cleanup_unused_operation_set(dataverse, operation_set_id: str) -> None:
    if not operation_set_id:
        return
    try:
        entity_set = await resolve_operation_set_entity_set(dataverse)
        await dataverse.delete(entity_set, operation_set_id)
    except Exception as exc:
        if not is_operation_set_missing_error(exc):
            logger.warning(
                "Dataverse unused operation set cleanup failed",
                extra_fields={"operationSetId": operation_set_id, "error": str(exc)},
            )
