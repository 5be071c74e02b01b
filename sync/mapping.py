"""Field mapping between BC project tasks and Premium (Dataverse) task rows.

BC task schemas differ per deployment, so BC values are read from a list of
candidate field names and "present but empty" is distinguished from "absent":
a present-but-empty value clears the counterpart field, an absent one leaves
it alone.
"""

import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from core.config import DataverseMappingConfig

BC_DESCRIPTION_FIELDS = ["description", "taskDescription", "title", "name"]
BC_PERCENT_FIELDS = ["percentComplete", "percentcomplete", "percentCompleted", "percentageComplete", "completionPercent"]
BC_START_FIELDS = ["manualStartDate", "startDate", "plannedStartDate", "plannedStart", "startingDate"]
BC_FINISH_FIELDS = ["manualEndDate", "endDate", "plannedEndDate", "plannedEnd", "finishDate", "dueDate"]
BC_MODIFIED_FIELDS = ["systemModifiedAt", "lastModifiedDateTime", "modifiedAt"]

# Dataverse cannot store dates before 1753-01-01.
MIN_PLATFORM_YEAR = 1753
MIN_PLATFORM_MS = datetime(MIN_PLATFORM_YEAR, 1, 1, tzinfo=timezone.utc).timestamp() * 1000

_GUID = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")
_DATE_ONLY = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_DATE_PREFIX = re.compile(r"^(\d{4}-\d{2}-\d{2})")


# =============================================================================
# Ids and timestamps
# =============================================================================

def format_guid(value: str) -> str:
    return str(value or "").strip().lstrip("{").rstrip("}")


def is_guid(value: Any) -> bool:
    return bool(value) and bool(_GUID.match(format_guid(str(value))))


def has_field(record: Dict[str, Any], name: str) -> bool:
    return name in record


def parse_date_ms(value: Any) -> Optional[float]:
    """Parse an ISO date/datetime into epoch milliseconds (None if invalid)."""
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp() * 1000


def format_iso_ms(ms: Optional[float]) -> Optional[str]:
    """Epoch milliseconds as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    if ms is None or not math.isfinite(ms):
        return None
    moment = datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def utc_now_iso(now_ms: Optional[float] = None) -> str:
    if now_ms is None:
        now_ms = datetime.now(timezone.utc).timestamp() * 1000
    return format_iso_ms(now_ms)


def resolve_task_date(value: Any) -> Optional[str]:
    """Normalize a BC date for Premium.

    Date-only values are pinned to 12:00 UTC so time zones cannot shift the
    day. Dates before 1753 are unrepresentable and dropped.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    match = _DATE_ONLY.match(text)
    if match:
        year, month, day = (int(part) for part in match.groups())
        if year < MIN_PLATFORM_YEAR or not month or not day:
            return None
        try:
            moment = datetime(year, month, day, 12, tzinfo=timezone.utc)
        except ValueError:
            return None
        return format_iso_ms(moment.timestamp() * 1000)
    parsed = parse_date_ms(text)
    if parsed is None or parsed < MIN_PLATFORM_MS:
        return None
    return format_iso_ms(parsed)


def to_bc_date(value: Any) -> Optional[str]:
    """Premium datetime -> BC ``YYYY-MM-DD``."""
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    match = _DATE_PREFIX.match(text)
    if match:
        return match.group(1)
    parsed = parse_date_ms(text)
    if parsed is None:
        return None
    return datetime.fromtimestamp(parsed / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


def resolve_bc_modified_ms(task: Dict[str, Any]) -> Optional[float]:
    for name in BC_MODIFIED_FIELDS:
        value = task.get(name)
        if isinstance(value, str) and value:
            return parse_date_ms(value)
    return None


def resolve_dataverse_modified_ms(entity: Optional[Dict[str, Any]], mapping: DataverseMappingConfig) -> Optional[float]:
    if not entity:
        return None
    field = mapping.task_modified_field or "modifiedon"
    raw = entity.get(field)
    if raw is None:
        raw = entity.get("modifiedon", entity.get("modifiedOn"))
    return parse_date_ms(raw if isinstance(raw, str) else (str(raw) if raw is not None else None))


# =============================================================================
# Percent complete
# =============================================================================

def _to_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        try:
            number = float(str(value).strip())
        except ValueError:
            return None
    return number if math.isfinite(number) else None


def to_dataverse_percent(value: Any, scale: float, minimum: float, maximum: float) -> Optional[float]:
    """Rescale a BC percent (0-100) into Premium's range and clamp it."""
    number = _to_number(value)
    if number is None:
        return None
    raw = number if not scale or scale == 1 else number / scale
    if not math.isfinite(raw):
        return None
    lower = minimum if math.isfinite(minimum) else 0.0
    upper = maximum if math.isfinite(maximum) else 100.0
    if scale == 1 and upper <= 1 and raw > upper and number <= 100:
        raw = number / 100
    return max(lower, min(upper, raw))


def from_dataverse_percent(value: Any, scale: float) -> Optional[float]:
    if not isinstance(value, (int, float)) or isinstance(value, bool) or math.isnan(value):
        return None
    if not scale or scale == 1:
        return float(value)
    return float(value) * scale


def normalize_bc_percent(value: Optional[float]) -> Optional[int]:
    """Round to an integer percent clamped to 0..100."""
    if value is None or not math.isfinite(value):
        return None
    rounded = int(math.floor(value + 0.5))
    return max(0, min(100, rounded))


# =============================================================================
# BC field resolution
# =============================================================================

@dataclass
class BcTaskField:
    present: bool
    value: Any = None


@dataclass
class BcTaskSyncFields:
    title: str
    description: BcTaskField
    percent: BcTaskField
    start: BcTaskField
    finish: BcTaskField


def _has_usable_value(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


def read_bc_task_field(task: Dict[str, Any], candidates: Iterable[str]) -> BcTaskField:
    """First usable value among ``candidates``; presence is tracked separately."""
    found = False
    first_present = None
    for name in candidates:
        if name in task:
            value = task[name]
            if not found:
                found = True
                first_present = value
            if _has_usable_value(value):
                return BcTaskField(True, value)
    return BcTaskField(True, first_present) if found else BcTaskField(False, None)


def _trimmed_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def resolve_bc_task_sync_fields(task: Dict[str, Any]) -> BcTaskSyncFields:
    raw_description = read_bc_task_field(task, BC_DESCRIPTION_FIELDS)
    description = BcTaskField(raw_description.present, _trimmed_or_none(raw_description.value))

    raw_percent = read_bc_task_field(task, BC_PERCENT_FIELDS)
    percent = BcTaskField(raw_percent.present, _to_number(raw_percent.value) if raw_percent.present else None)

    def date_field(candidates: List[str]) -> BcTaskField:
        raw = read_bc_task_field(task, candidates)
        if not raw.present:
            return BcTaskField(False, None)
        return BcTaskField(True, resolve_task_date(_trimmed_or_none(raw.value)))

    task_no = str(task.get("taskNo") or "").strip()
    return BcTaskSyncFields(
        title=description.value or task_no or "Untitled Task",
        description=description,
        percent=percent,
        start=date_field(BC_START_FIELDS),
        finish=date_field(BC_FINISH_FIELDS),
    )


def build_task_title(task: Dict[str, Any]) -> str:
    return resolve_bc_task_sync_fields(task).title


# =============================================================================
# Payload builders
# =============================================================================

def build_lookup_binding(entity_set: str, record_id: str) -> str:
    trimmed = (entity_set or "").strip().lstrip("/")
    clean_id = format_guid(record_id)
    if not trimmed or not clean_id:
        return ""
    return f"/{trimmed}({clean_id})"


def _finish_allowed(start: Optional[str], finish: str) -> bool:
    if not start:
        return True
    start_ms, finish_ms = parse_date_ms(start), parse_date_ms(finish)
    return start_ms is None or finish_ms is None or finish_ms >= start_ms


def build_task_payload(
    task: Dict[str, Any],
    project_id: str,
    mapping: DataverseMappingConfig,
    fields: Optional[BcTaskSyncFields] = None,
) -> Dict[str, Any]:
    """Direct-write payload for a Premium task row.

    A finish earlier than the start is left out rather than rejected.
    """
    fields = fields or resolve_bc_task_sync_fields(task)
    payload: Dict[str, Any] = {mapping.task_title_field: fields.title}

    start, finish = fields.start.value, fields.finish.value
    if start:
        payload[mapping.task_start_field] = start
    elif fields.start.present:
        payload[mapping.task_start_field] = None
    if finish:
        if _finish_allowed(start, finish):
            payload[mapping.task_finish_field] = finish
    elif fields.finish.present:
        payload[mapping.task_finish_field] = None

    percent = to_dataverse_percent(fields.percent.value, mapping.percent_scale, mapping.percent_min, mapping.percent_max)
    if percent is not None:
        payload[mapping.task_percent_field] = percent
    elif fields.percent.present:
        payload[mapping.task_percent_field] = None

    if mapping.task_description_field:
        if fields.description.value:
            payload[mapping.task_description_field] = fields.description.value
        elif fields.description.present:
            payload[mapping.task_description_field] = None

    task_no = str(task.get("taskNo") or "").strip()
    if mapping.task_bc_no_field and task_no:
        payload[mapping.task_bc_no_field] = task_no

    binding = build_lookup_binding(mapping.project_entity_set, project_id)
    if binding:
        payload[f"{mapping.task_project_lookup_field}@odata.bind"] = binding
    return payload


def build_schedule_task_entity(
    task_id: str,
    project_id: str,
    task: Dict[str, Any],
    mapping: DataverseMappingConfig,
    mode: str = "update",
    bucket_id: Optional[str] = None,
    fields: Optional[BcTaskSyncFields] = None,
    snapshot: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Entity body for ``msdyn_PssCreateV1`` / ``msdyn_PssUpdateV1``.

    The schedule API cannot null a field, so on update absent BC values fall
    back to ``snapshot`` (the row's current values) instead.
    """
    is_create = mode == "create"
    fields = fields or resolve_bc_task_sync_fields(task)
    snapshot = snapshot or {}
    entity: Dict[str, Any] = {
        "@odata.type": "Microsoft.Dynamics.CRM.msdyn_projecttask",
        mapping.task_id_field: task_id,
        mapping.task_title_field: fields.title,
    }
    task_no = str(task.get("taskNo") or "").strip()
    if is_create and mapping.task_bc_no_field and task_no:
        entity[mapping.task_bc_no_field] = task_no

    start = fields.start.value if fields.start.value or is_create else snapshot.get("start")
    finish = fields.finish.value if fields.finish.value or is_create else snapshot.get("finish")
    if start:
        entity[mapping.task_start_field] = start
    if finish and _finish_allowed(start, finish):
        entity[mapping.task_finish_field] = finish

    percent = to_dataverse_percent(fields.percent.value, mapping.percent_scale, mapping.percent_min, mapping.percent_max)
    if percent is None and not is_create:
        percent = snapshot.get("percent")
    if percent is not None:
        entity[mapping.task_percent_field] = percent

    if mapping.task_description_field:
        if fields.description.value:
            entity[mapping.task_description_field] = fields.description.value
        elif not is_create and fields.description.present:
            entity[mapping.task_description_field] = None

    if is_create:
        binding = build_lookup_binding(mapping.project_entity_set, project_id)
        if binding:
            entity[f"{mapping.task_project_lookup_field}@odata.bind"] = binding
        if bucket_id:
            entity["msdyn_projectbucket@odata.bind"] = build_lookup_binding("msdyn_projectbuckets", bucket_id)
    return entity


def _values_equal(expected: Any, current: Any) -> bool:
    if expected is None or current is None:
        return expected is None and (current is None or current == "")
    if isinstance(expected, (int, float)) and not isinstance(expected, bool):
        number = _to_number(current)
        return number is not None and abs(number - float(expected)) < 1e-6
    if isinstance(expected, str):
        expected_ms, current_ms = parse_date_ms(expected), parse_date_ms(current)
        if expected_ms is not None and current_ms is not None:
            return expected_ms == current_ms
        return expected.strip() == str(current).strip()
    return expected == current


def payload_matches_row(payload: Dict[str, Any], row: Optional[Dict[str, Any]], mapping: DataverseMappingConfig) -> bool:
    """True when writing ``payload`` would not change ``row``.

    The project binding is compared against the row's project lookup value.
    """
    if not row:
        return False
    for key, expected in payload.items():
        if key.startswith("@odata."):
            continue
        if key.endswith("@odata.bind"):
            current_project = row.get(mapping.task_project_id_field)
            if current_project is None:
                continue
            if format_guid(str(current_project)).lower() not in str(expected).lower():
                return False
            continue
        if key == mapping.task_id_field:
            continue
        if key not in row:
            return False
        if not _values_equal(expected, row.get(key)):
            return False
    return True


# =============================================================================
# Premium -> BC
# =============================================================================

def build_bc_patch(task: Dict[str, Any], updates: Dict[str, Any], field_names: Optional[Iterable[str]] = None) -> Dict[str, Any]:
    """Keep only updates for fields the BC task schema actually exposes."""
    known = set(field_names) if field_names else set(task.keys())
    return {key: value for key, value in updates.items() if key in known}


def build_bc_update_from_premium(
    bc_task: Dict[str, Any],
    premium_task: Dict[str, Any],
    mapping: DataverseMappingConfig,
    field_names: Optional[Iterable[str]] = None,
    now_iso: Optional[str] = None,
) -> Dict[str, Any]:
    updates: Dict[str, Any] = {
        "lastSyncAt": now_iso or utc_now_iso(),
        "lastPlannerEtag": premium_task.get("@odata.etag"),
    }
    title = premium_task.get(mapping.task_title_field)
    if isinstance(title, str) and title.strip():
        updates["description"] = title.strip()

    percent = from_dataverse_percent(premium_task.get(mapping.task_percent_field), mapping.percent_scale)
    bc_percent = normalize_bc_percent(percent)
    if bc_percent is not None:
        updates["percentComplete"] = bc_percent

    for source, target in ((mapping.task_start_field, "manualStartDate"), (mapping.task_finish_field, "manualEndDate")):
        if source in premium_task:
            value = premium_task[source]
            if isinstance(value, str):
                updates[target] = to_bc_date(value)
            elif value is None:
                updates[target] = None
    return build_bc_patch(bc_task, updates, field_names)


def bc_patch_has_changes(bc_task: Dict[str, Any], patch: Dict[str, Any]) -> bool:
    """False when every field in ``patch`` already holds that value.

    ``lastSyncAt`` is bookkeeping and ignored; a new ETag counts as a change.
    """
    for key, value in patch.items():
        if key in ("lastSyncAt", "syncLock"):
            continue
        current = bc_task.get(key)
        if key in ("manualStartDate", "manualEndDate"):
            if (to_bc_date(current) if isinstance(current, str) else current) != value:
                if not (value is None and current in ("", "0001-01-01")):
                    return True
            continue
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            number = _to_number(current)
            if number is None or abs(number - value) > 1e-6:
                return True
            continue
        if current != value:
            return True
    return False


def is_bc_changed_since_last_sync(bc_task: Dict[str, Any], grace_ms: float) -> bool:
    """True when BC was modified more than ``grace_ms`` after the last sync."""
    last_sync = parse_date_ms(bc_task.get("lastSyncAt"))
    modified = resolve_bc_modified_ms(bc_task)
    if last_sync is None or modified is None:
        return False
    return modified - last_sync > grace_ms
