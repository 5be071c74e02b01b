"""Shared fixtures: in-memory BC and Dataverse clients with a fixed clock."""

import copy
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parent))

from connectors.errors import BCNotFoundError, DataverseNotFoundError
from core.config import BCConfig, DataverseMappingConfig, PremiumSyncConfig
from core.observability import SyncMetrics
from stores import InMemoryKeyValueStore
from sync.context import SyncContext
from sync.premium_resources import clear_resource_caches

NOW_MS = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc).timestamp() * 1000

ID_FIELDS = {
    "msdyn_projects": "msdyn_projectid",
    "msdyn_projecttasks": "msdyn_projecttaskid",
    "msdyn_projectbuckets": "msdyn_projectbucketid",
    "msdyn_projectteams": "msdyn_projectteamid",
    "msdyn_resourceassignments": "msdyn_resourceassignmentid",
    "bookableresources": "bookableresourceid",
    "msdyn_operationsets": "msdyn_operationsetid",
}


def iso_minutes_ago(minutes: float) -> str:
    moment = datetime.fromtimestamp((NOW_MS - minutes * 60 * 1000) / 1000, tz=timezone.utc)
    return moment.isoformat().replace("+00:00", "Z")


def _parse_filter(expression: Optional[str]) -> List[tuple]:
    """``a eq 'x' and b ne ''`` -> ``[("a", "eq", "x"), ("b", "ne", "")]``."""
    clauses = []
    for clause in (expression or "").split(" and "):
        parts = clause.strip().split(" ", 2)
        if len(parts) != 3:
            continue
        name, op, value = parts
        value = value.strip()
        if value.startswith("'") and value.endswith("'"):
            value = value[1:-1].replace("''", "'")
        clauses.append((name, op, value))
    return clauses


def _matches(row: Dict[str, Any], clauses: List[tuple]) -> bool:
    for name, op, value in clauses:
        current = str(row.get(name) if row.get(name) is not None else "").lower()
        if op == "eq" and current != value.lower():
            return False
        if op == "ne" and current == value.lower():
            return False
    return True


class FakeBusinessCentral:
    """Stores tasks by system id and records every patch."""

    def __init__(self):
        self.config = BCConfig(
            tenant_id="tenant", environment="sandbox", company_id="company", client_id="id", client_secret="secret"
        )
        self.tasks: Dict[str, Dict[str, Any]] = {}
        self.projects: List[Dict[str, Any]] = []
        self.queue: List[Dict[str, Any]] = []
        self.changes: Dict[str, Any] = {"entity_set": None, "items": [], "last_seq": None}
        self.patches: List[tuple] = []
        self.deleted: List[tuple] = []
        self.subscriptions: Dict[str, Dict[str, Any]] = {}
        self.fail_patch_for: set = set()
        self.task_fields: set = set()

    def add_task(self, **fields) -> Dict[str, Any]:
        task = {
            "systemId": str(uuid.uuid4()),
            "projectNo": "PR00042",
            "taskNo": "",
            "description": "",
            "plannerTaskId": "",
            "plannerPlanId": "",
            "plannerBucket": "",
            "lastPlannerEtag": "",
            "lastSyncAt": "",
            "syncLock": False,
            "systemModifiedAt": iso_minutes_ago(60),
        }
        task.update(fields)
        self.tasks[task["systemId"].lower()] = task
        return task

    def add_project(self, project_no: str, description: str = "") -> Dict[str, Any]:
        project = {"systemId": str(uuid.uuid4()), "projectNo": project_no, "description": description}
        self.projects.append(project)
        return project

    def task(self, system_id: str) -> Dict[str, Any]:
        return self.tasks[system_id.lower()]

    async def list_project_tasks(self, filter: Optional[str] = None) -> List[Dict[str, Any]]:
        clauses = _parse_filter(filter)
        return [copy.deepcopy(t) for t in self.tasks.values() if _matches(t, clauses)]

    async def list_projects(self, filter: Optional[str] = None) -> List[Dict[str, Any]]:
        clauses = _parse_filter(filter)
        return [copy.deepcopy(p) for p in self.projects if _matches(p, clauses)]

    async def get_project_task(self, system_id: str) -> Dict[str, Any]:
        task = self.tasks.get(str(system_id).lower())
        if task is None:
            raise BCNotFoundError(f"BC GET projectTasks({system_id}) -> 404: not found", 404)
        return copy.deepcopy(task)

    async def get_project(self, system_id: str) -> Dict[str, Any]:
        for project in self.projects:
            if project["systemId"].lower() == str(system_id).lower():
                return copy.deepcopy(project)
        raise BCNotFoundError(f"BC GET projects({system_id}) -> 404: not found", 404)

    async def patch_project_task(self, system_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if str(system_id).lower() in self.fail_patch_for and set(payload) != {"syncLock"}:
            raise RuntimeError("BC PATCH failed")
        self.patches.append((system_id, dict(payload)))
        task = self.tasks[str(system_id).lower()]
        task.update(payload)
        return copy.deepcopy(task)

    async def find_project_task_by_planner_task_id(self, planner_task_id: str) -> Optional[Dict[str, Any]]:
        for task in self.tasks.values():
            if task.get("plannerTaskId") == planner_task_id:
                return copy.deepcopy(task)
        return None

    async def find_project_task_by_project_and_task_no(self, project_no: str, task_no: str) -> Optional[Dict[str, Any]]:
        for task in self.tasks.values():
            if task.get("projectNo") == project_no and task.get("taskNo") == task_no:
                return copy.deepcopy(task)
        return None

    async def list_project_changes_since(self, last_seq: Optional[int], max_pages: Optional[int] = None) -> Dict[str, Any]:
        items = [
            copy.deepcopy(item)
            for item in self.changes["items"]
            if last_seq is None or item.get("sequenceNo") is None or item["sequenceNo"] > last_seq
        ]
        seqs = [item["sequenceNo"] for item in items if item.get("sequenceNo") is not None]
        latest = max(seqs) if seqs else self.changes["last_seq"]
        if latest is None:
            latest = last_seq
        return {"entity_set": self.changes["entity_set"], "items": items, "last_seq": latest}

    async def get_task_field_names(self) -> set:
        return set(self.task_fields)

    async def has_task_field(self, name: str, record: Optional[Dict[str, Any]] = None) -> bool:
        if self.task_fields:
            return name in self.task_fields
        return record is not None and name in record

    async def list_entity_set(self, entity_set: str, top: Optional[int] = None, max_pages: Optional[int] = None):
        return copy.deepcopy(self.queue)

    async def delete_entity(self, entity_set: str, system_id: str) -> None:
        self.deleted.append((entity_set, system_id))
        self.queue = [row for row in self.queue if row.get("systemId") != system_id]

    async def create_webhook_subscription(self, entity_set: str, notification_url: str, client_state=None):
        subscription = {
            "subscriptionId": f"sub-{entity_set}",
            "resource": f"api/cornerstone/plannerSync/v1.0/companies(company)/{entity_set}",
            "notificationUrl": notification_url,
            "clientState": client_state,
            "expirationDateTime": iso_minutes_ago(-3 * 24 * 60),
        }
        self.subscriptions[subscription["subscriptionId"]] = subscription
        return dict(subscription)

    async def list_webhook_subscriptions(self) -> List[Dict[str, Any]]:
        return [dict(s) for s in self.subscriptions.values()]

    async def renew_webhook_subscription(self, subscription_id: str, expiration_date_time: str, etag: str = "*"):
        if subscription_id not in self.subscriptions:
            raise BCNotFoundError(f"BC PATCH subscriptions('{subscription_id}') -> 404: gone", 404)
        self.subscriptions[subscription_id]["expirationDateTime"] = expiration_date_time
        return dict(self.subscriptions[subscription_id])

    async def delete_webhook_subscription(self, subscription_id: str, etag: str = "*") -> None:
        self.subscriptions.pop(subscription_id, None)


class FakeDataverse:
    """Rows per entity set with just enough OData filtering for the engine.

    Operation sets queue schedule writes and apply them on execute; set
    ``fail_execute`` to make execution raise with nothing applied. Each
    ``capacity_errors`` makes one operation set create fail as over capacity.
    """

    def __init__(self):
        self.rows: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.changes: List[Dict[str, Any]] = []
        self.next_delta_link: Optional[str] = "https://org.example/delta?$deltatoken=2"
        self.delta_links_read: List[Optional[str]] = []
        self.creates: List[tuple] = []
        self.updates: List[tuple] = []
        self.projects_created: List[Dict[str, Any]] = []
        self.operation_sets: Dict[str, List[tuple]] = {}
        self.executed: List[str] = []
        self.fail_execute = False
        self.capacity_errors = 0
        self.on_execute = None
        self._etag = 0

    def _next_etag(self) -> str:
        self._etag += 1
        return f'W/"{self._etag}"'

    def _table(self, entity_set: str) -> Dict[str, Dict[str, Any]]:
        return self.rows.setdefault(entity_set, {})

    def add_row(self, entity_set: str, **fields) -> Dict[str, Any]:
        id_field = ID_FIELDS.get(entity_set, "id")
        row = {id_field: str(uuid.uuid4()), **fields}
        self._table(entity_set)[row[id_field]] = row
        return row

    def _store(self, entity_set: str, record_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        row = self._table(entity_set).setdefault(record_id, {ID_FIELDS.get(entity_set, "id"): record_id})
        for key, value in payload.items():
            if key.endswith("@odata.bind"):
                lookup = key[: -len("@odata.bind")]
                row[f"_{lookup}_value"] = str(value).rsplit("(", 1)[-1].rstrip(")")
            else:
                row[key] = value
        row["@odata.etag"] = self._next_etag()
        return row

    async def list(self, entity_set, select=None, filter=None, order_by=None, expand=None, top=None):
        clauses = _parse_filter(filter)
        rows = [copy.deepcopy(r) for r in self._table(entity_set).values() if _matches(r, clauses)]
        return {"value": rows[:top] if top else rows, "next_link": None, "delta_link": None}

    async def list_all(self, path_or_url, params=None, headers=None, max_pages=None):
        clauses = _parse_filter((params or {}).get("$filter"))
        return [copy.deepcopy(r) for r in self._table(path_or_url).values() if _matches(r, clauses)]

    async def list_changes(self, entity_set, select=None, filter=None, order_by=None, top=None, delta_link=None, max_pages=None):
        self.delta_links_read.append(delta_link)
        return {"value": copy.deepcopy(self.changes), "delta_link": self.next_delta_link}

    async def get_by_id(self, entity_set, record_id, select=None):
        row = self._table(entity_set).get(record_id)
        if row is None:
            raise DataverseNotFoundError(f"Dataverse GET {entity_set}({record_id}) -> 404: Does Not Exist", 404)
        return copy.deepcopy(row)

    async def create(self, entity_set, payload):
        record_id = payload.get(ID_FIELDS.get(entity_set, "")) or str(uuid.uuid4())
        self.creates.append((entity_set, dict(payload)))
        row = self._store(entity_set, record_id, payload)
        return {"entity_id": record_id, "etag": row["@odata.etag"]}

    async def update(self, entity_set, record_id, payload, if_match=None):
        if record_id not in self._table(entity_set):
            raise DataverseNotFoundError(f"Dataverse PATCH {entity_set}({record_id}) -> 404: Does Not Exist", 404)
        self.updates.append((entity_set, record_id, dict(payload), if_match))
        return {"etag": self._store(entity_set, record_id, payload)["@odata.etag"]}

    async def delete(self, entity_set, record_id):
        self._table(entity_set).pop(record_id, None)

    async def create_project(self, payload):
        self.projects_created.append(dict(payload))
        return (await self.create("msdyn_projects", payload))["entity_id"]

    async def request_json(self, method, path_or_url, **kwargs):
        return {"value": []}

    async def create_operation_set(self, project_id, description=None):
        if self.capacity_errors:
            self.capacity_errors -= 1
            raise RuntimeError("ScheduleAPI-OV-0004: maximum number of operation sets allowed per user reached")
        operation_set_id = f"opset-{len(self.operation_sets) + 1}"
        self.operation_sets[operation_set_id] = []
        return operation_set_id

    async def pss_create(self, entity, operation_set_id):
        self.operation_sets[operation_set_id].append(("create", dict(entity)))
        return {}

    async def pss_update(self, entity, operation_set_id):
        self.operation_sets[operation_set_id].append(("update", dict(entity)))
        return {}

    async def execute_operation_set(self, operation_set_id):
        self.executed.append(operation_set_id)
        if self.on_execute:
            self.on_execute(operation_set_id)
        if self.fail_execute:
            raise RuntimeError("Dataverse POST msdyn_ExecuteOperationSetV1 -> 500: operation set failed")
        for kind, entity in self.operation_sets[operation_set_id]:
            entity_set = entity["@odata.type"].rsplit(".", 1)[-1] + "s"
            record_id = entity[ID_FIELDS[entity_set]]
            payload = {k: v for k, v in entity.items() if k != "@odata.type"}
            if kind == "create":
                self.creates.append((entity_set, payload))
            self._store(entity_set, record_id, payload)
        return {}


@pytest.fixture(autouse=True)
def reset_process_state():
    """Metrics and metadata caches are process-wide."""
    SyncMetrics.reset()
    clear_resource_caches()
    yield
    SyncMetrics.reset()


@pytest.fixture
def kv():
    return InMemoryKeyValueStore()


@pytest.fixture
def fake_bc():
    return FakeBusinessCentral()


@pytest.fixture
def fake_dataverse():
    return FakeDataverse()


@pytest.fixture
def now_ms():
    return NOW_MS


@pytest.fixture
def minutes_ago():
    return iso_minutes_ago


@pytest.fixture
def make_context(fake_bc, fake_dataverse, kv):
    """Build a SyncContext over the fakes; keyword args override config fields."""

    def build(**overrides) -> SyncContext:
        config = PremiumSyncConfig(**{"use_schedule_api": False, **overrides})
        return SyncContext(
            bc=fake_bc,
            dataverse=fake_dataverse,
            kv=kv,
            config=config,
            mapping=DataverseMappingConfig(),
            clock=lambda: NOW_MS,
        )

    return build
