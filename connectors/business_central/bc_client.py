"""Business Central HTTP Client.

Client for the custom ``plannerSync`` API pages exposed by the BC extension:
projects, project tasks, the project change feed, the ``premiumSyncQueue``
entity and API webhook subscriptions.

Field capability checks (``has_task_field``) read the task entity type from
``$metadata`` once per process; the change-feed entity set name is resolved
the same way because it varies by deployment.
"""

import logging
import re
import xml.etree.ElementTree as ET
from typing import Any, Dict, List, Optional, Set

from connectors.auth import ClientCredentialsAuth
from connectors.base import ApiClient, escape_odata_string
from connectors.errors import BCApiError
from core.config import BCConfig, HttpRetryConfig, get_bc_config

logger = logging.getLogger(__name__)

CHANGE_FEED_CANDIDATES = ("projectChanges", "projectChangeFeed", "projectChangeLog")
TASK_ENTITY_SET = "projectTasks"
PROJECT_ENTITY_SET = "projects"

# Process-wide caches keyed by company URL
_change_entity_set_cache: Dict[str, Optional[str]] = {}
_task_field_cache: Dict[str, Set[str]] = {}
_metadata_cache: Dict[str, Optional[ET.Element]] = {}


def clear_metadata_caches() -> None:
    """Forget cached $metadata lookups (tests, redeployments)."""
    _change_entity_set_cache.clear()
    _task_field_cache.clear()
    _metadata_cache.clear()


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def parse_entity_sets(root: ET.Element) -> Dict[str, str]:
    """Map entity set name -> entity type name from an EDMX document."""
    result: Dict[str, str] = {}
    for element in root.iter():
        if _local_name(element.tag) == "EntitySet":
            name = element.get("Name")
            entity_type = element.get("EntityType", "")
            if name:
                result[name] = entity_type.rsplit(".", 1)[-1]
    return result


def parse_entity_type_properties(root: ET.Element, type_name: str) -> Set[str]:
    """Collect property names declared on an entity type."""
    for element in root.iter():
        if _local_name(element.tag) == "EntityType" and element.get("Name") == type_name:
            return {
                child.get("Name")
                for child in element
                if _local_name(child.tag) in ("Property", "NavigationProperty") and child.get("Name")
            }
    return set()


class BusinessCentralClient(ApiClient):
    """Client for the BC custom API.

    Usage:
        async with BusinessCentralClient() as bc:
            tasks = await bc.list_project_tasks("projectNo eq 'PR00001'")
    """

    error_cls = BCApiError

    def __init__(
        self,
        config: Optional[BCConfig] = None,
        retry: Optional[HttpRetryConfig] = None,
        session=None,
    ):
        self.config = config or get_bc_config()
        auth = ClientCredentialsAuth(
            self.config.tenant_id,
            self.config.client_id,
            self.config.client_secret,
            self.config.scope,
        )
        super().__init__(auth, self.config.company_url, retry=retry, session=session)

    @property
    def subscriptions_url(self) -> str:
        return f"{self.config.environment_url}/api/v2.0/subscriptions"

    # =========================================================================
    # Projects and tasks
    # =========================================================================

    async def list_project_tasks(self, filter: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {"$filter": filter} if filter else None
        return await self.list_all(TASK_ENTITY_SET, params=params)

    async def list_projects(self, filter: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {"$filter": filter} if filter else None
        return await self.list_all(PROJECT_ENTITY_SET, params=params)

    async def get_project_task(self, system_id: str) -> Dict[str, Any]:
        return await self.request_json("GET", f"{TASK_ENTITY_SET}({system_id})")

    async def get_project(self, system_id: str) -> Dict[str, Any]:
        return await self.request_json("GET", f"{PROJECT_ENTITY_SET}({system_id})")

    async def patch_project_task(self, system_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """PATCH a project task with ``If-Match: *``.

        Raises:
            ValueError: system_id is empty
            BCApiError: the update was rejected
        """
        if not system_id:
            raise ValueError("patch_project_task requires a systemId")
        return await self.request_json(
            "PATCH",
            f"{TASK_ENTITY_SET}({system_id})",
            json_body=payload,
            headers={"If-Match": "*"},
        )

    async def find_project_task_by_planner_task_id(self, planner_task_id: str) -> Optional[Dict[str, Any]]:
        tasks = await self.list_project_tasks(f"plannerTaskId eq '{escape_odata_string(planner_task_id)}'")
        if not tasks:
            return None
        if len(tasks) > 1:
            logger.warning(f"Multiple BC tasks found for counterpart task {planner_task_id} (count={len(tasks)})")
        return tasks[0]

    async def find_project_task_by_project_and_task_no(
        self, project_no: str, task_no: str
    ) -> Optional[Dict[str, Any]]:
        tasks = await self.list_project_tasks(
            f"projectNo eq '{escape_odata_string(project_no)}' and taskNo eq '{escape_odata_string(task_no)}'"
        )
        return tasks[0] if tasks else None

    # =========================================================================
    # Generic entity sets (sync queue)
    # =========================================================================

    async def list_entity_set(
        self,
        entity_set: str,
        top: Optional[int] = None,
        filter: Optional[str] = None,
        max_pages: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, str] = {}
        if top:
            params["$top"] = str(top)
        if filter:
            params["$filter"] = filter
        return await self.list_all(entity_set, params=params or None, max_pages=max_pages)

    async def delete_entity(self, entity_set: str, system_id: str) -> None:
        await self.request("DELETE", f"{entity_set}({system_id})", headers={"If-Match": "*"})

    # =========================================================================
    # Metadata
    # =========================================================================

    async def get_metadata(self) -> Optional[ET.Element]:
        """Fetch and parse ``$metadata`` once per process; None if unavailable."""
        key = self.config.company_url
        if key in _metadata_cache:
            return _metadata_cache[key]
        metadata_url = self.config.company_url.rsplit("/companies(", 1)[0] + "/$metadata"
        try:
            response = await self.request("GET", metadata_url, headers={"Accept": "application/xml"})
            root = ET.fromstring(response.text)
        except (BCApiError, ET.ParseError) as exc:
            logger.warning(f"BC $metadata unavailable: {exc}")
            root = None
        _metadata_cache[key] = root
        return root

    async def resolve_change_entity_set(self) -> Optional[str]:
        """Pick the change-feed entity set name for this deployment.

        Returns:
            The configured override, else the first candidate present in
            ``$metadata``, else None when no change feed is exposed
        """
        key = self.config.company_url
        if key in _change_entity_set_cache:
            return _change_entity_set_cache[key]
        candidates = list(CHANGE_FEED_CANDIDATES)
        if self.config.changes_entity_set:
            candidates.insert(0, self.config.changes_entity_set)
        root = await self.get_metadata()
        resolved: Optional[str] = None
        if root is not None:
            entity_sets = parse_entity_sets(root)
            resolved = next((name for name in candidates if name in entity_sets), None)
        elif self.config.changes_entity_set:
            resolved = self.config.changes_entity_set
        if resolved:
            logger.info(f"BC change feed entity set resolved: {resolved}")
        else:
            logger.warning("BC change feed entity set not found in $metadata")
        _change_entity_set_cache[key] = resolved
        return resolved

    async def list_project_changes_since(self, last_seq: Optional[int], max_pages: Optional[int] = None) -> Dict[str, Any]:
        """Read change-feed rows with ``sequenceNo`` greater than the cursor.

        Returns:
            ``{"items": [...], "last_seq": int|None, "page_count": int, "entity_set": str|None}``
            where ``last_seq`` is the highest sequence number read (or the
            input cursor when nothing new was found)
        """
        entity_set = await self.resolve_change_entity_set()
        if not entity_set:
            return {"items": [], "last_seq": last_seq, "page_count": 0, "entity_set": None}
        params = {"$orderby": "sequenceNo"}
        if last_seq is not None:
            params["$filter"] = f"sequenceNo gt {int(last_seq)}"

        items: List[Dict[str, Any]] = []
        next_url: Optional[str] = entity_set
        next_params: Optional[Dict[str, str]] = params
        page_count = 0
        while next_url:
            data = await self.request_json("GET", next_url, params=next_params)
            value = data.get("value")
            if isinstance(value, list):
                items.extend(value)
            page_count += 1
            next_url = data.get("@odata.nextLink")
            next_params = None
            if max_pages is not None and page_count >= max_pages:
                break

        highest = last_seq
        for item in items:
            seq = item.get("sequenceNo")
            if isinstance(seq, (int, float)) and (highest is None or seq > highest):
                highest = int(seq)
        return {"items": items, "last_seq": highest, "page_count": page_count, "entity_set": entity_set}

    async def get_task_field_names(self) -> Set[str]:
        """Property names of the project task entity type (empty when unknown)."""
        key = self.config.company_url
        if key in _task_field_cache:
            return _task_field_cache[key]
        root = await self.get_metadata()
        fields: Set[str] = set()
        if root is not None:
            type_name = parse_entity_sets(root).get(TASK_ENTITY_SET)
            if type_name:
                fields = parse_entity_type_properties(root, type_name)
        _task_field_cache[key] = fields
        return fields

    async def has_task_field(self, name: str, record: Optional[Dict[str, Any]] = None) -> bool:
        """True when the task schema exposes ``name``.

        Falls back to the keys on ``record`` when metadata is unavailable.
        """
        fields = await self.get_task_field_names()
        if fields:
            return name in fields
        return record is not None and name in record

    # =========================================================================
    # Webhook subscriptions
    # =========================================================================

    def subscription_resource(self, entity_set: str) -> str:
        return (
            f"api/{self.config.publisher}/{self.config.group}/{self.config.version}"
            f"/companies({self.config.company_id})/{entity_set}"
        )

    async def create_webhook_subscription(
        self,
        entity_set: str,
        notification_url: str,
        client_state: Optional[str] = None,
        expiration_date_time: Optional[str] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "notificationUrl": notification_url,
            "resource": self.subscription_resource(entity_set),
        }
        if client_state:
            body["clientState"] = client_state
        if expiration_date_time:
            body["expirationDateTime"] = expiration_date_time
        return await self.request_json("POST", self.subscriptions_url, json_body=body)

    async def list_webhook_subscriptions(self) -> List[Dict[str, Any]]:
        return await self.list_all(self.subscriptions_url)

    async def renew_webhook_subscription(
        self, subscription_id: str, expiration_date_time: str, etag: str = "*"
    ) -> Dict[str, Any]:
        return await self.request_json(
            "PATCH",
            f"{self.subscriptions_url}('{subscription_id}')",
            json_body={"expirationDateTime": expiration_date_time},
            headers={"If-Match": etag or "*"},
        )

    async def delete_webhook_subscription(self, subscription_id: str, etag: str = "*") -> None:
        await self.request(
            "DELETE",
            f"{self.subscriptions_url}('{subscription_id}')",
            headers={"If-Match": etag or "*"},
        )


_SUBSCRIPTION_ID_PATTERN = re.compile(r"subscriptions\(([^)]+)\)", re.IGNORECASE)


def pick_subscription_id(subscription: Optional[Dict[str, Any]]) -> str:
    """Extract a subscription id from the fields BC may return it in."""
    if not subscription:
        return ""
    for key in ("id", "Id", "subscriptionId", "systemId"):
        value = subscription.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    odata_id = subscription.get("@odata.id")
    if isinstance(odata_id, str):
        match = _SUBSCRIPTION_ID_PATTERN.search(odata_id)
        if match:
            return match.group(1).strip("'")
    return ""
