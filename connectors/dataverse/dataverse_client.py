"""Dataverse (Project for the Web "Premium") Web API client.

Covers the generic OData operations the sync engine needs (list, delta
changes, get/create/update/delete) plus the Project Schedule Service
actions used to batch task writes into an operation set.
"""

import logging
import re
from typing import Any, Dict, List, Optional

from connectors.auth import ClientCredentialsAuth
from connectors.base import ApiClient
from connectors.errors import DataverseApiError
from core.config import DataverseConfig, HttpRetryConfig, get_dataverse_config
from core.http import HttpResponse, sanitize_url

logger = logging.getLogger(__name__)

_ENTITY_ID_PATTERN = re.compile(r"\(([^)]+)\)$")


def parse_entity_id_header(value: Optional[str]) -> Optional[str]:
    """Extract the record id from an ``OData-EntityId`` header."""
    if not value:
        return None
    match = _ENTITY_ID_PATTERN.search(value.strip())
    return match.group(1) if match else None


def build_query(
    select: Optional[List[str]] = None,
    filter: Optional[str] = None,
    order_by: Optional[str] = None,
    expand: Optional[str] = None,
    top: Optional[int] = None,
) -> Dict[str, str]:
    params: Dict[str, str] = {}
    if select:
        params["$select"] = ",".join(select)
    if filter:
        params["$filter"] = filter
    if order_by:
        params["$orderby"] = order_by
    if expand:
        params["$expand"] = expand
    if top is not None:
        params["$top"] = str(top)
    return params


class DataverseClient(ApiClient):
    """Client for the Dataverse Web API.

    Usage:
        async with DataverseClient() as dataverse:
            page = await dataverse.list("msdyn_projects", select=["msdyn_subject"])
    """

    error_cls = DataverseApiError

    def __init__(
        self,
        config: Optional[DataverseConfig] = None,
        retry: Optional[HttpRetryConfig] = None,
        session=None,
    ):
        self.config = config or get_dataverse_config()
        auth = ClientCredentialsAuth(
            self.config.tenant_id,
            self.config.client_id,
            self.config.client_secret,
            self.config.scope,
        )
        super().__init__(auth, self.config.api_url, retry=retry, session=session)

    # =========================================================================
    # Basics
    # =========================================================================

    async def who_am_i(self) -> Dict[str, Any]:
        return await self.request_json("GET", "WhoAmI")

    @staticmethod
    def build_lookup_binding(entity_set: str, record_id: str) -> str:
        """Build an ``@odata.bind`` value such as ``/msdyn_projects(<id>)``."""
        trimmed = (entity_set or "").strip().lstrip("/")
        clean_id = (record_id or "").strip().lstrip("{").rstrip("}")
        if not trimmed or not clean_id:
            return ""
        return f"/{trimmed}({clean_id})"

    async def request_raw(self, method: str, path_or_url: str, json_body: Any = None, headers=None) -> HttpResponse:
        """Escape hatch for endpoints without a dedicated method."""
        return await self.request(method, path_or_url, json_body=json_body, headers=headers)

    # =========================================================================
    # Reads
    # =========================================================================

    async def list(
        self,
        entity_set: str,
        select: Optional[List[str]] = None,
        filter: Optional[str] = None,
        order_by: Optional[str] = None,
        expand: Optional[str] = None,
        top: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Read one page of a collection.

        Returns:
            ``{"value": [...], "next_link": str|None, "delta_link": str|None}``
        """
        data = await self.request_json(
            "GET", entity_set, params=build_query(select, filter, order_by, expand, top) or None
        )
        value = data.get("value")
        return {
            "value": value if isinstance(value, list) else [],
            "next_link": data.get("@odata.nextLink"),
            "delta_link": data.get("@odata.deltaLink"),
        }

    async def list_changes(
        self,
        entity_set: str,
        select: Optional[List[str]] = None,
        filter: Optional[str] = None,
        order_by: Optional[str] = None,
        top: Optional[int] = None,
        delta_link: Optional[str] = None,
        max_pages: int = 10,
    ) -> Dict[str, Any]:
        """Read change-tracked rows, starting from ``delta_link`` when given.

        Returns:
            ``{"value": [...], "delta_link": str|None}``. When the page limit
            is reached before the feed is exhausted, the pending ``nextLink``
            is returned as ``delta_link`` so the next call resumes there.
        """
        headers = {"Prefer": "odata.track-changes"}
        if top is not None:
            headers["Prefer"] = f"odata.track-changes,odata.maxpagesize={top}"

        items: List[Dict[str, Any]] = []
        next_link: Optional[str] = delta_link
        resume_link: Optional[str] = None
        pages = 0
        while pages < max_pages:
            if next_link:
                data = await self.request_json("GET", next_link, headers=headers)
            else:
                data = await self.request_json(
                    "GET",
                    entity_set,
                    params=build_query(select, filter, order_by) or None,
                    headers=headers,
                )
            value = data.get("value")
            if isinstance(value, list):
                items.extend(value)
            next_link = data.get("@odata.nextLink")
            if data.get("@odata.deltaLink"):
                resume_link = data["@odata.deltaLink"]
            pages += 1
            if not next_link:
                break

        if pages >= max_pages and next_link:
            logger.warning(
                f"Dataverse change tracking page limit reached for {entity_set} "
                f"(pages={pages}, next={sanitize_url(next_link)})"
            )
            resume_link = next_link
        return {"value": items, "delta_link": resume_link}

    async def get_by_id(self, entity_set: str, record_id: str, select: Optional[List[str]] = None) -> Dict[str, Any]:
        return await self.request_json(
            "GET", f"{entity_set}({record_id})", params=build_query(select) or None
        )

    # =========================================================================
    # Writes
    # =========================================================================

    async def create(self, entity_set: str, payload: Dict[str, Any]) -> Dict[str, Optional[str]]:
        """Create a row.

        Returns:
            ``{"entity_id": ..., "etag": ...}`` parsed from response headers
        """
        response = await self.request("POST", entity_set, json_body=payload)
        return {
            "entity_id": parse_entity_id_header(response.header("OData-EntityId")),
            "etag": response.header("ETag"),
        }

    async def update(
        self,
        entity_set: str,
        record_id: str,
        payload: Dict[str, Any],
        if_match: Optional[str] = None,
    ) -> Dict[str, Optional[str]]:
        headers = {"If-Match": if_match} if if_match else None
        response = await self.request("PATCH", f"{entity_set}({record_id})", json_body=payload, headers=headers)
        return {"etag": response.header("ETag")}

    async def delete(self, entity_set: str, record_id: str) -> None:
        await self.request("DELETE", f"{entity_set}({record_id})")

    # =========================================================================
    # Project Schedule Service
    # =========================================================================

    async def execute_action(self, action_name: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self.request_json("POST", action_name, json_body=payload)

    async def create_project(self, payload: Dict[str, Any]) -> str:
        """Create a project through ``msdyn_CreateProjectV1``; returns its id ('' if none)."""
        entity = {"@odata.type": "Microsoft.Dynamics.CRM.msdyn_project", **payload}
        data = await self.execute_action("msdyn_CreateProjectV1", {"Project": entity})
        return data.get("ProjectId") or data.get("projectId") or ""

    async def create_operation_set(self, project_id: str, description: Optional[str] = None) -> str:
        """Create an operation set for a project; returns its id ('' if none)."""
        payload: Dict[str, Any] = {"ProjectId": project_id}
        if description:
            payload["Description"] = description
        data = await self.execute_action("msdyn_CreateOperationSetV1", payload)
        return data.get("OperationSetId") or data.get("operationSetId") or ""

    async def pss_create(self, entity: Dict[str, Any], operation_set_id: str) -> Dict[str, Any]:
        return await self.execute_action(
            "msdyn_PssCreateV1", {"OperationSetId": operation_set_id, "Entity": entity}
        )

    async def pss_update(self, entity: Dict[str, Any], operation_set_id: str) -> Dict[str, Any]:
        return await self.execute_action(
            "msdyn_PssUpdateV1", {"OperationSetId": operation_set_id, "Entity": entity}
        )

    async def execute_operation_set(self, operation_set_id: str) -> Dict[str, Any]:
        return await self.execute_action("msdyn_ExecuteOperationSetV1", {"OperationSetId": operation_set_id})

    async def delete_operation_set(self, operation_set_id: str, entity_set: str = "msdyn_operationsets") -> None:
        await self.delete(entity_set, operation_set_id)

    async def list_operation_sets(
        self,
        entity_set: str = "msdyn_operationsets",
        filter: Optional[str] = None,
        top: int = 50,
    ) -> List[Dict[str, Any]]:
        page = await self.list(
            entity_set,
            select=["msdyn_operationsetid", "msdyn_status", "createdon", "msdyn_description", "_msdyn_project_value"],
            filter=filter,
            order_by="createdon asc",
            top=top,
        )
        return page["value"]
