"""Microsoft Graph client for Planner plans, buckets, tasks and subscriptions."""

import logging
from typing import Any, Dict, List, Optional

from connectors.auth import ClientCredentialsAuth
from connectors.base import ApiClient, escape_odata_string
from connectors.errors import GraphApiError
from core.config import GraphConfig, HttpRetryConfig, get_graph_config

logger = logging.getLogger(__name__)

# Planner's delta endpoint rejects some $select combinations depending on
# tenant rollout; tried in order until one is accepted.
DELTA_SELECT_CANDIDATES = (
    "id,planId,title,bucketId,percentComplete,startDateTime,dueDateTime,lastModifiedDateTime,assignments",
    "id,planId,title,bucketId,percentComplete,startDateTime,dueDateTime,lastModifiedDateTime",
    "id,planId,title,bucketId,createdDateTime,dueDateTime,percentComplete",
    "id,planId,title,bucketId",
)


def _is_delta_select_error(error: Exception) -> bool:
    if not isinstance(error, GraphApiError) or error.status_code != 405:
        return False
    body = (error.response_body or "").lower()
    return "certain fields" in body or "publication" in body


class GraphClient(ApiClient):
    """Client for the Planner parts of Microsoft Graph."""

    error_cls = GraphApiError

    def __init__(
        self,
        config: Optional[GraphConfig] = None,
        retry: Optional[HttpRetryConfig] = None,
        session=None,
    ):
        self.config = config or get_graph_config()
        auth = ClientCredentialsAuth(
            self.config.tenant_id,
            self.config.client_id,
            self.config.client_secret,
            self.config.scope,
        )
        super().__init__(auth, self.config.base_url, retry=retry, session=session)
        self._delta_select: Optional[str] = None

    # =========================================================================
    # Plans
    # =========================================================================

    async def list_plans_for_group(self, group_id: str) -> List[Dict[str, Any]]:
        return await self.list_all(f"groups/{group_id}/planner/plans")

    async def get_plan(self, plan_id: str) -> Dict[str, Any]:
        return await self.request_json("GET", f"planner/plans/{plan_id}")

    async def create_plan(self, group_id: str, title: str) -> Dict[str, Any]:
        data = await self.request_json("POST", "planner/plans", json_body={"title": title, "owner": group_id})
        if not data.get("id"):
            raise GraphApiError("Graph createPlan response missing id")
        return data

    async def list_tasks(self, plan_id: str) -> List[Dict[str, Any]]:
        return await self.list_all(f"planner/plans/{plan_id}/tasks")

    # =========================================================================
    # Buckets
    # =========================================================================

    async def list_buckets(self, plan_id: str) -> List[Dict[str, Any]]:
        return await self.list_all(f"planner/plans/{plan_id}/buckets")

    async def create_bucket(self, plan_id: str, name: str) -> Dict[str, Any]:
        data = await self.request_json(
            "POST", "planner/buckets", json_body={"name": name, "planId": plan_id, "orderHint": " !"}
        )
        if not data.get("id"):
            raise GraphApiError("Graph createBucket response missing id")
        return data

    async def get_bucket(self, bucket_id: str) -> Dict[str, Any]:
        return await self.request_json("GET", f"planner/buckets/{bucket_id}")

    # =========================================================================
    # Tasks
    # =========================================================================

    async def get_task(self, task_id: str) -> Dict[str, Any]:
        return await self.request_json("GET", f"planner/tasks/{task_id}")

    async def get_task_details(self, task_id: str) -> Dict[str, Any]:
        return await self.request_json("GET", f"planner/tasks/{task_id}/details")

    async def create_task(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        data = await self.request_json("POST", "planner/tasks", json_body=payload)
        if not data.get("id"):
            raise GraphApiError("Graph createTask response missing id")
        return data

    async def update_task(self, task_id: str, payload: Dict[str, Any], etag: str) -> Optional[str]:
        """PATCH a task guarded by ``If-Match``; returns the new ETag if sent."""
        response = await self.request(
            "PATCH", f"planner/tasks/{task_id}", json_body=payload, headers={"If-Match": etag}
        )
        return response.header("ETag")

    async def update_task_details(self, task_id: str, payload: Dict[str, Any], etag: str) -> Optional[str]:
        response = await self.request(
            "PATCH", f"planner/tasks/{task_id}/details", json_body=payload, headers={"If-Match": etag}
        )
        return response.header("ETag")

    async def list_plan_tasks_delta(self, plan_id: str, delta_link: Optional[str] = None) -> Dict[str, Any]:
        """Read one page of the Planner task delta feed.

        Returns:
            ``{"value": [...], "next_link": str|None, "delta_link": str|None}``
        """
        if delta_link:
            return self._delta_page(await self.request_json("GET", delta_link))
        if not plan_id:
            raise ValueError("Planner delta requires a plan id")

        candidates = [self._delta_select] if self._delta_select else list(DELTA_SELECT_CANDIDATES)
        for index, select in enumerate(candidates):
            url = f"{self.config.beta_url}/planner/plans/{plan_id}/tasks/delta"
            try:
                data = await self.request_json("GET", url, params={"$select": select})
            except GraphApiError as exc:
                if _is_delta_select_error(exc) and index < len(candidates) - 1:
                    logger.warning(f"Planner delta select rejected for plan {plan_id}; trying fallback {index + 2}")
                    continue
                raise
            self._delta_select = select
            return self._delta_page(data)
        raise GraphApiError(f"Planner delta request failed for plan {plan_id}")

    @staticmethod
    def _delta_page(data: Dict[str, Any]) -> Dict[str, Any]:
        value = data.get("value")
        return {
            "value": value if isinstance(value, list) else [],
            "next_link": data.get("@odata.nextLink"),
            "delta_link": data.get("@odata.deltaLink"),
        }

    # =========================================================================
    # Users
    # =========================================================================

    async def find_user_id_by_identity(self, identity: str) -> Optional[str]:
        trimmed = (identity or "").strip()
        if not trimmed:
            return None
        escaped = escape_odata_string(trimmed)
        if "@" in trimmed:
            filter = f"userPrincipalName eq '{escaped}' or mail eq '{escaped}'"
        else:
            filter = f"displayName eq '{escaped}'"
        data = await self.request_json(
            "GET", "users", params={"$filter": filter, "$select": "id,displayName,mail,userPrincipalName", "$top": "5"}
        )
        users = data.get("value") or []
        if len(users) > 1:
            logger.warning(f"Multiple Graph users matched identity {trimmed} (count={len(users)})")
        return users[0].get("id") if users else None

    # =========================================================================
    # Subscriptions
    # =========================================================================

    async def create_subscription(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        data = await self.request_json("POST", "subscriptions", json_body=payload)
        if not data.get("id"):
            raise GraphApiError("Graph createSubscription response missing id")
        logger.info(f"Graph subscription created: {data['id']} ({data.get('resource')})")
        return data

    async def list_subscriptions(self) -> List[Dict[str, Any]]:
        return await self.list_all("subscriptions")

    async def renew_subscription(self, subscription_id: str, expiration_date_time: str) -> Dict[str, Any]:
        return await self.request_json(
            "PATCH", f"subscriptions/{subscription_id}", json_body={"expirationDateTime": expiration_date_time}
        )

    async def delete_subscription(self, subscription_id: str) -> None:
        await self.request("DELETE", f"subscriptions/{subscription_id}")
