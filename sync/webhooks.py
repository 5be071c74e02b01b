"""Inbound change notifications from BC, Dataverse and Microsoft Graph.

The handlers here are framework-free: they take the parsed request pieces
and return a ``WebhookResponse`` that the API layer renders. BC notifications
are normalized into jobs and queued with dedupe; Dataverse notifications are
applied to BC directly; Planner notifications are handed to the legacy
Planner engine.
"""

import hmac
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlparse

from connectors.business_central.bc_client import pick_subscription_id
from core.config import WebhookConfig
from core.observability import LogSink, get_logger, get_metrics
from stores.kv import KeyValueStore
from stores.webhook_store import BcWebhookJob, BcWebhookStore

logger = get_logger(__name__)

LOG_SAMPLE_LIMIT = 10

BC_WEBHOOK_LOG_KEY = "bc:webhook:log"
PREMIUM_WEBHOOK_LOG_KEY = "premium:webhook:log"
PLANNER_WEBHOOK_LOG_KEY = "planner:webhook:log"

DATAVERSE_SECRET_HEADERS = ("x-dataverse-secret", "x-webhook-secret", "x-ms-dynamics-webhook-key")

_COMPANY_RESOURCE = re.compile(r"companies\([^)]+\)/([^(/]+)\(([^)]+)\)", re.IGNORECASE)
_ENTITY_RESOURCE = re.compile(r"([^/]+)\(([^)]+)\)")
_GUID = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")

# Runs queued BC jobs; returns (summary, skip reason).
BcJobRunner = Callable[[int, str], Awaitable[Tuple[Optional[Dict[str, Any]], Optional[str]]]]
TaskIdRunner = Callable[[List[str], str], Awaitable[Dict[str, Any]]]


@dataclass
class WebhookResponse:
    """What the HTTP layer should send back.

    ``text`` is set for validation handshakes, which are echoed as text/plain.
    """
    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)
    text: Optional[str] = None


@dataclass
class WebhookLogs:
    bc: LogSink
    premium: LogSink
    planner: LogSink


def create_webhook_logs(kv: Optional[KeyValueStore] = None, max_entries: int = 100) -> WebhookLogs:
    return WebhookLogs(
        bc=LogSink("bc-webhooks", max_entries=max_entries, kv=kv, kv_key=BC_WEBHOOK_LOG_KEY),
        premium=LogSink("premium-webhooks", max_entries=max_entries, kv=kv, kv_key=PREMIUM_WEBHOOK_LOG_KEY),
        planner=LogSink("planner-webhooks", max_entries=max_entries, kv=kv, kv_key=PLANNER_WEBHOOK_LOG_KEY),
    )


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def new_request_id() -> str:
    return str(uuid.uuid4())


def _secrets_match(provided: str, expected: str) -> bool:
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


# =============================================================================
# BC
# =============================================================================

def normalize_system_id(value: Any) -> str:
    output = str(value or "").strip()
    if len(output) >= 2 and output[0] == output[-1] and output[0] in ("'", '"'):
        output = output[1:-1]
    if output.startswith("{") and output.endswith("}"):
        output = output[1:-1]
    return output.strip()


def parse_bc_resource(resource: Optional[str]) -> Tuple[str, str]:
    """Split a notification resource into ``(entity_set, system_id)``.

    Accepts absolute URLs and relative paths such as
    ``api/.../companies(<id>)/projectTasks(<id>)``.
    """
    raw = (resource or "").strip()
    if not raw:
        return "", ""
    cleaned = raw
    if raw.startswith("http"):
        parsed = urlparse(raw)
        cleaned = parsed.path + (f"?{parsed.query}" if parsed.query else "")
    cleaned = cleaned.lstrip("/")

    match = _COMPANY_RESOURCE.search(cleaned) or _ENTITY_RESOURCE.search(cleaned)
    if not match:
        return "", ""
    return match.group(1), normalize_system_id(match.group(2))


def read_validation_token(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    token = payload.get("validationToken", payload.get("validationtoken"))
    return token if isinstance(token, str) else None


@dataclass
class BcNotificationBatch:
    jobs: List[BcWebhookJob] = field(default_factory=list)
    secret_mismatch: int = 0
    missing_resource: int = 0
    unknown_subscription: int = 0
    ignored: int = 0


def _notification_target(notification: Dict[str, Any]) -> Tuple[str, str]:
    entity_set, system_id = parse_bc_resource(notification.get("resource"))
    if not system_id:
        resource_data = notification.get("resourceData") or {}
        system_id = normalize_system_id(resource_data.get("id") or notification.get("id"))
    return entity_set, system_id


def collect_bc_jobs(
    notifications: List[Dict[str, Any]],
    shared_secret: str,
    queue_entity_set: str = "",
    subscription_ids: Optional[Mapping[str, str]] = None,
    received_at: Optional[str] = None,
) -> BcNotificationBatch:
    """Validate notifications and turn the accepted ones into jobs.

    Args:
        shared_secret: Expected ``clientState``; empty disables the check
        queue_entity_set: Deletes on this entity set are ignored (the
            connector deletes queue rows itself)
        subscription_ids: Stored subscription id per lower-cased entity set;
            a notification naming a different subscription is rejected
    """
    batch = BcNotificationBatch()
    received_at = received_at or _now_iso()
    queue_entity_set = (queue_entity_set or "").strip().lower()
    subscription_ids = subscription_ids or {}
    for notification in notifications:
        if not isinstance(notification, dict):
            batch.missing_resource += 1
            continue
        if shared_secret:
            client_state = notification.get("clientState")
            if not isinstance(client_state, str) or not _secrets_match(client_state, shared_secret):
                batch.secret_mismatch += 1
                continue

        entity_set, system_id = _notification_target(notification)
        if not entity_set or not system_id:
            batch.missing_resource += 1
            continue
        change_type = str(notification.get("changeType") or "")
        if queue_entity_set and entity_set.lower() == queue_entity_set and change_type.lower() == "deleted":
            batch.ignored += 1
            continue

        subscription_id = notification.get("subscriptionId")
        expected = subscription_ids.get(entity_set.lower())
        if expected and subscription_id and str(subscription_id) != expected:
            batch.unknown_subscription += 1
            continue

        batch.jobs.append(
            BcWebhookJob(
                entitySet=entity_set,
                systemId=system_id,
                changeType=change_type,
                receivedAt=received_at,
                subscriptionId=subscription_id,
                resource=notification.get("resource"),
            )
        )
    return batch


def _log_items(notifications: List[Any]) -> List[Dict[str, Any]]:
    items = []
    for notification in notifications[:LOG_SAMPLE_LIMIT]:
        if not isinstance(notification, dict):
            continue
        entity_set, system_id = _notification_target(notification)
        items.append({
            "entitySet": entity_set,
            "systemId": system_id,
            "changeType": notification.get("changeType"),
            "resource": notification.get("resource"),
            "subscriptionId": notification.get("subscriptionId"),
        })
    return items


async def _stored_subscription_ids(store: BcWebhookStore, notifications: List[Any]) -> Dict[str, str]:
    ids: Dict[str, str] = {}
    for notification in notifications:
        if not isinstance(notification, dict):
            continue
        entity_set, _ = parse_bc_resource(notification.get("resource"))
        key = entity_set.lower()
        if not key or key in ids:
            continue
        ids[key] = pick_subscription_id(await store.get_subscription(entity_set))
    return {key: value for key, value in ids.items() if value}


async def handle_bc_notification(
    payload: Any,
    store: BcWebhookStore,
    log: LogSink,
    config: WebhookConfig,
    queue_entity_set: str = "",
    query_token: Optional[str] = None,
    process_inline: Optional[bool] = None,
    max_jobs: Optional[int] = None,
    run_jobs: Optional[BcJobRunner] = None,
    request_id: Optional[str] = None,
) -> WebhookResponse:
    """Handle one POST from BC.

    ``payload`` is the decoded JSON body (the caller answers invalid JSON
    with ``bc_invalid_json``). Returns 401 only when every notification
    failed the client-state check; otherwise 202 with counts.
    """
    request_id = request_id or new_request_id()
    token = query_token or read_validation_token(payload)
    if token:
        await log.append({"requestId": request_id, "type": "validation", "location": "query" if query_token else "body"})
        return WebhookResponse(200, text=token)

    notifications = payload.get("value") if isinstance(payload, dict) else None
    notifications = notifications if isinstance(notifications, list) else []
    if not notifications:
        await log.append({"requestId": request_id, "type": "notification", "count": 0})
        return WebhookResponse(202, {"ok": True, "received": 0, "requestId": request_id})

    subscription_ids = await _stored_subscription_ids(store, notifications)
    batch = collect_bc_jobs(
        notifications, config.bc_shared_secret, queue_entity_set=queue_entity_set, subscription_ids=subscription_ids
    )
    metrics = get_metrics()

    if batch.secret_mismatch == len(notifications):
        logger.warning("BC webhook rejected: client state mismatch", extra_fields={"count": len(notifications)})
        metrics.record_webhook("bc", received=len(notifications), rejected=len(notifications))
        await log.append({
            "requestId": request_id,
            "type": "unauthorized",
            "count": len(notifications),
            "items": _log_items(notifications),
        })
        return WebhookResponse(401, {"ok": False, "error": "Unauthorized", "requestId": request_id})

    enqueue = await store.enqueue_jobs(batch.jobs)
    metrics.record_webhook(
        "bc",
        received=len(notifications),
        enqueued=enqueue.enqueued,
        deduped=enqueue.deduped,
        rejected=batch.secret_mismatch + batch.unknown_subscription,
    )

    inline = config.bc_process_inline if process_inline is None else process_inline
    processed: Optional[Dict[str, Any]] = None
    process_skipped: Optional[str] = None
    if inline and run_jobs is not None:
        limit = max(max_jobs or config.bc_inline_max_jobs, min(100, len(batch.jobs)))
        try:
            processed, process_skipped = await run_jobs(limit, request_id)
        except Exception as exc:
            logger.error("BC webhook inline processing failed", extra_fields={"error": str(exc)})
            process_skipped = "error"

    counts = {
        "received": len(notifications),
        "enqueued": enqueue.enqueued,
        "deduped": enqueue.deduped,
        "skipped": enqueue.skipped,
        "secretMismatch": batch.secret_mismatch,
        "missingResource": batch.missing_resource,
        "unknownSubscription": batch.unknown_subscription,
        "ignored": batch.ignored,
        "processed": (processed or {}).get("processed", 0),
    }
    extras: Dict[str, Any] = {}
    if process_skipped:
        extras["processSkipped"] = process_skipped
    if processed and processed.get("skipReasons"):
        extras["skipReasons"] = processed["skipReasons"]

    await log.append({
        "requestId": request_id,
        "type": "notification",
        "count": len(notifications),
        "items": _log_items(notifications),
        **counts,
        **extras,
    })
    logger.info("BC webhook handled", extra_fields=counts)
    return WebhookResponse(202, {"ok": True, **counts, **extras, "requestId": request_id})


async def bc_invalid_json(log: LogSink, error: str, request_id: Optional[str] = None) -> WebhookResponse:
    request_id = request_id or new_request_id()
    logger.error("Failed to parse BC webhook payload", extra_fields={"error": error})
    await log.append({"requestId": request_id, "type": "invalid_json", "error": error})
    return WebhookResponse(400, {"ok": False, "error": "Invalid JSON", "requestId": request_id})


# =============================================================================
# Dataverse
# =============================================================================

def verify_dataverse_secret(headers: Mapping[str, str], expected: str) -> bool:
    """Constant-time check of the shared secret header; no secret configured means open."""
    if not expected:
        return True
    provided = ""
    for name in DATAVERSE_SECRET_HEADERS:
        provided = headers.get(name) or ""
        if provided:
            break
    return _secrets_match(provided, expected)


def _normalize_guid(value: Any) -> str:
    trimmed = str(value or "").strip()
    if trimmed.startswith("{") and trimmed.endswith("}"):
        trimmed = trimmed[1:-1]
    return trimmed if _GUID.match(trimmed) else ""


def extract_task_ids(payload: Any) -> List[str]:
    """Collect record ids from a Dataverse service-endpoint payload.

    Looks at the record's own id, its ``Target``/``EntityReference``, input
    parameters and pre/post entity images, in a single payload or a
    ``value`` list of them.
    """
    ids: Dict[str, None] = {}

    def add(value: Any) -> None:
        guid = _normalize_guid(value)
        if guid:
            ids[guid] = None

    def add_ref(value: Any) -> None:
        if isinstance(value, dict):
            add(value.get("Id") or value.get("id"))

    def scan(value: Any) -> None:
        if not isinstance(value, dict):
            return
        add(value.get("Id") or value.get("id") or value.get("primaryEntityId") or value.get("PrimaryEntityId"))
        add_ref(value.get("Target") or value.get("target"))
        add_ref(value.get("EntityReference") or value.get("entityReference"))

        params = value.get("InputParameters") or value.get("inputParameters")
        if isinstance(params, list):
            for param in params:
                if isinstance(param, dict):
                    add_ref(param.get("Value") or param.get("value"))
                    add_ref(param.get("Parameter") or param.get("parameter"))
        elif isinstance(params, dict):
            for param in params.values():
                if isinstance(param, dict):
                    add_ref(param.get("Value") or param.get("value") or param)

        for key in ("PreEntityImages", "PostEntityImages", "preEntityImages", "postEntityImages"):
            images = value.get(key)
            if isinstance(images, dict):
                for image in images.values():
                    add_ref(image)

    items = payload.get("value") if isinstance(payload, dict) and isinstance(payload.get("value"), list) else [payload]
    for item in items:
        scan(item)
        if isinstance(item, dict) and isinstance(item.get("value"), list):
            for nested in item["value"]:
                scan(nested)
    return list(ids)


async def handle_dataverse_notification(
    payload: Any,
    headers: Mapping[str, str],
    log: LogSink,
    config: WebhookConfig,
    apply_task_ids: TaskIdRunner,
    request_id: Optional[str] = None,
) -> WebhookResponse:
    """Check the secret, extract task ids and apply them to BC."""
    request_id = request_id or new_request_id()
    metrics = get_metrics()
    if not verify_dataverse_secret(headers, config.dataverse_secret):
        metrics.record_webhook("dataverse", received=1, rejected=1)
        await log.append({"requestId": request_id, "type": "unauthorized"})
        return WebhookResponse(401, {"ok": False, "error": "Unauthorized"})
    if not isinstance(payload, dict):
        await log.append({"requestId": request_id, "type": "invalid_json"})
        return WebhookResponse(400, {"ok": False, "error": "Invalid JSON"})

    task_ids = extract_task_ids(payload)
    metrics.record_webhook("dataverse", received=1, enqueued=len(task_ids))
    await log.append({"requestId": request_id, "type": "notification", "notificationCount": 1, "taskIds": task_ids})
    if not task_ids:
        logger.warning("Dataverse webhook missing task ids")
        await log.append({"requestId": request_id, "type": "skipped", "reason": "no_task_ids"})
        return WebhookResponse(200, {"ok": True, "skipped": True, "reason": "no_task_ids"})

    try:
        result = await apply_task_ids(task_ids, request_id)
    except Exception as exc:
        logger.error("Dataverse webhook processing failed", extra_fields={"error": str(exc)})
        await log.append({"requestId": request_id, "type": "error", "error": str(exc)})
        return WebhookResponse(500, {"ok": False, "error": str(exc)})
    return WebhookResponse(200, {"ok": True, "taskIds": task_ids, "result": result})


# =============================================================================
# Microsoft Graph (Planner)
# =============================================================================

def collect_planner_notifications(
    notifications: List[Any], client_state: str, received_at: Optional[str] = None
) -> Tuple[List[Dict[str, Any]], int]:
    """Accepted ``{taskId, subscriptionId, receivedAt}`` items and the mismatch count."""
    received_at = received_at or _now_iso()
    items: List[Dict[str, Any]] = []
    mismatched = 0
    for notification in notifications:
        if not isinstance(notification, dict):
            continue
        state = notification.get("clientState")
        if client_state and (not isinstance(state, str) or not _secrets_match(state, client_state)):
            mismatched += 1
            logger.warning(
                "Graph notification clientState mismatch",
                extra_fields={"subscriptionId": notification.get("subscriptionId")},
            )
            continue
        resource_data = notification.get("resourceData") or {}
        task_id = resource_data.get("id") or str(notification.get("resource") or "").rstrip("/").split("/")[-1]
        if not task_id:
            continue
        items.append({
            "taskId": task_id,
            "subscriptionId": notification.get("subscriptionId"),
            "receivedAt": received_at,
        })
    return items, mismatched


async def handle_planner_notification(
    payload: Any,
    log: LogSink,
    client_state: str,
    query_token: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Tuple[WebhookResponse, List[Dict[str, Any]]]:
    """Validate a Graph notification batch.

    Returns the response and the accepted items; the caller schedules them
    for processing after responding, as Graph expects a fast 202.
    """
    request_id = request_id or new_request_id()
    if query_token:
        return WebhookResponse(200, text=query_token), []

    notifications = payload.get("value") if isinstance(payload, dict) else None
    notifications = notifications if isinstance(notifications, list) else []
    if not notifications:
        return WebhookResponse(202, {"ok": True, "received": 0}), []

    items, mismatched = collect_planner_notifications(notifications, client_state)
    get_metrics().record_webhook("planner", received=len(notifications), enqueued=len(items), rejected=mismatched)
    await log.append({
        "requestId": request_id,
        "type": "notification",
        "count": len(notifications),
        "accepted": len(items),
        "clientStateMismatch": mismatched,
    })
    return WebhookResponse(202, {"ok": True, "received": len(items)}), items
