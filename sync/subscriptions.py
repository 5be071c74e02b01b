"""BC webhook subscription lifecycle.

BC subscriptions expire after three days; the stored copy (per entity set)
drives renewal and lets the webhook receiver reject notifications from
subscriptions it does not know.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from connectors.business_central.bc_client import pick_subscription_id
from connectors.errors import is_not_found_error
from core.observability import get_logger
from stores.webhook_store import BcWebhookStore
from sync.mapping import format_iso_ms, parse_date_ms

logger = get_logger(__name__)

DEFAULT_ENTITY_SETS = ("premiumSyncQueue",)
EXPIRY_BUFFER_MS = 60 * 1000
SUBSCRIPTION_LIFETIME = timedelta(days=3)


def _normalize(value: Optional[str]) -> str:
    return (value or "").strip().lstrip("/").lower()


def is_expiring_soon(expiration: Optional[str], now_ms: float, buffer_ms: float = EXPIRY_BUFFER_MS) -> bool:
    expires_ms = parse_date_ms(expiration)
    return expires_ms is None or expires_ms <= now_ms + buffer_ms


def _matches_resource(resource: Optional[str], entity_set: str) -> bool:
    normalized = _normalize(resource)
    return bool(normalized) and normalized.endswith(f"/{entity_set.lower()}")


async def _find_created(bc, entity_set: str, notification_url: str) -> Optional[Dict[str, Any]]:
    """BC sometimes answers a create without the id; look the subscription up."""
    expected_url = _normalize(notification_url)
    for item in await bc.list_webhook_subscriptions():
        if not _matches_resource(item.get("resource"), entity_set):
            continue
        notify = _normalize(item.get("notificationUrl"))
        if not notify or notify == expected_url:
            return item
    return None


async def ensure_bc_subscriptions(
    bc,
    store: BcWebhookStore,
    notification_url: str,
    client_state: str = "",
    entity_sets: Optional[List[str]] = None,
    now_ms: Optional[float] = None,
) -> Dict[str, Any]:
    """Create a subscription for each entity set lacking a live one.

    Returns:
        ``{"created": [...], "skipped": [entity sets], "errors": [...]}``
    """
    now_ms = now_ms if now_ms is not None else datetime.now(timezone.utc).timestamp() * 1000
    if not notification_url.startswith("https://"):
        logger.warning("BC webhook notificationUrl is not HTTPS", extra_fields={"notificationUrl": notification_url})
    result: Dict[str, Any] = {"created": [], "skipped": [], "errors": []}
    for entity_set in entity_sets or DEFAULT_ENTITY_SETS:
        entity_set = (entity_set or "").strip()
        if not entity_set:
            continue
        stored = await store.get_subscription(entity_set)
        if stored and not is_expiring_soon(stored.get("expirationDateTime"), now_ms):
            result["skipped"].append(entity_set)
            continue
        try:
            subscription = await bc.create_webhook_subscription(entity_set, notification_url, client_state or None)
            if not pick_subscription_id(subscription):
                subscription = await _find_created(bc, entity_set, notification_url) or subscription
        except Exception as exc:
            logger.error("BC subscription create failed", extra_fields={"entitySet": entity_set, "error": str(exc)})
            result["errors"].append({"entitySet": entity_set, "error": str(exc)})
            continue
        record = {
            "id": pick_subscription_id(subscription),
            "entitySet": entity_set,
            "resource": subscription.get("resource"),
            "notificationUrl": notification_url,
            "expirationDateTime": subscription.get("expirationDateTime"),
            "createdAt": format_iso_ms(now_ms),
        }
        await store.save_subscription(entity_set, record)
        result["created"].append(record)
    return result


async def renew_bc_subscriptions(
    bc,
    store: BcWebhookStore,
    entity_sets: Optional[List[str]] = None,
    now_ms: Optional[float] = None,
) -> Dict[str, Any]:
    """Push out the expiry of each stored subscription.

    A subscription BC no longer knows (404) is dropped from the store so the
    next ``ensure_bc_subscriptions`` recreates it.
    """
    now_ms = now_ms if now_ms is not None else datetime.now(timezone.utc).timestamp() * 1000
    expiration = format_iso_ms(now_ms + SUBSCRIPTION_LIFETIME.total_seconds() * 1000)
    result: Dict[str, Any] = {"renewed": [], "missing": [], "errors": []}
    for entity_set in entity_sets or DEFAULT_ENTITY_SETS:
        stored = await store.get_subscription(entity_set)
        subscription_id = pick_subscription_id(stored)
        if not subscription_id:
            result["missing"].append(entity_set)
            continue
        try:
            renewed = await bc.renew_webhook_subscription(subscription_id, expiration, stored.get("@odata.etag") or "*")
        except Exception as exc:
            if is_not_found_error(exc):
                await store.delete_subscription(entity_set)
                result["missing"].append(entity_set)
                continue
            logger.error("BC subscription renew failed", extra_fields={"entitySet": entity_set, "error": str(exc)})
            result["errors"].append({"entitySet": entity_set, "error": str(exc)})
            continue
        stored["expirationDateTime"] = (renewed or {}).get("expirationDateTime") or expiration
        await store.save_subscription(entity_set, stored)
        result["renewed"].append({"entitySet": entity_set, "id": subscription_id, "expirationDateTime": stored["expirationDateTime"]})
    return result


async def delete_bc_subscription(bc, store: BcWebhookStore, entity_set: str) -> bool:
    """Delete the stored subscription in BC and locally; False when none was stored."""
    stored = await store.get_subscription(entity_set)
    subscription_id = pick_subscription_id(stored)
    if not subscription_id:
        return False
    await bc.delete_webhook_subscription(subscription_id)
    await store.delete_subscription(entity_set)
    return True
