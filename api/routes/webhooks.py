"""Inbound webhook endpoints.

BC notifications are queued (and optionally processed inline under the job
lock), Dataverse notifications are applied to BC directly, and Graph
notifications for the legacy Planner mode are processed after the response.
"""

import json
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from api.dependencies import (
    PlannerContextOpener,
    SyncContextOpener,
    get_planner_context_opener,
    get_sync_context_opener,
    get_webhook_config,
    get_webhook_logs,
    get_webhook_store,
)
from core.config import WebhookConfig
from core.observability import get_logger, with_correlation
from stores import BcWebhookStore
from sync.job_processor import process_bc_jobs_locked
from sync.planner_sync import enqueue_and_process_notifications
from sync.premium_to_bc import sync_premium_task_ids
from sync.webhooks import (
    WebhookLogs,
    WebhookResponse,
    bc_invalid_json,
    handle_bc_notification,
    handle_dataverse_notification,
    handle_planner_notification,
    new_request_id,
)

logger = get_logger(__name__)

router = APIRouter()

INLINE_LOCK_RETRIES = 2
INLINE_LOCK_RETRY_SECONDS = 10.0


def render(result: WebhookResponse) -> Response:
    if result.text is not None:
        return PlainTextResponse(result.text, status_code=result.status_code)
    return JSONResponse(result.body, status_code=result.status_code)


async def _read_json(request: Request) -> Any:
    """Decoded body; an empty body reads as ``{}``. Raises ValueError on bad JSON."""
    raw = await request.body()
    if not raw.strip():
        return {}
    return json.loads(raw)


# =============================================================================
# Business Central
# =============================================================================

@router.get("/bc")
async def bc_webhook_probe(validation_token: Optional[str] = Query(None, alias="validationToken")) -> Response:
    """BC calls GET during subscription validation."""
    if validation_token:
        return PlainTextResponse(validation_token)
    return JSONResponse({"ok": True})


@router.post("/bc")
async def bc_webhook(
    request: Request,
    validation_token: Optional[str] = Query(None, alias="validationToken"),
    store: BcWebhookStore = Depends(get_webhook_store),
    logs: WebhookLogs = Depends(get_webhook_logs),
    config: WebhookConfig = Depends(get_webhook_config),
    open_context: SyncContextOpener = Depends(get_sync_context_opener),
) -> Response:
    request_id = new_request_id()
    if validation_token:
        return render(await handle_bc_notification({}, store, logs.bc, config, query_token=validation_token, request_id=request_id))
    try:
        payload = await _read_json(request)
    except ValueError as e:
        return render(await bc_invalid_json(logs.bc, str(e), request_id))

    async def run_jobs(limit: int, rid: str):
        async with open_context() as ctx:
            return await process_bc_jobs_locked(
                ctx,
                store,
                max_jobs=limit,
                request_id=rid,
                retry_count=INLINE_LOCK_RETRIES,
                retry_delay_seconds=INLINE_LOCK_RETRY_SECONDS,
            )

    with with_correlation(request_id=request_id, scope="bcWebhook"):
        result = await handle_bc_notification(
            payload,
            store,
            logs.bc,
            config,
            queue_entity_set=config.bc_queue_entity_set,
            run_jobs=run_jobs,
            request_id=request_id,
        )
    return render(result)


# =============================================================================
# Dataverse
# =============================================================================

@router.get("/dataverse")
async def dataverse_webhook_probe() -> Dict[str, Any]:
    return {"ok": True}


@router.post("/dataverse")
async def dataverse_webhook(
    request: Request,
    logs: WebhookLogs = Depends(get_webhook_logs),
    config: WebhookConfig = Depends(get_webhook_config),
    open_context: SyncContextOpener = Depends(get_sync_context_opener),
) -> Response:
    request_id = new_request_id()
    try:
        payload = await _read_json(request)
    except ValueError:
        payload = None

    async def apply_task_ids(task_ids: List[str], rid: str) -> Dict[str, Any]:
        async with open_context() as ctx:
            return await sync_premium_task_ids(ctx, task_ids, respect_prefer_bc=False, request_id=rid)

    with with_correlation(request_id=request_id, scope="dataverseWebhook"):
        result = await handle_dataverse_notification(
            payload, request.headers, logs.premium, config, apply_task_ids, request_id=request_id
        )
    return render(result)


# =============================================================================
# Microsoft Graph (Planner)
# =============================================================================

async def _process_planner_items(open_context: PlannerContextOpener, items: List[Dict[str, Any]], request_id: str) -> None:
    with with_correlation(request_id=request_id, scope="plannerWebhook"):
        try:
            async with open_context() as ctx:
                result = await enqueue_and_process_notifications(ctx, items)
            logger.info("Planner notifications processed", extra_fields=result)
        except Exception as e:
            logger.error("Planner notification processing failed", extra_fields={"error": str(e)})


@router.post("/planner")
async def planner_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    validation_token: Optional[str] = Query(None, alias="validationToken"),
    logs: WebhookLogs = Depends(get_webhook_logs),
    config: WebhookConfig = Depends(get_webhook_config),
    open_context: PlannerContextOpener = Depends(get_planner_context_opener),
) -> Response:
    request_id = new_request_id()
    if validation_token:
        result, _ = await handle_planner_notification({}, logs.planner, config.graph_client_state, query_token=validation_token)
        return render(result)
    try:
        payload = await _read_json(request)
    except ValueError:
        return JSONResponse({"ok": False, "error": "Invalid JSON"}, status_code=400)

    result, items = await handle_planner_notification(
        payload, logs.planner, config.graph_client_state, request_id=request_id
    )
    if items:
        background_tasks.add_task(_process_planner_items, open_context, items, request_id)
    return render(result)
