"""Sync trigger, settings and diagnostics endpoints.

Triggers are what cron jobs and operators call; when ``CRON_SECRET`` is set
they must present it as ``X-Cron-Secret`` or ``?cronSecret=``.
"""

import asyncio
import json
from typing import Any, AsyncGenerator, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from api.dependencies import (
    get_planner_context,
    get_project_sync_store,
    get_sync_context,
    get_webhook_config,
    get_webhook_logs,
    get_webhook_store,
    require_cron_secret,
)
from connectors.errors import ConnectorApiError, SyncSetupError
from core.config import WebhookConfig
from core.observability import LogSink, get_logger, with_correlation
from stores import BcWebhookStore, ProjectSyncStore
from sync.bc_to_premium import sync_bc_to_premium
from sync.context import SyncContext
from sync.decision import decide_premium_sync, run_premium_sync_decision
from sync.job_processor import DEFAULT_MAX_JOBS, process_bc_jobs_locked
from sync.planner_sync import PlannerContext, run_planner_polling_sync, sync_bc_to_planner
from sync.premium_to_bc import sync_premium_changes, sync_premium_task_ids
from sync.subscriptions import delete_bc_subscription, ensure_bc_subscriptions, renew_bc_subscriptions
from sync.webhooks import WebhookLogs, new_request_id

logger = get_logger(__name__)

router = APIRouter()

guarded = [Depends(require_cron_secret)]

STREAM_KEEPALIVE_SECONDS = 15.0


# =============================================================================
# Request models
# =============================================================================

class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class BcToPremiumRequest(_CamelModel):
    """Targets for a BC -> Premium pass; empty means the change feed/queue decides."""
    project_nos: List[str] = Field(default_factory=list, alias="projectNos")
    task_system_ids: List[str] = Field(default_factory=list, alias="taskSystemIds")


class PremiumToBcRequest(_CamelModel):
    task_ids: List[str] = Field(default_factory=list, alias="taskIds")
    respect_prefer_bc: bool = Field(default=True, alias="respectPreferBc")


class AutoSyncRequest(_CamelModel):
    dry_run: bool = Field(default=False, alias="dryRun")
    prefer_bc: Optional[bool] = Field(default=None, alias="preferBc")
    grace_ms: Optional[float] = Field(default=None, alias="graceMs", ge=0)


class ProcessJobsRequest(_CamelModel):
    max_jobs: int = Field(default=DEFAULT_MAX_JOBS, alias="maxJobs", ge=1, le=500)


class PlannerSyncRequest(_CamelModel):
    project_no: Optional[str] = Field(default=None, alias="projectNo")
    tenant_id: str = Field(default="", alias="tenantId")


class ProjectSyncRequest(_CamelModel):
    project_no: str = Field(..., alias="projectNo", min_length=1)
    disabled: bool = False
    note: Optional[str] = None


class SubscriptionRequest(_CamelModel):
    entity_sets: List[str] = Field(default_factory=list, alias="entitySets")
    notification_url: Optional[str] = Field(default=None, alias="notificationUrl")


def _failure(scope: str, error: Exception) -> HTTPException:
    logger.error(f"{scope} failed", extra_fields={"error": str(error)})
    status = 502 if isinstance(error, ConnectorApiError) else 500
    return HTTPException(status_code=status, detail=str(error))


# =============================================================================
# Premium sync triggers
# =============================================================================

@router.post("/bc-to-premium", dependencies=guarded)
async def trigger_bc_to_premium(
    body: Optional[BcToPremiumRequest] = None,
    ctx: SyncContext = Depends(get_sync_context),
) -> Dict[str, Any]:
    body = body or BcToPremiumRequest()
    request_id = new_request_id()
    try:
        with with_correlation(request_id=request_id, scope="bcToPremium"):
            summary = await sync_bc_to_premium(
                ctx,
                project_nos=body.project_nos or None,
                task_system_ids=body.task_system_ids or None,
                request_id=request_id,
            )
    except (SyncSetupError, ConnectorApiError) as e:
        raise _failure("BC -> Premium sync", e)
    return {"ok": True, "requestId": request_id, "summary": summary}


@router.post("/premium-to-bc", dependencies=guarded)
async def trigger_premium_to_bc(
    body: Optional[PremiumToBcRequest] = None,
    ctx: SyncContext = Depends(get_sync_context),
) -> Dict[str, Any]:
    body = body or PremiumToBcRequest()
    request_id = new_request_id()
    try:
        with with_correlation(request_id=request_id, scope="premiumToBc"):
            if body.task_ids:
                summary = await sync_premium_task_ids(
                    ctx, body.task_ids, respect_prefer_bc=body.respect_prefer_bc, request_id=request_id
                )
            else:
                summary = await sync_premium_changes(ctx, request_id=request_id)
    except (SyncSetupError, ConnectorApiError) as e:
        raise _failure("Premium -> BC sync", e)
    return {"ok": True, "requestId": request_id, "summary": summary}


@router.get("/decide", dependencies=guarded)
async def preview_decision(
    prefer_bc: Optional[bool] = Query(None, alias="preferBc"),
    grace_ms: Optional[float] = Query(None, alias="graceMs", ge=0),
    ctx: SyncContext = Depends(get_sync_context),
) -> Dict[str, Any]:
    """Which direction would run now; never writes."""
    decision = await decide_premium_sync(ctx, prefer_bc=prefer_bc, grace_ms=grace_ms)
    return decision.to_dict()


@router.post("/auto", dependencies=guarded)
async def trigger_auto_sync(
    body: Optional[AutoSyncRequest] = None,
    ctx: SyncContext = Depends(get_sync_context),
) -> Dict[str, Any]:
    body = body or AutoSyncRequest()
    request_id = new_request_id()
    try:
        with with_correlation(request_id=request_id, scope="auto"):
            result = await run_premium_sync_decision(
                ctx, dry_run=body.dry_run, prefer_bc=body.prefer_bc, grace_ms=body.grace_ms, request_id=request_id
            )
    except (SyncSetupError, ConnectorApiError) as e:
        raise _failure("Auto sync", e)
    return {"ok": True, "requestId": request_id, **result}


@router.post("/bc-jobs/process", dependencies=guarded)
async def trigger_bc_jobs(
    body: Optional[ProcessJobsRequest] = None,
    ctx: SyncContext = Depends(get_sync_context),
    store: BcWebhookStore = Depends(get_webhook_store),
) -> Dict[str, Any]:
    body = body or ProcessJobsRequest()
    request_id = new_request_id()
    with with_correlation(request_id=request_id, scope="bcJobs"):
        summary, skipped = await process_bc_jobs_locked(ctx, store, max_jobs=body.max_jobs, request_id=request_id)
    if skipped:
        raise HTTPException(status_code=409, detail="BC job queue is already being processed")
    return {"ok": True, "requestId": request_id, "summary": summary}


# =============================================================================
# Legacy Planner mode
# =============================================================================

@router.post("/planner/sync", dependencies=guarded)
async def trigger_bc_to_planner(
    body: Optional[PlannerSyncRequest] = None,
    ctx: PlannerContext = Depends(get_planner_context),
) -> Dict[str, Any]:
    body = body or PlannerSyncRequest()
    try:
        summary = await sync_bc_to_planner(ctx, project_no=body.project_no, tenant_id=body.tenant_id)
    except ConnectorApiError as e:
        raise _failure("BC -> Planner sync", e)
    return {"ok": True, "summary": summary}


@router.post("/planner/poll", dependencies=guarded)
async def trigger_planner_poll(ctx: PlannerContext = Depends(get_planner_context)) -> Dict[str, Any]:
    try:
        summary = await run_planner_polling_sync(ctx)
    except ConnectorApiError as e:
        raise _failure("Planner polling sync", e)
    return {"ok": True, "summary": summary}


# =============================================================================
# Project sync settings
# =============================================================================

@router.get("/projects")
async def list_project_settings(store: ProjectSyncStore = Depends(get_project_sync_store)) -> Dict[str, Any]:
    settings = await store.list()
    return {"ok": True, "settings": [s.to_dict() for s in settings]}


@router.post("/projects", dependencies=guarded)
async def save_project_setting(
    body: ProjectSyncRequest,
    store: ProjectSyncStore = Depends(get_project_sync_store),
) -> Dict[str, Any]:
    try:
        setting = await store.upsert(body.project_no, body.disabled, body.note)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"ok": True, "setting": setting.to_dict()}


# =============================================================================
# Webhook log
# =============================================================================

def _pick_sink(logs: WebhookLogs, source: str) -> LogSink:
    sink = getattr(logs, source, None)
    if not isinstance(sink, LogSink):
        raise HTTPException(status_code=400, detail=f"Unknown log source: {source}")
    return sink


@router.get("/webhook-log")
async def list_webhook_log(
    source: str = Query("bc", pattern="^(bc|premium|planner)$"),
    limit: int = Query(50, ge=1, le=500),
    logs: WebhookLogs = Depends(get_webhook_logs),
) -> Dict[str, Any]:
    entries = await _pick_sink(logs, source).list(limit)
    return {"ok": True, "source": source, "entries": entries}


async def _event_stream(request: Request, sink: LogSink) -> AsyncGenerator[str, None]:
    queue: asyncio.Queue = asyncio.Queue()
    unsubscribe = sink.subscribe(queue.put_nowait)
    try:
        yield ": connected\n\n"
        while not await request.is_disconnected():
            try:
                entry = await asyncio.wait_for(queue.get(), timeout=STREAM_KEEPALIVE_SECONDS)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            yield f"data: {json.dumps(entry, default=str)}\n\n"
    finally:
        unsubscribe()


@router.get("/webhook-log/stream")
async def stream_webhook_log(
    request: Request,
    source: str = Query("bc", pattern="^(bc|premium|planner)$"),
    logs: WebhookLogs = Depends(get_webhook_logs),
) -> StreamingResponse:
    """Live webhook log entries as server-sent events."""
    sink = _pick_sink(logs, source)
    return StreamingResponse(_event_stream(request, sink), media_type="text/event-stream")


# =============================================================================
# BC webhook subscriptions
# =============================================================================

@router.get("/bc-subscriptions", dependencies=guarded)
async def list_bc_subscriptions(
    ctx: SyncContext = Depends(get_sync_context),
    store: BcWebhookStore = Depends(get_webhook_store),
    config: WebhookConfig = Depends(get_webhook_config),
) -> Dict[str, Any]:
    remote = await ctx.bc.list_webhook_subscriptions()
    stored = await store.get_subscription(config.bc_queue_entity_set)
    return {"ok": True, "stored": stored, "remote": remote}


@router.post("/bc-subscriptions", dependencies=guarded)
async def create_bc_subscriptions(
    body: Optional[SubscriptionRequest] = None,
    ctx: SyncContext = Depends(get_sync_context),
    store: BcWebhookStore = Depends(get_webhook_store),
    config: WebhookConfig = Depends(get_webhook_config),
) -> Dict[str, Any]:
    body = body or SubscriptionRequest()
    notification_url = body.notification_url or config.bc_notification_url
    if not notification_url:
        raise HTTPException(status_code=400, detail="notificationUrl is required (or set BC_WEBHOOK_NOTIFICATION_URL)")
    result = await ensure_bc_subscriptions(
        ctx.bc,
        store,
        notification_url,
        client_state=config.bc_shared_secret,
        entity_sets=body.entity_sets or [config.bc_queue_entity_set],
    )
    return {"ok": not result["errors"], **result}


@router.post("/bc-subscriptions/renew", dependencies=guarded)
async def renew_subscriptions(
    body: Optional[SubscriptionRequest] = None,
    ctx: SyncContext = Depends(get_sync_context),
    store: BcWebhookStore = Depends(get_webhook_store),
    config: WebhookConfig = Depends(get_webhook_config),
) -> Dict[str, Any]:
    body = body or SubscriptionRequest()
    result = await renew_bc_subscriptions(ctx.bc, store, entity_sets=body.entity_sets or [config.bc_queue_entity_set])
    return {"ok": not result["errors"], **result}


@router.delete("/bc-subscriptions/{entity_set}", dependencies=guarded)
async def remove_bc_subscription(
    entity_set: str,
    ctx: SyncContext = Depends(get_sync_context),
    store: BcWebhookStore = Depends(get_webhook_store),
) -> Dict[str, Any]:
    try:
        deleted = await delete_bc_subscription(ctx.bc, store, entity_set)
    except ConnectorApiError as e:
        raise _failure("BC subscription delete", e)
    if not deleted:
        raise HTTPException(status_code=404, detail=f"No stored subscription for {entity_set}")
    return {"ok": True, "entitySet": entity_set}
