"""Request dependencies shared by the routers.

Long-lived objects (KV store, webhook logs, configs) live on ``app.state`` and
are created by the server lifespan. Sync contexts are opened per request so
each request gets its own HTTP sessions; tests replace these dependencies via
``app.dependency_overrides``.
"""

import hmac
from typing import AsyncContextManager, AsyncGenerator, Callable, Optional

from fastapi import Header, HTTPException, Query, Request

from core.config import WebhookConfig
from stores import BcWebhookStore, KeyValueStore, ProjectSyncStore
from sync.context import SyncContext, open_sync_context
from sync.planner_sync import PlannerContext, open_planner_context
from sync.webhooks import WebhookLogs

SyncContextOpener = Callable[[], AsyncContextManager[SyncContext]]
PlannerContextOpener = Callable[[], AsyncContextManager[PlannerContext]]


def get_kv(request: Request) -> KeyValueStore:
    return request.app.state.kv


def get_webhook_logs(request: Request) -> WebhookLogs:
    return request.app.state.webhook_logs


def get_webhook_config(request: Request) -> WebhookConfig:
    return request.app.state.webhook_config


def get_webhook_store(request: Request) -> BcWebhookStore:
    config: WebhookConfig = request.app.state.webhook_config
    return BcWebhookStore(
        request.app.state.kv,
        dedupe_window_seconds=config.dedupe_window_seconds,
        lock_ttl_seconds=config.job_lock_ttl_seconds,
    )


def get_project_sync_store(request: Request) -> ProjectSyncStore:
    return ProjectSyncStore(request.app.state.kv)


def get_sync_context_opener(request: Request) -> SyncContextOpener:
    """Open provider clients lazily.

    Webhook receivers only need them when they process inline, and the
    validation handshake must succeed before BC credentials are configured.
    """
    kv = request.app.state.kv
    logs: WebhookLogs = request.app.state.webhook_logs
    return lambda: open_sync_context(kv=kv, log_sink=logs.bc)


def get_planner_context_opener(request: Request) -> PlannerContextOpener:
    kv = request.app.state.kv
    return lambda: open_planner_context(kv=kv)


async def get_sync_context(request: Request) -> AsyncGenerator[SyncContext, None]:
    logs: WebhookLogs = request.app.state.webhook_logs
    async with open_sync_context(kv=request.app.state.kv, log_sink=logs.bc) as ctx:
        yield ctx


async def get_planner_context(request: Request) -> AsyncGenerator[PlannerContext, None]:
    async with open_planner_context(kv=request.app.state.kv) as ctx:
        yield ctx


def require_cron_secret(
    request: Request,
    x_cron_secret: Optional[str] = Header(None),
    cron_secret: Optional[str] = Query(None, alias="cronSecret"),
) -> None:
    """Guard manual/cron triggers with ``CRON_SECRET`` when one is configured."""
    expected = request.app.state.webhook_config.cron_secret
    if not expected:
        return
    provided = x_cron_secret or cron_secret or ""
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Unauthorized")
