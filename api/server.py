"""FastAPI server for the BC / Premium sync connector.

Hosts the webhook receivers, the cron/manual sync triggers and the health
probes. Run with ``python -m api.server`` or ``uvicorn api.server:app``.
"""

import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.routes import health, sync, webhooks
from connectors.errors import ConnectorApiError
from core import __version__
from core.config import ConfigError, get_webhook_config, read_int_env, read_list_env
from core.observability import configure_logging, get_logger
from stores import create_kv_store
from sync.webhooks import create_webhook_logs

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    configure_logging()
    kv = create_kv_store()
    app.state.kv = kv
    app.state.webhook_logs = create_webhook_logs(kv)
    app.state.webhook_config = get_webhook_config()
    logger.info(
        "Sync connector API starting up",
        extra_fields={
            "kv": type(kv.primary).__name__ if kv.primary else "file",
            "bcInline": app.state.webhook_config.bc_process_inline,
        },
    )

    yield

    logger.info("Sync connector API shutting down")
    await kv.close()


async def _config_error_handler(request: Request, exc: ConfigError) -> JSONResponse:
    logger.error("Request needs missing configuration", extra_fields={"path": request.url.path, "name": exc.name})
    return JSONResponse({"ok": False, "error": str(exc)}, status_code=503)


async def _connector_error_handler(request: Request, exc: ConnectorApiError) -> JSONResponse:
    logger.error("Upstream API call failed", extra_fields={"path": request.url.path, "status": exc.status_code})
    return JSONResponse({"ok": False, "error": str(exc)}, status_code=502)


def create_app() -> FastAPI:
    """Build the app; ``CORS_ALLOW_ORIGINS`` (comma separated) defaults to ``*``."""
    app = FastAPI(
        title="BC Premium Sync API",
        description="Webhook receivers and sync triggers for Business Central and Project for the web",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=read_list_env("CORS_ALLOW_ORIGINS") or ["*"],
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ConfigError, _config_error_handler)
    app.add_exception_handler(ConnectorApiError, _connector_error_handler)

    app.include_router(health.router, tags=["Health"])
    app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
    app.include_router(sync.router, prefix="/sync", tags=["Sync"])

    return app


app = create_app()


def main() -> None:
    import uvicorn

    uvicorn.run(
        "api.server:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=read_int_env("PORT", 8000, minimum=1),
        log_config=None,
    )


if __name__ == "__main__":
    main()
