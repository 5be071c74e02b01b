"""Health, readiness and metrics endpoints."""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Request, Response
from pydantic import BaseModel

from core import __version__
from core.observability import get_logger, get_metrics
from stores.webhook_store import JOBS_KEY


logger = get_logger(__name__)

router = APIRouter()


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    version: str
    kv: str
    pendingBcJobs: Optional[int] = None


async def _pending_jobs(kv) -> Optional[int]:
    try:
        return len(await kv.lrange(JOBS_KEY, 0, 499))
    except Exception as e:
        logger.warning("KV unavailable for health check", extra_fields={"error": str(e)})
        return None


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Process is up; reports the KV backend and queued BC webhook jobs (capped at 500)."""
    kv = getattr(request.app.state, "kv", None)
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=__version__,
        kv=type(kv).__name__ if kv is not None else "unavailable",
        pendingBcJobs=await _pending_jobs(kv) if kv is not None else None,
    )


@router.get("/ready")
async def readiness_check(request: Request, response: Response) -> Dict[str, str]:
    """Ready once the lifespan has opened the KV store."""
    if getattr(request.app.state, "kv", None) is None:
        response.status_code = 503
        return {"status": "starting"}
    return {"status": "ready"}


@router.get("/live")
async def liveness_check() -> Dict[str, str]:
    return {"status": "alive"}


@router.get("/metrics")
async def metrics_summary() -> Dict[str, Any]:
    """In-process pass, webhook and retry counters."""
    return get_metrics().get_summary()
