"""
Structured Logging with Correlation IDs

Every record carries the correlation fields active when it was logged:
- request_id: one trigger (cron run, webhook delivery, manual call)
- project_no / task_no: the BC project and task being reconciled
- workflow_id / activity_name: the Temporal execution, when there is one
- scope: the pass (bcToPremium, premiumToBc, bcJobs, planner, ...)

Usage:
    from core.observability.logging import get_logger, with_correlation

    logger = get_logger(__name__)

    with with_correlation(request_id="req-1", project_no="PR00042"):
        logger.info("Project synced", extra_fields={"updated": 4})
"""

import json
import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, MutableMapping, Optional, Tuple


# =============================================================================
# Correlation Context
# =============================================================================

@dataclass
class CorrelationContext:
    request_id: Optional[str] = None
    project_no: Optional[str] = None
    task_no: Optional[str] = None
    workflow_id: Optional[str] = None
    activity_name: Optional[str] = None
    scope: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    def merge(self, **kwargs) -> "CorrelationContext":
        """A copy with the non-None ``kwargs`` layered on top."""
        data = self.to_dict()
        data.update({k: v for k, v in kwargs.items() if v is not None})
        return CorrelationContext(**data)


_correlation_context: ContextVar[CorrelationContext] = ContextVar(
    "sync_correlation_context",
    default=CorrelationContext(),
)


def get_correlation_context() -> CorrelationContext:
    return _correlation_context.get()


@contextmanager
def with_correlation(**kwargs) -> Iterator[CorrelationContext]:
    """Layer correlation fields over the current ones for the enclosed block.

    Nested blocks restore the outer context on exit, and each asyncio task
    sees its own copy.
    """
    token = _correlation_context.set(get_correlation_context().merge(**kwargs))
    try:
        yield _correlation_context.get()
    finally:
        _correlation_context.reset(token)


def _record_correlation(record: logging.LogRecord) -> Dict[str, Any]:
    # Records built outside CorrelatedLogger fall back to the live context.
    captured = getattr(record, "correlation", None)
    return captured if isinstance(captured, dict) else get_correlation_context().to_dict()


# =============================================================================
# Formatters
# =============================================================================

class StructuredFormatter(logging.Formatter):
    """One JSON object per line.

    {"timestamp": "2025-01-15T12:00:00.000Z", "level": "INFO",
     "logger": "sync.bc_to_premium", "message": "...", "request_id": "req-1",
     "project_no": "PR00042", "updated": 4}
    """

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload: Dict[str, Any] = {
            "timestamp": created.strftime("%Y-%m-%dT%H:%M:%S.") + f"{created.microsecond // 1000:03d}Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(_record_correlation(record))
        payload.update(getattr(record, "extra_fields", None) or {})
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class HumanReadableFormatter(logging.Formatter):
    """2025-01-15 12:00:00 [INFO ] sync.bc_to_premium [req-1/PR00042#1010]: message {"updated": 4}"""

    @staticmethod
    def correlation_label(fields: Dict[str, Any]) -> str:
        parts = []
        for key in ("request_id", "workflow_id"):
            if fields.get(key):
                parts.append(str(fields[key])[:12])
        if fields.get("project_no"):
            project = str(fields["project_no"])
            if fields.get("task_no"):
                project = f"{project}#{fields['task_no']}"
            parts.append(project)
        return "/".join(parts) or "-"

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        label = self.correlation_label(_record_correlation(record))
        line = f"{created:%Y-%m-%d %H:%M:%S} [{record.levelname:5}] {record.name} [{label}]: {record.getMessage()}"
        extra = getattr(record, "extra_fields", None)
        if extra:
            line += " " + json.dumps(extra, default=str)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


# =============================================================================
# Logger with Correlation Support
# =============================================================================

class CorrelatedLogger(logging.LoggerAdapter):
    """``logging.Logger`` front that accepts ``extra_fields={...}``.

    The correlation context is snapshotted onto the record when the call is
    made, so handlers that format later still see the right ids.
    """

    def __init__(self, logger: logging.Logger):
        super().__init__(logger, {})

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        extra["extra_fields"] = kwargs.pop("extra_fields", None) or {}
        extra["correlation"] = get_correlation_context().to_dict()
        kwargs["extra"] = extra
        return msg, kwargs


# =============================================================================
# Logger Factory
# =============================================================================

_loggers: Dict[str, CorrelatedLogger] = {}
_configured = False

_PROJECT_LOGGERS = ("activities", "workflows", "api", "core", "sync", "stores", "connectors", "scripts")
_NOISY_LOGGERS = ("aiohttp", "httpx", "uvicorn.access", "redis")


def configure_logging(level: Optional[int] = None, json_format: Optional[bool] = None) -> None:
    """Install one stdout handler on the root logger (idempotent).

    Args:
        level: Defaults to ``LOG_LEVEL`` (name or number), else INFO
        json_format: Defaults to ``LOG_FORMAT=json``
    """
    global _configured
    if _configured:
        return

    if level is None:
        raw = os.environ.get("LOG_LEVEL", "").strip().upper()
        level = int(raw) if raw.isdigit() else logging.getLevelName(raw or "INFO")
        if not isinstance(level, int):
            level = logging.INFO
    if json_format is None:
        json_format = os.environ.get("LOG_FORMAT", "").strip().lower() == "json"

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter() if json_format else HumanReadableFormatter())
    root = logging.getLogger()
    root.setLevel(level)
    root.addHandler(handler)

    for name in _PROJECT_LOGGERS:
        logging.getLogger(name).setLevel(level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("temporalio").setLevel(max(level, logging.INFO))

    _configured = True


def get_logger(name: str) -> CorrelatedLogger:
    """Cached correlated logger for ``name`` (typically ``__name__``)."""
    if name not in _loggers:
        configure_logging()
        _loggers[name] = CorrelatedLogger(logging.getLogger(name))
    return _loggers[name]
