"""
Observability Module for the Sync Connector

Provides:
- Structured logging with correlation IDs
- Bounded event log sinks for webhook/sync activity
- In-process metrics (passes, outcomes, retries, webhook jobs)
"""

from core.observability.metrics import (
    SyncMetrics,
    get_metrics,
    record_pass_started,
    record_pass_completed,
    record_pass_failed,
)

from core.observability.logging import (
    get_logger,
    configure_logging,
    CorrelationContext,
    with_correlation,
)

from core.observability.log_sink import LogSink

__all__ = [
    # Metrics
    "SyncMetrics",
    "get_metrics",
    "record_pass_started",
    "record_pass_completed",
    "record_pass_failed",
    # Logging
    "get_logger",
    "configure_logging",
    "CorrelationContext",
    "with_correlation",
    # Event log
    "LogSink",
]
