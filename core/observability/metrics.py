"""
Metrics Collection for the Sync Connector

Collects and exposes metrics for:
- Sync passes per direction (started, completed, failed)
- Per-record outcomes (created, updated, skipped, errors)
- Webhook jobs (enqueued, deduped, processed)
- HTTP retries by method and status
- Pass durations (average, p95)

Metrics are in-memory only; they reset when the process restarts.
"""

import statistics
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, List, Optional


# =============================================================================
# Metric Data Classes
# =============================================================================

def _pass_counts() -> Dict[str, int]:
    return {"started": 0, "completed": 0, "failed": 0}


def _outcome_counts() -> Dict[str, int]:
    return {"created": 0, "updated": 0, "skipped": 0, "errors": 0}


@dataclass
class PassMetrics:
    """Reconciliation pass counters, keyed by direction."""
    by_direction: Dict[str, Dict[str, int]] = field(default_factory=lambda: defaultdict(_pass_counts))
    outcomes: Dict[str, Dict[str, int]] = field(default_factory=lambda: defaultdict(_outcome_counts))
    last_completed_at: Dict[str, datetime] = field(default_factory=dict)
    last_error: Dict[str, str] = field(default_factory=dict)


@dataclass
class WebhookMetrics:
    """Webhook ingestion counters, keyed by source."""
    received: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    enqueued: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    deduped: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    rejected: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    jobs_processed: int = 0


@dataclass
class TimingMetrics:
    """Pass duration samples."""
    max_samples: int = 1000
    by_stage: Dict[str, List[float]] = field(default_factory=lambda: defaultdict(list))

    def add_sample(self, duration_ms: float, stage: str):
        samples = self.by_stage[stage]
        samples.append(duration_ms)
        if len(samples) > self.max_samples:
            self.by_stage[stage] = samples[-self.max_samples:]

    def get_average(self, stage: str) -> float:
        samples = self.by_stage.get(stage, [])
        return statistics.mean(samples) if samples else 0.0

    def get_p95(self, stage: str) -> float:
        samples = self.by_stage.get(stage, [])
        if not samples:
            return 0.0
        sorted_samples = sorted(samples)
        idx = int(len(sorted_samples) * 0.95)
        return sorted_samples[min(idx, len(sorted_samples) - 1)]


# =============================================================================
# Metrics Collector (Singleton)
# =============================================================================

class SyncMetrics:
    """
    Thread-safe metrics collector for the sync connector.

    Usage:
        metrics = SyncMetrics.instance()
        metrics.record_pass_started("bcToPremium")
        metrics.record_pass_completed("bcToPremium", summary, duration_ms=1200)
    """

    _instance: Optional["SyncMetrics"] = None
    _instance_lock = Lock()

    def __init__(self):
        self.passes = PassMetrics()
        self.webhooks = WebhookMetrics()
        self.timings = TimingMetrics()
        self.http_retries: Dict[str, int] = defaultdict(int)
        self._lock = Lock()

    @classmethod
    def instance(cls) -> "SyncMetrics":
        """Get singleton instance."""
        if cls._instance is None:
            with cls._instance_lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton (tests)."""
        with cls._instance_lock:
            cls._instance = None

    # =========================================================================
    # Pass Metrics
    # =========================================================================

    def record_pass_started(self, direction: str):
        with self._lock:
            self.passes.by_direction[direction]["started"] += 1

    def record_pass_completed(self, direction: str, summary: Optional[Dict[str, Any]] = None, duration_ms: float = None):
        """Record a finished pass and fold its summary counts into the outcome totals."""
        with self._lock:
            self.passes.by_direction[direction]["completed"] += 1
            self.passes.last_completed_at[direction] = datetime.now(timezone.utc)
            if summary:
                outcomes = self.passes.outcomes[direction]
                for key in ("created", "updated", "skipped", "errors"):
                    value = summary.get(key)
                    if isinstance(value, int):
                        outcomes[key] += value
            if duration_ms:
                self.timings.add_sample(duration_ms, f"pass.{direction}")

    def record_pass_failed(self, direction: str, error: str = None):
        with self._lock:
            self.passes.by_direction[direction]["failed"] += 1
            if error:
                self.passes.last_error[direction] = error

    # =========================================================================
    # Webhook Metrics
    # =========================================================================

    def record_webhook(self, source: str, received: int = 0, enqueued: int = 0, deduped: int = 0, rejected: int = 0):
        with self._lock:
            self.webhooks.received[source] += received
            self.webhooks.enqueued[source] += enqueued
            self.webhooks.deduped[source] += deduped
            self.webhooks.rejected[source] += rejected

    def record_jobs_processed(self, count: int):
        with self._lock:
            self.webhooks.jobs_processed += count

    # =========================================================================
    # HTTP Metrics
    # =========================================================================

    def record_http_retry(self, method: str, status: Optional[int]):
        label = f"{method.upper()} {status if status is not None else 'error'}"
        with self._lock:
            self.http_retries[label] += 1

    def get_timing_stats(self, stage: str) -> Dict[str, float]:
        with self._lock:
            return {
                "average_ms": self.timings.get_average(stage),
                "p95_ms": self.timings.get_p95(stage),
                "sample_count": len(self.timings.by_stage.get(stage, [])),
            }

    # =========================================================================
    # Summary
    # =========================================================================

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of all metrics."""
        with self._lock:
            return {
                "passes": {
                    "by_direction": {k: dict(v) for k, v in self.passes.by_direction.items()},
                    "outcomes": {k: dict(v) for k, v in self.passes.outcomes.items()},
                    "last_completed_at": {k: v.isoformat() for k, v in self.passes.last_completed_at.items()},
                    "last_error": dict(self.passes.last_error),
                },
                "webhooks": {
                    "received": dict(self.webhooks.received),
                    "enqueued": dict(self.webhooks.enqueued),
                    "deduped": dict(self.webhooks.deduped),
                    "rejected": dict(self.webhooks.rejected),
                    "jobs_processed": self.webhooks.jobs_processed,
                },
                "http_retries": dict(self.http_retries),
                "timings": {
                    stage: {
                        "average_ms": self.timings.get_average(stage),
                        "p95_ms": self.timings.get_p95(stage),
                    }
                    for stage in self.timings.by_stage.keys()
                },
            }


# =============================================================================
# Module-level convenience functions
# =============================================================================

def get_metrics() -> SyncMetrics:
    """Get the global metrics collector."""
    return SyncMetrics.instance()


def record_pass_started(direction: str):
    get_metrics().record_pass_started(direction)


def record_pass_completed(direction: str, summary: Optional[Dict[str, Any]] = None, duration_ms: float = None):
    get_metrics().record_pass_completed(direction, summary, duration_ms)


def record_pass_failed(direction: str, error: str = None):
    get_metrics().record_pass_failed(direction, error)
