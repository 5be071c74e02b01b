"""
Observability Validation Test

Validates the observability stack:
1. Pass, webhook and HTTP retry metrics are collected
2. Structured logging carries correlation IDs and extra fields
3. Event log sinks keep the newest entries and fan out to subscribers
"""

import asyncio
import json
import logging

import pytest


def test_observability_imports():
    """Verify all observability modules import correctly."""
    from core.observability import (
        CorrelationContext,
        LogSink,
        SyncMetrics,
        configure_logging,
        get_logger,
        get_metrics,
        record_pass_completed,
        record_pass_failed,
        record_pass_started,
        with_correlation,
    )
    assert SyncMetrics is not None
    assert get_metrics is not None
    assert CorrelationContext is not None
    assert LogSink is not None


class TestSyncMetrics:
    """Test the metrics collection system."""

    def test_singleton_instance(self):
        """SyncMetrics returns same instance until reset."""
        from core.observability.metrics import SyncMetrics

        m1 = SyncMetrics.instance()
        assert SyncMetrics.instance() is m1
        SyncMetrics.reset()
        assert SyncMetrics.instance() is not m1

    def test_pass_tracking(self):
        """Track pass started/completed/failed counts and outcome totals."""
        from core.observability import record_pass_completed, record_pass_failed, record_pass_started
        from core.observability.metrics import SyncMetrics

        record_pass_started("bcToPremium")
        record_pass_started("bcToPremium")
        record_pass_completed("bcToPremium", {"created": 2, "updated": 1, "skipped": 4, "errors": 0}, duration_ms=120)
        record_pass_failed("bcToPremium", "Premium project missing")

        summary = SyncMetrics.instance().get_summary()
        assert summary["passes"]["by_direction"]["bcToPremium"] == {"started": 2, "completed": 1, "failed": 1}
        assert summary["passes"]["outcomes"]["bcToPremium"] == {"created": 2, "updated": 1, "skipped": 4, "errors": 0}
        assert "bcToPremium" in summary["passes"]["last_completed_at"]
        assert summary["passes"]["last_error"] == {"bcToPremium": "Premium project missing"}
        assert summary["timings"]["pass.bcToPremium"]["average_ms"] == 120

    def test_webhook_tracking(self):
        """Webhook counters are kept per source."""
        from core.observability import get_metrics

        metrics = get_metrics()
        metrics.record_webhook("bc", received=3, enqueued=2, deduped=1)
        metrics.record_webhook("planner", received=1, rejected=1)
        metrics.record_jobs_processed(2)

        webhooks = metrics.get_summary()["webhooks"]
        assert webhooks["received"] == {"bc": 3, "planner": 1}
        assert webhooks["deduped"]["bc"] == 1
        assert webhooks["rejected"]["planner"] == 1
        assert webhooks["jobs_processed"] == 2

    def test_http_retry_labels(self):
        from core.observability import get_metrics

        metrics = get_metrics()
        metrics.record_http_retry("patch", 429)
        metrics.record_http_retry("GET", None)

        assert metrics.get_summary()["http_retries"] == {"PATCH 429": 1, "GET error": 1}

    def test_timing_percentile_calculation(self):
        """Calculate p95 timing correctly."""
        from core.observability import get_metrics

        metrics = get_metrics()
        for i in range(1, 101):
            metrics.record_pass_completed("premiumToBc", duration_ms=i)

        stats = metrics.get_timing_stats("pass.premiumToBc")

        assert 49 <= stats["average_ms"] <= 52
        assert 93 <= stats["p95_ms"] <= 97
        assert stats["sample_count"] == 100


class TestCorrelatedLogging:
    """Test structured logging with correlation IDs."""

    def test_correlation_context_merge(self):
        from core.observability.logging import CorrelationContext

        ctx = CorrelationContext(request_id="req-1", project_no="PR00042")
        merged = ctx.merge(task_no="1010", project_no=None)

        assert merged.to_dict() == {"request_id": "req-1", "project_no": "PR00042", "task_no": "1010"}

    def test_context_var_isolation(self):
        """Nested correlation scopes restore the outer context."""
        from core.observability.logging import get_correlation_context, with_correlation

        assert get_correlation_context().project_no is None

        with with_correlation(request_id="req-1", scope="bcToPremium"):
            with with_correlation(project_no="PR00042"):
                inner = get_correlation_context()
                assert (inner.request_id, inner.project_no, inner.scope) == ("req-1", "PR00042", "bcToPremium")
            assert get_correlation_context().project_no is None

        assert get_correlation_context().request_id is None

    def test_structured_formatter_json_output(self):
        """StructuredFormatter outputs valid JSON with correlation and extra fields."""
        from core.observability.logging import StructuredFormatter, with_correlation

        formatter = StructuredFormatter()

        with with_correlation(request_id="req-1", project_no="PR00042"):
            record = logging.LogRecord(
                name="sync.bc_to_premium",
                level=logging.INFO,
                pathname="bc_to_premium.py",
                lineno=10,
                msg="BC -> Premium project sync summary",
                args=(),
                exc_info=None,
            )
            record.extra_fields = {"created": 3}

            data = json.loads(formatter.format(record))

        assert data["message"] == "BC -> Premium project sync summary"
        assert data["request_id"] == "req-1"
        assert data["project_no"] == "PR00042"
        assert data["created"] == 3

    def test_human_readable_formatter(self):
        from core.observability.logging import HumanReadableFormatter, with_correlation

        record = logging.LogRecord("sync", logging.WARNING, "x.py", 1, "Task skipped", (), None)
        record.extra_fields = {"reason": "locked"}

        with with_correlation(request_id="req-1", project_no="PR00042", task_no="1010"):
            line = HumanReadableFormatter().format(record)

        assert "[req-1/PR00042#1010]: Task skipped" in line
        assert line.endswith('{"reason": "locked"}')

    def test_logger_passes_extra_fields(self):
        from core.observability import get_logger

        captured = []

        class Capture(logging.Handler):
            def emit(self, record):
                captured.append(record)

        handler = Capture()
        logging.getLogger("sync.test_capture").addHandler(handler)
        try:
            get_logger("sync.test_capture").warning("Premium task sync failed", extra_fields={"taskNo": "1010"})
        finally:
            logging.getLogger("sync.test_capture").removeHandler(handler)

        assert captured[0].getMessage() == "Premium task sync failed"
        assert captured[0].extra_fields == {"taskNo": "1010"}


class TestLogSink:
    """Bounded event logs behind the webhook log endpoints."""

    def test_ring_buffer_newest_first(self):
        from core.observability import LogSink

        sink = LogSink("bc-webhooks", max_entries=3)
        for n in range(5):
            asyncio.run(sink.append({"n": n}))

        assert [e["n"] for e in sink.recent()] == [4, 3, 2]
        assert len(sink) == 3
        assert all("ts" in e for e in sink.recent())

    def test_mirrors_to_kv(self, kv):
        from core.observability import LogSink

        sink = LogSink("bc-webhooks", max_entries=2, kv=kv, kv_key="bc:webhook:log")
        for n in range(3):
            asyncio.run(sink.append({"n": n}))
        sink.clear()

        assert [e["n"] for e in asyncio.run(sink.list(10))] == [2, 1]
        assert len(asyncio.run(kv.lrange("bc:webhook:log", 0, -1))) == 2

    def test_subscribers(self):
        from core.observability import LogSink

        sink = LogSink("premium-webhooks")
        seen = []

        def broken(entry):
            raise RuntimeError("client went away")

        unsubscribe = sink.subscribe(seen.append)
        sink.subscribe(broken)
        asyncio.run(sink.append({"type": "notification"}))
        unsubscribe()
        asyncio.run(sink.append({"type": "skipped"}))

        assert [e["type"] for e in seen] == ["notification"]
        assert sink.subscriber_count == 1

    @pytest.mark.parametrize("limit,expected", [(0, 5), (2, 2), (500, 5)])
    def test_list_limit_is_clamped(self, limit, expected):
        from core.observability import LogSink

        sink = LogSink("planner-webhooks")
        for n in range(5):
            asyncio.run(sink.append({"n": n}))

        assert len(asyncio.run(sink.list(limit))) == expected
