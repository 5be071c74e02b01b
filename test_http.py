"""
Tests for the shared HTTP retry helper.
"""

import asyncio
from datetime import datetime, timezone

import aiohttp
import pytest


class FakeResponse:
    def __init__(self, status, body="", headers=None):
        self.status = status
        self.headers = headers or {}
        self._body = body

    async def text(self):
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    """Replays queued responses (or raises queued exceptions) per request."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class Sleeper:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def _fetch(session, retry=None, sleeper=None, **kwargs):
    from core.config import HttpRetryConfig
    from core.http import fetch_with_retry

    return asyncio.run(
        fetch_with_retry(
            session,
            "GET",
            "https://api.example.com/v2.0/projects",
            retry=retry or HttpRetryConfig(),
            sleep=sleeper or Sleeper(),
            clock=lambda: 0.0,
            **kwargs,
        )
    )


class TestFetchWithRetry:
    """Backoff, Retry-After and the delay budget."""

    def test_success_is_returned_immediately(self):
        session = FakeSession(FakeResponse(200, '{"value": []}', {"Content-Type": "application/json"}))

        response = _fetch(session)

        assert response.ok
        assert response.json() == {"value": []}
        assert response.header("content-type") == "application/json"
        assert len(session.calls) == 1

    def test_retry_after_overrides_backoff(self):
        from core.observability import get_metrics

        sleeper = Sleeper()
        session = FakeSession(FakeResponse(429, headers={"Retry-After": "3"}), FakeResponse(200, "{}"))

        response = _fetch(session, sleeper=sleeper)

        assert response.status == 200
        assert sleeper.delays == [3.0]
        assert get_metrics().get_summary()["http_retries"] == {"GET 429": 1}

    def test_exponential_backoff_capped(self):
        from core.config import HttpRetryConfig

        sleeper = Sleeper()
        session = FakeSession(*[FakeResponse(503) for _ in range(4)], FakeResponse(200))

        _fetch(session, retry=HttpRetryConfig(base_delay=1.0, max_delay=3.0), sleeper=sleeper)

        assert sleeper.delays == [1.0, 2.0, 3.0, 3.0]

    def test_non_retryable_status_returned(self):
        sleeper = Sleeper()
        session = FakeSession(FakeResponse(400, '{"error": {"message": "bad"}}'))

        response = _fetch(session, sleeper=sleeper)

        assert response.status == 400
        assert sleeper.delays == []

    def test_budget_exceeded_returns_last_response(self):
        from core.config import HttpRetryConfig

        sleeper = Sleeper()
        session = FakeSession(FakeResponse(503), FakeResponse(503, headers={"Retry-After": "10"}))

        response = _fetch(session, retry=HttpRetryConfig(base_delay=1.0, max_total_delay=5.0), sleeper=sleeper)

        assert response.status == 503
        assert sleeper.delays == [1.0]
        assert len(session.calls) == 2

    def test_attempts_exhausted_returns_last_response(self):
        from core.config import HttpRetryConfig

        session = FakeSession(FakeResponse(504), FakeResponse(504))

        response = _fetch(session, retry=HttpRetryConfig(retries=1, base_delay=0.1))

        assert response.status == 504

    def test_transport_errors_are_retried_then_raised(self):
        from core.config import HttpRetryConfig

        sleeper = Sleeper()
        recovered = FakeSession(aiohttp.ClientConnectionError("reset"), FakeResponse(200))
        assert _fetch(recovered, sleeper=sleeper).status == 200
        assert sleeper.delays == [0.5]

        failing = FakeSession(asyncio.TimeoutError(), asyncio.TimeoutError())
        with pytest.raises(asyncio.TimeoutError):
            _fetch(failing, retry=HttpRetryConfig(retries=1))

    def test_request_arguments_pass_through(self):
        session = FakeSession(FakeResponse(204))

        _fetch(session, headers={"If-Match": "*"}, json_body={"a": 1}, params={"$top": "5"})

        _, _, kwargs = session.calls[0]
        assert kwargs["headers"] == {"If-Match": "*"}
        assert kwargs["json"] == {"a": 1}
        assert kwargs["params"] == {"$top": "5"}


class TestHeaderHelpers:
    """Retry-After parsing and URL redaction."""

    def test_parse_retry_after(self):
        from core.http import parse_retry_after

        now = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)
        assert parse_retry_after("2") == 2.0
        assert parse_retry_after("0") is None
        assert parse_retry_after("Wed, 15 Jan 2025 12:00:30 GMT", now=now) == 30.0
        assert parse_retry_after("Wed, 15 Jan 2025 11:59:00 GMT", now=now) is None
        assert parse_retry_after("soon") is None
        assert parse_retry_after(None) is None

    def test_sanitize_url(self):
        from core.http import sanitize_url

        url = "https://org.crm.dynamics.com/api/data/v9.2/msdyn_projecttasks?$deltatoken=abc&$select=msdyn_subject"
        assert sanitize_url(url) == (
            "https://org.crm.dynamics.com/api/data/v9.2/msdyn_projecttasks?$deltatoken=REDACTED&$select=msdyn_subject"
        )
        assert sanitize_url("https://graph.microsoft.com/v1.0/planner/tasks") == "https://graph.microsoft.com/v1.0/planner/tasks"

    def test_json_on_empty_body(self):
        from core.http import HttpResponse

        assert HttpResponse(204).json() is None
        assert HttpResponse(200, text="not json").json() is None
