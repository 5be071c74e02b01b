"""Shared HTTP plumbing for the provider clients.

``fetch_with_retry`` wraps an aiohttp session call with:
- Exponential backoff on 429/503/504 and transport errors
- ``Retry-After`` support (delta-seconds or HTTP date)
- An optional per-delay cap and a total delay budget; when the budget would
  be exceeded the last response is returned as-is instead of sleeping again

Responses are read fully inside the request context and returned as a
``HttpResponse`` so callers never hold an open connection.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import aiohttp

from core.config import HttpRetryConfig, get_http_retry_config
from core.observability.metrics import get_metrics

logger = logging.getLogger(__name__)

REDACTED_QUERY_KEYS = {"token", "access_token", "client_secret", "$deltatoken", "deltatoken", "$skiptoken"}


@dataclass
class HttpResponse:
    """A fully-read HTTP response."""
    status: int
    headers: Mapping[str, str] = field(default_factory=dict)
    text: str = ""
    url: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None

    def json(self) -> Any:
        """Parse the body as JSON; an empty or non-JSON body yields None."""
        if not self.text:
            return None
        try:
            return json.loads(self.text)
        except ValueError:
            return None


def sanitize_url(url: str) -> str:
    """Redact tokens and secrets from a URL's query string."""
    if not url or "?" not in url:
        return url
    parts = urlsplit(url)
    pairs = parse_qsl(parts.query, keep_blank_values=True)
    if not any(key.lower() in REDACTED_QUERY_KEYS for key, _ in pairs):
        return url
    cleaned = [
        (key, "REDACTED" if key.lower() in REDACTED_QUERY_KEYS else value)
        for key, value in pairs
    ]
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(cleaned, safe="$,'()"), parts.fragment))


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Parse a ``Retry-After`` header into seconds.

    Args:
        value: Header value, either delta-seconds or an HTTP date
        now: Reference time for HTTP dates (defaults to current UTC time)

    Returns:
        Positive delay in seconds, or None when absent, unparsable or in the past
    """
    if not value:
        return None
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        seconds = None
    if seconds is not None:
        return seconds if seconds > 0 else None
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    reference = now or datetime.now(timezone.utc)
    delay = (when - reference).total_seconds()
    return delay if delay > 0 else None


async def fetch_with_retry(
    session: aiohttp.ClientSession,
    method: str,
    url: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    params: Optional[Dict[str, str]] = None,
    json_body: Any = None,
    data: Any = None,
    retry: Optional[HttpRetryConfig] = None,
    timeout_seconds: float = 30,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> HttpResponse:
    """Issue an HTTP request, retrying transient failures.

    Returns:
        The final response, which may still be a retryable status when the
        attempt count or delay budget ran out

    Raises:
        aiohttp.ClientError / asyncio.TimeoutError: transport failure on the
        last attempt (or once the delay budget is spent)
    """
    retry = retry or get_http_retry_config()
    safe_url = sanitize_url(url)
    timeout = aiohttp.ClientTimeout(total=timeout_seconds)
    started = clock()
    spent = 0.0
    last_error: Optional[BaseException] = None

    for attempt in range(retry.retries + 1):
        try:
            async with session.request(
                method,
                url,
                headers=headers,
                params=params,
                json=json_body,
                data=data,
                timeout=timeout,
            ) as response:
                body = await response.text()
                result = HttpResponse(
                    status=response.status,
                    headers=dict(response.headers),
                    text=body,
                    url=url,
                )
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            last_error = exc
            if attempt >= retry.retries:
                break
            delay = retry.base_delay * (2 ** attempt)
            if retry.max_delay is not None:
                delay = min(delay, retry.max_delay)
            elapsed = max(clock() - started, spent)
            if retry.max_total_delay is not None and elapsed + delay > retry.max_total_delay:
                logger.warning(
                    f"Retry budget exceeded after error for {method} {safe_url} "
                    f"(attempt {attempt}, delay {delay:.2f}s): {exc}"
                )
                break
            logger.info(f"Retrying {method} {safe_url} after {type(exc).__name__} in {delay:.2f}s")
            get_metrics().record_http_retry(method, None)
            spent += delay
            await sleep(delay)
            continue

        if result.status not in retry.retry_statuses or attempt >= retry.retries:
            return result

        delay = retry.base_delay * (2 ** attempt)
        retry_after = parse_retry_after(result.header("Retry-After"))
        if retry_after is not None:
            delay = max(delay, retry_after)
        if retry.max_delay is not None:
            delay = min(delay, retry.max_delay)
        elapsed = max(clock() - started, spent)
        if retry.max_total_delay is not None and elapsed + delay > retry.max_total_delay:
            logger.warning(
                f"Retry budget exceeded for {method} {safe_url}; returning {result.status} "
                f"(attempt {attempt}, delay {delay:.2f}s)"
            )
            return result
        logger.info(f"Retrying {method} {safe_url} after {result.status} in {delay:.2f}s")
        get_metrics().record_http_retry(method, result.status)
        spent += delay
        await sleep(delay)

    assert last_error is not None
    raise last_error
