"""Bounded event log for webhook and sync observability.

A ``LogSink`` is constructed per event stream (BC webhooks, Premium webhooks,
Planner notifications) and handed to the components that publish to it.
It keeps the most recent entries in a ring buffer, optionally mirrors them to
a key-value list, and fans every entry out to live subscribers (used by the
log streaming endpoint).
"""

import logging
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)

LogEntry = Dict[str, Any]
Subscriber = Callable[[LogEntry], None]

DEFAULT_MAX_ENTRIES = 100
DEFAULT_LIST_LIMIT = 50


class LogSink:
    """Most-recent-N event buffer with subscribe/unsubscribe.

    Usage:
        sink = LogSink("bc-webhooks", kv=store, kv_key="bc:webhook:log")
        unsubscribe = sink.subscribe(queue.put_nowait)
        await sink.append({"type": "notification", "count": 2})
        entries = await sink.list(limit=10)  # newest first
        unsubscribe()
    """

    def __init__(
        self,
        name: str,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        kv=None,
        kv_key: Optional[str] = None,
    ):
        self.name = name
        self.max_entries = max(1, int(max_entries))
        self._entries: Deque[LogEntry] = deque(maxlen=self.max_entries)
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()
        self._kv = kv
        self._kv_key = kv_key

    async def append(self, entry: LogEntry) -> LogEntry:
        """Record an entry, persist it when a store is attached, notify subscribers."""
        entry = dict(entry)
        entry.setdefault("ts", datetime.now(timezone.utc).isoformat())
        with self._lock:
            self._entries.appendleft(entry)
            subscribers = list(self._subscribers)

        if self._kv is not None and self._kv_key:
            await self._kv.lpush(self._kv_key, entry)
            await self._kv.ltrim(self._kv_key, 0, self.max_entries - 1)

        for callback in subscribers:
            try:
                callback(entry)
            except Exception as e:
                logger.warning(f"Log sink '{self.name}' subscriber failed: {e}")
        return entry

    async def list(self, limit: int = DEFAULT_LIST_LIMIT) -> List[LogEntry]:
        """Return up to ``limit`` entries, newest first (limit clamped to 1..max)."""
        safe_limit = max(1, min(int(limit or DEFAULT_LIST_LIMIT), self.max_entries))
        if self._kv is not None and self._kv_key:
            rows = await self._kv.lrange(self._kv_key, 0, safe_limit - 1)
            entries = [row for row in rows if isinstance(row, dict)]
            if entries:
                return entries
        return self.recent(safe_limit)

    def recent(self, limit: int = DEFAULT_LIST_LIMIT) -> List[LogEntry]:
        """In-process entries only, newest first."""
        safe_limit = max(1, min(int(limit or DEFAULT_LIST_LIMIT), self.max_entries))
        with self._lock:
            return list(self._entries)[:safe_limit]

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a live subscriber. Returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
