"""Key-value storage backends.

Every durable piece of connector state (cursors, delta links, settings,
dedupe markers, job queues, webhook logs) goes through the small
``KeyValueStore`` interface defined here:

- RedisKeyValueStore: shared cache for multi-process deployments
- FileKeyValueStore: single JSON document on local disk
- InMemoryKeyValueStore: for development/testing
- FallbackKeyValueStore: tries the primary, degrades to a secondary on any
  failure, logs a warning and never raises

Values are JSON-serializable Python objects. TTLs are in seconds.
"""

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import redis.asyncio as redis

from core.config import KVConfig, get_kv_config

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Abstract base class for key-value storage."""

    @abstractmethod
    async def get(self, key: str) -> Any:
        """Return the stored value, or None when absent or expired."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: Optional[int] = None, nx: bool = False) -> bool:
        """Store a value.

        Args:
            key: Key name
            value: JSON-serializable value
            ttl: Expiry in seconds (None for no expiry)
            nx: Only set when the key does not already exist

        Returns:
            True if the value was written, False if ``nx`` blocked it
        """

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a key. Returns True if it existed."""

    @abstractmethod
    async def lpush(self, key: str, value: Any) -> int:
        """Push onto the head of a list. Returns the new length."""

    @abstractmethod
    async def rpop(self, key: str) -> Any:
        """Pop from the tail of a list (oldest first for lpush producers)."""

    @abstractmethod
    async def lrange(self, key: str, start: int, stop: int) -> List[Any]:
        """Return list items between two inclusive indexes."""

    @abstractmethod
    async def ltrim(self, key: str, start: int, stop: int) -> None:
        """Keep only list items between two inclusive indexes."""

    async def close(self) -> None:
        return None


def _slice(items: List[Any], start: int, stop: int) -> List[Any]:
    """Redis-style inclusive range over a Python list."""
    length = len(items)
    if start < 0:
        start = max(0, length + start)
    if stop < 0:
        stop = length + stop
    if start >= length or stop < start:
        return []
    return items[start:stop + 1]


# =============================================================================
# Local backends
# =============================================================================

class _DocumentKeyValueStore(KeyValueStore):
    """Shared logic for backends that keep one dict document.

    Document shape::

        {"values": {key: {"value": ..., "expires_at": epoch|None}},
         "lists": {key: [head, ..., tail]}}
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()

    @abstractmethod
    def _load(self) -> Dict[str, Any]:
        ...

    @abstractmethod
    def _save(self, document: Dict[str, Any]) -> None:
        ...

    def _document(self) -> Dict[str, Any]:
        document = self._load() or {}
        document.setdefault("values", {})
        document.setdefault("lists", {})
        return document

    def _live_entry(self, document: Dict[str, Any], key: str) -> Optional[Dict[str, Any]]:
        entry = document["values"].get(key)
        if not entry:
            return None
        expires_at = entry.get("expires_at")
        if expires_at is not None and expires_at <= self._clock():
            del document["values"][key]
            return None
        return entry

    async def get(self, key: str) -> Any:
        with self._lock:
            document = self._document()
            entry = self._live_entry(document, key)
            return entry["value"] if entry else None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None, nx: bool = False) -> bool:
        with self._lock:
            document = self._document()
            if nx and self._live_entry(document, key) is not None:
                return False
            expires_at = self._clock() + ttl if ttl else None
            document["values"][key] = {"value": value, "expires_at": expires_at}
            self._save(document)
            return True

    async def delete(self, key: str) -> bool:
        with self._lock:
            document = self._document()
            existed = document["values"].pop(key, None) is not None
            existed = document["lists"].pop(key, None) is not None or existed
            if existed:
                self._save(document)
            return existed

    async def lpush(self, key: str, value: Any) -> int:
        with self._lock:
            document = self._document()
            items = document["lists"].setdefault(key, [])
            items.insert(0, value)
            self._save(document)
            return len(items)

    async def rpop(self, key: str) -> Any:
        with self._lock:
            document = self._document()
            items = document["lists"].get(key) or []
            if not items:
                return None
            value = items.pop()
            self._save(document)
            return value

    async def lrange(self, key: str, start: int, stop: int) -> List[Any]:
        with self._lock:
            items = self._document()["lists"].get(key) or []
            return list(_slice(items, start, stop))

    async def ltrim(self, key: str, start: int, stop: int) -> None:
        with self._lock:
            document = self._document()
            items = document["lists"].get(key)
            if items is None:
                return
            document["lists"][key] = _slice(items, start, stop)
            self._save(document)


class InMemoryKeyValueStore(_DocumentKeyValueStore):
    """In-memory storage for development/testing.

    WARNING: State is lost on restart.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        super().__init__(clock)
        self._data: Dict[str, Any] = {"values": {}, "lists": {}}

    def _load(self) -> Dict[str, Any]:
        return self._data

    def _save(self, document: Dict[str, Any]) -> None:
        self._data = document


class FileKeyValueStore(_DocumentKeyValueStore):
    """File-based storage: one JSON document on local disk.

    Suitable for single-process deployments and as the fallback target
    when the shared cache is missing or failing.
    """

    def __init__(self, path: Path, clock: Callable[[], float] = time.time):
        super().__init__(clock)
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring unreadable KV file {self._path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, document: Dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=2, default=str)
        tmp_path.replace(self._path)


# =============================================================================
# Redis backend
# =============================================================================

class RedisKeyValueStore(KeyValueStore):
    """Redis-backed storage (``redis.asyncio``)."""

    def __init__(self, url: str, client: Optional[redis.Redis] = None):
        self._url = url
        self._client = client

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.Redis.from_url(self._url, decode_responses=True)
        return self._client

    @staticmethod
    def _dump(value: Any) -> str:
        return json.dumps(value, default=str)

    @staticmethod
    def _load(raw: Any) -> Any:
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            return raw

    async def get(self, key: str) -> Any:
        return self._load(await self.client.get(key))

    async def set(self, key: str, value: Any, ttl: Optional[int] = None, nx: bool = False) -> bool:
        result = await self.client.set(key, self._dump(value), ex=ttl or None, nx=nx)
        return bool(result)

    async def delete(self, key: str) -> bool:
        return bool(await self.client.delete(key))

    async def lpush(self, key: str, value: Any) -> int:
        return int(await self.client.lpush(key, self._dump(value)))

    async def rpop(self, key: str) -> Any:
        return self._load(await self.client.rpop(key))

    async def lrange(self, key: str, start: int, stop: int) -> List[Any]:
        rows = await self.client.lrange(key, start, stop)
        return [self._load(row) for row in rows]

    async def ltrim(self, key: str, start: int, stop: int) -> None:
        await self.client.ltrim(key, start, stop)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


# =============================================================================
# Fallback composition
# =============================================================================

class FallbackKeyValueStore(KeyValueStore):
    """Primary store with transparent degradation to a secondary.

    Reads try the primary and fall back on error. Writes go to the primary
    unless ``read_only`` is set; on error they land in the secondary. Failures
    in the secondary are logged and swallowed so callers never see storage
    errors.
    """

    def __init__(self, primary: Optional[KeyValueStore], secondary: KeyValueStore, read_only: bool = False):
        self.primary = primary
        self.secondary = secondary
        self.read_only = read_only

    async def _call(self, op: str, write: bool, default: Any, *args, **kwargs) -> Any:
        if self.primary is not None and not (write and self.read_only):
            try:
                return await getattr(self.primary, op)(*args, **kwargs)
            except Exception as e:
                logger.warning(f"KV {op} failed on primary store; falling back to local storage: {e}")
        try:
            return await getattr(self.secondary, op)(*args, **kwargs)
        except Exception as e:
            logger.warning(f"KV {op} failed on fallback store: {e}")
            return default

    async def get(self, key: str) -> Any:
        return await self._call("get", False, None, key)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None, nx: bool = False) -> Optional[bool]:
        """Returns None when neither store accepted the write."""
        return await self._call("set", True, None, key, value, ttl=ttl, nx=nx)

    async def delete(self, key: str) -> bool:
        return await self._call("delete", True, False, key)

    async def lpush(self, key: str, value: Any) -> int:
        return await self._call("lpush", True, 0, key, value)

    async def rpop(self, key: str) -> Any:
        return await self._call("rpop", True, None, key)

    async def lrange(self, key: str, start: int, stop: int) -> List[Any]:
        return await self._call("lrange", False, [], key, start, stop)

    async def ltrim(self, key: str, start: int, stop: int) -> None:
        await self._call("ltrim", True, None, key, start, stop)

    async def close(self) -> None:
        if self.primary is not None:
            await self.primary.close()


def create_kv_store(config: Optional[KVConfig] = None) -> FallbackKeyValueStore:
    """Build the default store: Redis when configured, local file otherwise."""
    config = config or get_kv_config()
    primary = RedisKeyValueStore(config.url) if config.enabled else None
    secondary = FileKeyValueStore(config.data_dir / "kv.json")
    return FallbackKeyValueStore(primary, secondary, read_only=config.read_only)
