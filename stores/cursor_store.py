"""Resumable sync cursors.

Two kinds of cursor are kept, each as one JSON document in the KV store:

- ``bc:project-changes`` -- BC change-feed sequence numbers per scope
  (``{"scopes": {"premium": {"lastSeq": 42, "updatedAt": "..."}}}``)
- ``dataverse:delta`` / ``planner:delta`` -- opaque delta links per entity set
  or plan (``{"msdyn_projecttasks": {"deltaLink": "...", "updatedAt": "..."}}``)

Cursors record what has been observed, not what has been applied. Concurrent
writers use last-write-wins.
"""

import logging
import math
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from stores.kv import KeyValueStore

logger = logging.getLogger(__name__)

BC_CHANGE_CURSOR_KEY = "bc:project-changes"
DATAVERSE_DELTA_KEY = "dataverse:delta"
PLANNER_DELTA_KEY = "planner:delta"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _normalize_scopes(raw: Any) -> Dict[str, Dict[str, Any]]:
    """Accept both ``{"scopes": {...}}`` and bare ``{scope: seq}`` documents."""
    if not isinstance(raw, dict):
        return {}
    source = raw.get("scopes") if isinstance(raw.get("scopes"), dict) else raw
    scopes: Dict[str, Dict[str, Any]] = {}
    for key, value in source.items():
        seq: Optional[float] = None
        updated_at = None
        if isinstance(value, dict):
            candidate = value.get("lastSeq")
            if isinstance(candidate, (int, float)) and not isinstance(candidate, bool):
                seq = candidate
            if isinstance(value.get("updatedAt"), str):
                updated_at = value["updatedAt"]
        elif isinstance(value, (int, float)) and not isinstance(value, bool):
            seq = value
        elif isinstance(value, str) and value.strip():
            try:
                seq = float(value)
            except ValueError:
                seq = None
        if seq is not None and math.isfinite(seq):
            entry: Dict[str, Any] = {"lastSeq": int(seq)}
            if updated_at:
                entry["updatedAt"] = updated_at
            scopes[key] = entry
    return scopes


class BcChangeCursorStore:
    """Sequence-number cursor over the BC project change feed."""

    def __init__(self, kv: KeyValueStore, key: str = BC_CHANGE_CURSOR_KEY):
        self.kv = kv
        self.key = key

    async def get(self, scope: str) -> Optional[int]:
        scopes = _normalize_scopes(await self.kv.get(self.key))
        entry = scopes.get(scope)
        return entry["lastSeq"] if entry else None

    async def save(self, scope: str, last_seq: Any) -> None:
        if not isinstance(last_seq, (int, float)) or isinstance(last_seq, bool) or not math.isfinite(last_seq):
            logger.warning(f"Skipping BC change cursor save for scope {scope}; invalid lastSeq {last_seq!r}")
            return
        scopes = _normalize_scopes(await self.kv.get(self.key))
        scopes[scope] = {"lastSeq": int(last_seq), "updatedAt": _now_iso()}
        await self.kv.set(self.key, {"scopes": scopes})


class DeltaLinkStore:
    """Opaque delta-link cursor keyed by entity set (or plan id)."""

    def __init__(self, kv: KeyValueStore, key: str = DATAVERSE_DELTA_KEY):
        self.kv = kv
        self.key = key

    async def _read(self) -> Dict[str, Any]:
        raw = await self.kv.get(self.key)
        return raw if isinstance(raw, dict) else {}

    async def get(self, scope: str) -> Optional[str]:
        entry = (await self._read()).get(scope)
        if isinstance(entry, dict) and entry.get("deltaLink"):
            return entry["deltaLink"]
        return None

    async def save(self, scope: str, delta_link: Optional[str]) -> None:
        if not scope or not delta_link:
            return
        state = await self._read()
        state[scope] = {"deltaLink": delta_link, "updatedAt": _now_iso()}
        await self.kv.set(self.key, state)

    async def clear(self, scope: str) -> None:
        state = await self._read()
        if scope in state:
            del state[scope]
            await self.kv.set(self.key, state)
