"""Short-lived markers that suppress sync echo loops.

After the engine writes a Premium task it marks the Premium id; after it
writes a BC task it marks the BC system id. The opposite-direction pass skips
records marked within the TTL, since the change it sees is its own write.
"""

from typing import Iterable

from stores.kv import KeyValueStore

DEFAULT_TTL_SECONDS = 120
BC_WRITE_PREFIX = "premium:bc-write:"
PREMIUM_WRITE_PREFIX = "premium:premium-write:"


class WriteMarkerStore:
    def __init__(self, kv: KeyValueStore, prefix: str, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self.kv = kv
        self.prefix = prefix
        self.ttl_seconds = ttl_seconds

    async def mark(self, ids: Iterable[str]) -> int:
        """Mark ids as just written; returns how many were marked."""
        if self.ttl_seconds <= 0:
            return 0
        marked = 0
        for raw in ids:
            record_id = str(raw or "").strip()
            if not record_id:
                continue
            if await self.kv.set(f"{self.prefix}{record_id}", "1", ttl=self.ttl_seconds):
                marked += 1
        return marked

    async def was_marked(self, record_id: str) -> bool:
        record_id = str(record_id or "").strip()
        if not record_id:
            return False
        return bool(await self.kv.get(f"{self.prefix}{record_id}"))


def bc_write_markers(kv: KeyValueStore, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> WriteMarkerStore:
    """Markers for Premium task ids written from BC."""
    return WriteMarkerStore(kv, BC_WRITE_PREFIX, ttl_seconds)


def premium_write_markers(kv: KeyValueStore, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> WriteMarkerStore:
    """Markers for BC task system ids written from Premium."""
    return WriteMarkerStore(kv, PREMIUM_WRITE_PREFIX, ttl_seconds)
