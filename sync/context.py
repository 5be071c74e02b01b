"""Collaborators shared by one sync run.

Every engine entry point takes a ``SyncContext`` instead of building clients
itself, so tests can hand in fakes and a fixed clock.
"""

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from core.config import (
    DataverseMappingConfig,
    PremiumSyncConfig,
    get_dataverse_mapping_config,
    get_premium_sync_config,
)
from core.observability import LogSink
from stores import (
    BcChangeCursorStore,
    BcWebhookStore,
    DeltaLinkStore,
    KeyValueStore,
    ProjectSyncStore,
    WriteMarkerStore,
    bc_write_markers,
    create_kv_store,
    premium_write_markers,
)
from sync.sync_lock import SyncLock


def _now_ms() -> float:
    return time.time() * 1000


@dataclass
class SyncContext:
    """Clients, stores and policy for the BC <-> Premium engine.

    Attributes:
        bc: BusinessCentralClient (or a fake with the same methods)
        dataverse: DataverseClient (or a fake)
        kv: Key-value store backing every durable record
        clock: Returns epoch milliseconds
        log_sink: Optional event sink for webhook/job outcomes
    """
    bc: Any
    dataverse: Any
    kv: KeyValueStore
    config: PremiumSyncConfig = field(default_factory=get_premium_sync_config)
    mapping: DataverseMappingConfig = field(default_factory=get_dataverse_mapping_config)
    clock: Callable[[], float] = _now_ms
    log_sink: Optional[LogSink] = None

    def __post_init__(self):
        self.cursors = BcChangeCursorStore(self.kv)
        self.deltas = DeltaLinkStore(self.kv)
        self.project_settings = ProjectSyncStore(self.kv)
        # Premium ids written from BC / BC system ids written from Premium.
        self.bc_writes: WriteMarkerStore = bc_write_markers(self.kv)
        self.premium_writes: WriteMarkerStore = premium_write_markers(self.kv)
        self.lock = SyncLock(self.bc, self.config.sync_lock_timeout_minutes, clock=self.clock)

    def webhook_store(self, dedupe_window_seconds: int = 300, lock_ttl_seconds: int = 60) -> BcWebhookStore:
        return BcWebhookStore(
            self.kv,
            dedupe_window_seconds=dedupe_window_seconds,
            lock_ttl_seconds=lock_ttl_seconds,
            clock=lambda: self.clock() / 1000,
        )


@asynccontextmanager
async def open_sync_context(kv: Optional[KeyValueStore] = None, log_sink: Optional[LogSink] = None):
    """Build live BC and Dataverse clients from the environment.

    Usage:
        async with open_sync_context() as ctx:
            summary = await sync_bc_to_premium(ctx)
    """
    from connectors.business_central import BusinessCentralClient
    from connectors.dataverse import DataverseClient

    owns_kv = kv is None
    kv = kv or create_kv_store()
    bc = BusinessCentralClient()
    dataverse = DataverseClient()
    try:
        async with bc, dataverse:
            yield SyncContext(bc=bc, dataverse=dataverse, kv=kv, log_sink=log_sink)
    finally:
        if owns_kv:
            await kv.close()
