"""Durable connector state built on the key-value store abstraction."""

from stores.kv import (
    KeyValueStore,
    InMemoryKeyValueStore,
    FileKeyValueStore,
    RedisKeyValueStore,
    FallbackKeyValueStore,
    create_kv_store,
)
from stores.cursor_store import (
    BcChangeCursorStore,
    DeltaLinkStore,
    BC_CHANGE_CURSOR_KEY,
    DATAVERSE_DELTA_KEY,
    PLANNER_DELTA_KEY,
)
from stores.project_sync_store import ProjectSyncSetting, ProjectSyncStore, normalize_project_no
from stores.write_markers import WriteMarkerStore, bc_write_markers, premium_write_markers
from stores.webhook_store import BcWebhookJob, BcWebhookStore, EnqueueResult

__all__ = [
    # Backends
    "KeyValueStore",
    "InMemoryKeyValueStore",
    "FileKeyValueStore",
    "RedisKeyValueStore",
    "FallbackKeyValueStore",
    "create_kv_store",
    # Cursors
    "BcChangeCursorStore",
    "DeltaLinkStore",
    "BC_CHANGE_CURSOR_KEY",
    "DATAVERSE_DELTA_KEY",
    "PLANNER_DELTA_KEY",
    # Settings
    "ProjectSyncSetting",
    "ProjectSyncStore",
    "normalize_project_no",
    # Loop suppression
    "WriteMarkerStore",
    "bc_write_markers",
    "premium_write_markers",
    # Webhooks
    "BcWebhookJob",
    "BcWebhookStore",
    "EnqueueResult",
]
