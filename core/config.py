"""Environment-backed configuration for the sync connector.

All settings are read from ``os.environ`` (a repo-root ``.env`` is loaded once
on import) and exposed as dataclasses built by ``get_*_config()`` factories.
Factories are cheap and uncached so tests can patch the environment freely.

Value parsing rules:
- Booleans accept 1/true/yes/y/on and 0/false/no/n/off (case-insensitive);
  anything else yields the default.
- Non-numeric integers yield the default.
- A missing required variable raises ``ConfigError``.
"""

import math
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

env_path = Path(__file__).resolve().parents[1] / ".env"
if env_path.exists():
    load_dotenv(env_path)


class ConfigError(Exception):
    """A required configuration value is missing or invalid."""

    def __init__(self, name: str, message: Optional[str] = None):
        super().__init__(message or f"Missing required environment variable: {name}")
        self.name = name


_TRUE_VALUES = {"1", "true", "yes", "y", "on"}
_FALSE_VALUES = {"0", "false", "no", "n", "off"}


# =============================================================================
# Readers
# =============================================================================

def read_env(name: str, default: str = "") -> str:
    value = os.environ.get(name)
    if value is None:
        return default
    value = value.strip()
    return value if value else default


def require_env(name: str) -> str:
    value = read_env(name)
    if not value:
        raise ConfigError(name)
    return value


def read_bool_env(name: str, default: bool) -> bool:
    """Read a boolean flag, falling back to ``default`` on unknown values."""
    raw = os.environ.get(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    return default


def read_int_env(name: str, default: int, minimum: Optional[int] = None) -> int:
    """Read an integer, falling back to ``default`` when absent or non-numeric."""
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            parsed = float(raw.strip())
        except ValueError:
            parsed = float("nan")
        value = int(math.floor(parsed)) if math.isfinite(parsed) else default
    if minimum is not None:
        value = max(minimum, value)
    return value


def read_optional_float_env(name: str) -> Optional[float]:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return None
    try:
        value = float(raw.strip())
    except ValueError:
        return None
    return value if math.isfinite(value) else None


def read_list_env(name: str) -> List[str]:
    raw = os.environ.get(name) or ""
    return [part.strip() for part in re.split(r"[,\s]+", raw) if part.strip()]


# =============================================================================
# Provider credentials
# =============================================================================

@dataclass
class BCConfig:
    """Business Central API settings."""
    tenant_id: str
    environment: str
    company_id: str
    client_id: str
    client_secret: str
    api_base: str = "https://api.businesscentral.dynamics.com/v2.0"
    publisher: str = "cornerstone"
    group: str = "plannerSync"
    version: str = "v1.0"
    changes_entity_set: str = ""
    queue_entity_set: str = "premiumSyncQueue"
    queue_project_no_field: str = "projectNo"
    queue_task_system_id_field: str = "projectTaskSystemId"
    queue_page_size: int = 5000
    queue_max_pages: int = 20
    scope: str = "https://api.businesscentral.dynamics.com/.default"

    @property
    def environment_url(self) -> str:
        return f"{self.api_base.rstrip('/')}/{self.tenant_id}/{self.environment}"

    @property
    def company_url(self) -> str:
        return (
            f"{self.environment_url}/api/{self.publisher}/{self.group}/{self.version}"
            f"/companies({self.company_id})"
        )


def get_bc_config() -> BCConfig:
    return BCConfig(
        tenant_id=require_env("BC_TENANT_ID"),
        environment=require_env("BC_ENVIRONMENT"),
        company_id=require_env("BC_COMPANY_ID"),
        client_id=require_env("BC_CLIENT_ID"),
        client_secret=require_env("BC_CLIENT_SECRET"),
        api_base=read_env("BC_API_BASE", "https://api.businesscentral.dynamics.com/v2.0"),
        publisher=read_env("BC_API_PUBLISHER", "cornerstone"),
        group=read_env("BC_API_GROUP", "plannerSync"),
        version=read_env("BC_API_VERSION", "v1.0"),
        changes_entity_set=read_env("BC_PROJECT_CHANGES_ENTITY_SET"),
        queue_entity_set=read_env("BC_SYNC_QUEUE_ENTITY_SET", "premiumSyncQueue"),
        queue_project_no_field=read_env("BC_SYNC_QUEUE_PROJECTNO_FIELD", "projectNo"),
        queue_task_system_id_field=read_env("BC_SYNC_QUEUE_TASKSYSTEMID_FIELD", "projectTaskSystemId"),
        queue_page_size=read_int_env("BC_SYNC_QUEUE_PAGE_SIZE", 5000, minimum=1),
        queue_max_pages=read_int_env("BC_SYNC_QUEUE_MAX_PAGES", 20, minimum=1),
    )


@dataclass
class DataverseConfig:
    """Dataverse (Premium) Web API settings."""
    base_url: str
    tenant_id: str
    client_id: str
    client_secret: str
    api_version: str = "v9.2"
    resource_scope: str = ""

    @property
    def api_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/api/data/{self.api_version}"

    @property
    def scope(self) -> str:
        return self.resource_scope or f"{self.base_url.rstrip('/')}/.default"


def get_dataverse_config() -> DataverseConfig:
    return DataverseConfig(
        base_url=require_env("DATAVERSE_BASE_URL").rstrip("/"),
        tenant_id=require_env("DATAVERSE_TENANT_ID"),
        client_id=require_env("DATAVERSE_CLIENT_ID"),
        client_secret=require_env("DATAVERSE_CLIENT_SECRET"),
        api_version=read_env("DATAVERSE_API_VERSION", "v9.2"),
        resource_scope=read_env("DATAVERSE_RESOURCE_SCOPE"),
    )


@dataclass
class GraphConfig:
    """Microsoft Graph settings for the legacy Planner mode."""
    tenant_id: str
    client_id: str
    client_secret: str
    client_state: str = ""
    base_url: str = "https://graph.microsoft.com/v1.0"
    beta_url: str = "https://graph.microsoft.com/beta"
    scope: str = "https://graph.microsoft.com/.default"


def get_graph_config() -> GraphConfig:
    return GraphConfig(
        tenant_id=require_env("GRAPH_TENANT_ID"),
        client_id=require_env("GRAPH_CLIENT_ID"),
        client_secret=require_env("GRAPH_CLIENT_SECRET"),
        client_state=read_env("GRAPH_SUBSCRIPTION_CLIENT_STATE"),
    )


# =============================================================================
# Sync behaviour
# =============================================================================

DELETE_BEHAVIORS = ("clearLink", "ignore")


@dataclass
class PremiumSyncConfig:
    """Policy knobs for the BC <-> Premium engine."""
    prefer_bc: bool = True
    bc_modified_grace_ms: int = 2000
    premium_modified_grace_ms: int = 2000
    sync_lock_timeout_minutes: int = 30
    task_concurrency: int = 6
    project_concurrency: int = 1
    delete_behavior: str = "clearLink"
    max_projects_per_run: int = 0
    poll_page_size: int = 200
    poll_max_pages: int = 10
    preview_page_size: int = 50
    preview_max_pages: int = 1
    use_schedule_api: bool = True
    require_schedule_api: bool = False
    preserve_task_order: bool = True
    cleanup_operation_sets: bool = False
    cleanup_operation_sets_min_age_minutes: int = 15
    task_no_allowlist: List[str] = field(default_factory=list)


def get_premium_sync_config() -> PremiumSyncConfig:
    delete_behavior = read_env("PREMIUM_DELETE_BEHAVIOR", "clearLink")
    if delete_behavior not in DELETE_BEHAVIORS:
        delete_behavior = "clearLink"
    return PremiumSyncConfig(
        prefer_bc=read_bool_env("SYNC_PREFER_BC", True),
        bc_modified_grace_ms=read_int_env("SYNC_BC_MODIFIED_GRACE_MS", 2000, minimum=0),
        premium_modified_grace_ms=read_int_env("SYNC_PREMIUM_MODIFIED_GRACE_MS", 2000, minimum=0),
        sync_lock_timeout_minutes=read_int_env("SYNC_LOCK_TIMEOUT_MINUTES", 30, minimum=0),
        task_concurrency=read_int_env("SYNC_TASK_CONCURRENCY", 6, minimum=1),
        project_concurrency=read_int_env("SYNC_PROJECT_CONCURRENCY", 1, minimum=1),
        delete_behavior=delete_behavior,
        max_projects_per_run=read_int_env("SYNC_MAX_PROJECTS_PER_RUN", 0, minimum=0),
        poll_page_size=read_int_env("PREMIUM_POLL_PAGE_SIZE", 200, minimum=1),
        poll_max_pages=read_int_env("PREMIUM_POLL_MAX_PAGES", 10, minimum=1),
        preview_page_size=read_int_env("PREMIUM_PREVIEW_PAGE_SIZE", 50, minimum=1),
        preview_max_pages=read_int_env("PREMIUM_PREVIEW_MAX_PAGES", 1, minimum=1),
        use_schedule_api=read_bool_env("DATAVERSE_USE_SCHEDULE_API", True),
        require_schedule_api=read_bool_env("DATAVERSE_REQUIRE_SCHEDULE_API", False),
        preserve_task_order=read_bool_env("DATAVERSE_PRESERVE_TASK_ORDER", True),
        cleanup_operation_sets=read_bool_env("DATAVERSE_CLEANUP_OPERATION_SETS", False),
        cleanup_operation_sets_min_age_minutes=read_int_env(
            "DATAVERSE_CLEANUP_OPERATION_SETS_MIN_AGE_MINUTES", 15, minimum=1
        ),
        task_no_allowlist=read_list_env("SYNC_TASK_NO_ALLOWLIST"),
    )


@dataclass
class DataverseMappingConfig:
    """Entity-set and field names used to map BC tasks onto Premium rows."""
    project_entity_set: str = "msdyn_projects"
    task_entity_set: str = "msdyn_projecttasks"
    project_id_field: str = "msdyn_projectid"
    task_id_field: str = "msdyn_projecttaskid"
    project_title_field: str = "msdyn_subject"
    task_title_field: str = "msdyn_subject"
    project_bc_no_field: str = ""
    task_bc_no_field: str = ""
    task_project_lookup_field: str = "msdyn_project"
    task_project_id_field: str = "_msdyn_project_value"
    task_start_field: str = "msdyn_start"
    task_finish_field: str = "msdyn_finish"
    task_percent_field: str = "msdyn_percentcomplete"
    task_description_field: str = ""
    task_modified_field: str = "modifiedon"
    percent_scale: float = 1.0
    percent_min: float = 0.0
    percent_max: float = 100.0
    allow_task_create: bool = True
    allow_task_delete: bool = False
    allow_project_title_fallback: bool = False


def _read_float_env(name: str, default: float) -> float:
    value = read_optional_float_env(name)
    return default if value is None else value


def get_dataverse_mapping_config() -> DataverseMappingConfig:
    lookup = read_env("DATAVERSE_TASK_PROJECT_LOOKUP_FIELD", "msdyn_project")
    return DataverseMappingConfig(
        project_entity_set=read_env("DATAVERSE_PROJECT_ENTITY_SET", "msdyn_projects"),
        task_entity_set=read_env("DATAVERSE_TASK_ENTITY_SET", "msdyn_projecttasks"),
        project_id_field=read_env("DATAVERSE_PROJECT_ID_FIELD", "msdyn_projectid"),
        task_id_field=read_env("DATAVERSE_TASK_ID_FIELD", "msdyn_projecttaskid"),
        project_title_field=read_env("DATAVERSE_PROJECT_TITLE_FIELD", "msdyn_subject"),
        task_title_field=read_env("DATAVERSE_TASK_TITLE_FIELD", "msdyn_subject"),
        project_bc_no_field=read_env("DATAVERSE_BC_PROJECT_NO_FIELD"),
        task_bc_no_field=read_env("DATAVERSE_BC_TASK_NO_FIELD"),
        task_project_lookup_field=lookup,
        task_project_id_field=read_env("DATAVERSE_TASK_PROJECT_ID_FIELD", f"_{lookup}_value"),
        task_start_field=read_env("DATAVERSE_TASK_START_FIELD", "msdyn_start"),
        task_finish_field=read_env("DATAVERSE_TASK_FINISH_FIELD", "msdyn_finish"),
        task_percent_field=read_env("DATAVERSE_TASK_PERCENT_FIELD", "msdyn_percentcomplete"),
        task_description_field=read_env("DATAVERSE_TASK_DESCRIPTION_FIELD"),
        task_modified_field=read_env("DATAVERSE_TASK_MODIFIED_FIELD", "modifiedon"),
        percent_scale=_read_float_env("DATAVERSE_PERCENT_SCALE", 1.0),
        percent_min=_read_float_env("DATAVERSE_PERCENT_MIN", 0.0),
        percent_max=_read_float_env("DATAVERSE_PERCENT_MAX", 100.0),
        allow_task_create=read_bool_env("DATAVERSE_ALLOW_TASK_CREATE", True),
        allow_task_delete=read_bool_env("DATAVERSE_ALLOW_TASK_DELETE", False),
        allow_project_title_fallback=read_bool_env("DATAVERSE_ALLOW_PROJECT_TITLE_FALLBACK", False),
    )


SYNC_MODES = ("perProjectPlan", "singlePlan")


@dataclass
class PlannerSyncConfig:
    """Settings for the legacy BC <-> Planner mode."""
    sync_mode: str = "perProjectPlan"
    poll_minutes: int = 10
    group_id: str = ""
    default_plan_id: str = ""
    allow_default_plan_fallback: bool = True
    use_planner_delta: bool = True
    sync_lock_timeout_minutes: int = 30
    prefer_bc: bool = True
    bc_modified_grace_ms: int = 2000
    tenant_domain: str = ""


def get_planner_sync_config() -> PlannerSyncConfig:
    sync_mode = read_env("SYNC_MODE", "perProjectPlan")
    if sync_mode not in SYNC_MODES:
        raise ConfigError("SYNC_MODE", f"Invalid SYNC_MODE: {sync_mode} (expected one of {', '.join(SYNC_MODES)})")
    return PlannerSyncConfig(
        sync_mode=sync_mode,
        poll_minutes=read_int_env("SYNC_POLL_MINUTES", 10, minimum=1),
        group_id=read_env("PLANNER_GROUP_ID"),
        default_plan_id=read_env("PLANNER_DEFAULT_PLAN_ID"),
        allow_default_plan_fallback=read_bool_env("SYNC_ALLOW_DEFAULT_PLAN_FALLBACK", True),
        use_planner_delta=read_bool_env("SYNC_USE_PLANNER_DELTA", True),
        sync_lock_timeout_minutes=read_int_env("SYNC_LOCK_TIMEOUT_MINUTES", 30, minimum=0),
        prefer_bc=read_bool_env("SYNC_PREFER_BC", True),
        bc_modified_grace_ms=read_int_env("SYNC_BC_MODIFIED_GRACE_MS", 2000, minimum=0),
        tenant_domain=read_env("PLANNER_TENANT_DOMAIN"),
    )


# =============================================================================
# Infrastructure
# =============================================================================

@dataclass
class HttpRetryConfig:
    """Shared retry policy for outbound HTTP calls."""
    retries: int = 4
    base_delay: float = 0.5  # seconds
    retry_statuses: tuple = (429, 503, 504)
    max_delay: Optional[float] = None  # seconds
    max_total_delay: Optional[float] = None  # seconds


def get_http_retry_config() -> HttpRetryConfig:
    max_delay_ms = read_optional_float_env("FETCH_RETRY_MAX_DELAY_MS")
    max_total_ms = read_optional_float_env("FETCH_RETRY_MAX_TOTAL_MS")
    return HttpRetryConfig(
        max_delay=max_delay_ms / 1000.0 if max_delay_ms is not None else None,
        max_total_delay=max_total_ms / 1000.0 if max_total_ms is not None else None,
    )


@dataclass
class KVConfig:
    """Key-value cache settings; an empty URL means file storage only."""
    url: str = ""
    read_only: bool = False
    data_dir: Path = field(default_factory=lambda: Path(__file__).resolve().parents[1] / ".data")

    @property
    def enabled(self) -> bool:
        return bool(self.url)


def get_kv_config() -> KVConfig:
    data_dir = read_env("SYNC_DATA_DIR")
    config = KVConfig(
        url=read_env("REDIS_URL") or read_env("KV_URL"),
        read_only=read_bool_env("KV_READ_ONLY", False),
    )
    if data_dir:
        config.data_dir = Path(data_dir)
    return config


@dataclass
class WebhookConfig:
    """Inbound webhook validation and processing settings."""
    bc_shared_secret: str = ""
    dataverse_secret: str = ""
    graph_client_state: str = ""
    bc_process_inline: bool = False
    bc_inline_max_jobs: int = 25
    bc_notification_url: str = ""
    dedupe_window_seconds: int = 300
    job_lock_ttl_seconds: int = 60
    cron_secret: str = ""
    bc_queue_entity_set: str = "premiumSyncQueue"


def get_webhook_config() -> WebhookConfig:
    return WebhookConfig(
        bc_shared_secret=read_env("BC_WEBHOOK_SHARED_SECRET"),
        dataverse_secret=read_env("DATAVERSE_WEBHOOK_SECRET"),
        graph_client_state=read_env("GRAPH_SUBSCRIPTION_CLIENT_STATE"),
        bc_process_inline=read_bool_env("BC_WEBHOOK_PROCESS_INLINE", False),
        bc_inline_max_jobs=read_int_env("BC_WEBHOOK_INLINE_MAX_JOBS", 25, minimum=1),
        bc_notification_url=read_env("BC_WEBHOOK_NOTIFICATION_URL"),
        dedupe_window_seconds=read_int_env("BC_WEBHOOK_DEDUPE_SECONDS", 300, minimum=1),
        job_lock_ttl_seconds=read_int_env("BC_JOB_LOCK_TTL_SECONDS", 60, minimum=1),
        cron_secret=read_env("CRON_SECRET"),
        bc_queue_entity_set=read_env("BC_SYNC_QUEUE_ENTITY_SET", "premiumSyncQueue"),
    )


@dataclass
class TemporalConfig:
    """Temporal frontend settings; an API key switches to Temporal Cloud (TLS)."""
    endpoint: str = "localhost:7233"
    namespace: str = "default"
    api_key: str = ""
    cert_path: str = ""
    key_path: str = ""

    @property
    def uses_cloud(self) -> bool:
        return bool(self.api_key)


def get_temporal_config() -> TemporalConfig:
    api_key = read_env("TEMPORAL_API_KEY")
    endpoint = read_env("TEMPORAL_ENDPOINT")
    if api_key and not endpoint:
        raise ConfigError("TEMPORAL_ENDPOINT", "TEMPORAL_ENDPOINT is required when TEMPORAL_API_KEY is set")
    return TemporalConfig(
        endpoint=endpoint or "localhost:7233",
        namespace=read_env("TEMPORAL_NAMESPACE", "default"),
        api_key=api_key,
        cert_path=read_env("TEMPORAL_CERT_PATH"),
        key_path=read_env("TEMPORAL_KEY_PATH"),
    )
