"""BC webhook state: subscriptions, the job queue, dedupe markers and the
processing lock.

Keys:
    bc:subscription:{entitySet}   stored subscription metadata
    bc:jobs                       job list (LPUSH on enqueue, RPOP on drain)
    bc:job_dedupe:{sha1}          dedupe marker, TTL = dedupe window
    bc:jobs:lock                  processing lock, random owner value + TTL
"""

import hashlib
import logging
import secrets
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from stores.kv import KeyValueStore

logger = logging.getLogger(__name__)

SUBSCRIPTION_PREFIX = "bc:subscription:"
JOBS_KEY = "bc:jobs"
DEDUPE_PREFIX = "bc:job_dedupe:"
LOCK_KEY = "bc:jobs:lock"
DEFAULT_DEDUPE_WINDOW_SECONDS = 300
DEFAULT_LOCK_TTL_SECONDS = 60


@dataclass
class BcWebhookJob:
    """A normalized change notification waiting to be processed."""
    entitySet: str
    systemId: str
    changeType: str = ""
    receivedAt: str = ""
    subscriptionId: Optional[str] = None
    resource: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> Optional["BcWebhookJob"]:
        if not isinstance(data, dict):
            return None
        return cls(
            entitySet=str(data.get("entitySet") or ""),
            systemId=str(data.get("systemId") or ""),
            changeType=str(data.get("changeType") or ""),
            receivedAt=str(data.get("receivedAt") or ""),
            subscriptionId=data.get("subscriptionId"),
            resource=data.get("resource"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EnqueueResult:
    enqueued: int = 0
    deduped: int = 0
    skipped: int = 0
    jobs: List[BcWebhookJob] = field(default_factory=list)


def _parse_received_ms(value: str, now_ms: float) -> float:
    if value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp() * 1000
        except ValueError:
            pass
    return now_ms


def build_dedupe_key(job: BcWebhookJob, received_ms: float, window_seconds: int) -> str:
    """Hash of entity set, record id, change type and time bucket."""
    bucket = int(received_ms // (window_seconds * 1000))
    payload = f"{job.entitySet}|{job.systemId}|{job.changeType or ''}|{bucket}"
    return DEDUPE_PREFIX + hashlib.sha1(payload.encode("utf-8")).hexdigest()


def normalize_job(job: BcWebhookJob) -> Optional[BcWebhookJob]:
    entity_set = (job.entitySet or "").strip()
    system_id = (job.systemId or "").strip()
    if not entity_set or not system_id:
        return None
    job.entitySet = entity_set
    job.systemId = system_id
    return job


class BcWebhookStore:
    """Queue and subscription bookkeeping for BC webhooks."""

    def __init__(
        self,
        kv: KeyValueStore,
        dedupe_window_seconds: int = DEFAULT_DEDUPE_WINDOW_SECONDS,
        lock_ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.kv = kv
        self.dedupe_window_seconds = dedupe_window_seconds
        self.lock_ttl_seconds = lock_ttl_seconds
        self._clock = clock

    # =========================================================================
    # Subscriptions
    # =========================================================================

    async def get_subscription(self, entity_set: str) -> Optional[Dict[str, Any]]:
        normalized = (entity_set or "").strip()
        if not normalized:
            return None
        value = await self.kv.get(f"{SUBSCRIPTION_PREFIX}{normalized}")
        return value if isinstance(value, dict) else None

    async def save_subscription(self, entity_set: str, subscription: Dict[str, Any]) -> None:
        normalized = (entity_set or "").strip()
        if normalized:
            await self.kv.set(f"{SUBSCRIPTION_PREFIX}{normalized}", subscription)

    async def delete_subscription(self, entity_set: str) -> None:
        normalized = (entity_set or "").strip()
        if normalized:
            await self.kv.delete(f"{SUBSCRIPTION_PREFIX}{normalized}")

    # =========================================================================
    # Jobs
    # =========================================================================

    async def enqueue_jobs(self, jobs: List[BcWebhookJob]) -> EnqueueResult:
        """Push jobs onto the queue, dropping duplicates within the window.

        A job missing its entity set or system id is counted as skipped. If
        the dedupe marker cannot be written at all the job is enqueued anyway.
        """
        result = EnqueueResult()
        now_ms = self._clock() * 1000
        for raw in jobs:
            job = normalize_job(raw)
            if job is None:
                result.skipped += 1
                continue
            received_ms = _parse_received_ms(job.receivedAt, now_ms)
            dedupe_key = build_dedupe_key(job, received_ms, self.dedupe_window_seconds)
            marker = await self.kv.set(dedupe_key, "1", ttl=self.dedupe_window_seconds, nx=True)
            if marker is False:
                result.deduped += 1
                continue
            if marker is None:
                logger.warning(f"BC webhook dedupe failed for {job.entitySet}({job.systemId}); enqueueing anyway")
            await self.kv.lpush(JOBS_KEY, job.to_dict())
            result.enqueued += 1
            result.jobs.append(job)
        return result

    async def pop_jobs(self, max_jobs: int = 25) -> List[BcWebhookJob]:
        """Pop up to ``max_jobs`` jobs, oldest first."""
        jobs: List[BcWebhookJob] = []
        for _ in range(max_jobs):
            raw = await self.kv.rpop(JOBS_KEY)
            if raw is None:
                break
            job = BcWebhookJob.from_dict(raw)
            if job is not None:
                jobs.append(job)
        return jobs

    async def pending_jobs(self, limit: int = 100) -> List[BcWebhookJob]:
        raw = await self.kv.lrange(JOBS_KEY, 0, limit - 1)
        return [job for job in (BcWebhookJob.from_dict(item) for item in raw) if job is not None]

    # =========================================================================
    # Processing lock
    # =========================================================================

    async def acquire_lock(self, ttl_seconds: Optional[int] = None) -> Optional[str]:
        """Take the processing lock; returns the owner token or None if held."""
        token = secrets.token_hex(8)
        acquired = await self.kv.set(LOCK_KEY, token, ttl=ttl_seconds or self.lock_ttl_seconds, nx=True)
        return token if acquired else None

    async def release_lock(self, token: Optional[str]) -> None:
        """Release the lock only if ``token`` still owns it."""
        if not token:
            return
        current = await self.kv.get(LOCK_KEY)
        if current == token:
            await self.kv.delete(LOCK_KEY)
