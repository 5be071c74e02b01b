"""Cross-process mutex on BC project tasks.

The ``syncLock`` boolean on the BC task record is the lock; there is no shared
memory between connector invocations, so the system of record holds it.

    UNLOCKED --acquire--> LOCKED --write (fields + syncLock=false)--> UNLOCKED
    LOCKED --older than timeout, or lastSyncAt unparsable--> STALE --clear--> UNLOCKED

A task seen as LOCKED (not stale) is skipped for the pass. Staleness is
measured from ``lastSyncAt`` with an injected clock.
"""

import time
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional

from core.observability import get_logger
from sync.mapping import build_bc_patch, parse_date_ms

logger = get_logger(__name__)

LOCK_FIELD = "syncLock"


class LockState(str, Enum):
    UNLOCKED = "unlocked"
    LOCKED = "locked"
    STALE = "stale"


class TaskLockedError(Exception):
    """Another writer holds the lock on this task."""


def _now_ms() -> float:
    return time.time() * 1000


class SyncLock:
    """Lock protocol for one BC client.

    Args:
        bc: BusinessCentralClient (or anything with ``patch_project_task``,
            ``get_project_task`` and ``has_task_field``)
        timeout_minutes: Age after which a held lock is considered stale;
            0 disables staleness
        clock: Returns epoch milliseconds
    """

    def __init__(self, bc, timeout_minutes: int = 30, clock: Callable[[], float] = _now_ms):
        self.bc = bc
        self.timeout_minutes = timeout_minutes
        self._clock = clock

    def state(self, task: Dict[str, Any]) -> LockState:
        if not task.get(LOCK_FIELD):
            return LockState.UNLOCKED
        if self.timeout_minutes <= 0:
            return LockState.LOCKED
        last_sync = parse_date_ms(task.get("lastSyncAt"))
        if last_sync is None:
            return LockState.STALE
        if self._clock() - last_sync > self.timeout_minutes * 60 * 1000:
            return LockState.STALE
        return LockState.LOCKED

    async def clear_stale(self, task: Dict[str, Any]) -> bool:
        """Force-clear a stale lock without applying any other update."""
        if self.state(task) is not LockState.STALE:
            return False
        system_id = task.get("systemId")
        await self.bc.patch_project_task(system_id, {LOCK_FIELD: False})
        task[LOCK_FIELD] = False
        logger.warning(
            "Cleared stale BC sync lock",
            extra_fields={"systemId": system_id, "taskNo": task.get("taskNo"), "lastSyncAt": task.get("lastSyncAt")},
        )
        return True

    async def prepare(self, task: Dict[str, Any]) -> bool:
        """Reclaim a stale lock; returns False when the task must be skipped."""
        current = self.state(task)
        if current is LockState.STALE:
            await self.clear_stale(task)
            return True
        return current is LockState.UNLOCKED

    async def write(
        self,
        task: Dict[str, Any],
        updates: Dict[str, Any],
        field_names: Optional[Iterable[str]] = None,
    ) -> Optional[Dict[str, Any]]:
        """Apply ``updates`` to a BC task under the lock.

        Only fields present on the BC schema are written. When the schema has
        ``syncLock``, the lock is set on its own first and the update patch
        clears it in the same call.

        Returns:
            The patch that was applied, or None when nothing was writable

        Raises:
            TaskLockedError: a fresh lock is held by another writer
        """
        system_id = task.get("systemId")
        if not system_id:
            raise ValueError("BC task missing systemId")
        names = set(field_names) if field_names else None
        patch = build_bc_patch(task, updates, names)
        patch.pop(LOCK_FIELD, None)
        if not patch:
            return None

        has_lock_field = await self.bc.has_task_field(LOCK_FIELD, task)
        if has_lock_field:
            latest = await self.bc.get_project_task(system_id)
            if latest:
                task.update({key: latest[key] for key in (LOCK_FIELD, "lastSyncAt") if key in latest})
            if not await self.prepare(task):
                raise TaskLockedError(f"BC task {system_id} is locked by another writer")
            await self.bc.patch_project_task(system_id, {LOCK_FIELD: True})
            task[LOCK_FIELD] = True
            patch[LOCK_FIELD] = False

        try:
            await self.bc.patch_project_task(system_id, patch)
        except Exception:
            if has_lock_field:
                await self._release_after_failure(system_id)
                task[LOCK_FIELD] = False
            raise
        task.update(patch)
        return patch

    async def release(self, task: Dict[str, Any]) -> None:
        system_id = task.get("systemId")
        if system_id and LOCK_FIELD in task:
            await self.bc.patch_project_task(system_id, {LOCK_FIELD: False})
            task[LOCK_FIELD] = False

    async def _release_after_failure(self, system_id: str) -> None:
        try:
            await self.bc.patch_project_task(system_id, {LOCK_FIELD: False})
        except Exception as exc:
            # Left locked; reclaimed as stale after the timeout.
            logger.warning(
                "Failed to release BC sync lock after write error",
                extra_fields={"systemId": system_id, "error": str(exc)},
            )
