"""Per-project sync enable/disable settings.

Settings are an operator-maintained list stored under
``premium:project-sync``; the legacy ``planner:project-sync`` key is read when
the current key is empty. The engine treats them as read-only.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional, Set

from stores.kv import KeyValueStore

logger = logging.getLogger(__name__)

PROJECT_SYNC_KEY = "premium:project-sync"
LEGACY_PROJECT_SYNC_KEY = "planner:project-sync"


def normalize_project_no(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


@dataclass
class ProjectSyncSetting:
    """Enable/disable flag for one project."""
    projectNo: str
    disabled: bool = False
    note: Optional[str] = None
    updatedAt: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> Optional["ProjectSyncSetting"]:
        if not isinstance(data, dict) or not str(data.get("projectNo") or "").strip():
            return None
        return cls(
            projectNo=str(data["projectNo"]).strip(),
            disabled=bool(data.get("disabled")),
            note=data.get("note"),
            updatedAt=str(data.get("updatedAt") or ""),
        )

    def to_dict(self):
        return asdict(self)


def build_disabled_project_set(settings: Iterable[ProjectSyncSetting]) -> Set[str]:
    return {normalize_project_no(s.projectNo) for s in settings if s.disabled and normalize_project_no(s.projectNo)}


class ProjectSyncStore:
    """Read/write access to the project sync settings list."""

    def __init__(self, kv: KeyValueStore):
        self.kv = kv

    async def list(self) -> List[ProjectSyncSetting]:
        raw = await self.kv.get(PROJECT_SYNC_KEY)
        if not raw:
            raw = await self.kv.get(LEGACY_PROJECT_SYNC_KEY)
        if not isinstance(raw, list):
            return []
        return [s for s in (ProjectSyncSetting.from_dict(item) for item in raw) if s is not None]

    async def save_all(self, settings: List[ProjectSyncSetting]) -> None:
        await self.kv.set(PROJECT_SYNC_KEY, [s.to_dict() for s in settings])

    async def upsert(self, project_no: str, disabled: bool, note: Optional[str] = None) -> ProjectSyncSetting:
        """Create or replace the setting for one project."""
        key = normalize_project_no(project_no)
        if not key:
            raise ValueError("projectNo is required")
        settings = [s for s in await self.list() if normalize_project_no(s.projectNo) != key]
        setting = ProjectSyncSetting(
            projectNo=project_no.strip(),
            disabled=disabled,
            note=note,
            updatedAt=datetime.now(timezone.utc).isoformat(),
        )
        settings.append(setting)
        settings.sort(key=lambda s: normalize_project_no(s.projectNo))
        await self.save_all(settings)
        logger.info(f"Project sync setting saved: {setting.projectNo} disabled={disabled}")
        return setting

    async def disabled_projects(self) -> Set[str]:
        return build_disabled_project_set(await self.list())
