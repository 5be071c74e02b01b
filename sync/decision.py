"""Sync direction decision.

Both sides are previewed without applying anything, then ``decide`` picks the
direction from which side changed and how recently. The ``reason`` string is
part of the output and is logged with every decision.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from core.observability import get_logger
from sync.bc_queue import resolve_bc_queue_targets
from sync.bc_to_premium import CHANGE_CURSOR_SCOPE, sync_bc_to_premium
from sync.context import SyncContext
from sync.mapping import format_iso_ms, parse_date_ms, utc_now_iso
from sync.premium_to_bc import sync_premium_changes

logger = get_logger(__name__)

BC_TO_PREMIUM = "bcToPremium"
PREMIUM_TO_BC = "premiumToBc"
NO_SYNC = "none"

_CHANGE_TIME_FIELDS = ("changedAt", "systemModifiedAt", "lastModifiedDateTime", "modifiedAt", "createdAt")


@dataclass
class BcChangePreview:
    has_changes: bool = False
    changes: int = 0
    latest_changed_ms: Optional[float] = None
    last_seq: Optional[int] = None
    project_nos: List[str] = field(default_factory=list)
    source: str = "changeFeed"
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hasChanges": self.has_changes,
            "changes": self.changes,
            "latestChangedAt": format_iso_ms(self.latest_changed_ms),
            "latestChangedMs": self.latest_changed_ms,
            "lastSeq": self.last_seq,
            "projectNos": list(self.project_nos),
            "source": self.source,
            "error": self.error,
        }


@dataclass
class PremiumChangePreview:
    has_changes: bool = False
    changes: int = 0
    latest_modified_ms: Optional[float] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hasChanges": self.has_changes,
            "changes": self.changes,
            "latestModifiedAt": format_iso_ms(self.latest_modified_ms),
            "latestModifiedMs": self.latest_modified_ms,
            "error": self.error,
        }


@dataclass
class SyncDecision:
    decision: str
    reason: str
    prefer_bc: bool
    grace_ms: float
    bc: BcChangePreview
    premium: PremiumChangePreview
    decided_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decision": self.decision,
            "reason": self.reason,
            "decidedAt": self.decided_at,
            "preferBc": self.prefer_bc,
            "graceMs": self.grace_ms,
            "bc": self.bc.to_dict(),
            "premium": self.premium.to_dict(),
        }


# =============================================================================
# Previews
# =============================================================================

def _latest_ms(record: Dict[str, Any], fields) -> Optional[float]:
    for name in fields:
        value = record.get(name)
        parsed = parse_date_ms(value if isinstance(value, str) else None)
        if parsed is not None:
            return parsed
    return None


async def preview_bc_changes(ctx: SyncContext) -> BcChangePreview:
    """Pending BC changes from the change feed, else the sync queue.

    The change cursor is read but never saved here.
    """
    try:
        cursor = await ctx.cursors.get(CHANGE_CURSOR_SCOPE)
        changes = await ctx.bc.list_project_changes_since(cursor)
        if changes.get("entity_set") and changes.get("items"):
            preview = BcChangePreview(source="changeFeed", last_seq=changes.get("last_seq"))
            project_nos: Dict[str, None] = {}
            for item in changes["items"]:
                project_no = str(item.get("projectNo") or "").strip()
                if project_no:
                    project_nos[project_no] = None
                ms = _latest_ms(item, _CHANGE_TIME_FIELDS)
                if ms is not None and (preview.latest_changed_ms is None or ms > preview.latest_changed_ms):
                    preview.latest_changed_ms = ms
            preview.changes = len(changes["items"])
            preview.has_changes = True
            preview.project_nos = list(project_nos)
            return preview

        queue = await resolve_bc_queue_targets(ctx.bc)
        return BcChangePreview(
            has_changes=bool(queue.entries),
            changes=len(queue.entries),
            latest_changed_ms=queue.latest_changed_ms,
            project_nos=list(queue.project_nos),
            source="queue",
        )
    except Exception as exc:
        logger.warning("BC change preview failed", extra_fields={"error": str(exc)})
        return BcChangePreview(error=str(exc))


async def preview_premium_changes(ctx: SyncContext, delta_link: Optional[str] = None) -> PremiumChangePreview:
    """Pending Premium task changes since the stored delta link (not saved)."""
    mapping = ctx.mapping
    modified_field = mapping.task_modified_field or "modifiedon"
    try:
        delta_link = delta_link or await ctx.deltas.get(mapping.task_entity_set)
        changes = await ctx.dataverse.list_changes(
            mapping.task_entity_set,
            select=list(dict.fromkeys([mapping.task_id_field, modified_field, "modifiedon"])),
            order_by=f"{modified_field} desc",
            delta_link=delta_link,
            top=ctx.config.preview_page_size,
            max_pages=ctx.config.preview_max_pages,
        )
    except Exception as exc:
        logger.warning("Premium change preview failed", extra_fields={"error": str(exc)})
        return PremiumChangePreview(error=str(exc))
    rows = changes["value"]
    latest: Optional[float] = None
    for row in rows:
        ms = _latest_ms(row, (modified_field, "modifiedon", "modifiedOn"))
        if ms is not None and (latest is None or ms > latest):
            latest = ms
    return PremiumChangePreview(has_changes=bool(rows), changes=len(rows), latest_modified_ms=latest)


# =============================================================================
# Decision
# =============================================================================

def decide(
    bc: BcChangePreview,
    premium: PremiumChangePreview,
    prefer_bc: bool,
    grace_ms: float,
) -> Dict[str, str]:
    """Choose a direction from two previews.

    Returns:
        ``{"decision": ..., "reason": ...}``
    """
    if bc.has_changes and not premium.has_changes:
        return {"decision": BC_TO_PREMIUM, "reason": "BC has changes and Premium does not."}
    if premium.has_changes and not bc.has_changes:
        return {"decision": PREMIUM_TO_BC, "reason": "Premium has changes and BC does not."}
    if not bc.has_changes and not premium.has_changes:
        return {"decision": NO_SYNC, "reason": "No changes detected in BC or Premium."}

    bc_ms, premium_ms = bc.latest_changed_ms, premium.latest_modified_ms
    if bc_ms is not None and premium_ms is not None:
        diff = bc_ms - premium_ms
        if abs(diff) <= grace_ms:
            return {
                "decision": BC_TO_PREMIUM if prefer_bc else PREMIUM_TO_BC,
                "reason": f"Changes within {grace_ms:g}ms; preferBc={str(prefer_bc).lower()}.",
            }
        if diff > 0:
            return {"decision": BC_TO_PREMIUM, "reason": "BC changes are more recent than Premium changes."}
        return {"decision": PREMIUM_TO_BC, "reason": "Premium changes are more recent than BC changes."}
    if prefer_bc:
        return {
            "decision": BC_TO_PREMIUM,
            "reason": "Changes detected on both sides without comparable timestamps; preferBc=true.",
        }
    if premium_ms is not None:
        return {
            "decision": PREMIUM_TO_BC,
            "reason": "Premium changes include timestamps while BC does not; preferBc=false.",
        }
    return {
        "decision": PREMIUM_TO_BC,
        "reason": "Changes detected on both sides without comparable timestamps; preferBc=false.",
    }


async def decide_premium_sync(
    ctx: SyncContext, prefer_bc: Optional[bool] = None, grace_ms: Optional[float] = None
) -> SyncDecision:
    prefer_bc = ctx.config.prefer_bc if prefer_bc is None else prefer_bc
    grace_ms = ctx.config.bc_modified_grace_ms if grace_ms is None else grace_ms
    bc, premium = await asyncio.gather(preview_bc_changes(ctx), preview_premium_changes(ctx))
    outcome = decide(bc, premium, prefer_bc, grace_ms)
    decision = SyncDecision(
        decision=outcome["decision"],
        reason=outcome["reason"],
        prefer_bc=prefer_bc,
        grace_ms=grace_ms,
        bc=bc,
        premium=premium,
        decided_at=utc_now_iso(ctx.clock()),
    )
    logger.info(
        "Premium sync decision",
        extra_fields={
            "decision": decision.decision,
            "reason": decision.reason,
            "bcChanges": bc.changes,
            "premiumChanges": premium.changes,
        },
    )
    return decision


async def run_premium_sync_decision(
    ctx: SyncContext,
    dry_run: bool = False,
    prefer_bc: Optional[bool] = None,
    grace_ms: Optional[float] = None,
    request_id: str = "",
) -> Dict[str, Any]:
    """Decide, then run the chosen direction unless ``dry_run``.

    Returns:
        ``{"decision": {...}, "result": None | {"bcToPremium": ...} | {"premiumToBc": ...}}``
    """
    decision = await decide_premium_sync(ctx, prefer_bc=prefer_bc, grace_ms=grace_ms)
    if dry_run or decision.decision == NO_SYNC:
        return {"decision": decision.to_dict(), "result": None}
    if decision.decision == BC_TO_PREMIUM:
        result = await sync_bc_to_premium(ctx, request_id=request_id)
        return {"decision": decision.to_dict(), "result": {BC_TO_PREMIUM: result}}
    result = await sync_premium_changes(ctx, request_id=request_id)
    return {"decision": decision.to_dict(), "result": {PREMIUM_TO_BC: result}}
