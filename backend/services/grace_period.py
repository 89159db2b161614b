"""Grace period expiry.

A past_due workspace keeps its plan until ``grace_period_end``; after that it
drops to the free tier. Two triggers apply the same conditional update:

- lazily, whenever a user-facing path reads the workspace's billing state
- the scheduled sweep, for workspaces nobody is touching

The update's filter is the expiry predicate itself, so whichever trigger runs
second matches nothing.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from database import database
from models import AuditAction, SubscriptionStatus
from services.workspace_billing import free_tier_fields
from utils.audit import create_audit_log
import logging

logger = logging.getLogger(__name__)


def _expired_filter(now: datetime, workspace_id: Optional[str] = None) -> Dict[str, Any]:
    query: Dict[str, Any] = {
        "subscription_status": SubscriptionStatus.PAST_DUE.value,
        "grace_period_end": {"$lt": now},
    }
    if workspace_id is not None:
        query["workspace_id"] = workspace_id
    return query


async def _expire_workspace(workspace_id: str, now: datetime) -> bool:
    """Downgrade one workspace if its grace period is over. True if it changed."""
    fields = {
        **(await free_tier_fields()),
        "subscription_status": SubscriptionStatus.CANCELED.value,
        "grace_period_end": None,
        "billing_provider": None,
        "external_subscription_id": None,
        "external_customer_id": None,
        "current_period_end": None,
        "pending_plan_id": None,
        "pending_plan_effective_at": None,
        "updated_at": now,
    }
    db = database.get_db()
    result = await db.workspaces.update_one(_expired_filter(now, workspace_id), {"$set": fields})
    if result.modified_count == 0:
        return False

    logger.info(f"Grace period expired for workspace {workspace_id} - downgraded to free tier")
    await create_audit_log(
        action=AuditAction.GRACE_PERIOD_EXPIRED,
        workspace_id=workspace_id,
        metadata={"expired_at": now.isoformat()},
    )
    return True


async def apply_grace_period_expiry_if_needed(workspace_id: str) -> bool:
    """Lazy check for one workspace on a read path."""
    now = datetime.now(timezone.utc)
    db = database.get_db()
    # Cheap existence check first; most reads are not expired
    expired = await db.workspaces.find_one(_expired_filter(now, workspace_id), {"_id": 0, "workspace_id": 1})
    if not expired:
        return False
    return await _expire_workspace(workspace_id, now)


async def run_grace_period_expiry_job() -> int:
    """Sweep every workspace whose grace period is over. Returns how many changed."""
    now = datetime.now(timezone.utc)
    db = database.get_db()
    cursor = db.workspaces.find(_expired_filter(now), {"_id": 0, "workspace_id": 1})

    count = 0
    async for doc in cursor:
        try:
            if await _expire_workspace(doc["workspace_id"], now):
                count += 1
        except Exception as e:
            logger.error(f"Grace period expiry failed for workspace {doc.get('workspace_id')}: {e}")

    logger.info(f"Grace period sweep complete: {count} workspace(s) downgraded")
    return count
