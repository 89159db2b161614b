"""Workspace billing state - reads and the free-tier baseline.

Every user-facing read goes through ``get_workspace_billing`` so an expired
grace period is applied before the caller sees plan or quota.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from database import database
from models import WorkspaceBilling, SubscriptionStatus, BillingCycle, FREE_PLAN_KEY
from services.plan_catalog import plan_catalog
import logging

logger = logging.getLogger(__name__)

# Fields shown in audit before/after snapshots
AUDITED_FIELDS = (
    "plan",
    "billing_provider",
    "external_subscription_id",
    "subscription_status",
    "billing_cycle",
    "current_period_end",
    "leads_used",
    "leads_limit",
    "grace_period_end",
    "pending_plan_id",
    "pending_plan_effective_at",
)


def billing_state(doc: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """JSON-safe subset of a workspace document for audit logs."""
    if not doc:
        return {}
    state = {}
    for field in AUDITED_FIELDS:
        value = doc.get(field)
        state[field] = value.isoformat() if isinstance(value, datetime) else value
    return state


async def free_tier_fields() -> Dict[str, Any]:
    """Plan and quota of the free tier, as a $set fragment."""
    free_plan = await plan_catalog.get_free_plan()
    return {"plan": FREE_PLAN_KEY, "leads_limit": free_plan.leads_limit}


async def ensure_workspace_billing(workspace_id: str) -> WorkspaceBilling:
    """Create the billing row with free-tier defaults if it does not exist yet."""
    db = database.get_db()
    now = datetime.now(timezone.utc)
    defaults = WorkspaceBilling(
        workspace_id=workspace_id,
        leads_limit=(await plan_catalog.get_free_plan()).leads_limit,
        created_at=now,
        updated_at=now,
    ).model_dump()
    defaults.pop("workspace_id")
    defaults["subscription_status"] = SubscriptionStatus.NONE.value
    defaults["billing_cycle"] = BillingCycle.MONTHLY.value

    await db.workspaces.update_one(
        {"workspace_id": workspace_id},
        {"$setOnInsert": defaults},
        upsert=True,
    )
    doc = await db.workspaces.find_one({"workspace_id": workspace_id}, {"_id": 0})
    return WorkspaceBilling(**doc)


async def load_workspace_billing(workspace_id: str) -> Optional[WorkspaceBilling]:
    """Raw read without the lazy grace check. For jobs and internal callers."""
    db = database.get_db()
    doc = await db.workspaces.find_one({"workspace_id": workspace_id}, {"_id": 0})
    return WorkspaceBilling(**doc) if doc else None


async def get_workspace_billing(workspace_id: str) -> WorkspaceBilling:
    """Billing state for a user-facing path, after applying any expired grace period."""
    from services.grace_period import apply_grace_period_expiry_if_needed

    await apply_grace_period_expiry_if_needed(workspace_id)
    workspace = await load_workspace_billing(workspace_id)
    if workspace is None:
        workspace = await ensure_workspace_billing(workspace_id)
    return workspace
