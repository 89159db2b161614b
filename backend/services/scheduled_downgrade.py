"""Scheduled downgrades between paid tiers, and the cancel-to-free flow.

A paid-to-paid downgrade never takes effect immediately: the workspace already
paid for the current period. ``schedule_downgrade`` only records
``pending_plan_id`` + ``pending_plan_effective_at``; ``apply_pending_downgrades``
(scheduled job) switches the plan once the date has passed.

Providers without in-place plan swap (MercadoPago) have their pre-approval
cancelled first. If that cancellation fails the workspace is left untouched
and retried on the next run. Providers with in-place swap (Stripe) already
switched price on their side via the subscription schedule.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from database import database
from models import AuditAction, SubscriptionStatus, UserRole, WorkspaceBilling, FREE_PLAN_KEY
from services.plan_catalog import plan_catalog, PlanNotFoundError
from services.providers.base import ProviderError
from services.providers.registry import provider_for_workspace
from services.workspace_billing import (
    billing_state,
    free_tier_fields,
    get_workspace_billing,
    load_workspace_billing,
)
from utils.audit import create_audit_log
import logging

logger = logging.getLogger(__name__)

# Used when the workspace has no future period end to anchor the downgrade on
FALLBACK_EFFECTIVE_DAYS = 30


class ScheduleDowngradeError(Exception):
    """Rejected downgrade request; ``status_code`` is the HTTP status to return."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(message)


def _not_subscribed_fields() -> Dict[str, Any]:
    return {
        "billing_provider": None,
        "external_subscription_id": None,
        "external_customer_id": None,
        "current_period_end": None,
        "subscription_status": SubscriptionStatus.NONE.value,
        "grace_period_end": None,
        "pending_plan_id": None,
        "pending_plan_effective_at": None,
    }


# ============================================================================
# REQUEST SIDE
# ============================================================================

async def schedule_downgrade(
    workspace_id: str,
    target_plan_key: str,
    actor_id: Optional[str] = None
) -> WorkspaceBilling:
    """Schedule a downgrade to ``target_plan_key`` at the end of the paid period."""
    if target_plan_key == FREE_PLAN_KEY:
        raise ScheduleDowngradeError(
            400, "Use the cancel flow to switch to Free. Scheduled downgrades are for paid plans only."
        )
    try:
        target = await plan_catalog.get_active_plan(target_plan_key)
    except PlanNotFoundError:
        raise ScheduleDowngradeError(400, "Invalid plan")

    workspace = await get_workspace_billing(workspace_id)
    if workspace.plan == FREE_PLAN_KEY:
        raise ScheduleDowngradeError(400, "Free workspaces have nothing to downgrade")
    if not await plan_catalog.is_downgrade(workspace.plan, target.key):
        raise ScheduleDowngradeError(400, f"{target.key} is not a downgrade from {workspace.plan}")

    now = datetime.now(timezone.utc)
    if workspace.current_period_end and workspace.current_period_end > now:
        effective_at = workspace.current_period_end
    else:
        effective_at = now + timedelta(days=FALLBACK_EFFECTIVE_DAYS)

    provider = provider_for_workspace(workspace)
    if provider and provider.supports_in_place_plan_swap and workspace.external_subscription_id:
        try:
            await provider.schedule_plan_change(
                workspace.external_subscription_id, target, workspace.billing_cycle, effective_at
            )
        except ProviderError as e:
            logger.error(f"Scheduling downgrade at {provider.name.value} failed for workspace {workspace_id}: {e}")
            raise ScheduleDowngradeError(502, "Payment provider could not schedule the plan change")

    db = database.get_db()
    await db.workspaces.update_one(
        {"workspace_id": workspace_id},
        {"$set": {
            "pending_plan_id": target.key,
            "pending_plan_effective_at": effective_at,
            "updated_at": now,
        }},
    )

    logger.info(f"Downgrade to {target.key} scheduled for workspace {workspace_id} at {effective_at.isoformat()}")
    await create_audit_log(
        action=AuditAction.DOWNGRADE_SCHEDULED,
        workspace_id=workspace_id,
        actor_role=UserRole.ROLE_MEMBER,
        actor_id=actor_id,
        metadata={"from_plan": workspace.plan, "to_plan": target.key, "effective_at": effective_at.isoformat()},
    )
    return await load_workspace_billing(workspace_id)


async def cancel_pending_downgrade(workspace_id: str, actor_id: Optional[str] = None) -> WorkspaceBilling:
    """Drop a scheduled downgrade before it applies.

    For Stripe the provider-side schedule is left to be released by the next
    plan change; only the local pending fields are cleared.
    """
    db = database.get_db()
    result = await db.workspaces.update_one(
        {"workspace_id": workspace_id, "pending_plan_id": {"$ne": None}},
        {"$set": {
            "pending_plan_id": None,
            "pending_plan_effective_at": None,
            "updated_at": datetime.now(timezone.utc),
        }},
    )
    if result.modified_count:
        await create_audit_log(
            action=AuditAction.DOWNGRADE_SCHEDULE_CANCELLED,
            workspace_id=workspace_id,
            actor_role=UserRole.ROLE_MEMBER,
            actor_id=actor_id,
        )
    return await get_workspace_billing(workspace_id)


async def cancel_to_free(workspace_id: str, actor_id: Optional[str] = None) -> WorkspaceBilling:
    """Immediate cancel-and-reset to the free tier.

    Provider errors propagate; the user is waiting on this call.
    """
    workspace = await get_workspace_billing(workspace_id)
    provider = provider_for_workspace(workspace)
    if provider and workspace.external_subscription_id:
        await provider.cancel_subscription(workspace.external_subscription_id)

    before = billing_state(workspace.model_dump())
    fields = {
        **_not_subscribed_fields(),
        **(await free_tier_fields()),
        "subscription_status": SubscriptionStatus.CANCELED.value,
        "updated_at": datetime.now(timezone.utc),
    }
    db = database.get_db()
    await db.workspaces.update_one({"workspace_id": workspace_id}, {"$set": fields})

    logger.info(f"Workspace {workspace_id} cancelled to free tier")
    await create_audit_log(
        action=AuditAction.CANCELLED_TO_FREE,
        workspace_id=workspace_id,
        actor_role=UserRole.ROLE_MEMBER,
        actor_id=actor_id,
        before_state=before,
        after_state=billing_state({**workspace.model_dump(), **fields}),
    )
    return await load_workspace_billing(workspace_id)


# ============================================================================
# SCHEDULED JOB
# ============================================================================

async def _apply_pending_downgrade(doc: Dict[str, Any], now: datetime) -> bool:
    workspace = WorkspaceBilling(**doc)
    pending_plan_id = workspace.pending_plan_id

    try:
        plan = await plan_catalog.get_plan(pending_plan_id)
    except PlanNotFoundError:
        logger.error(f"Workspace {workspace.workspace_id} has unknown pending plan {pending_plan_id} - skipping")
        return False

    provider = provider_for_workspace(workspace)
    if provider and not provider.supports_in_place_plan_swap and workspace.external_subscription_id:
        try:
            await provider.cancel_subscription(workspace.external_subscription_id)
        except ProviderError as e:
            # Leave plan and pending fields as they are; next run retries
            logger.warning(
                f"Cancel of {provider.name.value} subscription {workspace.external_subscription_id} failed "
                f"for workspace {workspace.workspace_id}: {e} - will retry"
            )
            return False

    fields = {
        **_not_subscribed_fields(),
        "plan": plan.key,
        "leads_limit": plan.leads_limit,
        "updated_at": now,
    }
    db = database.get_db()
    result = await db.workspaces.update_one(
        {
            "workspace_id": workspace.workspace_id,
            "pending_plan_id": pending_plan_id,
            "pending_plan_effective_at": {"$lte": now},
        },
        {"$set": fields},
    )
    if result.modified_count == 0:
        return False

    logger.info(f"Applied scheduled downgrade {workspace.plan} -> {plan.key} for workspace {workspace.workspace_id}")
    await create_audit_log(
        action=AuditAction.DOWNGRADE_APPLIED,
        workspace_id=workspace.workspace_id,
        before_state=billing_state(doc),
        after_state=billing_state({**doc, **fields}),
        metadata={"provider": provider.name.value if provider else None},
    )
    return True


async def apply_pending_downgrades() -> int:
    """Apply every scheduled downgrade whose effective date has passed. Returns how many applied."""
    now = datetime.now(timezone.utc)
    db = database.get_db()
    cursor = db.workspaces.find(
        {"pending_plan_id": {"$ne": None}, "pending_plan_effective_at": {"$lte": now}},
        {"_id": 0},
    )

    applied = 0
    async for doc in cursor:
        try:
            if await _apply_pending_downgrade(doc, now):
                applied += 1
        except Exception as e:
            logger.error(f"Scheduled downgrade failed for workspace {doc.get('workspace_id')}: {e}")

    logger.info(f"Scheduled downgrade run complete: {applied} workspace(s) updated")
    return applied
