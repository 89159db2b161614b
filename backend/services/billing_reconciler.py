"""Webhook Reconciler - applies provider subscription state to workspaces.

Every transition is a snapshot replacement expressed as one conditional
``update_one``: the filter encodes "is this a real change?", so replaying or
reordering events leaves the workspace where the latest snapshot put it.

Transitions:
- checkout completed  -> attach ids, target plan, active, leads_used = 0
- active snapshot     -> provider plan/period/cycle; leads_used = 0 only when
                         entering active or when the period advanced (renewal)
- past_due snapshot   -> keep plan/quota, start a 3 day grace period once
- canceled snapshot   -> free tier, status canceled

A canceled subscription id is terminal: late active/past_due events for it
are ignored.
"""
import calendar
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from database import database
from models import (
    AuditAction,
    BillingCycle,
    BillingProviderName,
    ProviderSubscriptionStatus,
    SubscriptionSnapshot,
    SubscriptionStatus,
    GRACE_PERIOD_DAYS,
)
from services.plan_catalog import plan_catalog
from services.workspace_billing import billing_state, ensure_workspace_billing, free_tier_fields
from utils.audit import create_audit_log
import logging

logger = logging.getLogger(__name__)

ACTIVATED = "activated"
REFRESHED = "refreshed"
PAST_DUE = "past_due"
CANCELED = "canceled"
NOOP = "noop"
IGNORED = "ignored"
NO_WORKSPACE = "no_workspace"


def add_months(value: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping the day (Jan 31 + 1 -> Feb 28/29)."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def period_end_for_cycle(cycle: BillingCycle, start: Optional[datetime] = None) -> datetime:
    start = start or datetime.now(timezone.utc)
    return add_months(start, 12 if cycle == BillingCycle.ANNUAL else 1)


def _cleared_schedule_fields() -> Dict[str, Any]:
    return {
        "grace_period_end": None,
        "pending_plan_id": None,
        "pending_plan_effective_at": None,
    }


async def _find_by_subscription(external_id: str) -> Optional[Dict[str, Any]]:
    db = database.get_db()
    return await db.workspaces.find_one({"external_subscription_id": external_id}, {"_id": 0})


# ============================================================================
# CHECKOUT / FIRST PAYMENT
# ============================================================================

async def apply_checkout_completed(
    workspace_id: str,
    snapshot: SubscriptionSnapshot,
    plan_key: str,
    source: Optional[str] = None
) -> str:
    """Attach a newly paid subscription to the workspace.

    Raises PlanNotFoundError for an unknown plan key.
    """
    plan = await plan_catalog.get_plan(plan_key)
    await ensure_workspace_billing(workspace_id)

    db = database.get_db()
    before = await db.workspaces.find_one({"workspace_id": workspace_id}, {"_id": 0})
    now = datetime.now(timezone.utc)

    fields = {
        "billing_provider": snapshot.provider.value,
        "external_subscription_id": snapshot.external_id,
        "plan": plan.key,
        "leads_limit": plan.leads_limit,
        "subscription_status": SubscriptionStatus.ACTIVE.value,
        "billing_cycle": snapshot.cycle.value,
        "current_period_end": snapshot.current_period_end or period_end_for_cycle(snapshot.cycle, now),
        "leads_used": 0,
        "updated_at": now,
        **_cleared_schedule_fields(),
    }
    if snapshot.external_customer_id:
        fields["external_customer_id"] = snapshot.external_customer_id

    # Only the first delivery attaches; replays fall through to the active refresh
    result = await db.workspaces.update_one(
        {"workspace_id": workspace_id, "external_subscription_id": {"$ne": snapshot.external_id}},
        {"$set": fields},
    )
    if result.modified_count == 0:
        return await apply_active_snapshot(snapshot.model_copy(update={"plan_key": plan.key}))

    logger.info(
        f"Workspace {workspace_id} activated on {plan.key}/{snapshot.cycle.value} "
        f"via {snapshot.provider.value} subscription {snapshot.external_id}"
    )
    await create_audit_log(
        action=AuditAction.SUBSCRIPTION_ACTIVATED,
        workspace_id=workspace_id,
        before_state=billing_state(before),
        after_state=billing_state({**(before or {}), **fields}),
        metadata={"provider": snapshot.provider.value, "subscription_id": snapshot.external_id, "source": source},
    )
    return ACTIVATED


async def apply_one_time_payment(
    workspace_id: str,
    plan_key: str,
    cycle: BillingCycle,
    payment_id: str
) -> str:
    """Activate a plan paid with a one-off MercadoPago payment (PIX/boleto).

    There is no recurring subscription to attach; the period runs one calendar
    month or year from now. Replays are filtered by the event ledger.

    Entitlement does not expire when that period ends: no job downgrades
    one-time payers, they stay on the plan until changed or canceled.
    """
    plan = await plan_catalog.get_plan(plan_key)
    await ensure_workspace_billing(workspace_id)

    db = database.get_db()
    now = datetime.now(timezone.utc)
    fields = {
        "billing_provider": BillingProviderName.MERCADOPAGO.value,
        "external_subscription_id": None,
        "plan": plan.key,
        "leads_limit": plan.leads_limit,
        "subscription_status": SubscriptionStatus.ACTIVE.value,
        "billing_cycle": cycle.value,
        "current_period_end": period_end_for_cycle(cycle, now),
        "leads_used": 0,
        "updated_at": now,
        **_cleared_schedule_fields(),
    }
    await db.workspaces.update_one({"workspace_id": workspace_id}, {"$set": fields})

    logger.info(f"Workspace {workspace_id} activated on {plan.key} by MercadoPago payment {payment_id}")
    await create_audit_log(
        action=AuditAction.SUBSCRIPTION_ACTIVATED,
        workspace_id=workspace_id,
        metadata={"provider": BillingProviderName.MERCADOPAGO.value, "payment_id": payment_id},
    )
    return ACTIVATED


# ============================================================================
# SUBSCRIPTION SNAPSHOTS
# ============================================================================

async def apply_subscription_snapshot(snapshot: SubscriptionSnapshot) -> str:
    """Route a snapshot of an attached subscription to its transition."""
    if snapshot.status == ProviderSubscriptionStatus.ACTIVE:
        return await apply_active_snapshot(snapshot)
    if snapshot.status == ProviderSubscriptionStatus.PAST_DUE:
        return await apply_past_due_snapshot(snapshot)
    if snapshot.status == ProviderSubscriptionStatus.CANCELED:
        return await apply_canceled_snapshot(snapshot)

    logger.info(f"Subscription {snapshot.external_id} is {snapshot.status.value}; nothing to apply")
    return IGNORED


async def apply_active_snapshot(snapshot: SubscriptionSnapshot) -> str:
    """Provider reports the subscription active.

    Raises PlanNotFoundError when the snapshot names an unknown plan.
    """
    before = await _find_by_subscription(snapshot.external_id)
    if before is None:
        logger.warning(
            f"No workspace for {snapshot.provider.value} subscription {snapshot.external_id} - ignoring active event"
        )
        return NO_WORKSPACE

    plan = await plan_catalog.get_plan(snapshot.plan_key or before.get("plan"))
    now = datetime.now(timezone.utc)
    fields = {
        "plan": plan.key,
        "leads_limit": plan.leads_limit,
        "subscription_status": SubscriptionStatus.ACTIVE.value,
        "billing_cycle": snapshot.cycle.value,
        "grace_period_end": None,
        "updated_at": now,
    }
    if snapshot.current_period_end:
        fields["current_period_end"] = snapshot.current_period_end

    entering_active = [
        {"subscription_status": {"$ne": SubscriptionStatus.ACTIVE.value}},
        {"current_period_end": None},
    ]
    if snapshot.current_period_end:
        # Renewal: same status, later period
        entering_active.append({"current_period_end": {"$lt": snapshot.current_period_end}})

    db = database.get_db()
    live = {"$ne": SubscriptionStatus.CANCELED.value}

    result = await db.workspaces.update_one(
        {
            "external_subscription_id": snapshot.external_id,
            "subscription_status": live,
            "$or": entering_active,
        },
        {"$set": {
            **fields,
            "leads_used": 0,
            "pending_plan_id": None,
            "pending_plan_effective_at": None,
        }},
    )
    if result.modified_count:
        renewal = before.get("subscription_status") == SubscriptionStatus.ACTIVE.value
        logger.info(
            f"Workspace {before['workspace_id']} {'renewed' if renewal else 'activated'} on {plan.key}; leads reset"
        )
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_RENEWED if renewal else AuditAction.SUBSCRIPTION_ACTIVATED,
            workspace_id=before["workspace_id"],
            before_state=billing_state(before),
            after_state=billing_state({**before, **fields, "leads_used": 0}),
            metadata={"provider": snapshot.provider.value, "subscription_id": snapshot.external_id},
        )
        return ACTIVATED

    refresh_filter = {"external_subscription_id": snapshot.external_id, "subscription_status": live}
    if snapshot.current_period_end:
        # Out-of-order delivery: never move the period backwards
        refresh_filter["$or"] = [
            {"current_period_end": None},
            {"current_period_end": {"$lte": snapshot.current_period_end}},
        ]

    result = await db.workspaces.update_one(refresh_filter, {"$set": fields})
    if result.matched_count == 0:
        if snapshot.current_period_end is None or before.get("subscription_status") == SubscriptionStatus.CANCELED.value:
            logger.info(f"Subscription {snapshot.external_id} already canceled - ignoring late active event")
            return IGNORED
        logger.info(
            f"Stale active snapshot for subscription {snapshot.external_id} "
            f"(period end {snapshot.current_period_end.isoformat()}) - ignoring"
        )
        return NOOP
    return REFRESHED


async def apply_past_due_snapshot(snapshot: SubscriptionSnapshot) -> str:
    """Payment failed: service continues until the grace period ends."""
    before = await _find_by_subscription(snapshot.external_id)
    if before is None:
        logger.warning(
            f"No workspace for {snapshot.provider.value} subscription {snapshot.external_id} - ignoring past_due event"
        )
        return NO_WORKSPACE

    now = datetime.now(timezone.utc)
    grace_period_end = now + timedelta(days=GRACE_PERIOD_DAYS)

    db = database.get_db()
    result = await db.workspaces.update_one(
        {
            "external_subscription_id": snapshot.external_id,
            "subscription_status": {"$in": [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value]},
            "grace_period_end": None,
        },
        {"$set": {
            "subscription_status": SubscriptionStatus.PAST_DUE.value,
            "grace_period_end": grace_period_end,
            "updated_at": now,
        }},
    )
    if result.modified_count == 0:
        return NOOP

    logger.warning(
        f"Workspace {before['workspace_id']} past_due; grace period until {grace_period_end.isoformat()}"
    )
    await create_audit_log(
        action=AuditAction.SUBSCRIPTION_PAST_DUE,
        workspace_id=before["workspace_id"],
        metadata={
            "provider": snapshot.provider.value,
            "subscription_id": snapshot.external_id,
            "grace_period_end": grace_period_end.isoformat(),
        },
    )
    return PAST_DUE


async def apply_canceled_snapshot(snapshot: SubscriptionSnapshot) -> str:
    """Subscription ended on the provider side: back to the free tier."""
    before = await _find_by_subscription(snapshot.external_id)
    if before is None:
        logger.warning(
            f"No workspace for {snapshot.provider.value} subscription {snapshot.external_id} - ignoring cancellation"
        )
        return NO_WORKSPACE

    now = datetime.now(timezone.utc)
    fields = {
        **(await free_tier_fields()),
        "subscription_status": SubscriptionStatus.CANCELED.value,
        "current_period_end": None,
        "updated_at": now,
        **_cleared_schedule_fields(),
    }

    db = database.get_db()
    result = await db.workspaces.update_one(
        {
            "external_subscription_id": snapshot.external_id,
            "subscription_status": {"$ne": SubscriptionStatus.CANCELED.value},
        },
        {"$set": fields},
    )
    if result.modified_count == 0:
        return NOOP

    logger.info(f"Workspace {before['workspace_id']} subscription {snapshot.external_id} canceled; moved to free tier")
    await create_audit_log(
        action=AuditAction.SUBSCRIPTION_CANCELED,
        workspace_id=before["workspace_id"],
        before_state=billing_state(before),
        after_state=billing_state({**before, **fields}),
        metadata={"provider": snapshot.provider.value, "subscription_id": snapshot.external_id},
    )
    return CANCELED
