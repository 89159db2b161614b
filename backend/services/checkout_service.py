"""Checkout and upgrade requests.

Plan and quota move only once the provider confirms payment. Usually that is
a webhook; MercadoPago authorizes a card pre-approval synchronously, so an
already-active snapshot is applied here through the same reconciler
transition the webhook would use.

- Upgrade of a live Stripe subscription: swapped in place, the prorated
  difference is invoiced by Stripe immediately.
- Everything else (new subscriptions, MercadoPago upgrades, cycle changes):
  a new subscription is created; for MercadoPago the replaced pre-approval is
  cancelled once the new one exists.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from database import database
from models import (
    AuditAction,
    BillingCycle,
    BillingProviderName,
    CustomerRef,
    ProratedAmount,
    ProviderSubscriptionStatus,
    SubscriptionStatus,
    UserRole,
)
from services import billing_reconciler
from services.plan_catalog import plan_catalog
from services.proration import compute_prorated_upgrade
from services.providers.base import ProviderError
from services.providers.registry import get_provider, provider_for_workspace
from services.workspace_billing import get_workspace_billing
from utils.audit import create_audit_log
import logging

logger = logging.getLogger(__name__)

_LIVE_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE)


class CheckoutError(Exception):
    """The payment provider rejected or failed the request."""

    def __init__(self, message: str, status_code: int = 502):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


async def preview_upgrade(workspace_id: str, plan_key: str) -> Optional[ProratedAmount]:
    """Prorated charge for upgrading now, or None when nothing is prorated."""
    workspace = await get_workspace_billing(workspace_id)
    target = await plan_catalog.get_active_plan(plan_key)
    if not await plan_catalog.is_upgrade(workspace.plan, target.key):
        raise ValueError(f"{target.key} is not an upgrade from {workspace.plan}")
    current = await plan_catalog.get_plan(workspace.plan)
    return compute_prorated_upgrade(current, target, workspace.billing_cycle, workspace.current_period_end)


async def start_checkout(
    workspace_id: str,
    plan_key: str,
    cycle: BillingCycle,
    provider_name: BillingProviderName,
    customer: CustomerRef,
    actor_id: Optional[str] = None
) -> Dict[str, Any]:
    """Start a paid subscription or upgrade.

    Raises:
        PlanNotFoundError: unknown or inactive plan
        ValueError: free plan, or a downgrade (those are scheduled instead)
        CheckoutError: provider failure
    """
    target = await plan_catalog.get_active_plan(plan_key)
    if target.is_free:
        raise ValueError("The free plan does not need a checkout; use cancel instead")

    workspace = await get_workspace_billing(workspace_id)
    live = workspace.subscription_status in _LIVE_STATUSES and workspace.external_subscription_id
    if live and await plan_catalog.is_downgrade(workspace.plan, target.key):
        raise ValueError("Downgrades between paid plans are scheduled for the end of the period")

    current_provider = provider_for_workspace(workspace) if live else None

    # In-place upgrade with proration
    if (
        current_provider is not None
        and current_provider.supports_in_place_plan_swap
        and current_provider.name == provider_name
        and cycle == workspace.billing_cycle
        and await plan_catalog.is_upgrade(workspace.plan, target.key)
    ):
        current_plan = await plan_catalog.get_plan(workspace.plan)
        proration = compute_prorated_upgrade(current_plan, target, cycle, workspace.current_period_end)
        try:
            snapshot = await current_provider.change_plan(workspace.external_subscription_id, target, cycle)
        except ProviderError as e:
            raise CheckoutError(f"Failed to upgrade subscription: {e.message}")

        await create_audit_log(
            action=AuditAction.PLAN_UPGRADED_IN_PLACE,
            workspace_id=workspace_id,
            actor_role=UserRole.ROLE_MEMBER,
            actor_id=actor_id,
            metadata={
                "from_plan": workspace.plan,
                "to_plan": target.key,
                "proration": proration.model_dump() if proration else None,
            },
        )
        logger.info(f"Workspace {workspace_id} upgraded in place {workspace.plan} -> {target.key}")
        return {"mode": "upgraded_in_place", "subscription": snapshot, "proration": proration}

    provider = get_provider(provider_name)
    if workspace.billing_provider == provider.name and workspace.external_customer_id and not customer.external_customer_id:
        customer = customer.model_copy(update={"external_customer_id": workspace.external_customer_id})

    try:
        snapshot = await provider.create_subscription(customer, target, cycle)
    except ProviderError as e:
        raise CheckoutError(f"Failed to create subscription: {e.message}")

    if snapshot.external_customer_id and workspace.billing_provider in (None, provider.name):
        db = database.get_db()
        await db.workspaces.update_one(
            {"workspace_id": workspace_id},
            {"$set": {
                "external_customer_id": snapshot.external_customer_id,
                "updated_at": datetime.now(timezone.utc),
            }},
        )

    if snapshot.status == ProviderSubscriptionStatus.ACTIVE:
        await billing_reconciler.apply_checkout_completed(
            workspace_id, snapshot, target.key, source="checkout"
        )

    # The old pre-approval would keep charging alongside the new one
    if (
        current_provider is not None
        and not current_provider.supports_in_place_plan_swap
        and current_provider.name == provider.name
        and snapshot.external_id != workspace.external_subscription_id
    ):
        try:
            await current_provider.cancel_subscription(workspace.external_subscription_id)
        except ProviderError as e:
            logger.error(
                f"Replaced subscription {workspace.external_subscription_id} for workspace {workspace_id} "
                f"could not be cancelled: {e} - manual cancellation required"
            )

    await create_audit_log(
        action=AuditAction.CHECKOUT_STARTED,
        workspace_id=workspace_id,
        actor_role=UserRole.ROLE_MEMBER,
        actor_id=actor_id,
        metadata={
            "provider": provider.name.value,
            "plan": target.key,
            "cycle": cycle.value,
            "subscription_id": snapshot.external_id,
        },
    )
    logger.info(
        f"Checkout started for workspace {workspace_id}: {target.key}/{cycle.value} "
        f"via {provider.name.value} ({snapshot.external_id})"
    )
    return {"mode": "subscription_created", "subscription": snapshot, "proration": None}
