"""Stripe adapter (native subscriptions).

Recurring prices are configured per plan/cycle through environment variables
``STRIPE_PRICE_<PLAN>_<CYCLE>`` (e.g. ``STRIPE_PRICE_PRO_ANNUAL``).
Subscriptions carry ``workspace_id``/``plan_key``/``billing_cycle`` in metadata
so webhooks can be linked back to the workspace.
"""
import os
import stripe
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from models import (
    BillingCycle,
    BillingProviderName,
    CustomerRef,
    Plan,
    ProviderSubscriptionStatus,
    SubscriptionSnapshot,
)
from services.providers.base import BillingProvider, ProviderError

logger = logging.getLogger(__name__)

stripe.api_key = os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY")
# Bounded retries for idempotent-safe requests (SDK adds Idempotency-Key)
stripe.max_network_retries = 2

STRIPE_STATUS_MAP = {
    "active": ProviderSubscriptionStatus.ACTIVE,
    "trialing": ProviderSubscriptionStatus.ACTIVE,
    "past_due": ProviderSubscriptionStatus.PAST_DUE,
    "unpaid": ProviderSubscriptionStatus.PAST_DUE,
    "canceled": ProviderSubscriptionStatus.CANCELED,
    "incomplete_expired": ProviderSubscriptionStatus.CANCELED,
    "incomplete": ProviderSubscriptionStatus.PENDING,
    "paused": ProviderSubscriptionStatus.PENDING,
}


def _as_dict(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def _from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _first_item(subscription: Dict[str, Any]) -> Dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def snapshot_from_stripe_subscription(subscription: Any) -> SubscriptionSnapshot:
    """Normalize a Stripe Subscription (SDK object or webhook dict)."""
    sub = _as_dict(subscription)
    item = _first_item(sub)
    metadata = sub.get("metadata") or {}

    # Newer API versions moved the period onto subscription items
    period_end = sub.get("current_period_end") or item.get("current_period_end")

    interval = ((item.get("price") or {}).get("recurring") or {}).get("interval")
    cycle = BillingCycle.ANNUAL if interval == "year" else BillingCycle.MONTHLY

    customer = sub.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")

    raw_status = sub.get("status")
    status = STRIPE_STATUS_MAP.get(raw_status)
    if status is None:
        logger.warning(f"Unmapped Stripe subscription status '{raw_status}' for {sub.get('id')}")
        status = ProviderSubscriptionStatus.PENDING

    return SubscriptionSnapshot(
        provider=BillingProviderName.STRIPE,
        external_id=sub["id"],
        status=status,
        current_period_end=_from_timestamp(period_end),
        cycle=cycle,
        external_customer_id=customer,
        plan_key=metadata.get("plan_key"),
        workspace_id=metadata.get("workspace_id"),
    )


def stripe_price_id(plan: Plan, cycle: BillingCycle) -> str:
    env_key = f"STRIPE_PRICE_{plan.key}_{cycle.value.upper()}"
    price_id = os.getenv(env_key)
    if not price_id:
        raise ProviderError(
            f"No Stripe price configured for {plan.key}/{cycle.value} ({env_key})",
            provider=BillingProviderName.STRIPE.value,
        )
    return price_id


def _wrap(action: str, e: Exception) -> ProviderError:
    logger.error(f"Stripe {action} failed: {e}")
    return ProviderError(
        f"Stripe {action} failed: {getattr(e, 'user_message', None) or str(e)}",
        provider=BillingProviderName.STRIPE.value,
        status_code=getattr(e, "http_status", None),
        original_error=e,
    )


class StripeProvider(BillingProvider):
    """Shape A: native subscriptions with in-place swaps and schedules."""

    name = BillingProviderName.STRIPE
    supports_in_place_plan_swap = True

    def _metadata(self, workspace_id: str, plan: Plan, cycle: BillingCycle) -> Dict[str, str]:
        return {"workspace_id": workspace_id, "plan_key": plan.key, "billing_cycle": cycle.value}

    async def _ensure_customer(self, customer: CustomerRef) -> str:
        if customer.external_customer_id:
            return customer.external_customer_id
        created = stripe.Customer.create(
            email=customer.email,
            name=customer.name,
            metadata={"workspace_id": customer.workspace_id},
        )
        logger.info(f"Created Stripe customer {created.id} for workspace {customer.workspace_id}")
        return created.id

    async def create_subscription(
        self,
        customer: CustomerRef,
        plan: Plan,
        cycle: BillingCycle
    ) -> SubscriptionSnapshot:
        price_id = stripe_price_id(plan, cycle)
        try:
            customer_id = await self._ensure_customer(customer)
            subscription = stripe.Subscription.create(
                customer=customer_id,
                items=[{"price": price_id}],
                # Payment is confirmed client-side; webhook activates the plan
                payment_behavior="default_incomplete",
                metadata=self._metadata(customer.workspace_id, plan, cycle),
                expand=["latest_invoice.payment_intent"],
            )
        except stripe.error.StripeError as e:
            raise _wrap("subscription create", e)

        return snapshot_from_stripe_subscription(subscription)

    async def cancel_subscription(self, external_id: str) -> None:
        try:
            stripe.Subscription.cancel(external_id)
            logger.info(f"Stripe subscription {external_id} cancelled")
        except stripe.error.InvalidRequestError as e:
            # Already cancelled on Stripe's side
            if getattr(e, "code", None) == "resource_missing":
                logger.warning(f"Stripe subscription {external_id} not found on cancel")
                return
            raise _wrap("subscription cancel", e)
        except stripe.error.StripeError as e:
            raise _wrap("subscription cancel", e)

    async def retrieve_subscription(self, external_id: str) -> SubscriptionSnapshot:
        try:
            subscription = stripe.Subscription.retrieve(external_id)
        except stripe.error.StripeError as e:
            raise _wrap("subscription retrieve", e)
        return snapshot_from_stripe_subscription(subscription)

    async def change_plan(
        self,
        external_id: str,
        plan: Plan,
        cycle: BillingCycle
    ) -> SubscriptionSnapshot:
        price_id = stripe_price_id(plan, cycle)
        try:
            current = _as_dict(stripe.Subscription.retrieve(external_id))
            item = _first_item(current)
            metadata = dict(current.get("metadata") or {})
            metadata.update({"plan_key": plan.key, "billing_cycle": cycle.value})
            subscription = stripe.Subscription.modify(
                external_id,
                items=[{"id": item.get("id"), "price": price_id}],
                proration_behavior="always_invoice",
                metadata=metadata,
            )
        except stripe.error.StripeError as e:
            raise _wrap("plan change", e)

        logger.info(f"Stripe subscription {external_id} swapped to {plan.key}/{cycle.value}")
        return snapshot_from_stripe_subscription(subscription)

    async def schedule_plan_change(
        self,
        external_id: str,
        plan: Plan,
        cycle: BillingCycle,
        effective_at: datetime
    ) -> None:
        price_id = stripe_price_id(plan, cycle)
        try:
            current = _as_dict(stripe.Subscription.retrieve(external_id))
            schedule_id = current.get("schedule")
            if isinstance(schedule_id, dict):
                schedule_id = schedule_id.get("id")
            if not schedule_id:
                schedule_id = stripe.SubscriptionSchedule.create(from_subscription=external_id).id

            item = _first_item(current)
            current_price = (item.get("price") or {}).get("id")
            start_date = current.get("current_period_start") or item.get("current_period_start")
            metadata = dict(current.get("metadata") or {})
            metadata.update({"plan_key": plan.key, "billing_cycle": cycle.value})

            stripe.SubscriptionSchedule.modify(
                schedule_id,
                end_behavior="release",
                phases=[
                    {
                        "items": [{"price": current_price, "quantity": 1}],
                        "start_date": start_date,
                        "end_date": int(effective_at.timestamp()),
                    },
                    {
                        "items": [{"price": price_id, "quantity": 1}],
                        "metadata": metadata,
                    },
                ],
            )
        except stripe.error.StripeError as e:
            raise _wrap("schedule plan change", e)

        logger.info(
            f"Stripe subscription {external_id} scheduled to {plan.key} at {effective_at.isoformat()}"
        )
