"""Billing Routes - workspace plan, checkout and downgrade requests.

Endpoints:
- GET /api/plans - Active plans, ordered by tier
- GET /api/billing/workspace - Current billing state (applies expired grace periods)
- GET /api/billing/proration-preview - Prorated charge for an upgrade
- POST /api/billing/checkout - Start a subscription or upgrade
- POST /api/billing/schedule-downgrade - Downgrade at the end of the paid period
- DELETE /api/billing/schedule-downgrade - Drop a scheduled downgrade
- POST /api/billing/cancel - Cancel now and return to the free tier
"""
from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel
from typing import Optional
from models import BillingCycle, BillingProviderName, CustomerRef
from services.checkout_service import start_checkout, preview_upgrade, CheckoutError
from services.plan_catalog import plan_catalog, PlanNotFoundError
from services.providers.base import ProviderError
from services.scheduled_downgrade import (
    schedule_downgrade,
    cancel_pending_downgrade,
    cancel_to_free,
    ScheduleDowngradeError,
)
from services.workspace_billing import get_workspace_billing
from middleware import workspace_route_guard
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["billing"])


class CheckoutRequest(BaseModel):
    """Request to start a subscription or upgrade."""
    plan_key: str
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    provider: BillingProviderName = BillingProviderName.STRIPE
    email: str
    name: Optional[str] = None
    card_token: Optional[str] = None  # MercadoPago only


class ScheduleDowngradeRequest(BaseModel):
    """Request to downgrade to a lower paid plan at period end."""
    plan_key: str


@router.get("/api/plans")
async def list_plans():
    plans = await plan_catalog.list_active_plans()
    return {"plans": [p.model_dump(mode="json", exclude={"updated_at"}) for p in plans]}


@router.get("/api/billing/workspace")
async def get_billing(request: Request):
    user = await workspace_route_guard(request)
    workspace = await get_workspace_billing(user["workspace_id"])
    return workspace.model_dump(mode="json")


@router.get("/api/billing/proration-preview")
async def proration_preview(request: Request, plan_key: str):
    user = await workspace_route_guard(request)
    try:
        proration = await preview_upgrade(user["workspace_id"], plan_key)
    except PlanNotFoundError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid plan")
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return {"proration": proration.model_dump() if proration else None}


@router.post("/api/billing/checkout")
async def create_checkout(request: Request, body: CheckoutRequest):
    user = await workspace_route_guard(request)
    customer = CustomerRef(
        workspace_id=user["workspace_id"],
        email=body.email,
        name=body.name,
        card_token=body.card_token,
    )
    try:
        result = await start_checkout(
            workspace_id=user["workspace_id"],
            plan_key=body.plan_key,
            cycle=body.billing_cycle,
            provider_name=body.provider,
            customer=customer,
            actor_id=user.get("user_id"),
        )
    except PlanNotFoundError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid plan")
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except CheckoutError as e:
        logger.error(f"Checkout failed for workspace {user['workspace_id']}: {e.message}")
        raise HTTPException(status_code=e.status_code, detail=e.message)

    proration = result.get("proration")
    return {
        "mode": result["mode"],
        "subscription": result["subscription"].model_dump(mode="json"),
        "proration": proration.model_dump() if proration else None,
    }


@router.post("/api/billing/schedule-downgrade")
async def request_downgrade(request: Request, body: ScheduleDowngradeRequest):
    user = await workspace_route_guard(request)
    try:
        workspace = await schedule_downgrade(user["workspace_id"], body.plan_key, actor_id=user.get("user_id"))
    except ScheduleDowngradeError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return {
        "ok": True,
        "pending_plan_id": workspace.pending_plan_id,
        "pending_plan_effective_at": workspace.pending_plan_effective_at.isoformat(),
    }


@router.delete("/api/billing/schedule-downgrade")
async def drop_downgrade(request: Request):
    user = await workspace_route_guard(request)
    workspace = await cancel_pending_downgrade(user["workspace_id"], actor_id=user.get("user_id"))
    return {"ok": True, "plan": workspace.plan}


@router.post("/api/billing/cancel")
async def cancel_subscription(request: Request):
    user = await workspace_route_guard(request)
    try:
        workspace = await cancel_to_free(user["workspace_id"], actor_id=user.get("user_id"))
    except ProviderError as e:
        logger.error(f"Cancel failed for workspace {user['workspace_id']}: {e.message}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Payment provider could not cancel the subscription")
    return {"ok": True, "plan": workspace.plan, "subscription_status": workspace.subscription_status.value}
