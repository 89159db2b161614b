"""Admin Billing Routes - usage reporting and plan configuration.

Endpoints:
- GET /api/admin/billing/usage - Aggregated usage per workspace
- GET /api/admin/billing/workspaces/{workspace_id} - Billing state of one workspace
- PATCH /api/admin/billing/plans/{plan_key} - Edit a plan (invalidates the catalog cache)
"""
from fastapi import APIRouter, HTTPException, Request, Query, status
from datetime import datetime
from typing import List, Optional
from models import PlanUpdate
from services.plan_catalog import plan_catalog, PlanNotFoundError
from services.usage_ledger import get_workspace_usage
from services.workspace_billing import get_workspace_billing, load_workspace_billing
from utils.audit import get_audit_logs_for_workspace
from middleware import admin_route_guard
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin/billing", tags=["admin-billing"])


@router.get("/usage")
async def usage_report(
    request: Request,
    workspace_id: Optional[List[str]] = Query(None),
    since: Optional[datetime] = None
):
    await admin_route_guard(request)
    usage = await get_workspace_usage(workspace_ids=workspace_id, since=since)
    return {"usage": [u.model_dump() for u in usage.values()]}


@router.get("/workspaces/{workspace_id}")
async def workspace_billing_detail(request: Request, workspace_id: str):
    await admin_route_guard(request)
    if await load_workspace_billing(workspace_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Workspace not found")
    workspace = await get_workspace_billing(workspace_id)
    history = await get_audit_logs_for_workspace(workspace_id, limit=20)
    return {"billing": workspace.model_dump(mode="json"), "history": history}


@router.patch("/plans/{plan_key}")
async def update_plan(request: Request, plan_key: str, body: PlanUpdate):
    user = await admin_route_guard(request)
    try:
        plan = await plan_catalog.update_plan(plan_key, body, actor_id=user.get("user_id"))
    except PlanNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Plan not found")
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return plan.model_dump(mode="json")
