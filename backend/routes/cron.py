"""Cron Routes - externally triggered billing jobs.

For deployments that drive jobs from an external scheduler instead of (or in
addition to) the in-process APScheduler. Both paths call the same runners,
which are safe to re-run and to overlap.

GET/POST /api/cron/grace-period - downgrade workspaces whose grace period ended
GET/POST /api/cron/apply-pending-plans - apply due scheduled downgrades

Secured by ``x-cron-secret`` or ``Authorization: Bearer`` with CRON_SECRET.
"""
from fastapi import APIRouter, Request
from job_runner import run_grace_period_sweep, run_pending_downgrades
from middleware import cron_route_guard
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/cron", tags=["cron"])


@router.api_route("/grace-period", methods=["GET", "POST"])
async def grace_period_cron(request: Request):
    await cron_route_guard(request)
    result = await run_grace_period_sweep()
    return {"ok": True, "count": result["count"], "message": result["message"]}


@router.api_route("/apply-pending-plans", methods=["GET", "POST"])
async def apply_pending_plans_cron(request: Request):
    await cron_route_guard(request)
    result = await run_pending_downgrades()
    return {"ok": True, "count": result["count"], "message": result["message"]}
