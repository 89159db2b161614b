"""Plan Catalog - the tiers a workspace can be on.

Plans live in the ``plan_configs`` collection so support can edit prices and
quotas without a deploy. The catalog is read-mostly:

- Seeds DEFAULT_PLANS on first read when the collection is empty
- Caches plans in-process; admin edits call ``invalidate()``
- Tier order is ``sort_order`` (FREE < BASIC < PRO < BUSINESS < SCALE)

The billing engine itself never writes plans; only ``update_plan`` (admin) does.
"""
import os
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple, Any
from database import database
from models import Plan, PlanUpdate, AuditAction, UserRole, FREE_PLAN_KEY
from utils.audit import create_audit_log
import logging

logger = logging.getLogger(__name__)


class PlanNotFoundError(Exception):
    """Unknown or inactive plan key. A configuration error, never transient."""

    def __init__(self, plan_key: Optional[str]):
        self.plan_key = plan_key
        super().__init__(f"Unknown plan: {plan_key}")


# ============================================================================
# DEFAULT SEED
# ============================================================================
_BASE_FEATURES = ["lead_mapping"]

DEFAULT_PLANS: List[Dict[str, Any]] = [
    {
        "key": FREE_PLAN_KEY,
        "name": "Free",
        "price_monthly_brl": 0,
        "price_annual_brl": 0,
        "price_monthly_usd": 0,
        "price_annual_usd": 0,
        "leads_limit": 5,
        "features": _BASE_FEATURES,
        "sort_order": 0,
    },
    {
        "key": "BASIC",
        "name": "Starter",
        "price_monthly_brl": 129,
        "price_annual_brl": 1315,
        "price_monthly_usd": 25,
        "price_annual_usd": 255,
        "leads_limit": 100,
        "features": _BASE_FEATURES + ["lead_intelligence"],
        "sort_order": 1,
    },
    {
        "key": "PRO",
        "name": "Growth",
        "price_monthly_brl": 397,
        "price_annual_brl": 4049,
        "price_monthly_usd": 79,
        "price_annual_usd": 805,
        "leads_limit": 400,
        "features": _BASE_FEATURES + ["lead_intelligence", "competitor_analysis"],
        "sort_order": 2,
    },
    {
        "key": "BUSINESS",
        "name": "Business",
        "price_monthly_brl": 997,
        "price_annual_brl": 10169,
        "price_monthly_usd": 199,
        "price_annual_usd": 2029,
        "leads_limit": 1200,
        "features": _BASE_FEATURES + ["lead_intelligence", "competitor_analysis", "sales_actions"],
        "sort_order": 3,
    },
    {
        "key": "SCALE",
        "name": "Enterprise",
        "price_monthly_brl": 2497,
        "price_annual_brl": 25469,
        "price_monthly_usd": 499,
        "price_annual_usd": 5089,
        "leads_limit": 5000,
        "features": _BASE_FEATURES + [
            "lead_intelligence",
            "competitor_analysis",
            "sales_actions",
            "market_intelligence",
        ],
        "sort_order": 4,
    },
]


def _cache_ttl_seconds() -> float:
    try:
        return float(os.getenv("PLAN_CATALOG_CACHE_SECONDS", "300"))
    except ValueError:
        return 300.0


# ============================================================================
# PLAN CATALOG SERVICE
# ============================================================================
class PlanCatalogService:
    """Read access to plans, with a process-local cache."""

    def __init__(self):
        self._plans: Optional[Dict[str, Plan]] = None
        self._loaded_at: float = 0.0

    # -------------------------------------------------------------------------
    # Cache
    # -------------------------------------------------------------------------

    def invalidate(self) -> None:
        """Drop the cached plans; the next read reloads from the database."""
        self._plans = None
        self._loaded_at = 0.0

    def _cache_fresh(self) -> bool:
        if self._plans is None:
            return False
        return (time.monotonic() - self._loaded_at) < _cache_ttl_seconds()

    async def _load(self) -> Dict[str, Plan]:
        if self._cache_fresh():
            return self._plans

        db = database.get_db()
        docs = await db.plan_configs.find({}, {"_id": 0}).sort("sort_order", 1).to_list(100)
        if not docs:
            docs = await self._seed_defaults()

        self._plans = {doc["key"]: Plan(**doc) for doc in docs}
        self._loaded_at = time.monotonic()
        return self._plans

    async def _seed_defaults(self) -> List[Dict[str, Any]]:
        db = database.get_db()
        now = datetime.now(timezone.utc)
        for plan in DEFAULT_PLANS:
            # Upsert so concurrent first reads in several processes converge
            await db.plan_configs.update_one(
                {"key": plan["key"]},
                {"$setOnInsert": {**plan, "is_active": True, "updated_at": now}},
                upsert=True,
            )
        logger.info(f"Plan catalog seeded with {len(DEFAULT_PLANS)} default plans")
        return await db.plan_configs.find({}, {"_id": 0}).sort("sort_order", 1).to_list(100)

    # -------------------------------------------------------------------------
    # Plan Information
    # -------------------------------------------------------------------------

    async def get_plan(self, key: Optional[str]) -> Plan:
        """Get a plan by key (active or not). Raises PlanNotFoundError."""
        plans = await self._load()
        plan = plans.get(key) if key else None
        if plan is None:
            raise PlanNotFoundError(key)
        return plan

    async def get_active_plan(self, key: Optional[str]) -> Plan:
        """Get a plan that can be purchased right now."""
        plan = await self.get_plan(key)
        if not plan.is_active:
            raise PlanNotFoundError(key)
        return plan

    async def list_active_plans(self) -> List[Plan]:
        plans = await self._load()
        return sorted(
            (p for p in plans.values() if p.is_active),
            key=lambda p: p.sort_order,
        )

    async def get_free_plan(self) -> Plan:
        return await self.get_plan(FREE_PLAN_KEY)

    # -------------------------------------------------------------------------
    # Tier Ordering
    # -------------------------------------------------------------------------

    async def compare_tiers(self, current_key: str, target_key: str) -> int:
        """-1 when target is lower, 0 same tier, 1 when target is higher."""
        current = await self.get_plan(current_key)
        target = await self.get_plan(target_key)
        if target.sort_order > current.sort_order:
            return 1
        if target.sort_order < current.sort_order:
            return -1
        return 0

    async def is_upgrade(self, current_key: str, target_key: str) -> bool:
        return await self.compare_tiers(current_key, target_key) > 0

    async def is_downgrade(self, current_key: str, target_key: str) -> bool:
        return await self.compare_tiers(current_key, target_key) < 0

    # -------------------------------------------------------------------------
    # Feature Entitlements
    # -------------------------------------------------------------------------

    def plan_has_feature(self, plan: Plan, feature: str) -> bool:
        return feature in plan.features

    async def check_feature_access(
        self,
        plan_key: str,
        feature: str
    ) -> Tuple[bool, Optional[str], Optional[Dict]]:
        """
        Check if a feature is included in a plan.

        Returns:
            (is_allowed, upgrade_message, upgrade_info)
        """
        plan = await self.get_plan(plan_key)
        if self.plan_has_feature(plan, feature):
            return True, None, None

        for candidate in await self.list_active_plans():
            if candidate.sort_order > plan.sort_order and self.plan_has_feature(candidate, feature):
                upgrade_info = {
                    "required_plan": candidate.key,
                    "required_plan_name": candidate.name,
                    "feature_key": feature,
                }
                return False, f"{feature} requires {candidate.name} plan or higher", upgrade_info

        return False, f"{feature} is not available on your current plan", None

    # -------------------------------------------------------------------------
    # Administrative Edit
    # -------------------------------------------------------------------------

    async def update_plan(
        self,
        key: str,
        changes: PlanUpdate,
        actor_id: Optional[str] = None
    ) -> Plan:
        """Apply an admin edit and invalidate the cache."""
        before = await self.get_plan(key)
        updates = changes.model_dump(exclude_none=True)
        if not updates:
            return before
        if key == FREE_PLAN_KEY and updates.get("is_active") is False:
            raise ValueError("The free plan cannot be deactivated")

        updates["updated_at"] = datetime.now(timezone.utc)
        db = database.get_db()
        await db.plan_configs.update_one({"key": key}, {"$set": updates})
        self.invalidate()

        after = await self.get_plan(key)
        await create_audit_log(
            action=AuditAction.PLAN_CONFIG_UPDATED,
            actor_role=UserRole.ROLE_ADMIN,
            actor_id=actor_id,
            before_state=before.model_dump(mode="json", exclude={"updated_at"}),
            after_state=after.model_dump(mode="json", exclude={"updated_at"}),
            metadata={"plan_key": key},
        )
        logger.info(f"Plan {key} updated: {sorted(k for k in updates if k != 'updated_at')}")
        return after


# Singleton instance
plan_catalog = PlanCatalogService()
