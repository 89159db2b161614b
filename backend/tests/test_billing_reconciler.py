"""
Reconciler transitions are snapshot replacements: replaying an event is a
no-op, renewals reset the lead counter once, past_due starts a single grace
period, and a canceled subscription stays canceled.
"""
import pytest
import sys
from pathlib import Path
from datetime import datetime, timedelta, timezone

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

from models import (
    AuditAction,
    BillingCycle,
    BillingProviderName,
    ProviderSubscriptionStatus,
    SubscriptionSnapshot,
)
from services import billing_reconciler
from services.billing_reconciler import add_months, period_end_for_cycle
from services.plan_catalog import PlanNotFoundError

SUB_ID = "sub_test_001"


def _snapshot(status=ProviderSubscriptionStatus.ACTIVE, period_end=None, plan_key="PRO", **kwargs):
    return SubscriptionSnapshot(
        provider=kwargs.pop("provider", BillingProviderName.STRIPE),
        external_id=kwargs.pop("external_id", SUB_ID),
        status=status,
        current_period_end=period_end,
        cycle=kwargs.pop("cycle", BillingCycle.MONTHLY),
        external_customer_id=kwargs.pop("external_customer_id", "cus_test_001"),
        plan_key=plan_key,
        **kwargs,
    )


@pytest.fixture
def period_ends():
    now = datetime.now(timezone.utc).replace(microsecond=0)
    return now + timedelta(days=20), now + timedelta(days=50)


@pytest.fixture
def attached(seed_workspace, period_ends):
    """PRO workspace attached to SUB_ID, active in its first period."""
    return seed_workspace(
        "ws-1",
        plan="PRO",
        leads_limit=400,
        leads_used=50,
        billing_provider="stripe",
        external_subscription_id=SUB_ID,
        subscription_status="active",
        current_period_end=period_ends[0],
    )


async def _workspace(db, workspace_id="ws-1"):
    return await db.workspaces.find_one({"workspace_id": workspace_id}, {"_id": 0})


class TestCheckoutCompleted:

    @pytest.mark.asyncio
    async def test_attaches_subscription_and_resets_quota(self, fake_db, seed_workspace, period_ends):
        seed_workspace("ws-1", leads_used=4, pending_plan_id="BASIC")
        result = await billing_reconciler.apply_checkout_completed("ws-1", _snapshot(period_end=period_ends[0]), "PRO")

        assert result == billing_reconciler.ACTIVATED
        doc = await _workspace(fake_db)
        assert doc["plan"] == "PRO"
        assert doc["leads_limit"] == 400
        assert doc["leads_used"] == 0
        assert doc["subscription_status"] == "active"
        assert doc["billing_provider"] == "stripe"
        assert doc["external_subscription_id"] == SUB_ID
        assert doc["external_customer_id"] == "cus_test_001"
        assert doc["current_period_end"] == period_ends[0]
        assert doc["pending_plan_id"] is None

    @pytest.mark.asyncio
    async def test_creates_row_for_new_workspace(self, fake_db, period_ends):
        await billing_reconciler.apply_checkout_completed("ws-new", _snapshot(period_end=period_ends[0]), "BASIC")
        doc = await _workspace(fake_db, "ws-new")
        assert doc["plan"] == "BASIC"
        assert doc["leads_limit"] == 100

    @pytest.mark.asyncio
    async def test_redelivery_does_not_reset_quota_again(self, fake_db, seed_workspace, period_ends):
        seed_workspace("ws-1")
        snapshot = _snapshot(period_end=period_ends[0])
        await billing_reconciler.apply_checkout_completed("ws-1", snapshot, "PRO")
        await fake_db.workspaces.update_one({"workspace_id": "ws-1"}, {"$inc": {"leads_used": 7}})

        result = await billing_reconciler.apply_checkout_completed("ws-1", snapshot, "PRO")

        assert result == billing_reconciler.REFRESHED
        assert (await _workspace(fake_db))["leads_used"] == 7

    @pytest.mark.asyncio
    async def test_unknown_plan_is_configuration_error(self, fake_db, seed_workspace, period_ends):
        seed_workspace("ws-1")
        with pytest.raises(PlanNotFoundError):
            await billing_reconciler.apply_checkout_completed("ws-1", _snapshot(period_end=period_ends[0]), "GOLD")
        assert (await _workspace(fake_db))["plan"] == "FREE"

    @pytest.mark.asyncio
    async def test_missing_period_end_defaults_to_one_cycle(self, fake_db, seed_workspace):
        seed_workspace("ws-1")
        await billing_reconciler.apply_checkout_completed("ws-1", _snapshot(period_end=None), "PRO")
        period_end = (await _workspace(fake_db))["current_period_end"]
        assert timedelta(days=27) < period_end - datetime.now(timezone.utc) <= timedelta(days=31)


class TestActiveSnapshot:

    @pytest.mark.asyncio
    async def test_same_snapshot_twice_is_a_refresh(self, fake_db, attached, period_ends):
        result = await billing_reconciler.apply_subscription_snapshot(_snapshot(period_end=period_ends[0]))
        assert result == billing_reconciler.REFRESHED
        assert (await _workspace(fake_db))["leads_used"] == 50

    @pytest.mark.asyncio
    async def test_renewal_resets_quota_once(self, fake_db, attached, period_ends):
        await fake_db.workspaces.update_one(
            {"workspace_id": "ws-1"},
            {"$set": {"pending_plan_id": "BASIC", "pending_plan_effective_at": period_ends[0]}},
        )
        renewal = _snapshot(period_end=period_ends[1])

        assert await billing_reconciler.apply_subscription_snapshot(renewal) == billing_reconciler.ACTIVATED
        doc = await _workspace(fake_db)
        assert doc["leads_used"] == 0
        assert doc["current_period_end"] == period_ends[1]
        assert doc["pending_plan_id"] is None
        assert doc["pending_plan_effective_at"] is None

        await fake_db.workspaces.update_one({"workspace_id": "ws-1"}, {"$inc": {"leads_used": 3}})
        assert await billing_reconciler.apply_subscription_snapshot(renewal) == billing_reconciler.REFRESHED
        assert (await _workspace(fake_db))["leads_used"] == 3

        actions = [log["action"] for log in fake_db.audit_logs.all()]
        assert actions == [AuditAction.SUBSCRIPTION_RENEWED.value]

    @pytest.mark.asyncio
    async def test_stale_snapshot_does_not_reset_quota(self, fake_db, attached, period_ends):
        older = _snapshot(period_end=period_ends[0] - timedelta(days=30), plan_key="BASIC")
        assert await billing_reconciler.apply_subscription_snapshot(older) == billing_reconciler.NOOP

        doc = await _workspace(fake_db)
        assert doc["current_period_end"] == period_ends[0]
        assert doc["plan"] == "PRO"
        assert doc["leads_used"] == 50

        # The current period arriving afterwards is a refresh, not a renewal
        current = _snapshot(period_end=period_ends[0])
        assert await billing_reconciler.apply_subscription_snapshot(current) == billing_reconciler.REFRESHED
        assert (await _workspace(fake_db))["leads_used"] == 50
        assert fake_db.audit_logs.all() == []

    @pytest.mark.asyncio
    async def test_refresh_keeps_scheduled_downgrade(self, fake_db, attached, period_ends):
        await fake_db.workspaces.update_one(
            {"workspace_id": "ws-1"},
            {"$set": {"pending_plan_id": "BASIC", "pending_plan_effective_at": period_ends[0]}},
        )
        await billing_reconciler.apply_subscription_snapshot(_snapshot(period_end=period_ends[0]))
        assert (await _workspace(fake_db))["pending_plan_id"] == "BASIC"

    @pytest.mark.asyncio
    async def test_recovery_from_past_due_clears_grace(self, fake_db, attached, period_ends):
        await billing_reconciler.apply_subscription_snapshot(
            _snapshot(status=ProviderSubscriptionStatus.PAST_DUE, period_end=period_ends[0])
        )
        result = await billing_reconciler.apply_subscription_snapshot(_snapshot(period_end=period_ends[1]))

        assert result == billing_reconciler.ACTIVATED
        doc = await _workspace(fake_db)
        assert doc["subscription_status"] == "active"
        assert doc["grace_period_end"] is None
        assert doc["leads_used"] == 0

    @pytest.mark.asyncio
    async def test_provider_plan_change_updates_quota_without_reset(self, fake_db, attached, period_ends):
        await billing_reconciler.apply_subscription_snapshot(
            _snapshot(period_end=period_ends[0], plan_key="BUSINESS")
        )
        doc = await _workspace(fake_db)
        assert doc["plan"] == "BUSINESS"
        assert doc["leads_limit"] == 1200
        assert doc["leads_used"] == 50

    @pytest.mark.asyncio
    async def test_unknown_subscription(self, fake_db, attached, period_ends):
        result = await billing_reconciler.apply_subscription_snapshot(
            _snapshot(period_end=period_ends[0], external_id="sub_unknown")
        )
        assert result == billing_reconciler.NO_WORKSPACE

    @pytest.mark.asyncio
    async def test_pending_status_is_ignored(self, fake_db, attached, period_ends):
        result = await billing_reconciler.apply_subscription_snapshot(
            _snapshot(status=ProviderSubscriptionStatus.PENDING, period_end=period_ends[1])
        )
        assert result == billing_reconciler.IGNORED
        assert (await _workspace(fake_db))["current_period_end"] == period_ends[0]


class TestPastDueSnapshot:

    @pytest.mark.asyncio
    async def test_starts_grace_period_once(self, fake_db, attached, period_ends):
        past_due = _snapshot(status=ProviderSubscriptionStatus.PAST_DUE, period_end=period_ends[0])

        assert await billing_reconciler.apply_subscription_snapshot(past_due) == billing_reconciler.PAST_DUE
        doc = await _workspace(fake_db)
        grace_end = doc["grace_period_end"]
        assert doc["subscription_status"] == "past_due"
        assert doc["plan"] == "PRO"
        assert doc["leads_limit"] == 400
        assert timedelta(days=2, hours=23) < grace_end - datetime.now(timezone.utc) <= timedelta(days=3)

        assert await billing_reconciler.apply_subscription_snapshot(past_due) == billing_reconciler.NOOP
        assert (await _workspace(fake_db))["grace_period_end"] == grace_end


class TestCanceledSnapshot:

    @pytest.mark.asyncio
    async def test_moves_to_free_tier(self, fake_db, attached, period_ends):
        canceled = _snapshot(status=ProviderSubscriptionStatus.CANCELED, period_end=period_ends[0])

        assert await billing_reconciler.apply_subscription_snapshot(canceled) == billing_reconciler.CANCELED
        doc = await _workspace(fake_db)
        assert doc["plan"] == "FREE"
        assert doc["leads_limit"] == 5
        assert doc["subscription_status"] == "canceled"
        assert doc["current_period_end"] is None
        assert doc["grace_period_end"] is None
        assert doc["pending_plan_id"] is None

        assert await billing_reconciler.apply_subscription_snapshot(canceled) == billing_reconciler.NOOP

    @pytest.mark.asyncio
    async def test_late_events_after_cancel_are_ignored(self, fake_db, attached, period_ends):
        await billing_reconciler.apply_subscription_snapshot(
            _snapshot(status=ProviderSubscriptionStatus.CANCELED, period_end=period_ends[0])
        )

        late_active = await billing_reconciler.apply_subscription_snapshot(_snapshot(period_end=period_ends[1]))
        late_past_due = await billing_reconciler.apply_subscription_snapshot(
            _snapshot(status=ProviderSubscriptionStatus.PAST_DUE, period_end=period_ends[0])
        )

        assert late_active == billing_reconciler.IGNORED
        assert late_past_due == billing_reconciler.NOOP
        doc = await _workspace(fake_db)
        assert doc["plan"] == "FREE"
        assert doc["subscription_status"] == "canceled"
        assert doc["grace_period_end"] is None


class TestPeriodArithmetic:

    def test_add_months_clamps_day(self):
        assert add_months(datetime(2026, 1, 31, tzinfo=timezone.utc), 1) == datetime(2026, 2, 28, tzinfo=timezone.utc)
        assert add_months(datetime(2026, 11, 15, tzinfo=timezone.utc), 3) == datetime(2027, 2, 15, tzinfo=timezone.utc)

    def test_period_end_for_cycle(self):
        start = datetime(2026, 3, 10, tzinfo=timezone.utc)
        assert period_end_for_cycle(BillingCycle.MONTHLY, start) == datetime(2026, 4, 10, tzinfo=timezone.utc)
        assert period_end_for_cycle(BillingCycle.ANNUAL, start) == datetime(2027, 3, 10, tzinfo=timezone.utc)
