"""Checkout service: MercadoPago upgrades replace the pre-approval."""
import pytest
import sys
from pathlib import Path
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

from models import (
    AuditAction,
    BillingCycle,
    BillingProviderName,
    CustomerRef,
    ProviderSubscriptionStatus,
    SubscriptionSnapshot,
)
from services.checkout_service import CheckoutError, preview_upgrade, start_checkout
from services.providers.base import ProviderError
from services.providers.mercadopago_provider import MercadoPagoProvider


def _mp_workspace(seed_workspace, **fields):
    defaults = dict(
        plan="BASIC",
        leads_limit=100,
        leads_used=60,
        billing_provider="mercadopago",
        external_subscription_id="pre_old",
        external_customer_id="99",
        subscription_status="active",
        current_period_end=datetime.now(timezone.utc) + timedelta(days=10),
    )
    defaults.update(fields)
    return seed_workspace("ws-1", **defaults)


def _preapproval_snapshot(external_id="pre_new", status=ProviderSubscriptionStatus.ACTIVE):
    return SubscriptionSnapshot(
        provider=BillingProviderName.MERCADOPAGO,
        external_id=external_id,
        status=status,
        current_period_end=datetime.now(timezone.utc) + timedelta(days=30),
        cycle=BillingCycle.MONTHLY,
        external_customer_id="99",
        plan_key="PRO",
        workspace_id="ws-1",
    )


CUSTOMER = CustomerRef(workspace_id="ws-1", email="owner@example.com", card_token="tok_1")


class TestMercadoPagoUpgrade:

    @pytest.mark.asyncio
    async def test_new_preapproval_replaces_old(self, fake_db, seed_workspace):
        _mp_workspace(seed_workspace)

        with patch.object(MercadoPagoProvider, "create_subscription", new_callable=AsyncMock,
                          return_value=_preapproval_snapshot()), \
                patch.object(MercadoPagoProvider, "cancel_subscription", new_callable=AsyncMock) as cancel:
            result = await start_checkout("ws-1", "PRO", BillingCycle.MONTHLY, BillingProviderName.MERCADOPAGO, CUSTOMER)

        assert result["mode"] == "subscription_created"
        cancel.assert_awaited_once_with("pre_old")

        doc = await fake_db.workspaces.find_one({"workspace_id": "ws-1"}, {"_id": 0})
        assert doc["plan"] == "PRO"
        assert doc["leads_limit"] == 400
        assert doc["leads_used"] == 0
        assert doc["external_subscription_id"] == "pre_new"

        actions = [log["action"] for log in fake_db.audit_logs.all()]
        assert AuditAction.SUBSCRIPTION_ACTIVATED.value in actions
        assert AuditAction.CHECKOUT_STARTED.value in actions

    @pytest.mark.asyncio
    async def test_failed_old_cancel_keeps_new_subscription(self, fake_db, seed_workspace):
        _mp_workspace(seed_workspace)

        with patch.object(MercadoPagoProvider, "create_subscription", new_callable=AsyncMock,
                          return_value=_preapproval_snapshot()), \
                patch.object(MercadoPagoProvider, "cancel_subscription", new_callable=AsyncMock,
                             side_effect=ProviderError("timeout", provider="mercadopago")):
            await start_checkout("ws-1", "PRO", BillingCycle.MONTHLY, BillingProviderName.MERCADOPAGO, CUSTOMER)

        doc = await fake_db.workspaces.find_one({"workspace_id": "ws-1"}, {"_id": 0})
        assert doc["plan"] == "PRO"
        assert doc["external_subscription_id"] == "pre_new"

    @pytest.mark.asyncio
    async def test_create_failure_leaves_old_preapproval(self, fake_db, seed_workspace):
        _mp_workspace(seed_workspace)

        with patch.object(MercadoPagoProvider, "create_subscription", new_callable=AsyncMock,
                          side_effect=ProviderError("rejected", provider="mercadopago", status_code=400)), \
                patch.object(MercadoPagoProvider, "cancel_subscription", new_callable=AsyncMock) as cancel:
            with pytest.raises(CheckoutError) as exc_info:
                await start_checkout("ws-1", "PRO", BillingCycle.MONTHLY, BillingProviderName.MERCADOPAGO, CUSTOMER)

        assert exc_info.value.status_code == 502
        cancel.assert_not_awaited()
        doc = await fake_db.workspaces.find_one({"workspace_id": "ws-1"}, {"_id": 0})
        assert doc["plan"] == "BASIC"
        assert doc["external_subscription_id"] == "pre_old"

    @pytest.mark.asyncio
    async def test_live_downgrade_raises(self, fake_db, seed_workspace):
        _mp_workspace(seed_workspace, plan="PRO", leads_limit=400)
        with pytest.raises(ValueError):
            await start_checkout("ws-1", "BASIC", BillingCycle.MONTHLY, BillingProviderName.MERCADOPAGO, CUSTOMER)


class TestPreview:

    @pytest.mark.asyncio
    async def test_free_workspace_has_nothing_to_prorate(self, fake_db, seed_workspace):
        seed_workspace("ws-1")
        assert await preview_upgrade("ws-1", "PRO") is None

    @pytest.mark.asyncio
    async def test_same_plan_is_not_an_upgrade(self, fake_db, seed_workspace):
        _mp_workspace(seed_workspace)
        with pytest.raises(ValueError):
            await preview_upgrade("ws-1", "BASIC")
