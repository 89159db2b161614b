"""MercadoPago adapter (pre-approval based recurring billing).

Pre-approvals are charged in BRL and cannot change plan in place: a new tier
means cancelling the pre-approval and creating a new one. Workspace linkage is
carried in ``external_reference`` as ``<workspace_id>:<plan_key>:<cycle>``.

Calls go through httpx with bounded exponential-backoff retries on transport
errors, 429 and 5xx.
"""
import os
import uuid
import asyncio
import logging
import httpx
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from models import (
    BillingCycle,
    BillingProviderName,
    Currency,
    CustomerRef,
    Plan,
    ProviderSubscriptionStatus,
    SubscriptionSnapshot,
)
from services.providers.base import BillingProvider, ProviderError

logger = logging.getLogger(__name__)

MERCADOPAGO_API_BASE = "https://api.mercadopago.com"

MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 0.5
MAX_BACKOFF_SECONDS = 5
REQUEST_TIMEOUT_SECONDS = 15.0

MP_STATUS_MAP = {
    "authorized": ProviderSubscriptionStatus.ACTIVE,
    "active": ProviderSubscriptionStatus.ACTIVE,
    "paused": ProviderSubscriptionStatus.PAST_DUE,
    "cancelled": ProviderSubscriptionStatus.CANCELED,
    "pending": ProviderSubscriptionStatus.PENDING,
}

_RETRYABLE_STATUS = {429, 500, 502, 503, 504}


def build_external_reference(workspace_id: str, plan_key: str, cycle: BillingCycle) -> str:
    return f"{workspace_id}:{plan_key}:{cycle.value}"


def parse_external_reference(reference: Optional[str]) -> Tuple[Optional[str], Optional[str], BillingCycle]:
    """Split ``workspace:plan:cycle``; missing parts come back as None."""
    if not reference:
        return None, None, BillingCycle.MONTHLY
    parts = reference.split(":")
    workspace_id = parts[0] or None
    plan_key = parts[1] if len(parts) > 1 and parts[1] else None
    cycle = BillingCycle.ANNUAL if len(parts) > 2 and parts[2] == BillingCycle.ANNUAL.value else BillingCycle.MONTHLY
    return workspace_id, plan_key, cycle


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable MercadoPago date: {value}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def snapshot_from_preapproval(preapproval: Dict[str, Any]) -> SubscriptionSnapshot:
    """Normalize a MercadoPago pre-approval resource."""
    workspace_id, plan_key, cycle = parse_external_reference(preapproval.get("external_reference"))

    recurring = preapproval.get("auto_recurring") or {}
    if recurring.get("frequency") == 12:
        cycle = BillingCycle.ANNUAL

    raw_status = preapproval.get("status")
    status = MP_STATUS_MAP.get(raw_status)
    if status is None:
        logger.warning(f"Unmapped MercadoPago pre-approval status '{raw_status}' for {preapproval.get('id')}")
        status = ProviderSubscriptionStatus.PENDING

    payer_id = preapproval.get("payer_id")
    return SubscriptionSnapshot(
        provider=BillingProviderName.MERCADOPAGO,
        external_id=str(preapproval["id"]),
        status=status,
        current_period_end=_parse_datetime(preapproval.get("next_payment_date")),
        cycle=cycle,
        external_customer_id=str(payer_id) if payer_id is not None else None,
        plan_key=plan_key,
        workspace_id=workspace_id,
    )


class MercadoPagoProvider(BillingProvider):
    """Shape B: pre-approvals, no in-place plan swap."""

    name = BillingProviderName.MERCADOPAGO
    supports_in_place_plan_swap = False

    def __init__(
        self,
        access_token: Optional[str] = None,
        base_url: str = MERCADOPAGO_API_BASE,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    def _token(self) -> str:
        token = self.access_token or os.getenv("MERCADOPAGO_ACCESS_TOKEN")
        if not token:
            raise ProviderError("MERCADOPAGO_ACCESS_TOKEN is not set", provider=self.name.value)
        return token

    async def _request(
        self,
        method: str,
        path: str,
        json_body: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None
    ) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self._token()}",
            "Content-Type": "application/json",
        }
        if idempotency_key:
            # Same key on every attempt so a retried POST cannot create twice
            headers["X-Idempotency-Key"] = idempotency_key
        url = f"{self.base_url}{path}"
        last_error: Optional[ProviderError] = None

        async with httpx.AsyncClient(transport=self._transport, timeout=REQUEST_TIMEOUT_SECONDS) as client:
            for attempt in range(MAX_RETRIES):
                try:
                    response = await client.request(method, url, headers=headers, json=json_body)
                except httpx.TransportError as e:
                    last_error = ProviderError(
                        f"MercadoPago {method} {path} transport error: {e}",
                        provider=self.name.value,
                        original_error=e,
                    )
                else:
                    if response.status_code < 400:
                        return response.json() if response.content else {}
                    last_error = ProviderError(
                        f"MercadoPago {method} {path} failed: {response.status_code} {response.text}",
                        provider=self.name.value,
                        status_code=response.status_code,
                    )
                    if response.status_code not in _RETRYABLE_STATUS:
                        break

                if attempt < MAX_RETRIES - 1:
                    backoff = min(INITIAL_BACKOFF_SECONDS * (2 ** attempt), MAX_BACKOFF_SECONDS)
                    logger.info(f"MercadoPago {method} {path} retry in {backoff}s (attempt {attempt + 1})")
                    await asyncio.sleep(backoff)

        logger.error(last_error.message)
        raise last_error

    async def create_subscription(
        self,
        customer: CustomerRef,
        plan: Plan,
        cycle: BillingCycle
    ) -> SubscriptionSnapshot:
        if not customer.card_token:
            raise ProviderError("A card token is required for MercadoPago subscriptions", provider=self.name.value)

        start = datetime.now(timezone.utc)
        app_base_url = os.getenv("APP_BASE_URL", "http://localhost:3000").rstrip("/")
        body = {
            "reason": f"{plan.name} ({cycle.value})",
            "external_reference": build_external_reference(customer.workspace_id, plan.key, cycle),
            "payer_email": customer.email,
            "card_token_id": customer.card_token,
            "auto_recurring": {
                "frequency": 12 if cycle == BillingCycle.ANNUAL else 1,
                "frequency_type": "months",
                "start_date": start.isoformat(),
                "end_date": (start + timedelta(days=730)).isoformat(),
                "transaction_amount": plan.price_for(cycle, Currency.BRL),
                "currency_id": Currency.BRL.value,
            },
            "back_url": f"{app_base_url}/dashboard/billing",
            "notification_url": f"{app_base_url}/api/billing/webhook/mercadopago",
            "status": "authorized",
        }
        preapproval = await self._request("POST", "/preapproval", body, idempotency_key=str(uuid.uuid4()))
        logger.info(f"MercadoPago pre-approval {preapproval.get('id')} created for workspace {customer.workspace_id}")
        return snapshot_from_preapproval(preapproval)

    async def cancel_subscription(self, external_id: str) -> None:
        await self._request("PUT", f"/preapproval/{external_id}", {"status": "cancelled"})
        logger.info(f"MercadoPago pre-approval {external_id} cancelled")

    async def retrieve_subscription(self, external_id: str) -> SubscriptionSnapshot:
        preapproval = await self._request("GET", f"/preapproval/{external_id}")
        return snapshot_from_preapproval(preapproval)

    async def retrieve_payment(self, payment_id: str) -> Dict[str, Any]:
        """One-time payment (PIX/boleto) resource; ``metadata`` carries the linkage."""
        return await self._request("GET", f"/v1/payments/{payment_id}")
