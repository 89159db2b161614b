"""Billing Webhook Service - provider event ingestion with idempotency.

Key Principles:
1. Signature verification before the payload is trusted
2. Stripe events are recorded in ``billing_events`` and processed once
3. Transitions are snapshot replacements (see billing_reconciler)
4. Unknown event types are acknowledged, never retried
5. Missing workspace linkage is a configuration error: rejected (4xx) so the
   provider keeps retrying and the failure is visible

Stripe events handled:
- checkout.session.completed
- customer.subscription.updated
- customer.subscription.deleted

MercadoPago notifications handled:
- preapproval / subscription_preapproval (state re-fetched from the API)
- payment (one-off PIX/boleto payments)
"""
import hashlib
import hmac
import json
import os
import stripe
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple
from pymongo.errors import DuplicateKeyError

from database import database
from models import (
    BillingCycle,
    BillingEventStatus,
    BillingProviderName,
    ProviderSubscriptionStatus,
    SubscriptionSnapshot,
)
from services import billing_reconciler
from services.plan_catalog import PlanNotFoundError
from services.providers.registry import get_provider
from services.providers.stripe_provider import snapshot_from_stripe_subscription
from services.workspace_billing import load_workspace_billing

logger = logging.getLogger(__name__)

MERCADOPAGO_PREAPPROVAL_TOPICS = ("preapproval", "subscription_preapproval")


class WebhookConfigurationError(Exception):
    """The event cannot be linked to a workspace or plan. Not transient."""
    pass


def _is_development() -> bool:
    return (os.getenv("ENVIRONMENT") or "").strip().lower() == "development"


def _get_stripe_webhook_secret() -> str:
    return (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip()


def _get_mercadopago_webhook_secret() -> str:
    return (os.getenv("MERCADOPAGO_WEBHOOK_SECRET") or "").strip()


def verify_mercadopago_signature(
    x_signature: Optional[str],
    x_request_id: Optional[str],
    data_id: Optional[str],
    secret: str
) -> bool:
    """Check ``x-signature`` (``ts=...,v1=...``) against HMAC-SHA256 of the manifest."""
    if not x_signature:
        return False
    parts = {}
    for chunk in x_signature.split(","):
        if "=" in chunk:
            key, value = chunk.split("=", 1)
            parts[key.strip()] = value.strip()
    ts = parts.get("ts")
    received = parts.get("v1")
    if not ts or not received:
        return False

    manifest = ""
    if data_id:
        manifest += f"id:{data_id.lower() if data_id.isalnum() else data_id};"
    if x_request_id:
        manifest += f"request-id:{x_request_id};"
    manifest += f"ts:{ts};"

    expected = hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, received)


class BillingWebhookService:
    """Provider webhook handler with idempotency."""

    # =========================================================================
    # Event Ledger
    # =========================================================================

    async def _begin_event(self, provider: BillingProviderName, event_id: str, event_type: str) -> bool:
        """Record the event as PROCESSING. False when it was already processed."""
        db = database.get_db()
        key = {"provider": provider.value, "event_id": event_id}
        existing = await db.billing_events.find_one(key)

        if existing and existing.get("status") == BillingEventStatus.PROCESSED.value:
            logger.info(f"Event {event_id} already processed - skipping")
            return False

        record = {
            **key,
            "event_type": event_type,
            "status": BillingEventStatus.PROCESSING.value,
            "created_at": datetime.now(timezone.utc),
            "processed_at": None,
            "result": None,
            "error": None,
        }
        if existing:
            # FAILED or stuck PROCESSING: redelivery reprocesses it
            await db.billing_events.update_one(key, {"$set": record})
            return True
        try:
            await db.billing_events.insert_one(record)
        except DuplicateKeyError:
            logger.info(f"Event {event_id} duplicate insert (race) - skipping")
            return False
        return True

    async def _finish_event(
        self,
        provider: BillingProviderName,
        event_id: str,
        status: BillingEventStatus,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None
    ) -> None:
        db = database.get_db()
        await db.billing_events.update_one(
            {"provider": provider.value, "event_id": event_id},
            {"$set": {
                "status": status.value,
                "processed_at": datetime.now(timezone.utc),
                "result": result,
                "error": error,
            }},
        )

    async def _run_recorded(
        self,
        provider: BillingProviderName,
        event_id: str,
        event_type: str,
        handler,
        *args
    ) -> Tuple[bool, str, Optional[Dict]]:
        if not await self._begin_event(provider, event_id, event_type):
            return True, "Already processed", {"event_id": event_id}

        try:
            result = await handler(*args)
        except (WebhookConfigurationError, PlanNotFoundError) as e:
            logger.error(
                "WEBHOOK_CONFIGURATION_ERROR provider=%s event_id=%s event_type=%s error=%s",
                provider.value, event_id, event_type, e,
            )
            await self._finish_event(provider, event_id, BillingEventStatus.FAILED, error=str(e))
            return False, "Configuration error", {"error": str(e), "event_id": event_id}
        except Exception as e:
            logger.error(
                "WEBHOOK_PROCESSING_FAILED provider=%s event_id=%s event_type=%s error=%s",
                provider.value, event_id, event_type, e,
            )
            await self._finish_event(provider, event_id, BillingEventStatus.FAILED, error=str(e))
            raise

        await self._finish_event(provider, event_id, BillingEventStatus.PROCESSED, result=result)
        logger.info(
            "WEBHOOK_PROCESSED_OK provider=%s event_id=%s event_type=%s result=%s",
            provider.value, event_id, event_type, result.get("result"),
        )
        return True, "Processed", result

    # =========================================================================
    # Stripe
    # =========================================================================

    async def process_stripe_webhook(
        self,
        payload: bytes,
        signature: Optional[str]
    ) -> Tuple[bool, str, Optional[Dict]]:
        """
        Stripe entry point.

        Returns:
            (success, message, details); success False means reject with 400.
            Unexpected processing errors propagate so the provider retries.
        """
        webhook_secret = _get_stripe_webhook_secret()
        try:
            if webhook_secret:
                if not signature:
                    return False, "Missing signature", {"error": "Stripe-Signature header missing"}
                stripe.Webhook.construct_event(payload, signature, webhook_secret)
            elif _is_development():
                logger.warning("STRIPE_WEBHOOK_SECRET not set - skipping signature verification")
            else:
                logger.error("STRIPE_WEBHOOK_SECRET not set - rejecting webhook")
                return False, "Webhook secret not configured", {"error": "STRIPE_WEBHOOK_SECRET not set"}
            event = json.loads(payload)
        except stripe.error.SignatureVerificationError as e:
            logger.error("Webhook signature verification failed: %s", e)
            return False, "Invalid signature", {"error": str(e)}
        except ValueError as e:
            logger.error(f"Webhook parse error: {e}")
            return False, "Invalid payload", {"error": str(e)}

        event_id = event.get("id")
        event_type = event.get("type")
        if not event_id or not event_type:
            return False, "Invalid payload", {"error": "Event id/type missing"}

        logger.info("WEBHOOK_RECEIVED provider=stripe event_id=%s event_type=%s", event_id, event_type)

        handlers = {
            "checkout.session.completed": self._handle_stripe_checkout_completed,
            "customer.subscription.updated": self._handle_stripe_subscription_updated,
            "customer.subscription.deleted": self._handle_stripe_subscription_deleted,
        }
        handler = handlers.get(event_type)
        if handler is None:
            logger.info(f"Unhandled Stripe event type: {event_type}")
            return True, "Ignored", {"handled": False, "event_type": event_type}

        obj = (event.get("data") or {}).get("object") or {}
        return await self._run_recorded(BillingProviderName.STRIPE, event_id, event_type, handler, obj)

    async def _handle_stripe_checkout_completed(self, session: Dict[str, Any]) -> Dict[str, Any]:
        session_id = session.get("id")
        logger.info("HANDLER_START checkout.session.completed session_id=%s", session_id)

        subscription_id = session.get("subscription")
        if isinstance(subscription_id, dict):
            subscription_id = subscription_id.get("id")
        if session.get("mode") not in (None, "subscription") or not subscription_id:
            logger.info(f"Checkout {session_id} is not a subscription checkout - ignoring")
            return {"handled": False, "result": billing_reconciler.IGNORED}

        metadata = session.get("metadata") or {}
        workspace_id = metadata.get("workspace_id")
        plan_key = metadata.get("plan_key")
        if not workspace_id or not plan_key:
            raise WebhookConfigurationError(
                f"Checkout session {session_id} missing workspace_id/plan_key metadata"
            )

        snapshot = await get_provider(BillingProviderName.STRIPE).retrieve_subscription(subscription_id)
        customer_id = session.get("customer")
        if isinstance(customer_id, str) and not snapshot.external_customer_id:
            snapshot = snapshot.model_copy(update={"external_customer_id": customer_id})

        result = await billing_reconciler.apply_checkout_completed(
            workspace_id, snapshot, plan_key, source=session_id
        )
        logger.info("HANDLER_END checkout.session.completed workspace_id=%s result=%s", workspace_id, result)
        return {"handled": True, "result": result, "workspace_id": workspace_id, "subscription_id": subscription_id}

    async def _handle_stripe_subscription_updated(self, subscription: Dict[str, Any]) -> Dict[str, Any]:
        snapshot = snapshot_from_stripe_subscription(subscription)
        logger.info(
            "HANDLER_START customer.subscription.updated subscription_id=%s status=%s",
            snapshot.external_id, snapshot.status.value,
        )
        result = await billing_reconciler.apply_subscription_snapshot(snapshot)
        logger.info("HANDLER_END customer.subscription.updated subscription_id=%s result=%s", snapshot.external_id, result)
        return {"handled": True, "result": result, "subscription_id": snapshot.external_id}

    async def _handle_stripe_subscription_deleted(self, subscription: Dict[str, Any]) -> Dict[str, Any]:
        snapshot = snapshot_from_stripe_subscription(subscription).model_copy(
            update={"status": ProviderSubscriptionStatus.CANCELED}
        )
        logger.info("HANDLER_START customer.subscription.deleted subscription_id=%s", snapshot.external_id)
        result = await billing_reconciler.apply_canceled_snapshot(snapshot)
        logger.info("HANDLER_END customer.subscription.deleted subscription_id=%s result=%s", snapshot.external_id, result)
        return {"handled": True, "result": result, "subscription_id": snapshot.external_id}

    # =========================================================================
    # MercadoPago
    # =========================================================================

    async def process_mercadopago_webhook(
        self,
        query: Mapping[str, str],
        body: bytes,
        headers: Mapping[str, str]
    ) -> Tuple[bool, str, Optional[Dict]]:
        """
        MercadoPago entry point. Notifications only carry a resource id; the
        current resource is fetched from the API before anything is applied.

        Returns:
            (success, message, details); success False means reject with 400.
        """
        try:
            payload = json.loads(body) if body else {}
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        topic = query.get("topic") or query.get("type") or payload.get("type") or payload.get("topic")
        resource_id = (
            query.get("data.id")
            or query.get("id")
            or str((payload.get("data") or {}).get("id") or "")
        ) or None

        webhook_secret = _get_mercadopago_webhook_secret()
        if webhook_secret:
            if not verify_mercadopago_signature(
                headers.get("x-signature"),
                headers.get("x-request-id"),
                query.get("data.id") or resource_id,
                webhook_secret,
            ):
                logger.error("MercadoPago signature verification failed for %s %s", topic, resource_id)
                return False, "Invalid signature", {"error": "x-signature mismatch"}
        elif _is_development():
            logger.warning("MERCADOPAGO_WEBHOOK_SECRET not set - skipping signature verification")
        else:
            logger.error("MERCADOPAGO_WEBHOOK_SECRET not set - rejecting webhook")
            return False, "Webhook secret not configured", {"error": "MERCADOPAGO_WEBHOOK_SECRET not set"}

        logger.info("WEBHOOK_RECEIVED provider=mercadopago topic=%s id=%s", topic, resource_id)
        if not topic or not resource_id:
            return True, "Ignored", {"handled": False, "topic": topic}

        if topic in MERCADOPAGO_PREAPPROVAL_TOPICS:
            try:
                result = await self._handle_mercadopago_preapproval(resource_id)
            except (WebhookConfigurationError, PlanNotFoundError) as e:
                logger.error("WEBHOOK_CONFIGURATION_ERROR provider=mercadopago preapproval=%s error=%s", resource_id, e)
                return False, "Configuration error", {"error": str(e)}
            return True, "Processed", result

        if topic == "payment":
            return await self._run_recorded(
                BillingProviderName.MERCADOPAGO,
                f"payment:{resource_id}",
                topic,
                self._handle_mercadopago_payment,
                resource_id,
            )

        logger.info(f"Unhandled MercadoPago topic: {topic}")
        return True, "Ignored", {"handled": False, "topic": topic}

    async def _handle_mercadopago_preapproval(self, preapproval_id: str) -> Dict[str, Any]:
        logger.info("HANDLER_START preapproval id=%s", preapproval_id)
        snapshot = await get_provider(BillingProviderName.MERCADOPAGO).retrieve_subscription(preapproval_id)
        if not snapshot.workspace_id:
            raise WebhookConfigurationError(f"Pre-approval {preapproval_id} has no workspace external_reference")

        result = await self._apply_preapproval_snapshot(snapshot)
        logger.info("HANDLER_END preapproval id=%s status=%s result=%s", preapproval_id, snapshot.status.value, result)
        return {
            "handled": True,
            "result": result,
            "workspace_id": snapshot.workspace_id,
            "subscription_id": snapshot.external_id,
        }

    async def _apply_preapproval_snapshot(self, snapshot: SubscriptionSnapshot) -> str:
        workspace = await load_workspace_billing(snapshot.workspace_id)
        if workspace and workspace.external_subscription_id == snapshot.external_id:
            return await billing_reconciler.apply_subscription_snapshot(snapshot)

        # Not attached yet: the first authorized state is the completed checkout
        if snapshot.status == ProviderSubscriptionStatus.ACTIVE:
            if not snapshot.plan_key:
                raise WebhookConfigurationError(f"Pre-approval {snapshot.external_id} has no plan in external_reference")
            return await billing_reconciler.apply_checkout_completed(
                snapshot.workspace_id, snapshot, snapshot.plan_key, source="preapproval"
            )

        logger.info(
            f"Pre-approval {snapshot.external_id} ({snapshot.status.value}) is not attached to "
            f"workspace {snapshot.workspace_id} - ignoring"
        )
        return billing_reconciler.IGNORED

    async def _handle_mercadopago_payment(self, payment_id: str) -> Dict[str, Any]:
        logger.info("HANDLER_START payment id=%s", payment_id)
        payment = await get_provider(BillingProviderName.MERCADOPAGO).retrieve_payment(payment_id)

        status = payment.get("status")
        metadata = payment.get("metadata") or {}
        if status != "approved":
            logger.info(f"MercadoPago payment {payment_id} status={status} - nothing to apply")
            return {"handled": True, "result": billing_reconciler.IGNORED, "payment_status": status}

        # Recurring charges of a pre-approval are reconciled through the pre-approval itself
        if payment.get("operation_type") == "recurring_payment" or metadata.get("preapproval_id"):
            return {"handled": True, "result": billing_reconciler.IGNORED, "payment_status": status}

        workspace_id = metadata.get("workspace_id")
        plan_key = metadata.get("plan_key")
        if not workspace_id or not plan_key:
            raise WebhookConfigurationError(f"MercadoPago payment {payment_id} missing workspace_id/plan_key metadata")
        cycle = BillingCycle.ANNUAL if metadata.get("billing_cycle") == BillingCycle.ANNUAL.value else BillingCycle.MONTHLY

        result = await billing_reconciler.apply_one_time_payment(workspace_id, plan_key, cycle, payment_id)
        logger.info("HANDLER_END payment id=%s workspace_id=%s result=%s", payment_id, workspace_id, result)
        return {"handled": True, "result": result, "workspace_id": workspace_id}


# Singleton instance
billing_webhook_service = BillingWebhookService()
