"""Webhook Routes - payment provider events.

POST /api/billing/webhook/stripe - Stripe events (Stripe-Signature verified)
POST /api/billing/webhook - Alias for the Stripe endpoint
POST /api/billing/webhook/mercadopago - MercadoPago notifications (x-signature verified)

Responses:
- 200 for processed, duplicate and ignored (unknown type) events
- 400 for signature failures and configuration errors (missing workspace
  linkage, unknown plan); the provider retries and the failure stays visible
- 500 for unexpected processing failures; the provider retries
"""
from fastapi import APIRouter, HTTPException, Request, Header, status
from services.billing_webhook_service import billing_webhook_service
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


def _to_response(provider: str, success: bool, message: str, details):
    if success:
        return {"status": "received", "message": message, "details": details}
    logger.error(f"{provider} webhook rejected: {message} {details}")
    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"message": message, **(details or {})},
    )


async def _handle_stripe_webhook(request: Request, stripe_signature: str = None):
    payload = await request.body()
    success, message, details = await billing_webhook_service.process_stripe_webhook(
        payload=payload,
        signature=stripe_signature,
    )
    return _to_response("Stripe", success, message, details)


@router.post("/api/billing/webhook/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature")
):
    """Handle Stripe webhooks at /api/billing/webhook/stripe"""
    return await _handle_stripe_webhook(request, stripe_signature)


@router.post("/api/billing/webhook")
async def stripe_webhook_alias(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature")
):
    """Handle Stripe webhooks at /api/billing/webhook (alias)"""
    return await _handle_stripe_webhook(request, stripe_signature)


@router.post("/api/billing/webhook/mercadopago")
async def mercadopago_webhook(request: Request):
    """Handle MercadoPago notifications (query ``topic``/``type`` + ``id``/``data.id``)."""
    body = await request.body()
    success, message, details = await billing_webhook_service.process_mercadopago_webhook(
        query=dict(request.query_params),
        body=body,
        headers=request.headers,
    )
    return _to_response("MercadoPago", success, message, details)
