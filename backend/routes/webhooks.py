"""Webhook Routes - Stripe webhooks.

Stripe webhook endpoint with:
- Signature verification over the raw body (no session, no CSRF)
- Idempotency via the stripe_events ledger
- 500 on processing failure so Stripe redelivers

POST /api/webhooks/stripe - Main Stripe webhook endpoint
POST /api/webhook/stripe - Alias (Stripe may be configured with this URL)
POST /webhook - Legacy alias, logs a deprecation warning
"""
from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from services.stripe_webhook_service import StripeWebhookService, get_webhook_service
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


async def _handle_stripe_webhook(
    request: Request,
    service: StripeWebhookService,
    stripe_signature: str = None,
) -> JSONResponse:
    """Core Stripe webhook handler; the raw body is passed through untouched."""
    payload = await request.body()

    result = await service.process_webhook(payload=payload, signature=stripe_signature)

    if result.ok:
        return JSONResponse(status_code=result.status_code, content={"received": True})

    logger.error(f"Webhook processing failed ({result.status_code}): {result.message}")
    return JSONResponse(status_code=result.status_code, content={"error": result.message})


@router.post("/api/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature"),
    service: StripeWebhookService = Depends(get_webhook_service),
):
    """Handle Stripe webhooks at /api/webhooks/stripe"""
    return await _handle_stripe_webhook(request, service, stripe_signature)


@router.post("/api/webhook/stripe")
async def stripe_webhook_alias(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature"),
    service: StripeWebhookService = Depends(get_webhook_service),
):
    """Handle Stripe webhooks at /api/webhook/stripe (alias)"""
    return await _handle_stripe_webhook(request, service, stripe_signature)


@router.post("/webhook")
async def legacy_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature"),
    service: StripeWebhookService = Depends(get_webhook_service),
):
    """Legacy endpoint kept for Stripe dashboards still pointing at /webhook."""
    logger.warning("Stripe webhook received on legacy /webhook; point Stripe at /api/webhooks/stripe")
    return await _handle_stripe_webhook(request, service, stripe_signature)
