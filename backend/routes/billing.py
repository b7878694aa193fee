"""Billing Routes - Pro subscription checkout and entitlement.

Endpoints:
- POST /api/billing/checkout - Create Stripe Checkout session for the Pro plan
- POST /api/billing/portal - Create Stripe billing portal session
- GET /api/billing/verify - Confirm a completed checkout (polled by the success page)
- GET /api/billing/limits - Entitlement and message quota
- GET /api/billing/status - Stored billing fields for the current user
"""
from fastapi import APIRouter, HTTPException, Request, status, Depends
from typing import Optional
import stripe
from models import (
    BillingLimitsResponse,
    BillingStatusResponse,
    BillingUrlResponse,
    CheckoutRequest,
    VerifyCheckoutResponse,
)
from services.billing_config import BillingConfigError
from services.billing_service import BillingError, BillingService, get_billing_service
from middleware import require_auth, require_registered_user
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/billing", tags=["billing"])


def _billing_http_error(e: BillingError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.message)


def _server_error(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)


@router.post("/checkout", response_model=BillingUrlResponse, response_model_exclude_none=True)
async def create_checkout(
    request: Request,
    body: Optional[CheckoutRequest] = None,
    service: BillingService = Depends(get_billing_service),
):
    """
    Create Stripe Checkout session for the Pro plan.

    Already-entitled users get the manage page URL instead of a second checkout.
    """
    session_user = await require_registered_user(request)
    idempotency_key = (
        request.headers.get("x-idempotency-key")
        or request.headers.get("x-stripe-idempotency-key")
    )

    try:
        return await service.start_checkout(
            session_user,
            request_base_url=str(request.base_url),
            plan=(body.plan if body else None),
            idempotency_key=idempotency_key,
        )
    except BillingError as e:
        raise _billing_http_error(e)
    except BillingConfigError as e:
        logger.error(f"Billing misconfigured: {e}")
        raise _server_error("Failed to create Stripe Checkout session")
    except (stripe.error.StripeError, RuntimeError) as e:
        logger.error(f"Stripe checkout error for user {session_user.id}: {e}")
        raise _server_error("Failed to create Stripe Checkout session")


@router.post("/portal", response_model=BillingUrlResponse, response_model_exclude_none=True)
async def create_portal_session(
    request: Request,
    service: BillingService = Depends(get_billing_service),
):
    """Create Stripe billing portal session for managing payment methods and invoices."""
    session_user = await require_registered_user(request)

    try:
        return await service.open_billing_portal(session_user, request_base_url=str(request.base_url))
    except BillingError as e:
        raise _billing_http_error(e)
    except BillingConfigError as e:
        logger.error(f"Billing misconfigured: {e}")
        raise _server_error("Failed to create Stripe billing portal session")
    except (stripe.error.StripeError, RuntimeError) as e:
        logger.error(f"Stripe portal error for user {session_user.id}: {e}")
        raise _server_error("Failed to create Stripe billing portal session")


@router.get("/verify", response_model=VerifyCheckoutResponse, response_model_exclude_none=True)
async def verify_checkout(
    request: Request,
    session_id: Optional[str] = None,
    service: BillingService = Depends(get_billing_service),
):
    """
    Verify a checkout session and apply Pro immediately if its subscription entitles.

    Returns verified=false with the current status while payment is pending.
    """
    session_user = await require_auth(request)

    try:
        return await service.verify_checkout(session_user, session_id)
    except BillingError as e:
        raise _billing_http_error(e)
    except (stripe.error.StripeError, BillingConfigError) as e:
        logger.error(f"Failed to verify checkout session {session_id}: {e}")
        raise _server_error("Failed to verify checkout session")


@router.get("/limits", response_model=BillingLimitsResponse)
async def get_billing_limits(
    request: Request,
    service: BillingService = Depends(get_billing_service),
):
    """Get entitlement and message quota. Reads stored state only."""
    session_user = await require_auth(request)

    try:
        return await service.get_limits(session_user)
    except BillingError as e:
        raise _billing_http_error(e)


@router.get("/status", response_model=BillingStatusResponse)
async def get_billing_status(
    request: Request,
    service: BillingService = Depends(get_billing_service),
):
    """Get current stored subscription status."""
    session_user = await require_auth(request)

    try:
        return await service.get_status(session_user)
    except BillingError as e:
        raise _billing_http_error(e)
