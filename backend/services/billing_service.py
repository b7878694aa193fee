"""Billing Service - checkout, billing portal, checkout verification and limits.

This service handles the synchronous, user-initiated side of billing:
- Starting a Stripe Checkout for the Pro plan (provisioning a Stripe customer
  on first use)
- Opening the Stripe billing portal
- Verifying a just-completed checkout so the client sees Pro before the
  webhook lands
- Reporting entitlement and message quota from stored state

Key Principles:
- Guests never reach Stripe; they must create an account first
- Stripe idempotency keys collapse double submits into one session
- Verification only ever grants; revocation belongs to the webhook reconciler
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe
from fastapi import Depends

from models import (
    BillingLimitsResponse,
    BillingStatusResponse,
    BillingUrlResponse,
    CheckoutPaymentStatus,
    SessionUser,
    UserTier,
    VerifyCheckoutResponse,
)
from services.billing_config import BillingConfig, BillingConfigError, get_billing_config
from services.entitlement_policy import (
    get_subscription_period_end,
    is_subscription_entitled,
    is_user_entitled,
    select_preferred_subscription,
)
from services.stripe_gateway import StripeGateway, get_stripe_gateway, is_resource_missing
from services.user_billing_store import EntitlementUpdate, UserBillingStore, user_billing_store
from services.webhook_events import stripe_id
from utils.log_masking import mask_email
from utils.public_app_url import absolute_url, get_public_origin

logger = logging.getLogger(__name__)

PRO_PLAN = "pro"
VERIFIED_PAYMENT_STATUSES = frozenset({
    CheckoutPaymentStatus.PAID.value,
    CheckoutPaymentStatus.NO_PAYMENT_REQUIRED.value,
})


class BillingError(Exception):
    """Client-facing billing failure; the message is safe to return."""
    status_code = 400
    message = "Billing request failed"

    def __init__(self, message: Optional[str] = None):
        if message:
            self.message = message
        super().__init__(self.message)


class BillingUserNotFound(BillingError):
    status_code = 401
    message = "Not authenticated"


class GuestCheckoutForbidden(BillingError):
    status_code = 403
    message = "Create an account to upgrade to Pro"


class CheckoutSessionMismatch(BillingError):
    status_code = 403
    message = "Session does not belong to this user"


class CheckoutSessionNotFound(BillingError):
    status_code = 404
    message = "Checkout session not found"


class MissingSessionId(BillingError):
    status_code = 400
    message = "Missing session_id parameter"


class UnknownPlanError(BillingError):
    status_code = 400
    message = "Unknown plan"


class BillingService:
    """Stripe billing operations for the signed-in user."""

    def __init__(
        self,
        gateway: StripeGateway,
        config: Optional[BillingConfig] = None,
        store: UserBillingStore = user_billing_store,
    ):
        self.gateway = gateway
        self.config = config or get_billing_config()
        self.store = store

    def _idempotency_bucket(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        window = max(self.config.idempotency_window_seconds, 1)
        return int(now.timestamp() // window)

    def _origin(self, request_base_url: str) -> str:
        try:
            return get_public_origin(self.config.app_url, request_base_url)
        except ValueError as e:
            raise BillingConfigError(str(e)) from e

    async def _load_registered_user(self, session_user: SessionUser) -> Dict[str, Any]:
        if session_user.is_guest:
            logger.info(f"Guest {session_user.id} blocked from paid billing action")
            raise GuestCheckoutForbidden()
        user = await self.store.get_user(session_user.id)
        if not user:
            raise BillingUserNotFound()
        return user

    # =========================================================================
    # Customer provisioning
    # =========================================================================

    async def ensure_customer(self, session_user: SessionUser, user: Dict[str, Any]) -> str:
        """Return the user's Stripe customer id, creating and linking one if needed.

        The idempotency key is derived from the user id, so concurrent first
        checkouts resolve to the same Stripe customer.
        """
        existing = user.get("stripe_customer_id")
        if existing:
            return existing

        email = session_user.email or user.get("email")
        customer = await self.gateway.create_customer(
            user_id=session_user.id,
            email=email,
            idempotency_key=f"cust:{session_user.id}",
        )
        logger.info(
            f"Created Stripe customer {customer['id']} for user {session_user.id} ({mask_email(email)})"
        )
        stored = await self.store.set_stripe_customer_id(session_user.id, customer["id"])
        return stored or customer["id"]

    async def find_entitling_subscription(self, user: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Live Stripe subscription that already entitles the user, if any.

        Checks the stored subscription id first, then the customer's list.
        Lookup failures are logged and treated as "none found".
        """
        grace = self.config.grace_period
        subscription_id = user.get("stripe_subscription_id")
        if subscription_id:
            try:
                subscription = await self.gateway.retrieve_subscription(subscription_id)
                if is_subscription_entitled(subscription, grace_period=grace):
                    return subscription
            except stripe.error.StripeError as e:
                if not is_resource_missing(e):
                    logger.error(f"Stripe subscription lookup failed for {subscription_id}: {e}")

        customer_id = user.get("stripe_customer_id")
        if not customer_id:
            return None

        try:
            subscriptions = await self.gateway.list_subscriptions(customer_id)
        except stripe.error.StripeError as e:
            logger.error(f"Stripe subscription list failed for {customer_id}: {e}")
            return None

        preferred = select_preferred_subscription(subscriptions, grace_period=grace)
        return dict(preferred) if preferred else None

    # =========================================================================
    # Checkout / portal
    # =========================================================================

    async def start_checkout(
        self,
        session_user: SessionUser,
        request_base_url: str,
        plan: Optional[str] = PRO_PLAN,
        idempotency_key: Optional[str] = None,
    ) -> BillingUrlResponse:
        user = await self._load_registered_user(session_user)

        if (plan or PRO_PLAN).lower() != PRO_PLAN:
            raise UnknownPlanError()

        origin = self._origin(request_base_url)
        manage_url = absolute_url(origin, self.config.manage_page_url)

        if is_user_entitled(user, grace_period=self.config.grace_period):
            return BillingUrlResponse(url=manage_url, message="Already on the Pro plan.")

        existing = await self.find_entitling_subscription(user)
        if existing:
            logger.info(
                f"User {session_user.id} already holds subscription {existing.get('id')} "
                f"({existing.get('status')}); sending to manage page"
            )
            return BillingUrlResponse(url=manage_url)

        # Fail before any Stripe write when no price is configured
        self.config.require_price_source()

        customer_id = await self.ensure_customer(session_user, user)
        price_id = await self.gateway.resolve_price_id(self.config.price_lookup_key, self.config.price_id)

        key = idempotency_key or f"checkout:{session_user.id}:{price_id}:{self._idempotency_bucket()}"
        params = {
            "mode": "subscription",
            "customer": customer_id,
            "client_reference_id": session_user.id,
            "success_url": f"{origin}/billing/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{origin}/billing/cancel",
            "line_items": [{"price": price_id, "quantity": 1}],
            "automatic_tax": {"enabled": True},
            "billing_address_collection": "required",
            "customer_update": {"address": "auto"},
            "metadata": {"user_id": session_user.id},
            "subscription_data": {"metadata": {"user_id": session_user.id}},
        }

        session = await self.gateway.create_checkout_session(params, idempotency_key=key)
        if not session.get("url"):
            raise RuntimeError("Stripe Checkout session did not return a URL")

        logger.info(f"Created checkout session {session.get('id')} for user {session_user.id}")
        return BillingUrlResponse(url=session["url"])

    async def open_billing_portal(self, session_user: SessionUser, request_base_url: str) -> BillingUrlResponse:
        user = await self._load_registered_user(session_user)
        origin = self._origin(request_base_url)

        customer_id = await self.ensure_customer(session_user, user)
        portal = await self.gateway.create_portal_session(
            customer_id=customer_id,
            return_url=absolute_url(origin, self.config.portal_return_path),
            idempotency_key=f"portal:{session_user.id}:{self._idempotency_bucket()}",
        )
        if not portal.get("url"):
            raise RuntimeError("Stripe portal session did not return a URL")

        return BillingUrlResponse(url=portal["url"])

    # =========================================================================
    # Verification
    # =========================================================================

    async def verify_checkout(self, session_user: SessionUser, session_id: Optional[str]) -> VerifyCheckoutResponse:
        """Confirm a completed checkout and grant Pro without waiting for the webhook.

        Safe to call repeatedly: re-applying the same entitlement does not write.
        """
        if not session_id:
            raise MissingSessionId()

        logger.info(
            f"Verifying checkout session {session_id} for user {session_user.id} ({mask_email(session_user.email)})"
        )

        try:
            checkout = await self.gateway.retrieve_checkout_session(session_id)
        except stripe.error.StripeError as e:
            if is_resource_missing(e):
                raise CheckoutSessionNotFound() from e
            raise

        if checkout.get("client_reference_id") != session_user.id:
            logger.error(
                f"Checkout session {session_id} user mismatch: caller={session_user.id} "
                f"client_reference_id={checkout.get('client_reference_id')}"
            )
            raise CheckoutSessionMismatch()

        payment_status = checkout.get("payment_status")
        if payment_status not in VERIFIED_PAYMENT_STATUSES:
            return VerifyCheckoutResponse(verified=False, status=payment_status)

        subscription = checkout.get("subscription")
        subscription_id = stripe_id(subscription)
        if isinstance(subscription, str):
            subscription = await self.gateway.retrieve_subscription(subscription)

        if subscription_id and is_subscription_entitled(subscription, grace_period=self.config.grace_period):
            await self.store.apply_entitlement(
                EntitlementUpdate.pro(subscription_id, get_subscription_period_end(subscription)),
                user_id=session_user.id,
                customer_id=stripe_id(checkout.get("customer")),
            )
            logger.info(f"User {session_user.id} upgraded via session verification ({subscription_id})")
            return VerifyCheckoutResponse(verified=True, tier=UserTier.PRO, subscription_id=subscription_id)

        return VerifyCheckoutResponse(
            verified=False,
            status=(subscription or {}).get("status") or "unknown",
        )

    # =========================================================================
    # Read-only reporting
    # =========================================================================

    async def get_limits(self, session_user: SessionUser) -> BillingLimitsResponse:
        """Entitlement and quota from stored state only; no Stripe calls."""
        user = await self.store.get_user(session_user.id)
        if not user:
            raise BillingUserNotFound()

        is_pro = is_user_entitled(user, grace_period=self.config.grace_period)
        used = int(user.get("messages_sent_count") or 0)
        limit = None if is_pro else self.config.free_lifetime_message_limit
        remaining = None if limit is None else max(limit - used, 0)

        return BillingLimitsResponse(
            is_pro=is_pro,
            used=used,
            limit=limit,
            remaining=remaining,
            checkout_url=self.config.checkout_page_url,
            portal_url=self.config.manage_page_url,
            pro_expires_at=user.get("pro_expires_at"),
        )

    async def get_status(self, session_user: SessionUser) -> BillingStatusResponse:
        user = await self.store.get_user(session_user.id)
        if not user:
            raise BillingUserNotFound()

        return BillingStatusResponse(
            tier=user.get("tier") or UserTier.FREE,
            is_pro=is_user_entitled(user, grace_period=self.config.grace_period),
            has_customer=bool(user.get("stripe_customer_id")),
            stripe_subscription_id=user.get("stripe_subscription_id"),
            pro_expires_at=user.get("pro_expires_at"),
            lifetime_access=bool(user.get("lifetime_access")),
        )


def get_billing_service(gateway: StripeGateway = Depends(get_stripe_gateway)) -> BillingService:
    return BillingService(gateway)
