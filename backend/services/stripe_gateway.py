"""Stripe Gateway - the only module that talks to the Stripe SDK.

Constructed once at startup (see server.lifespan) and handed to the billing
and webhook services, so tests can substitute a fake. The Stripe SDK is
synchronous; calls run in the default thread pool so the event loop stays
free while Stripe responds.

Results are returned as plain dicts.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

import stripe
from fastapi import Request

from services.billing_config import BillingConfigError, get_billing_config

logger = logging.getLogger(__name__)

SUBSCRIPTION_PAGE_SIZE = 100


def _plain(value: Any) -> Any:
    # StripeObject subclasses dict; nested objects and lists are converted too
    if isinstance(value, dict):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_plain(item) for item in value]
    return value


def _as_dict(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    return _plain(obj)


def is_resource_missing(error: Exception) -> bool:
    return isinstance(error, stripe.error.InvalidRequestError) and getattr(error, "code", None) == "resource_missing"


class StripeGateway:
    """Async facade over the subset of the Stripe API billing needs."""

    def __init__(self, api_key: str):
        self.api_key = (api_key or "").strip()

    async def _run(self, fn):
        """Run `fn(api_key)` in the default executor."""
        if not self.api_key:
            raise BillingConfigError("STRIPE_SECRET_KEY or STRIPE_API_KEY is not set")
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, lambda: fn(self.api_key))

    async def _call(self, fn, *args, **kwargs):
        return await self._run(lambda api_key: fn(*args, api_key=api_key, **kwargs))

    # -------------------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------------------

    def construct_event(self, payload: bytes, signature: str, secret: str) -> Dict[str, Any]:
        """Verify the Stripe-Signature header over the raw body and parse the event.

        Raises stripe.error.SignatureVerificationError or ValueError.
        """
        event = stripe.Webhook.construct_event(payload, signature, secret)
        return _as_dict(event)

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        subscription = await self._call(stripe.Subscription.retrieve, subscription_id)
        return _as_dict(subscription)

    async def list_subscriptions(self, customer_id: str, status: str = "all") -> List[Dict[str, Any]]:
        """All subscriptions for a customer, following pagination."""
        def _list(api_key):
            page = stripe.Subscription.list(
                customer=customer_id,
                status=status,
                limit=SUBSCRIPTION_PAGE_SIZE,
                api_key=api_key,
            )
            return [_as_dict(sub) for sub in page.auto_paging_iter()]

        return await self._run(_list)

    async def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        subscription = await self._call(stripe.Subscription.cancel, subscription_id)
        return _as_dict(subscription)

    # -------------------------------------------------------------------------
    # Customers and prices
    # -------------------------------------------------------------------------

    async def create_customer(
        self,
        user_id: str,
        email: Optional[str],
        idempotency_key: str,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {"metadata": {"user_id": user_id}}
        if email:
            params["email"] = email
        customer = await self._call(
            stripe.Customer.create,
            idempotency_key=idempotency_key,
            **params,
        )
        return _as_dict(customer)

    async def resolve_price_id(self, lookup_key: Optional[str], price_id: Optional[str]) -> str:
        """Price for the Pro plan: lookup key preferred, direct price id as fallback."""
        if lookup_key:
            prices = await self._call(stripe.Price.list, lookup_keys=[lookup_key], limit=1)
            data = _as_dict(prices).get("data") or []
            if not data:
                raise BillingConfigError(f"No Stripe price found for lookup key {lookup_key}")
            return data[0]["id"]

        if not price_id:
            raise BillingConfigError("Missing STRIPE_PRICE_LOOKUP_KEY_PRO or STRIPE_PRICE_ID")
        return price_id

    # -------------------------------------------------------------------------
    # Checkout and billing portal
    # -------------------------------------------------------------------------

    async def create_checkout_session(self, params: Dict[str, Any], idempotency_key: str) -> Dict[str, Any]:
        session = await self._call(
            stripe.checkout.Session.create,
            idempotency_key=idempotency_key,
            **params,
        )
        return _as_dict(session)

    async def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        session = await self._call(
            stripe.checkout.Session.retrieve,
            session_id,
            expand=["subscription"],
        )
        return _as_dict(session)

    async def create_portal_session(
        self,
        customer_id: str,
        return_url: str,
        idempotency_key: str,
    ) -> Dict[str, Any]:
        session = await self._call(
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
            idempotency_key=idempotency_key,
        )
        return _as_dict(session)


def get_stripe_gateway(request: Request) -> StripeGateway:
    """FastAPI dependency: the process-wide gateway created at startup."""
    gateway = getattr(request.app.state, "stripe_gateway", None)
    if gateway is None:
        gateway = StripeGateway(get_billing_config().stripe_secret_key)
        request.app.state.stripe_gateway = gateway
    return gateway
